"""
Run Registry

In-memory store of load-test runs for the lifetime of the process:
- allocation of run records with collision-resistant identifiers
- lookup and point-in-time snapshots for status/result/log queries
- newest-first history listing
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import secrets
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Optional

from chaosmonkey.core.errors import RunNotFoundError
from chaosmonkey.core.rates import TickSnapshot
from chaosmonkey.core.run_log_stream import RunLog
from chaosmonkey.models.run import ProgressSample, RunSpec, RunStatus, RunSummary

logger = logging.getLogger(__name__)

_ID_ALPHABET = "0123456789abcdefghijklmnopqrstuvwxyz"
# 16 symbols of base36 ~= 82 bits of entropy.
_ID_LENGTH = 16


def new_run_id() -> str:
    return "".join(secrets.choice(_ID_ALPHABET) for _ in range(_ID_LENGTH))


def _utc_iso(dt: datetime) -> str:
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass
class Run:
    run_id: str
    spec: RunSpec
    log: RunLog
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    # Creation order; breaks ties between runs created within the same millisecond.
    seq: int = 0
    status: RunStatus = RunStatus.RUNNING
    progress: list[ProgressSample] = field(default_factory=list)
    result: Optional[dict[str, Any]] = None
    error: Optional[str] = None
    task: Optional[asyncio.Task] = None
    started_mono: float = 0.0
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    _last_tick: Optional[TickSnapshot] = field(default=None, repr=False)

    @property
    def started_at(self) -> str:
        return _utc_iso(self.created_at)


@dataclass(frozen=True)
class RunSnapshot:
    """Immutable point-in-time view of a run."""

    run_id: str
    status: RunStatus
    started_at: str
    progress: tuple[ProgressSample, ...]
    result: Optional[dict[str, Any]]
    error: Optional[str]
    lines: tuple[str, ...]


def snapshot_of(run: Run) -> RunSnapshot:
    # Synchronous copy: no await between reads, so no writer can interleave.
    return RunSnapshot(
        run_id=run.run_id,
        status=run.status,
        started_at=run.started_at,
        progress=tuple(run.progress),
        result=run.result,
        error=run.error,
        lines=tuple(run.log.lines()),
    )


class RunRegistry:
    def __init__(
        self,
        *,
        log_max_lines: int,
        subscriber_queue_size: int,
        retention_max_runs: int = 0,
    ) -> None:
        self._runs: dict[str, Run] = {}
        self._lock = asyncio.Lock()
        self._seq = itertools.count(1)
        self._log_max_lines = int(log_max_lines)
        self._subscriber_queue_size = int(subscriber_queue_size)
        self._retention_max_runs = max(0, int(retention_max_runs or 0))

    def __len__(self) -> int:
        return len(self._runs)

    async def create(self, spec: RunSpec) -> Run:
        """
        Allocate a new run in RUNNING status.

        Ids come from a CSPRNG with ~82 bits of entropy; a collision is
        astronomically unlikely but is still never allowed to overwrite a run.
        """
        async with self._lock:
            run_id = new_run_id()
            while run_id in self._runs:
                run_id = new_run_id()
            run = Run(
                run_id=run_id,
                spec=spec,
                log=RunLog(
                    run_id,
                    max_lines=self._log_max_lines,
                    subscriber_queue_size=self._subscriber_queue_size,
                ),
                seq=next(self._seq),
                started_mono=asyncio.get_running_loop().time(),
            )
            self._runs[run_id] = run
            self._evict_locked()
        return run

    async def get(self, run_id: str) -> Run:
        async with self._lock:
            run = self._runs.get(run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        return run

    async def snapshot(self, run_id: str) -> RunSnapshot:
        run = await self.get(run_id)
        async with run.lock:
            return snapshot_of(run)

    async def list_history(self, limit: int = 50) -> list[RunSummary]:
        async with self._lock:
            runs = list(self._runs.values())
        runs.sort(key=lambda r: (r.created_at, r.seq), reverse=True)
        return [
            RunSummary(id=r.run_id, status=r.status, started_at=r.started_at)
            for r in runs[: max(0, int(limit))]
        ]

    def _evict_locked(self) -> None:
        limit = self._retention_max_runs
        if not limit or len(self._runs) <= limit:
            return
        # Only terminal runs are evicted; a running job is never dropped.
        terminal = sorted(
            (r for r in self._runs.values() if r.status.is_terminal),
            key=lambda r: (r.created_at, r.seq),
        )
        excess = len(self._runs) - limit
        for r in terminal[:excess]:
            self._runs.pop(r.run_id, None)
            logger.debug("Evicted run %s (retention limit %d)", r.run_id, limit)

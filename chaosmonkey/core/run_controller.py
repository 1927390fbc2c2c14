"""
Run Lifecycle Controller

Starts load-test runs and is the only writer of run state:
- normalizes the request and allocates the run record
- drives the load engine as a tracked background task
- records ticks, the terminal result/error and the matching log lines

Every mutation of a run happens under that run's lock, so callbacks for one
run are serialized while different runs proceed independently.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

from chaosmonkey.core.errors import InternalFault
from chaosmonkey.core.load_engine import LoadEngine
from chaosmonkey.core.rates import apply_tick
from chaosmonkey.core.run_log_format import (
    format_done_line,
    format_error_line,
    format_start_line,
    format_tick_line,
)
from chaosmonkey.core.run_registry import Run, RunRegistry
from chaosmonkey.core.run_spec import normalize_run_spec
from chaosmonkey.models.run import RunStatus

logger = logging.getLogger(__name__)

SHUTDOWN_ERROR = "cancelled: server shutting down"


def _error_message(exc: BaseException) -> str:
    msg = str(exc).strip()
    return msg or type(exc).__name__


class RunController:
    def __init__(
        self,
        registry: RunRegistry,
        engine: LoadEngine,
        *,
        body_max_chars: int = 2000,
    ) -> None:
        self._registry = registry
        self._engine = engine
        self._body_max_chars = int(body_max_chars)
        self._background_tasks: set[asyncio.Task] = set()

    @property
    def registry(self) -> RunRegistry:
        return self._registry

    def _track_task(self, task: asyncio.Task) -> None:
        self._background_tasks.add(task)

        def _done(t: asyncio.Task) -> None:
            self._background_tasks.discard(t)
            # Always retrieve exceptions so asyncio doesn't emit
            # "Task exception was never retrieved" warnings.
            try:
                exc = t.exception()
            except asyncio.CancelledError:
                return
            if exc is not None:
                logger.error("Run task failed: %s", exc, exc_info=exc)

        task.add_done_callback(_done)

    async def start(self, payload: Any) -> Run:
        """
        Validate ``payload`` and launch a run.

        Raises:
            InvalidSpecError: the payload was rejected; nothing was registered.
            InternalFault: the run was registered but could not be launched; it
                is left in ERROR status with its log completed.
        """
        spec = normalize_run_spec(payload)
        run = await self._registry.create(spec)
        try:
            async with run.lock:
                run.log.append(
                    format_start_line(run.run_id, spec, body_max_chars=self._body_max_chars)
                )
            task = asyncio.create_task(self._drive(run), name=f"run-{run.run_id}")
            run.task = task
            self._track_task(task)
        except Exception as e:
            logger.error("Failed to start run %s: %s", run.run_id, e, exc_info=True)
            await self.record_failure(run, f"internal error: {_error_message(e)}")
            raise InternalFault("Failed to start run") from e

        logger.info(
            "Run %s started: %s %s conn=%d dur=%ss amt=%s",
            run.run_id,
            spec.method,
            spec.url,
            spec.connections,
            spec.duration,
            spec.amount or 0,
        )
        return run

    async def _drive(self, run: Run) -> None:
        async def on_tick(counter: int, bytes_: int) -> None:
            await self.record_tick(run, counter, bytes_)

        try:
            result = await self._engine.run(run.spec, on_tick)
        except asyncio.CancelledError:
            await self.record_failure(run, SHUTDOWN_ERROR)
            raise
        except Exception as e:
            # Engine failures are absorbed into run state and never escape.
            await self.record_failure(run, _error_message(e))
            return
        await self.record_success(run, result)

    async def record_tick(self, run: Run, counter: Any, bytes_: Any) -> bool:
        async with run.lock:
            if run.status.is_terminal:
                logger.debug("Ignoring tick for terminal run %s", run.run_id)
                return False
            loop = asyncio.get_running_loop()
            now = loop.time()
            sample, run._last_tick = apply_tick(
                run._last_tick,
                counter=counter,
                bytes_=bytes_,
                now_ms=now * 1000.0,
                timestamp_ms=time.time() * 1000.0,
            )
            run.progress.append(sample)
            run.log.append(format_tick_line(run.run_id, now - run.started_mono, sample))
        return True

    async def record_success(self, run: Run, result: Any) -> bool:
        async with run.lock:
            if run.status.is_terminal:
                logger.debug("Ignoring result for terminal run %s", run.run_id)
                return False
            run.status, run.result = RunStatus.DONE, result
            run.log.append(format_done_line(run.run_id, result))
            run.log.complete()
        logger.info("Run %s done", run.run_id)
        return True

    async def record_failure(self, run: Run, message: str) -> bool:
        async with run.lock:
            if run.status.is_terminal:
                logger.debug("Ignoring error for terminal run %s: %s", run.run_id, message)
                return False
            run.status, run.error = RunStatus.ERROR, message
            run.log.append(format_error_line(run.run_id, message))
            run.log.complete()
        logger.warning("Run %s failed: %s", run.run_id, message)
        return True

    async def shutdown(self, *, timeout_seconds: float = 5.0) -> None:
        """
        Cancel in-flight runs so the server can stop promptly.

        Cancelled runs end in ERROR status and their live subscribers get the
        terminal event.
        """
        tasks = list(self._background_tasks)
        for task in tasks:
            task.cancel()
        if not tasks:
            return
        try:
            await asyncio.wait_for(
                asyncio.gather(*tasks, return_exceptions=True), timeout=timeout_seconds
            )
        except TimeoutError:
            logger.warning(
                "Run controller shutdown timed out after %.1fs; forcing continuation",
                timeout_seconds,
            )

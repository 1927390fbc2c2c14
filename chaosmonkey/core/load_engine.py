"""
Load Engine

The orchestration core talks to load generation only through the
:class:`LoadEngine` protocol: ``run(spec, on_tick)`` awaits ``on_tick`` with
cumulative ``(counter, bytes)`` totals zero or more times and then returns the
terminal result (or raises).

:class:`HttpLoadEngine` is the bundled implementation on top of
``httpx.AsyncClient``. Each connection runs ``pipelining`` concurrent request
loops; the result mirrors the autocannon report shape the UI consumes.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from collections import Counter
from datetime import UTC, datetime
from typing import Any, Awaitable, Callable, Optional, Protocol

import httpx

from chaosmonkey.core.errors import EngineFailure
from chaosmonkey.models.run import RunSpec

logger = logging.getLogger(__name__)

TickCallback = Callable[[int, int], Awaitable[None]]


class LoadEngine(Protocol):
    async def run(self, spec: RunSpec, on_tick: TickCallback) -> dict[str, Any]: ...


def _pct(values: list[float], p: float) -> float:
    if not values:
        return 0.0
    xs = sorted(values)
    if len(xs) == 1:
        return float(xs[0])
    k = int(round((p / 100.0) * (len(xs) - 1)))
    k = max(0, min(k, len(xs) - 1))
    return float(xs[k])


def _distribution(values: list[float], *, total: float | None = None) -> dict[str, Any]:
    """Summary block (average/stddev/min/max/percentiles) of one series."""
    n = len(values)
    mean = float(sum(values) / n) if n else 0.0
    var = float(sum((v - mean) ** 2 for v in values) / n) if n else 0.0
    out: dict[str, Any] = {
        "average": round(mean, 2),
        "mean": round(mean, 2),
        "stddev": round(math.sqrt(var), 2),
        "min": float(min(values)) if values else 0.0,
        "max": float(max(values)) if values else 0.0,
        "p1": _pct(values, 1),
        "p2_5": _pct(values, 2.5),
        "p50": _pct(values, 50),
        "p75": _pct(values, 75),
        "p90": _pct(values, 90),
        "p97_5": _pct(values, 97.5),
        "p99": _pct(values, 99),
    }
    if total is not None:
        out["total"] = total
    return out


def _request_kwargs(spec: RunSpec) -> dict[str, Any]:
    kwargs: dict[str, Any] = {"headers": dict(spec.headers)}
    body = spec.body
    if body is None:
        return kwargs
    if isinstance(body, (str, bytes)):
        kwargs["content"] = body
    else:
        kwargs["json"] = body
    return kwargs


class _RunStats:
    def __init__(self) -> None:
        self.sent = 0
        self.responses = 0
        self.bytes = 0
        self.errors = 0
        self.timeouts = 0
        self.latencies_ms: list[float] = []
        self.status_codes: Counter[int] = Counter()
        self.per_connection: Counter[int] = Counter()
        # Per-tick deltas, used for requests/throughput distributions.
        self.window_requests: list[float] = []
        self.window_bytes: list[float] = []
        self._window_mark = (0, 0)

    def close_window(self) -> None:
        prev_req, prev_bytes = self._window_mark
        self.window_requests.append(float(self.responses - prev_req))
        self.window_bytes.append(float(self.bytes - prev_bytes))
        self._window_mark = (self.responses, self.bytes)

    def status_class_counts(self) -> dict[str, int]:
        out = {"1xx": 0, "2xx": 0, "3xx": 0, "4xx": 0, "5xx": 0}
        for code, count in self.status_codes.items():
            key = f"{code // 100}xx"
            if key in out:
                out[key] += count
        return out


class _Pacer:
    """Spaces request starts at a fixed rate across every caller sharing it."""

    def __init__(self, rate: float) -> None:
        self._interval = 1.0 / rate
        self._next = 0.0

    async def wait(self) -> None:
        loop = asyncio.get_running_loop()
        now = loop.time()
        slot = max(now, self._next)
        self._next = slot + self._interval
        if slot > now:
            await asyncio.sleep(slot - now)


class HttpLoadEngine:
    def __init__(
        self,
        *,
        tick_interval_seconds: float = 1.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        interval = float(tick_interval_seconds or 1.0)
        if not math.isfinite(interval) or interval <= 0:
            interval = 1.0
        self._tick_interval = interval
        self._transport = transport

    def _client(self, spec: RunSpec) -> httpx.AsyncClient:
        limits = httpx.Limits(
            max_connections=spec.connections,
            max_keepalive_connections=spec.connections,
        )
        return httpx.AsyncClient(
            timeout=spec.timeout / 1000.0,
            limits=limits,
            verify=spec.reject_unauthorized,
            transport=self._transport,
            follow_redirects=False,
        )

    async def run(self, spec: RunSpec, on_tick: TickCallback) -> dict[str, Any]:
        if not spec.amount and not spec.duration:
            raise EngineFailure("run has neither a duration nor an amount")

        async with self._client(spec) as client:
            if spec.verify_connection:
                await self._verify(client, spec)

            if spec.warmup_duration:
                logger.debug("Warmup for %.1fs against %s", spec.warmup_duration, spec.url)
                await self._drive(client, spec, _RunStats(), duration=spec.warmup_duration)

            stats = _RunStats()
            start = datetime.now(UTC)
            start_perf = time.perf_counter()
            ticker = asyncio.create_task(self._ticker(stats, on_tick))
            try:
                await self._drive(
                    client,
                    spec,
                    stats,
                    duration=None if spec.amount else spec.duration,
                )
            finally:
                ticker.cancel()
                await asyncio.gather(ticker, return_exceptions=True)
            elapsed = time.perf_counter() - start_perf

        return self._build_result(spec, stats, start=start, elapsed=elapsed)

    async def _verify(self, client: httpx.AsyncClient, spec: RunSpec) -> None:
        try:
            await client.request(spec.method, spec.url, **_request_kwargs(spec))
        except httpx.HTTPError as e:
            raise EngineFailure(f"connection verification failed: {e}") from e

    async def _ticker(self, stats: _RunStats, on_tick: TickCallback) -> None:
        while True:
            await asyncio.sleep(self._tick_interval)
            stats.close_window()
            try:
                await on_tick(stats.responses, stats.bytes)
            except Exception as e:
                # A broken listener must not stop load generation.
                logger.error("Tick callback failed: %s", e, exc_info=True)

    async def _drive(
        self,
        client: httpx.AsyncClient,
        spec: RunSpec,
        stats: _RunStats,
        *,
        duration: float | None,
    ) -> None:
        stop = asyncio.Event()
        overall = _Pacer(spec.overall_rate) if spec.overall_rate else None
        per_connection = [
            _Pacer(spec.rate) if spec.rate else None for _ in range(spec.connections)
        ]
        workers = [
            asyncio.create_task(
                self._worker(
                    client,
                    spec,
                    stats,
                    connection=conn,
                    stop=stop,
                    pacers=[p for p in (overall, per_connection[conn]) if p],
                )
            )
            for conn in range(spec.connections)
            for _ in range(spec.pipelining)
        ]
        try:
            if duration is None:
                await asyncio.gather(*workers)
            else:
                done, _ = await asyncio.wait(
                    workers, timeout=duration, return_when=asyncio.FIRST_EXCEPTION
                )
                for t in done:
                    if not t.cancelled() and t.exception() is not None:
                        raise t.exception()
        finally:
            stop.set()
            for t in workers:
                t.cancel()
            await asyncio.gather(*workers, return_exceptions=True)

    def _reserve(self, spec: RunSpec, stats: _RunStats, connection: int) -> bool:
        if spec.amount and stats.sent >= spec.amount:
            return False
        if spec.max_overall_requests and stats.sent >= spec.max_overall_requests:
            return False
        if (
            spec.max_connection_requests
            and stats.per_connection[connection] >= spec.max_connection_requests
        ):
            return False
        stats.sent += 1
        stats.per_connection[connection] += 1
        return True

    async def _worker(
        self,
        client: httpx.AsyncClient,
        spec: RunSpec,
        stats: _RunStats,
        *,
        connection: int,
        stop: asyncio.Event,
        pacers: list[_Pacer],
    ) -> None:
        kwargs = _request_kwargs(spec)
        while not stop.is_set():
            for pacer in pacers:
                await pacer.wait()
            if stop.is_set() or not self._reserve(spec, stats, connection):
                return
            started = time.perf_counter()
            try:
                resp = await client.request(spec.method, spec.url, **kwargs)
            except httpx.TimeoutException:
                stats.errors += 1
                stats.timeouts += 1
                continue
            except httpx.HTTPError as e:
                stats.errors += 1
                logger.debug("Request to %s failed: %s", spec.url, e)
                continue
            except BaseException:
                # Cut off by the deadline, or the request could not be built:
                # it never completed, so it is not counted as sent.
                stats.sent -= 1
                stats.per_connection[connection] -= 1
                raise
            stats.latencies_ms.append((time.perf_counter() - started) * 1000.0)
            stats.responses += 1
            stats.bytes += len(resp.content)
            stats.status_codes[resp.status_code] += 1

    def _build_result(
        self, spec: RunSpec, stats: _RunStats, *, start: datetime, elapsed: float
    ) -> dict[str, Any]:
        # Per-second rates for each tick window.
        window_requests = [w / self._tick_interval for w in stats.window_requests]
        window_bytes = [w / self._tick_interval for w in stats.window_bytes]
        if not window_requests and elapsed > 0:
            # Shorter than one tick: report the whole run as a single window.
            window_requests = [stats.responses / elapsed]
            window_bytes = [stats.bytes / elapsed]

        requests = _distribution(window_requests, total=stats.responses)
        requests["sent"] = stats.sent
        throughput = _distribution(window_bytes, total=stats.bytes)
        classes = stats.status_class_counts()

        result: dict[str, Any] = {
            "url": spec.url,
            "method": spec.method,
            "connections": spec.connections,
            "pipelining": spec.pipelining,
            "duration": round(elapsed, 3),
            "start": start.isoformat(),
            "finish": datetime.now(UTC).isoformat(),
            "latency": _distribution(stats.latencies_ms),
            "requests": requests,
            "throughput": throughput,
            "errors": stats.errors,
            "timeouts": stats.timeouts,
            "non2xx": stats.responses - classes["2xx"],
            "bytes": stats.bytes,
            "statusCodeStats": {
                str(code): {"count": count}
                for code, count in sorted(stats.status_codes.items())
            },
        }
        result.update(classes)
        return result

"""
Tick-to-rate conversion.

The load engine only reports cumulative totals, so instantaneous rates are
derived from the delta against the previous tick (one tick of smoothing, no
further averaging).
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any

from chaosmonkey.models.run import ProgressSample

# Floor for the elapsed interval so back-to-back ticks can't divide by ~0.
MIN_INTERVAL_MS = 1.0


@dataclass(frozen=True)
class TickSnapshot:
    time_ms: float
    counter: int
    bytes: int


def _int_or_zero(value: Any) -> int:
    try:
        n = int(value)
    except (TypeError, ValueError, OverflowError):
        return 0
    return n


def _finite_non_negative(value: float | None) -> float | None:
    if value is None or not math.isfinite(value) or value < 0:
        return None
    return float(value)


def apply_tick(
    prev: TickSnapshot | None,
    *,
    counter: Any,
    bytes_: Any,
    now_ms: float,
    timestamp_ms: float | None = None,
) -> tuple[ProgressSample, TickSnapshot]:
    """
    Derive a progress sample from a cumulative tick.

    Args:
        prev: Snapshot of the previous tick, or None for the first tick.
        counter: Cumulative request count reported by the engine.
        bytes_: Cumulative byte count reported by the engine.
        now_ms: Monotonic clock reading (ms) used for the elapsed interval.
        timestamp_ms: Wall-clock epoch ms stored on the sample (defaults to now_ms).

    Returns:
        The new sample and the snapshot to keep for the next tick.
    """
    count = _int_or_zero(counter)
    nbytes = _int_or_zero(bytes_)

    req_per_sec: float | None = None
    bytes_per_sec: float | None = None
    if prev is not None:
        elapsed_ms = float(now_ms) - float(prev.time_ms)
        if math.isfinite(elapsed_ms) and elapsed_ms >= 0:
            dt = max(MIN_INTERVAL_MS, elapsed_ms) / 1000.0
            req_per_sec = _finite_non_negative((count - prev.counter) / dt)
            bytes_per_sec = _finite_non_negative((nbytes - prev.bytes) / dt)

    sample = ProgressSample(
        time=float(now_ms if timestamp_ms is None else timestamp_ms),
        counter=max(0, count),
        bytes=max(0, nbytes),
        req_per_sec=req_per_sec,
        bytes_per_sec=bytes_per_sec,
    )
    return sample, TickSnapshot(time_ms=float(now_ms), counter=count, bytes=nbytes)

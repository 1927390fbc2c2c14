import asyncio
import re
from datetime import UTC, datetime

import pytest

from chaosmonkey.core.run_log_stream import END, LAGGED, LOG, RunLog, format_log_line


def _log(*, max_lines: int = 100, queue: int = 100) -> RunLog:
    return RunLog("run1", max_lines=max_lines, subscriber_queue_size=queue)


def _strip_ts(line: str) -> str:
    return re.sub(r"^\[[^\]]+\] ", "", line)


def test_format_log_line_prefixes_utc_timestamp():
    now = datetime(2026, 3, 1, 12, 30, 5, 123456, tzinfo=UTC)
    assert format_log_line("hello", now=now) == "[2026-03-01T12:30:05.123Z] hello"


def test_ring_buffer_evicts_oldest():
    log = _log(max_lines=3)
    for i in range(5):
        log.append(f"line {i}")

    assert [_strip_ts(x) for x in log.lines()] == ["line 2", "line 3", "line 4"]
    assert len(log) == 3


def test_append_after_complete_is_dropped():
    log = _log()
    assert log.append("a") is not None
    assert log.complete() is True
    assert log.complete() is False
    assert log.append("b") is None
    assert [_strip_ts(x) for x in log.lines()] == ["a"]


@pytest.mark.asyncio
async def test_subscriber_gets_snapshot_then_live_then_end():
    log = _log()
    log.append("before")
    sub = log.subscribe()
    log.append("after")
    log.complete()

    assert [_strip_ts(x) for x in sub.snapshot] == ["before"]
    first = await sub.get()
    assert first.kind == LOG and _strip_ts(first.line) == "after"
    last = await sub.get()
    assert last.kind == END
    assert log.subscriber_count == 0


@pytest.mark.asyncio
async def test_two_subscribers_see_identical_sequences():
    log = _log()
    a = log.subscribe()
    b = log.subscribe()
    for i in range(10):
        log.append(f"tick {i}")
    log.complete()

    async def _drain(sub):
        out = []
        while True:
            event = await sub.get()
            out.append((event.kind, event.line))
            if event.is_terminal:
                return out

    got_a, got_b = await asyncio.gather(_drain(a), _drain(b))
    assert got_a == got_b
    assert len(got_a) == 11
    assert got_a[-1] == (END, None)


@pytest.mark.asyncio
async def test_subscribe_after_complete_gets_immediate_end():
    log = _log()
    log.append("only")
    log.complete()

    sub = log.subscribe()
    assert [_strip_ts(x) for x in sub.snapshot] == ["only"]
    assert (await sub.get()).kind == END
    assert log.subscriber_count == 0


def test_unsubscribe_is_idempotent():
    log = _log()
    sub = log.subscribe()
    assert log.subscriber_count == 1

    log.unsubscribe(sub)
    log.unsubscribe(sub)
    assert log.subscriber_count == 0
    assert sub.active is False

    # Publishing after unsubscribe must not reach the detached queue.
    log.append("x")
    assert sub.pending() == 0

    log.complete()
    log.unsubscribe(sub)


@pytest.mark.asyncio
async def test_slow_subscriber_is_detached_without_blocking_publisher():
    log = _log(queue=2)
    slow = log.subscribe()
    fast = log.subscribe()

    log.append("1")
    log.append("2")
    assert (await fast.get()).line is not None
    assert (await fast.get()).line is not None
    log.append("3")

    assert slow.lagged is True
    assert log.subscriber_count == 1
    # The lagged subscriber drains what it holds, then gets a terminal event.
    assert (await slow.get()).kind == LOG
    assert (await slow.get()).kind == LOG
    assert (await slow.get()).kind == LAGGED

    log.complete()
    assert _strip_ts((await fast.get()).line) == "3"
    assert (await fast.get()).kind == END


@pytest.mark.asyncio
async def test_late_subscriber_sees_same_stream_as_early_one():
    log = _log()
    log.append("START")
    early = log.subscribe()
    log.append("TICK 1")
    log.append("TICK 2")
    late = log.subscribe()
    log.append("TICK 3")
    log.append("DONE")
    log.complete()

    async def _full_stream(sub):
        out = list(sub.snapshot)
        while True:
            event = await sub.get()
            if event.is_terminal:
                assert event.kind == END
                return out
            out.append(event.line)

    from_early = await _full_stream(early)
    from_late = await _full_stream(late)

    assert from_early == from_late == log.lines()
    assert [_strip_ts(x) for x in from_late] == ["START", "TICK 1", "TICK 2", "TICK 3", "DONE"]
    assert len(late.snapshot) == 3

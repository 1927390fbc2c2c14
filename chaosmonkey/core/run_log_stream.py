"""
Per-run log buffer and live fan-out.

Each run owns one :class:`RunLog`:
- a bounded ring of formatted lines (oldest evicted first), and
- a set of subscriber queues that receive every appended line plus a single
  terminal ``end`` event.

A RunLog is confined to the event loop that owns the run. ``append``,
``complete``, ``subscribe`` and ``unsubscribe`` never await, so each one is a
single atomic step with respect to every other coroutine on the loop.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from datetime import UTC, datetime

logger = logging.getLogger(__name__)

LOG = "log"
END = "end"
LAGGED = "lagged"


@dataclass(frozen=True)
class LogEvent:
    kind: str
    line: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.kind != LOG


_END_EVENT = LogEvent(END)
_LAGGED_EVENT = LogEvent(LAGGED)


def format_log_line(text: str, *, now: datetime | None = None) -> str:
    ts = (now or datetime.now(UTC)).isoformat(timespec="milliseconds")
    return f"[{ts.replace('+00:00', 'Z')}] {text}"


class Subscription:
    """
    Handle for one live subscriber.

    ``snapshot`` holds the lines buffered at the instant of subscription; the
    queue carries everything appended afterwards, so snapshot + queue is the
    complete ordered stream without gaps or duplicates.
    """

    def __init__(self, run_id: str, snapshot: tuple[str, ...], *, maxsize: int) -> None:
        self.run_id = run_id
        self.snapshot = snapshot
        self._queue: asyncio.Queue[LogEvent] = asyncio.Queue(maxsize=max(0, maxsize))
        self.active = True
        self.lagged = False

    def _offer(self, event: LogEvent) -> bool:
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            return False
        return True

    def pending(self) -> int:
        return self._queue.qsize()

    async def get(self) -> LogEvent:
        """
        Next event for this subscriber.

        A subscriber detached for falling behind drains what it already holds
        and then receives a ``lagged`` terminal event instead of blocking.
        """
        if self.lagged and self._queue.empty():
            return _LAGGED_EVENT
        return await self._queue.get()


class RunLog:
    def __init__(self, run_id: str, *, max_lines: int, subscriber_queue_size: int) -> None:
        self.run_id = run_id
        self._lines: deque[str] = deque(maxlen=max(1, int(max_lines)))
        self._subscribers: set[Subscription] = set()
        self._subscriber_queue_size = int(subscriber_queue_size)
        self._completed = False

    @property
    def completed(self) -> bool:
        return self._completed

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def lines(self) -> list[str]:
        return list(self._lines)

    def __len__(self) -> int:
        return len(self._lines)

    def append(self, text: str) -> str | None:
        """
        Format, buffer and publish one line.

        Returns the formatted line, or None when the log is already complete.
        """
        if self._completed:
            logger.debug("Dropping log line for completed run %s: %s", self.run_id, text)
            return None
        line = format_log_line(text)
        self._lines.append(line)
        event = LogEvent(LOG, line)
        for sub in list(self._subscribers):
            if not sub._offer(event):
                # Publishing must never wait on a slow subscriber.
                self._detach_lagged(sub)
        return line

    def complete(self) -> bool:
        """
        Publish the terminal ``end`` event once and release all subscribers.

        Returns False if the log was already complete.
        """
        if self._completed:
            return False
        self._completed = True
        for sub in list(self._subscribers):
            if not sub._offer(_END_EVENT):
                sub.lagged = True
            sub.active = False
        self._subscribers.clear()
        return True

    def subscribe(self) -> Subscription:
        sub = Subscription(
            self.run_id, tuple(self._lines), maxsize=self._subscriber_queue_size
        )
        if self._completed:
            sub._offer(_END_EVENT)
            sub.active = False
            return sub
        self._subscribers.add(sub)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        """Stop delivery to ``sub``. Safe to call repeatedly or after completion."""
        self._subscribers.discard(sub)
        sub.active = False

    def _detach_lagged(self, sub: Subscription) -> None:
        self._subscribers.discard(sub)
        sub.active = False
        sub.lagged = True
        logger.warning(
            "Detached lagging log subscriber for run %s (queue full at %d events)",
            self.run_id,
            sub.pending(),
        )

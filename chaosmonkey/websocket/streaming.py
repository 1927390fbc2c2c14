"""
Live log streaming for run dashboards.

Push and pull are both read adapters over the same :class:`RunLog`:
- push: buffered snapshot, then live lines, then one terminal event, rendered
  as Server-Sent Events or WebSocket JSON frames;
- pull: the full current buffer plus status, re-polled by the client.
"""

import asyncio
import logging
from contextlib import aclosing
from typing import AsyncIterator

from fastapi import WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from chaosmonkey.config import settings
from chaosmonkey.core.run_log_stream import LAGGED, LOG, LogEvent, RunLog
from chaosmonkey.models.run import RunStatus

logger = logging.getLogger(__name__)


async def iter_log_events(run_log: RunLog) -> AsyncIterator[LogEvent]:
    """
    Yield every line of ``run_log`` from the start, then live lines, then
    exactly one terminal event (``end``, or ``lagged`` if this subscriber fell
    too far behind). The subscription is always released on exit.
    """
    sub = run_log.subscribe()
    try:
        for line in sub.snapshot:
            yield LogEvent(LOG, line)
        while True:
            event = await sub.get()
            yield event
            if event.is_terminal:
                return
    finally:
        run_log.unsubscribe(sub)


def poll_interval_ms(status: RunStatus) -> int:
    if status.is_terminal:
        return int(settings.POLL_INTERVAL_TERMINAL_MS)
    return int(settings.POLL_INTERVAL_ACTIVE_MS)


def _sse_data(text: str) -> str:
    # A line containing newlines becomes a multi-line data field.
    return "".join(f"data: {part}\n" for part in text.split("\n")) + "\n"


async def sse_log_stream(
    run_log: RunLog, *, keepalive_seconds: float | None = None
) -> AsyncIterator[str]:
    """Render a run's log stream as ``text/event-stream`` frames."""
    keepalive = (
        settings.SSE_KEEPALIVE_SECONDS if keepalive_seconds is None else keepalive_seconds
    )
    sub = run_log.subscribe()
    try:
        for line in sub.snapshot:
            yield _sse_data(line)
        while True:
            try:
                if keepalive and keepalive > 0:
                    event = await asyncio.wait_for(sub.get(), timeout=keepalive)
                else:
                    event = await sub.get()
            except TimeoutError:
                yield ": keepalive\n\n"
                continue
            if event.kind == LOG:
                yield _sse_data(event.line or "")
                continue
            if event.kind == LAGGED:
                yield "event: lagged\ndata: poll /logs for the full buffer\n\n"
            else:
                yield "event: end\ndata: done\n\n"
            return
    finally:
        run_log.unsubscribe(sub)


async def stream_run_logs(websocket: WebSocket, run_log: RunLog) -> None:
    """Stream a run's log lines over an accepted WebSocket, then close it."""

    async def _send_all() -> None:
        async with aclosing(iter_log_events(run_log)) as events:
            async for event in events:
                if event.kind == LOG:
                    await websocket.send_json({"kind": LOG, "line": event.line})
                else:
                    await websocket.send_json({"kind": event.kind})

    async def _watch_disconnect() -> None:
        while True:
            msg = await websocket.receive()
            if msg.get("type") == "websocket.disconnect":
                return

    sender = asyncio.create_task(_send_all())
    watcher = asyncio.create_task(_watch_disconnect())
    done, pending = await asyncio.wait(
        {sender, watcher}, return_when=asyncio.FIRST_COMPLETED
    )
    for task in pending:
        task.cancel()
    await asyncio.gather(*pending, return_exceptions=True)

    if sender in done:
        exc = sender.exception()
        if exc is not None and not isinstance(exc, WebSocketDisconnect):
            raise exc
        if websocket.client_state == WebSocketState.CONNECTED:
            await websocket.close()
    else:
        logger.debug("Log stream client for run %s disconnected", run_log.run_id)


__all__ = [
    "iter_log_events",
    "poll_interval_ms",
    "sse_log_stream",
    "stream_run_logs",
]

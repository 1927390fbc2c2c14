"""
Live log streaming (SSE, WebSocket) for run dashboards.
"""

from chaosmonkey.websocket.streaming import (
    iter_log_events,
    poll_interval_ms,
    sse_log_stream,
    stream_run_logs,
)

__all__ = [
    "iter_log_events",
    "poll_interval_ms",
    "sse_log_stream",
    "stream_run_logs",
]

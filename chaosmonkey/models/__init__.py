"""
Data models for Chaos Monkey.
"""

from chaosmonkey.models.run import (
    ProgressSample,
    RunCreateResponse,
    RunLogsResponse,
    RunSpec,
    RunStatus,
    RunStatusResponse,
    RunSummary,
)

__all__ = [
    "ProgressSample",
    "RunCreateResponse",
    "RunLogsResponse",
    "RunSpec",
    "RunStatus",
    "RunStatusResponse",
    "RunSummary",
]

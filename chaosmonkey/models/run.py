"""
Run Models

Defines Pydantic models for load-test runs:
- the normalized run specification handed to the load engine
- progress samples derived from engine ticks
- request/response payloads of the HTTP surface
"""

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class RunStatus(str, Enum):
    """Run lifecycle status."""

    RUNNING = "running"
    DONE = "done"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self is not RunStatus.RUNNING


class RunSpec(BaseModel):
    """
    Normalized load-test configuration.

    Exactly one of ``duration``/``amount`` bounds the run: when ``amount`` is
    set, ``duration`` is 0.
    """

    model_config = ConfigDict(frozen=True)

    # Target
    url: str = Field(..., description="Target URL (http or https)")
    method: str = Field("GET", description="HTTP method (uppercase)")
    headers: Dict[str, str] = Field(
        default_factory=dict, description="Request headers (case-insensitive keys)"
    )
    body: Any = Field(None, description="Request body (string or JSON value)")

    # Load shape
    connections: int = Field(10, ge=1, description="Concurrent connections")
    pipelining: int = Field(1, ge=1, description="In-flight requests per connection")
    duration: float = Field(10.0, ge=0, description="Run duration (seconds)")
    amount: Optional[int] = Field(
        None, ge=1, description="Total requests; overrides duration when set"
    )
    timeout: int = Field(10_000, ge=1, description="Per-request timeout (ms)")

    # Rate caps
    rate: Optional[float] = Field(None, gt=0, description="Requests/sec per connection")
    overall_rate: Optional[float] = Field(
        None, gt=0, description="Requests/sec across all connections"
    )
    max_connection_requests: Optional[int] = Field(
        None, ge=1, description="Request cap per connection"
    )
    max_overall_requests: Optional[int] = Field(
        None, ge=1, description="Request cap across all connections"
    )

    # Transport
    tls: bool = Field(False, description="Derived from the URL scheme")
    verify_connection: bool = Field(
        False, description="Probe the target once before starting"
    )
    warmup_duration: Optional[float] = Field(
        None, gt=0, description="Uncounted warmup before measurement (seconds)"
    )
    reject_unauthorized: bool = Field(
        True, description="Verify TLS certificates of the target"
    )


class ProgressSample(BaseModel):
    """One derived-rate data point computed from an engine tick."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    time: float = Field(..., description="Wall-clock epoch milliseconds")
    counter: int = Field(0, ge=0, description="Cumulative request count")
    bytes: int = Field(0, ge=0, description="Cumulative byte count")
    req_per_sec: Optional[float] = Field(
        None, ge=0, alias="reqPerSec", description="Requests/sec since previous tick"
    )
    bytes_per_sec: Optional[float] = Field(
        None, ge=0, alias="bytesPerSec", description="Bytes/sec since previous tick"
    )


class RunCreateResponse(BaseModel):
    id: str


class RunStatusResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    status: RunStatus
    progress: List[ProgressSample] = Field(default_factory=list)
    started_at: str = Field(..., alias="startedAt")


class RunLogsResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    status: RunStatus
    lines: List[str] = Field(default_factory=list)
    poll_after_ms: int = Field(
        ..., alias="pollAfterMs", description="Suggested delay before the next poll"
    )


class RunSummary(BaseModel):
    """History row."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str
    status: RunStatus
    started_at: str = Field(..., alias="startedAt")

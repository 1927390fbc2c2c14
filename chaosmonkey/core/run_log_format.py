"""
Formatting of run lifecycle log lines.

Start lines echo the request the operator submitted, so anything secret in the
headers is redacted before it reaches the buffer.
"""

from __future__ import annotations

import json
import re
from collections.abc import Mapping
from typing import Any
from urllib.parse import parse_qsl, urlsplit

from chaosmonkey.models.run import ProgressSample, RunSpec

REDACTED = "***redacted***"
TRUNCATION_MARKER = "…(truncated)"

# Matched against the header name lowercased with every non-alphanumeric
# character removed, so "X-Api-Key", "api_key" and "APIKEY" all collapse to
# the same form.
_SENSITIVE_HEADER_PARTS = (
    "authorization",
    "cookie",
    "token",
    "apikey",
    "secret",
    "password",
)
_NON_ALNUM_RE = re.compile(r"[^a-z0-9]+")


def is_sensitive_header(name: Any) -> bool:
    folded = _NON_ALNUM_RE.sub("", str(name or "").lower())
    return any(part in folded for part in _SENSITIVE_HEADER_PARTS)


def redact_headers(headers: Mapping[str, Any] | None) -> dict[str, Any]:
    return {
        k: (REDACTED if is_sensitive_header(k) else v)
        for k, v in (headers or {}).items()
    }


def safe_json(value: Any) -> str:
    if isinstance(value, str):
        return value
    try:
        return json.dumps(value, ensure_ascii=False, separators=(",", ":"), default=str)
    except (TypeError, ValueError):
        return str(value)


def truncate(text: str, max_chars: int) -> str:
    if text and len(text) > max_chars:
        return text[:max_chars] + TRUNCATION_MARKER
    return text


def parse_query(url: str) -> dict[str, str]:
    try:
        return dict(parse_qsl(urlsplit(url).query, keep_blank_values=True))
    except ValueError:
        return {}


def fmt_num(value: Any) -> str:
    """Render a statistic for a log line; missing values print as '-'."""
    if value is None or isinstance(value, bool):
        return "-"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        if value != value or value in (float("inf"), float("-inf")):
            return "-"
        if value.is_integer():
            return str(int(value))
        return str(round(value, 2))
    return str(value)


def _get(obj: Any, *path: str) -> Any:
    cur = obj
    for key in path:
        if not isinstance(cur, Mapping):
            return None
        cur = cur.get(key)
    return cur


def format_start_line(run_id: str, spec: RunSpec, *, body_max_chars: int) -> str:
    body = ""
    if spec.body is not None:
        body = truncate(safe_json(spec.body), body_max_chars)
    return (
        f"RUN {run_id} START {spec.method} {spec.url}"
        f" | qs={safe_json(parse_query(spec.url))}"
        f" | body={body or '(none)'}"
        f" | headers={safe_json(redact_headers(spec.headers))}"
        f" | conn={spec.connections} pipe={spec.pipelining}"
        f" dur={fmt_num(spec.duration or 0)}s amt={spec.amount or 0}"
        f" rate={fmt_num(spec.rate) if spec.rate else '(none)'}"
        f" timeout={spec.timeout}ms"
    )


def format_tick_line(run_id: str, elapsed_seconds: float, sample: ProgressSample) -> str:
    req = f"{sample.req_per_sec:.1f}" if sample.req_per_sec is not None else "-"
    kb = (
        f"{sample.bytes_per_sec / 1024:.1f}" if sample.bytes_per_sec is not None else "-"
    )
    return (
        f"RUN {run_id} TICK t={max(0.0, elapsed_seconds):.1f}s req/s={req} KB/s={kb}"
        f" totalReq={sample.counter} totalBytes={sample.bytes}"
    )


def format_done_line(run_id: str, result: Any) -> str:
    def _count(key: str) -> str:
        v = _get(result, key)
        return fmt_num(v) if v is not None else "0"

    return (
        f"RUN {run_id} DONE avgReq/s={fmt_num(_get(result, 'requests', 'average'))}"
        f" p50={fmt_num(_get(result, 'latency', 'p50'))}ms"
        f" p99={fmt_num(_get(result, 'latency', 'p99'))}ms"
        f" 2xx={_count('2xx')} non2xx={_count('non2xx')}"
        f" errors={_count('errors')} bytes={_count('bytes')}"
    )


def format_error_line(run_id: str, message: str) -> str:
    return f"RUN {run_id} ERROR {message}"

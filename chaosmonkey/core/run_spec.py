"""
Run specification normalization and validation.

Turns an untyped ``POST /run`` payload into a :class:`RunSpec`. Only ``url``
and ``method`` are structural; every numeric knob is coerced permissively and
falls back to its default when it cannot be parsed.
"""

from __future__ import annotations

import logging
import math
import re
from collections.abc import Mapping
from typing import Any
from urllib.parse import urlsplit

from chaosmonkey.config import settings
from chaosmonkey.core.errors import InvalidSpecError
from chaosmonkey.models.run import RunSpec

logger = logging.getLogger(__name__)

# RFC 9110 token characters.
_METHOD_RE = re.compile(r"[!#$%&'*+\-.^_`|~0-9A-Z]+")

_FALSY_STRINGS = {"", "0", "false", "no", "off"}


def _pick(payload: Mapping[str, Any], *keys: str) -> Any:
    for k in keys:
        if k in payload and payload[k] is not None:
            return payload[k]
    return None


def _coerce_num(v: Any) -> float | None:
    """Parse a number the way a form field would be read; None when unusable."""
    if v is None:
        return None
    if isinstance(v, bool):
        return float(v)
    if isinstance(v, (int, float)):
        n = float(v)
    else:
        s = str(v).strip()
        if not s:
            return None
        try:
            n = float(s)
        except (TypeError, ValueError):
            return None
    if not math.isfinite(n):
        return None
    return n


def _positive_int(v: Any, default: int | None) -> int | None:
    n = _coerce_num(v)
    if n is None or n < 1:
        return default
    return int(n)


def _positive_float(v: Any, default: float | None) -> float | None:
    n = _coerce_num(v)
    if n is None or n <= 0:
        return default
    return float(n)


def _coerce_bool(v: Any, default: bool) -> bool:
    if v is None:
        return default
    if isinstance(v, bool):
        return v
    if isinstance(v, (int, float)):
        return bool(v)
    if isinstance(v, str):
        return v.strip().lower() not in _FALSY_STRINGS
    return bool(v)


def _truthy(v: Any) -> bool:
    if v is None or v is False:
        return False
    if isinstance(v, str):
        return bool(v.strip())
    if isinstance(v, (int, float)):
        return bool(v) and not (isinstance(v, float) and math.isnan(v))
    return True


def _normalize_url(raw: Any) -> str:
    if not isinstance(raw, str) or not raw.strip():
        raise InvalidSpecError("url is required")
    url = raw.strip()
    try:
        parts = urlsplit(url)
        # Accessing .port validates the netloc's port component.
        _ = parts.port
    except ValueError as e:
        raise InvalidSpecError(f"url is invalid: {e}") from e
    if parts.scheme.lower() not in {"http", "https"}:
        raise InvalidSpecError(
            f"url must use http or https (got {parts.scheme or 'no scheme'!r})"
        )
    if not parts.hostname:
        raise InvalidSpecError("url must include a host")
    return url


def _normalize_method(raw: Any) -> str:
    if raw is None:
        return "GET"
    if not isinstance(raw, str):
        raise InvalidSpecError(f"method must be a string (got {type(raw).__name__})")
    method = raw.strip().upper() or "GET"
    if not _METHOD_RE.fullmatch(method):
        raise InvalidSpecError(f"Invalid method: {raw!r}")
    return method


def normalize_headers(raw: Any) -> dict[str, str]:
    """
    Collapse a header mapping to unique, case-insensitive names.

    The last occurrence of a name wins, including its spelling.
    """
    if raw is None:
        return {}
    if not isinstance(raw, Mapping):
        logger.debug("Ignoring non-mapping headers payload: %r", type(raw).__name__)
        return {}
    by_lower: dict[str, tuple[str, str]] = {}
    for k, v in raw.items():
        name = str(k).strip()
        if not name:
            continue
        value = "" if v is None else str(v)
        by_lower.pop(name.lower(), None)
        by_lower[name.lower()] = (name, value)
    return {name: value for name, value in by_lower.values()}


def normalize_run_spec(payload: Any) -> RunSpec:
    """
    Validate and coerce a raw run request.

    Raises:
        InvalidSpecError: payload is not an object, or url/method are unusable.
    """
    if payload is None:
        payload = {}
    if not isinstance(payload, Mapping):
        raise InvalidSpecError("Run request must be a JSON object")

    url = _normalize_url(payload.get("url"))
    method = _normalize_method(payload.get("method"))

    raw_amount = payload.get("amount")
    amount = _positive_int(raw_amount, None) if _truthy(raw_amount) else None
    if amount is not None:
        duration = 0.0
    else:
        duration = _positive_float(
            payload.get("duration"), settings.DEFAULT_DURATION_SECONDS
        )

    warmup = payload.get("warmup")
    warmup_duration = None
    if isinstance(warmup, Mapping):
        warmup_duration = _positive_float(warmup.get("duration"), None)

    return RunSpec(
        url=url,
        method=method,
        headers=normalize_headers(payload.get("headers")),
        body=payload.get("body"),
        connections=_positive_int(
            payload.get("connections"), settings.DEFAULT_CONNECTIONS
        ),
        pipelining=_positive_int(
            payload.get("pipelining"), settings.DEFAULT_PIPELINING
        ),
        duration=duration,
        amount=amount,
        timeout=_positive_int(payload.get("timeout"), settings.DEFAULT_TIMEOUT_MS),
        rate=_positive_float(payload.get("rate"), None),
        overall_rate=_positive_float(
            _pick(payload, "overallRate", "overall_rate"), None
        ),
        max_connection_requests=_positive_int(
            _pick(payload, "maxConnectionRequests", "max_connection_requests"), None
        ),
        max_overall_requests=_positive_int(
            _pick(payload, "maxOverallRequests", "max_overall_requests"), None
        ),
        tls=urlsplit(url).scheme.lower() == "https",
        verify_connection=_coerce_bool(
            _pick(payload, "verifyConnection", "verify_connection"), False
        ),
        warmup_duration=warmup_duration,
        reject_unauthorized=_coerce_bool(
            _pick(payload, "rejectUnauthorized", "reject_unauthorized"), True
        ),
    )

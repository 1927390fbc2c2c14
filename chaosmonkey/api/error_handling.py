"""
Shared HTTP error helpers for API routes.
"""

from __future__ import annotations

import logging

from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


def http_exception(action: str, exc: Exception) -> HTTPException:
    """
    Log an unexpected failure and convert it to a generic 500.

    The exception text stays in the server log; clients only see which action
    failed.
    """
    logger.error("Failed to %s: %s", action, exc, exc_info=exc)
    return HTTPException(status_code=500, detail=f"Failed to {action}")


async def error_body_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Render HTTPException as ``{"error": ...}``, the shape the UI expects."""
    return JSONResponse(
        {"error": exc.detail},
        status_code=exc.status_code,
        headers=getattr(exc, "headers", None),
    )

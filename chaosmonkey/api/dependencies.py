"""
Service container and FastAPI dependency wiring.

The container is built once in the application lifespan and stored on
``app.state``; handlers receive it through ``Depends(get_services)``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from fastapi import HTTPException
from starlette.requests import HTTPConnection

from chaosmonkey.config import Settings
from chaosmonkey.core.load_engine import HttpLoadEngine, LoadEngine
from chaosmonkey.core.run_controller import RunController
from chaosmonkey.core.run_registry import RunRegistry


@dataclass
class ChaosMonkeyServices:
    registry: RunRegistry
    controller: RunController


def build_services(
    settings: Settings, *, engine: Optional[LoadEngine] = None
) -> ChaosMonkeyServices:
    registry = RunRegistry(
        log_max_lines=settings.LOG_BUFFER_MAX_LINES,
        subscriber_queue_size=settings.SUBSCRIBER_QUEUE_MAXSIZE,
        retention_max_runs=settings.RUN_RETENTION_MAX_RUNS,
    )
    if engine is None:
        engine = HttpLoadEngine(
            tick_interval_seconds=settings.ENGINE_TICK_INTERVAL_SECONDS
        )
    controller = RunController(
        registry,
        engine,
        body_max_chars=settings.START_LINE_BODY_MAX_CHARS,
    )
    return ChaosMonkeyServices(registry=registry, controller=controller)


def get_services(conn: HTTPConnection) -> ChaosMonkeyServices:
    services = getattr(conn.app.state, "services", None)
    if services is None:
        raise HTTPException(status_code=503, detail="Service is starting up")
    return services


__all__ = ["ChaosMonkeyServices", "build_services", "get_services"]

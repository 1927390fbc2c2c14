"""
Chaos Monkey - Main Application Entry Point

FastAPI application that runs HTTP load tests in the background and streams
their logs live to dashboards (SSE, WebSocket) or serves them for polling.
"""

from contextlib import asynccontextmanager
from typing import Any, Optional, cast

import logging
from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.websockets import WebSocketState

from chaosmonkey import __version__
from chaosmonkey.api.dependencies import build_services
from chaosmonkey.api.error_handling import error_body_handler
from chaosmonkey.api.routes import runs
from chaosmonkey.config import settings
from chaosmonkey.core.load_engine import LoadEngine
from chaosmonkey.websocket import stream_run_logs

# Configure logging
# **IMPORTANT**: Use uvicorn's colored "LEVEL:" format for ALL loggers.
from uvicorn.logging import DefaultFormatter

console_handler = logging.StreamHandler()
console_handler.setFormatter(DefaultFormatter(fmt=settings.LOG_FORMAT, use_colors=True))

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    handlers=[console_handler],
)

# Per-request transport chatter from the load engine.
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)


class EndpointFilter(logging.Filter):
    """Filter out high-frequency polling endpoints from access logs."""

    def filter(self, record: logging.LogRecord) -> bool:
        msg = record.getMessage()
        if "/status/" in msg or "/logs/" in msg:
            return False
        return True


logging.getLogger("uvicorn.access").addFilter(EndpointFilter())

logger = logging.getLogger(__name__)

# Close code sent to WebSocket clients that ask for an unknown run.
WS_CLOSE_RUN_NOT_FOUND = 4404


def create_app(*, engine: Optional[LoadEngine] = None) -> FastAPI:
    """
    Build the application. ``engine`` replaces the default HTTP load engine
    (tests inject a scripted one).
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup
        logger.info("🚀 Chaos Monkey starting up...")
        logger.info(
            f"🔧 Environment: {'Development' if settings.APP_DEBUG else 'Production'}"
        )
        app.state.services = build_services(settings, engine=engine)

        yield

        # Shutdown
        logger.info("🛑 Chaos Monkey shutting down...")

        # Cancel in-flight runs (important for `--reload`)
        try:
            await app.state.services.controller.shutdown(
                timeout_seconds=settings.SHUTDOWN_TIMEOUT_SECONDS
            )
        except Exception as e:
            logger.warning("Run controller shutdown encountered an error: %s", e)

    app = FastAPI(
        title="Chaos Monkey",
        description="HTTP load-test runner with live log streaming",
        version=__version__,
        lifespan=lifespan,
        docs_url="/api/docs",
        redoc_url="/api/redoc",
    )

    app.add_middleware(
        cast(Any, CORSMiddleware),
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials="*" not in settings.CORS_ORIGINS,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(StarletteHTTPException, cast(Any, error_body_handler))

    @app.get("/health")
    async def health_check():
        """
        Health check endpoint for monitoring and load balancers.

        Returns:
            dict: Service health status, version and number of known runs
        """
        services = getattr(app.state, "services", None)
        return {
            "status": "healthy" if services is not None else "starting",
            "service": "chaos-monkey",
            "version": __version__,
            "runs": len(services.registry) if services is not None else 0,
        }

    app.include_router(runs.router, tags=["runs"])

    @app.websocket("/ws/logs/{run_id}")
    async def websocket_run_logs(websocket: WebSocket, run_id: str):
        """
        WebSocket endpoint for live run logs.

        Args:
            websocket: WebSocket connection
            run_id: Run identifier
        """
        await websocket.accept()
        services = getattr(app.state, "services", None)
        try:
            if services is None:
                raise KeyError(run_id)
            run = await services.registry.get(run_id)
        except KeyError:
            await websocket.close(code=WS_CLOSE_RUN_NOT_FOUND, reason="not found")
            return

        logger.info(f"📡 WebSocket connected for run: {run_id}")
        try:
            await stream_run_logs(websocket, run.log)
        except WebSocketDisconnect:
            logger.info(f"📡 WebSocket disconnected for run: {run_id}")
        except Exception as e:
            logger.error(f"WebSocket error: {e}")
            if websocket.client_state == WebSocketState.CONNECTED:
                await websocket.close(code=1011)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    # **IMPORTANT**: log_config=None prevents uvicorn from overriding our logging setup.
    uvicorn.run(
        "chaosmonkey.main:app",
        host=settings.APP_HOST,
        port=settings.APP_PORT,
        reload=settings.APP_RELOAD,
        log_level=settings.LOG_LEVEL.lower(),
        log_config=None,
    )

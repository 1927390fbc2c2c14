"""
Application Configuration using Pydantic Settings

Loads configuration from environment variables with sensible defaults.
"""

from typing import List
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    """

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", case_sensitive=False, extra="ignore"
    )

    # ========================================================================
    # Application Settings
    # ========================================================================
    APP_HOST: str = "127.0.0.1"
    APP_PORT: int = 5055
    APP_DEBUG: bool = True
    APP_RELOAD: bool = False

    # Request bodies above this size are rejected with 413 before parsing.
    MAX_REQUEST_BODY_BYTES: int = 2 * 1024 * 1024

    # ========================================================================
    # Run Defaults (applied when a submitted field is missing or unparseable)
    # ========================================================================
    DEFAULT_CONNECTIONS: int = 10
    DEFAULT_PIPELINING: int = 1
    DEFAULT_DURATION_SECONDS: float = 10.0
    DEFAULT_TIMEOUT_MS: int = 10_000

    # ========================================================================
    # Run Registry / Log Buffer Settings
    # ========================================================================
    LOG_BUFFER_MAX_LINES: int = 5000
    HISTORY_LIMIT: int = 50
    # 0 keeps every run for the lifetime of the process.
    RUN_RETENTION_MAX_RUNS: int = 0
    START_LINE_BODY_MAX_CHARS: int = 2000

    # ========================================================================
    # Live Stream Settings
    # ========================================================================
    # Per-subscriber queue depth; a subscriber that falls this far behind is
    # detached and told to fall back to polling. 0 means unbounded.
    SUBSCRIBER_QUEUE_MAXSIZE: int = 10_000
    SSE_KEEPALIVE_SECONDS: float = 15.0
    POLL_INTERVAL_ACTIVE_MS: int = 800
    POLL_INTERVAL_TERMINAL_MS: int = 2500

    # ========================================================================
    # Load Engine Settings
    # ========================================================================
    ENGINE_TICK_INTERVAL_SECONDS: float = 1.0
    SHUTDOWN_TIMEOUT_SECONDS: float = 5.0

    # ========================================================================
    # Security Settings
    # ========================================================================
    # The operator UI is served from a separate dev server, so any origin is
    # accepted unless the deployment narrows it.
    CORS_ORIGINS: List[str] = ["*"]

    @field_validator("CORS_ORIGINS", mode="before")
    @classmethod
    def _build_cors_origins(cls, v):
        if isinstance(v, str):
            raw = v.strip()
            if raw.startswith("["):
                import json

                return json.loads(raw)
            return [p.strip() for p in raw.split(",") if p.strip()]
        return v

    # ========================================================================
    # Logging Settings
    # ========================================================================
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "%(levelprefix)s %(asctime)s - %(message)s"


# Create global settings instance
settings = Settings()

# app/core/config.py
from functools import lru_cache
from typing import Literal

from pydantic import AnyHttpUrl, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Global application configuration.

    Values are loaded from environment variables at runtime (optionally from
    a local `.env` file).

    Groups
    ------
    - Application / environment
    - Database
    - Meeting platform (Zoom) API + webhook credentials
    - Identity token verification
    - Attendance classification and reconciliation tuning
    - Periodic sweep of overdue meetings and stuck sessions
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    APP_NAME: str = "Attendance Reconciler"
    APP_ENV: str = Field("local", description="Environment name: local/test/dev/stage/prod")
    LOG_LEVEL: str = Field("INFO", description="Root log level for the service.")

    DB_URL: str = Field(
        "sqlite+aiosqlite:///./attendance.db",
        description="SQLAlchemy-compatible async database URL",
    )

    INTERNAL_API_KEY: str | None = Field(
        default=None,
        description="API key required for the tracking/reconciliation endpoints",
    )

    # --- Meeting platform ---
    ZOOM_ACCOUNT_ID: str | None = None
    ZOOM_CLIENT_ID: str | None = None
    ZOOM_CLIENT_SECRET: str | None = None
    ZOOM_BASE_URL: AnyHttpUrl | None = None
    ZOOM_OAUTH_URL: AnyHttpUrl | None = None
    ZOOM_WEBHOOK_SECRET_TOKEN: str | None = Field(
        default=None,
        description=(
            "Secret used to verify the x-zm-signature header of webhook deliveries "
            "and to answer endpoint.url_validation challenges."
        ),
    )

    # --- Identity tokens ---
    JWT_SECRET_KEY: str | None = Field(
        default=None,
        description="Key used to verify participant identity tokens.",
    )
    JWT_ALGORITHMS: list[str] = Field(
        default_factory=lambda: ["HS256"],
        description="Accepted signing algorithms for identity tokens.",
    )
    JWT_VERIFY_SIGNATURE: bool = Field(
        default=True,
        description=(
            "Verify identity token signatures. May only be disabled when "
            "APP_ENV is 'local' or 'test'."
        ),
    )

    # --- Attendance classification ---
    DEFAULT_THRESHOLD: int = Field(
        default=85,
        ge=0,
        le=100,
        description="Minimum attendance percentage for a Present classification.",
    )
    DEFAULT_MEETING_DURATION_MINUTES: int = Field(
        default=60,
        gt=0,
        description="Scheduled duration assumed when a meeting has none recorded.",
    )
    REJOIN_POLICY: Literal["reset", "accumulate"] = Field(
        default="reset",
        description=(
            "'reset': a rejoin while active restarts the attendance clock. "
            "'accumulate': attendance sums all presence intervals of a participant."
        ),
    )

    # --- Polling reconciliation ---
    POLL_INTERVAL_SECONDS: float = Field(default=60.0, gt=0)
    POLL_GRACE_PERIOD_SECONDS: float = Field(
        default=60.0,
        ge=0,
        description="Minimum time since last confirmed presence before a force-close.",
    )
    POLL_GRACE_MISSES: int = Field(
        default=2,
        ge=1,
        description="Consecutive snapshots missing a participant before a force-close.",
    )
    AUTO_TRACK_ON_MEETING_START: bool = Field(
        default=True,
        description="Start polling automatically when a meeting.started event arrives.",
    )
    SNAPSHOT_CACHE_TTL_SECONDS: float = Field(default=15.0, ge=0)

    # --- Periodic sweep ---
    SWEEP_ENABLED: bool = Field(
        default=True,
        description="Run the background sweep for overdue meetings and stuck sessions.",
    )
    SWEEP_INTERVAL_SECONDS: float = Field(default=1800.0, gt=0)
    STUCK_SESSION_HOURS: float = Field(
        default=3.0,
        gt=0,
        description="Active sessions with no activity for this long are force-closed.",
    )
    MEETING_END_GRACE_MINUTES: int = Field(
        default=15,
        ge=0,
        description="Minutes past the scheduled duration before a started meeting is ended.",
    )

    # --- External calls ---
    EXTERNAL_CALL_TIMEOUT_SECONDS: float = Field(default=10.0, gt=0)
    RETRY_MAX_ATTEMPTS: int = Field(default=3, ge=1)
    RETRY_BASE_DELAY_SECONDS: float = Field(default=1.0, ge=0)
    RETRY_MAX_DELAY_SECONDS: float = Field(default=30.0, ge=0)

    # --- Real-time fan-out ---
    FANOUT_QUEUE_SIZE: int = Field(
        default=100,
        gt=0,
        description="Per-subscriber buffer; messages beyond it are dropped for that subscriber.",
    )


@lru_cache()
def get_settings() -> Settings:
    """
    Cached accessor for application settings.

    Using LRU cache ensures settings are read and validated only once,
    while still being easily importable across the app.
    """
    return Settings()

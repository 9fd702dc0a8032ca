# app/main.py
import logging
from typing import Any

from fastapi import FastAPI

from app.api.routes import attendance, health, meetings, realtime, webhooks
from app.core.config import Settings, get_settings
from app.core.logging_config import setup_logging
from app.db.session import build_engine, build_sessionmaker, init_db
from app.services.attendance_service import build_attendance_service

logger = logging.getLogger(__name__)


def create_app(settings: Settings | None = None, **service_overrides: Any) -> FastAPI:
    """
    Application factory for the Attendance Reconciler service.

    `service_overrides` are passed to the AttendanceService (tests use them
    to inject a fake meeting platform client and a fixed clock).
    """
    settings = settings or get_settings()
    setup_logging(settings.LOG_LEVEL)

    app = FastAPI(
        title=settings.APP_NAME,
        description=(
            "Tracks how long each participant spends in a scheduled online meeting and\n"
            "classifies attendance against a percentage threshold, reconciling webhook\n"
            "events, polling snapshots and authenticated self check-in."
        ),
        version="0.1.0",
    )

    db_engine = build_engine(settings.DB_URL)
    service = build_attendance_service(
        settings, build_sessionmaker(db_engine), **service_overrides
    )
    app.state.settings = settings
    app.state.attendance_service = service

    # Routers
    app.include_router(health.router)
    app.include_router(attendance.router)
    app.include_router(meetings.router)
    app.include_router(webhooks.router)
    app.include_router(realtime.router)

    @app.on_event("startup")
    async def on_startup() -> None:
        await init_db(db_engine)
        await service.startup()
        logger.info("%s started (env=%s)", settings.APP_NAME, settings.APP_ENV)

    @app.on_event("shutdown")
    async def on_shutdown() -> None:
        await service.shutdown()
        await db_engine.dispose()

    return app


app = create_app()

# app/api/routes/health.py
from datetime import datetime, timezone
from typing import Dict

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from app.api.dependencies.services import get_attendance_service
from app.services.attendance_service import AttendanceService


router = APIRouter(tags=["Health"])


class HealthResponse(BaseModel):
    """
    Response schema for the health check endpoint.
    """

    status: str = Field(
        ...,
        description="Overall health status of the Attendance Reconciler service.",
        examples=["ok"],
    )
    app_name: str = Field(
        ...,
        description="Human-friendly name of the running application.",
        examples=["Attendance Reconciler"],
    )
    environment: str = Field(
        ...,
        description="Current deployment environment (local/dev/stage/prod).",
        examples=["local"],
    )
    timestamp_utc: datetime = Field(
        ...,
        description="Server-side timestamp (UTC) at which this health check was generated.",
        examples=["2025-01-01T10:30:00Z"],
    )


class MetricsResponse(BaseModel):
    """
    Point-in-time copy of the operational counters.
    """

    counters: Dict[str, int] = Field(
        ...,
        description="Monotonic counters (external calls, retries, cache hits, ticks, transitions...).",
        examples=[{"external_calls_total": 12, "external_call_retries": 1}],
    )
    active_sessions: Dict[str, int] = Field(
        ...,
        description="Active session count per meeting id.",
        examples=[{"85746352712": 31}],
    )
    tracked_meetings: list[str] = Field(
        default_factory=list,
        description="Meetings with a running polling task.",
    )
    started_at: datetime
    generated_at: datetime


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check for Attendance Reconciler service",
    description=(
        "Lightweight endpoint to verify that the backend is up and responding.\n\n"
        "Typical use-cases:\n"
        "- Kubernetes / Docker / VM health probes\n"
        "- Uptime monitoring & alerting\n"
        "- Quick smoke-test after deployments\n"
    ),
    responses={
        200: {
            "description": "Service is healthy and responding as expected.",
            "content": {
                "application/json": {
                    "example": {
                        "status": "ok",
                        "app_name": "Attendance Reconciler",
                        "environment": "local",
                        "timestamp_utc": "2025-01-01T10:30:00Z",
                    }
                }
            },
        }
    },
)
async def health_check(request: Request) -> HealthResponse:
    """
    Returns the current health status of the service.

    This endpoint is intentionally simple and does **not** depend on external
    systems (DB, Zoom API, etc.) so that it remains reliable even when
    downstream components are degraded.
    """
    settings = request.app.state.settings
    return HealthResponse(
        status="ok",
        app_name=settings.APP_NAME,
        environment=settings.APP_ENV,
        timestamp_utc=datetime.now(tz=timezone.utc),
    )


@router.get(
    "/health/metrics",
    response_model=MetricsResponse,
    summary="Operational counters",
    description=(
        "Snapshot of external-call, retry, cache, reconciliation and fan-out "
        "counters plus per-meeting active session gauges. Read-only."
    ),
)
async def health_metrics(
    service: AttendanceService = Depends(get_attendance_service),
) -> MetricsResponse:
    snapshot = service.metrics_snapshot()
    return MetricsResponse(
        tracked_meetings=service.reconciler.tracked_meetings(),
        **snapshot,
    )

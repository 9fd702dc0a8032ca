# app/api/routes/meetings.py
from http import HTTPStatus
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Path

from app.api.dependencies.internal_auth import verify_internal_api_key
from app.api.dependencies.services import get_attendance_service
from app.core.errors import ExternalCallFailure, MeetingNotFound, PlatformNotConfigured
from app.schemas.meeting import (
    MeetingEndRequest,
    MeetingEndResponse,
    MeetingRead,
    MeetingStartRequest,
    TrackingStatus,
)
from app.schemas.reconcile import ReconcileSummary, SweepSummary
from app.services.attendance_service import AttendanceService

router = APIRouter(
    prefix="/meetings",
    tags=["Meetings"],
    dependencies=[Depends(verify_internal_api_key)],
)


def _external_failure(exc: ExternalCallFailure) -> HTTPException:
    if isinstance(exc, PlatformNotConfigured):
        return HTTPException(status_code=HTTPStatus.SERVICE_UNAVAILABLE, detail=str(exc))
    return HTTPException(status_code=HTTPStatus.BAD_GATEWAY, detail=str(exc))


@router.post(
    "/sweep",
    response_model=SweepSummary,
    summary="Run the overdue-meeting and stuck-session sweep now",
    description=(
        "Ends started meetings whose scheduled duration plus "
        "MEETING_END_GRACE_MINUTES has passed, and closes active sessions with "
        "no activity for STUCK_SESSION_HOURS (reason `StaleSession`). Failures "
        "are reported in the response (`failed=true`)."
    ),
)
async def sweep_now(
    service: AttendanceService = Depends(get_attendance_service),
) -> SweepSummary:
    return await service.sweep_now()


@router.get(
    "/{meeting_id}",
    response_model=MeetingRead,
    summary="Get a meeting's lifecycle state",
    responses={404: {"description": "Meeting not known to this service."}},
)
async def get_meeting(
    meeting_id: str = Path(..., min_length=1),
    service: AttendanceService = Depends(get_attendance_service),
) -> MeetingRead:
    meeting = await service.store.get_meeting(meeting_id)
    if meeting is None:
        raise HTTPException(
            status_code=HTTPStatus.NOT_FOUND,
            detail=f"Meeting '{meeting_id}' not found.",
        )
    return meeting


@router.post(
    "/{meeting_id}/tracking",
    response_model=MeetingRead,
    status_code=HTTPStatus.OK,
    summary="Start polling reconciliation for a meeting",
    description=(
        "Fetches the meeting details from Zoom and starts a periodic task that "
        "compares the live participant list with the local sessions, recovering "
        "missed joins and force-closing sessions whose leave event was lost.\n\n"
        "Starting an already tracked meeting is a no-op."
    ),
    responses={
        401: {"description": "Missing or invalid internal API key (if configured)."},
        404: {"description": "Zoom does not know the meeting."},
        502: {"description": "Zoom could not be reached after retries."},
        503: {"description": "No Zoom credentials configured."},
    },
)
async def start_tracking(
    meeting_id: str = Path(..., min_length=1),
    service: AttendanceService = Depends(get_attendance_service),
) -> MeetingRead:
    try:
        return await service.start_tracking(meeting_id)
    except MeetingNotFound as exc:
        raise HTTPException(status_code=HTTPStatus.NOT_FOUND, detail=str(exc)) from exc
    except ExternalCallFailure as exc:
        raise _external_failure(exc) from exc


@router.delete(
    "/{meeting_id}/tracking",
    response_model=TrackingStatus,
    summary="Stop polling reconciliation for a meeting",
    description="An in-flight reconciliation tick is allowed to finish; no further tick is scheduled.",
)
async def stop_tracking(
    meeting_id: str = Path(..., min_length=1),
    service: AttendanceService = Depends(get_attendance_service),
) -> TrackingStatus:
    stopped = await service.stop_tracking(meeting_id)
    return TrackingStatus(meeting_id=meeting_id, tracking=False, changed=stopped)


@router.post(
    "/{meeting_id}/reconcile",
    response_model=ReconcileSummary,
    summary="Run one reconciliation pass now",
    description=(
        "Runs a single polling tick immediately. Snapshot failures are reported "
        "in the response (`failed=true`) rather than as an HTTP error."
    ),
    responses={503: {"description": "No Zoom credentials configured."}},
)
async def reconcile_now(
    meeting_id: str = Path(..., min_length=1),
    service: AttendanceService = Depends(get_attendance_service),
) -> ReconcileSummary:
    try:
        return await service.reconcile_now(meeting_id)
    except ExternalCallFailure as exc:
        raise _external_failure(exc) from exc


@router.post(
    "/{meeting_id}/start",
    response_model=MeetingRead,
    summary="Mark a meeting as started",
    description=(
        "Records the start time, topic and scheduled duration. Starts polling "
        "when AUTO_TRACK_ON_MEETING_START is enabled and Zoom is configured."
    ),
)
async def start_meeting(
    meeting_id: str = Path(..., min_length=1),
    payload: Optional[MeetingStartRequest] = None,
    service: AttendanceService = Depends(get_attendance_service),
) -> MeetingRead:
    payload = payload or MeetingStartRequest()
    return await service.on_meeting_started(
        meeting_id,
        payload.start_time,
        topic=payload.topic,
        scheduled_duration_minutes=payload.scheduled_duration_minutes,
    )


@router.post(
    "/{meeting_id}/end",
    response_model=MeetingEndResponse,
    summary="End a meeting and close every active session",
    description=(
        "Marks the meeting Ended and closes all active sessions with reason "
        "`MeetingEnded` and the same leave time. Later joins are ignored."
    ),
)
async def end_meeting(
    meeting_id: str = Path(..., min_length=1),
    payload: Optional[MeetingEndRequest] = None,
    service: AttendanceService = Depends(get_attendance_service),
) -> MeetingEndResponse:
    payload = payload or MeetingEndRequest()
    closed = await service.on_meeting_ended(meeting_id, payload.end_time)
    return MeetingEndResponse(meeting_id=meeting_id, closed_sessions=closed)

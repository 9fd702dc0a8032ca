# app/api/routes/attendance.py
from http import HTTPStatus
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Path, Query

from app.api.dependencies.services import get_attendance_service
from app.schemas.attendance import AttendanceReport
from app.schemas.ingest import CheckInRequest, CheckOutRequest, IngestResult
from app.services.attendance_service import AttendanceService

router = APIRouter(prefix="/attendance", tags=["Attendance"])

_STATUS_BY_ERROR = {
    "InvalidCredential": HTTPStatus.UNAUTHORIZED,
    "MalformedEvent": HTTPStatus.BAD_REQUEST,
}


def _raise_if_rejected(result: IngestResult) -> IngestResult:
    if result.accepted:
        return result
    raise HTTPException(
        status_code=_STATUS_BY_ERROR.get(result.error or "", HTTPStatus.BAD_REQUEST),
        detail=result.detail or "Request rejected.",
    )


_CREDENTIAL_HEADER = Header(
    default=None,
    alias="Authorization",
    description="Participant identity token, `Bearer <jwt>`.",
)


@router.post(
    "/{meeting_id}/join",
    response_model=IngestResult,
    status_code=HTTPStatus.OK,
    summary="Self check-in to a meeting",
    description=(
        "Opens (or refreshes) the caller's attendance session for the meeting.\n\n"
        "The caller is identified by the identity token in the `Authorization` "
        "header. A second check-in while the session is still active does not "
        "create another session; under the default `reset` policy it restarts "
        "the attendance clock."
    ),
    responses={
        200: {
            "description": "Check-in applied; the session and its attendance view are returned.",
            "content": {
                "application/json": {
                    "example": {
                        "accepted": True,
                        "event_type": "token.join",
                        "meeting_id": "85746352712",
                        "transition": "created",
                        "session": {
                            "id": 1,
                            "meeting_id": "85746352712",
                            "identity_key": "email:ada@example.edu",
                            "display_name": "Ada Lovelace",
                            "lifecycle_state": "Active",
                            "source": "token",
                        },
                        "attendance": {
                            "duration_minutes": 0,
                            "percentage": 0,
                            "status": "InProgress",
                            "threshold": 85,
                            "threshold_minutes": 51,
                            "meets_threshold": False,
                        },
                    }
                }
            },
        },
        401: {"description": "Missing, unparsable or unverifiable identity token."},
    },
)
async def check_in(
    meeting_id: str = Path(..., min_length=1, description="Meeting identifier."),
    payload: Optional[CheckInRequest] = None,
    authorization: Optional[str] = _CREDENTIAL_HEADER,
    service: AttendanceService = Depends(get_attendance_service),
) -> IngestResult:
    payload = payload or CheckInRequest()
    result = await service.on_join(
        meeting_id,
        authorization or "",
        source_tag=payload.source,
        timestamp=payload.timestamp,
    )
    return _raise_if_rejected(result)


@router.post(
    "/{meeting_id}/leave",
    response_model=IngestResult,
    status_code=HTTPStatus.OK,
    summary="Self check-out from a meeting",
    description=(
        "Closes the caller's active session with reason `SelfReported`. Leaving "
        "without an active session is a no-op that returns the latest session."
    ),
    responses={401: {"description": "Missing, unparsable or unverifiable identity token."}},
)
async def check_out(
    meeting_id: str = Path(..., min_length=1, description="Meeting identifier."),
    payload: Optional[CheckOutRequest] = None,
    authorization: Optional[str] = _CREDENTIAL_HEADER,
    service: AttendanceService = Depends(get_attendance_service),
) -> IngestResult:
    payload = payload or CheckOutRequest()
    result = await service.on_leave(
        meeting_id,
        authorization or "",
        timestamp=payload.timestamp,
    )
    return _raise_if_rejected(result)


@router.get(
    "/{meeting_id}",
    response_model=AttendanceReport,
    summary="Attendance of a meeting",
    description=(
        "Returns one row per participant with duration, percentage of the "
        "scheduled duration and Present/Absent/InProgress classification, plus "
        "aggregate statistics.\n\n"
        "The threshold is applied at read time, so changing it reclassifies "
        "past sessions consistently."
    ),
)
async def get_attendance(
    meeting_id: str = Path(..., min_length=1, description="Meeting identifier."),
    threshold: Optional[int] = Query(
        default=None,
        ge=0,
        le=100,
        description="Minimum percentage for Present; defaults to DEFAULT_THRESHOLD (85).",
        examples=[85],
    ),
    service: AttendanceService = Depends(get_attendance_service),
) -> AttendanceReport:
    return await service.get_attendance(meeting_id, threshold)

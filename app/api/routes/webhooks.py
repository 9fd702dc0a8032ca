# app/api/routes/webhooks.py
import json
import logging
from http import HTTPStatus
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request

from app.api.dependencies.services import get_attendance_service
from app.schemas.ingest import WebhookAck
from app.services.attendance_service import AttendanceService
from app.services.webhook_validator import URL_VALIDATION_EVENT

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])

logger = logging.getLogger(__name__)


@router.post(
    "/zoom",
    status_code=HTTPStatus.OK,
    summary="Zoom webhook receiver",
    description=(
        "Receives `meeting.participant_joined`, `meeting.participant_left`, "
        "`meeting.started` and `meeting.ended` deliveries and answers the "
        "`endpoint.url_validation` challenge.\n\n"
        "When ZOOM_WEBHOOK_SECRET_TOKEN is set, the `x-zm-signature` header is "
        "verified against the raw body and deliveries older than five minutes are "
        "refused. Every verified delivery is acknowledged with 200, even when it "
        "cannot be applied, so Zoom does not keep redelivering it."
    ),
    responses={
        200: {
            "description": "Delivery acknowledged (or URL validation answered).",
            "content": {
                "application/json": {
                    "example": {
                        "received": True,
                        "event_type": "meeting.participant_joined",
                        "meeting_id": "85746352712",
                        "processed": True,
                    }
                }
            },
        },
        400: {"description": "Body is not JSON."},
        401: {"description": "Signature missing, stale or invalid."},
    },
)
async def zoom_webhook(
    request: Request,
    signature: Optional[str] = Header(default=None, alias="x-zm-signature"),
    timestamp: Optional[str] = Header(default=None, alias="x-zm-request-timestamp"),
    service: AttendanceService = Depends(get_attendance_service),
) -> Dict[str, Any]:
    raw_body = await request.body()

    if not service.webhooks.verify(raw_body, signature, timestamp):
        raise HTTPException(
            status_code=HTTPStatus.UNAUTHORIZED,
            detail="Invalid webhook signature.",
        )

    try:
        body = json.loads(raw_body or b"{}")
    except ValueError as exc:
        raise HTTPException(
            status_code=HTTPStatus.BAD_REQUEST,
            detail="Webhook body must be JSON.",
        ) from exc

    if isinstance(body, dict) and body.get("event") == URL_VALIDATION_EVENT:
        if not service.webhooks.enabled:
            raise HTTPException(
                status_code=HTTPStatus.BAD_REQUEST,
                detail="ZOOM_WEBHOOK_SECRET_TOKEN is not configured.",
            )
        logger.info("Answering Zoom endpoint URL validation")
        return service.webhooks.challenge_response(body.get("payload") or {})

    result = await service.handle_push_event(body)
    return WebhookAck(
        received=True,
        event_type=result.event_type,
        meeting_id=result.meeting_id,
        processed=result.accepted,
    ).model_dump()

# app/schemas/ingest.py
from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from app.schemas.attendance import AttendanceView
from app.schemas.session import EventSource, SessionRead, TransitionKind


class IngestResult(BaseModel):
    """
    Explicit success/failure result of feeding one inbound event to the core.

    Rejections (invalid credential, malformed event) are reported here rather
    than raised, so transports can map them to their own status codes.
    """

    accepted: bool = Field(..., description="True if the event reached the session engine.")
    event_type: str | None = Field(None, examples=["meeting.participant_joined"])
    meeting_id: str | None = None
    transition: TransitionKind | None = None
    error: str | None = Field(
        None,
        description="Error class name when rejected, e.g. InvalidCredential.",
        examples=["InvalidCredential"],
    )
    detail: str | None = None
    session: SessionRead | None = None
    attendance: AttendanceView | None = None

    @classmethod
    def rejected(
        cls,
        error: Exception,
        *,
        event_type: str | None = None,
        meeting_id: str | None = None,
    ) -> "IngestResult":
        return cls(
            accepted=False,
            event_type=event_type,
            meeting_id=meeting_id,
            error=type(error).__name__,
            detail=str(error),
        )


class WebhookAck(BaseModel):
    """
    Acknowledgement returned to the push channel for every delivery.
    """

    received: bool = True
    event_type: str | None = None
    meeting_id: str | None = None
    processed: bool = False


class CheckInRequest(BaseModel):
    """
    Optional body of a self check-in. Without it the server time is used.
    """

    timestamp: datetime | None = Field(
        None, description="Client-side join time (ISO-8601); defaults to now."
    )
    source: EventSource = Field(
        EventSource.TOKEN,
        description="Source tag recorded on the session.",
        examples=["token"],
    )


class CheckOutRequest(BaseModel):
    timestamp: datetime | None = Field(
        None, description="Client-side leave time (ISO-8601); defaults to now."
    )

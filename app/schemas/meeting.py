# app/schemas/meeting.py
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from app.schemas.session import SessionRead


class MeetingStatus(str, Enum):
    WAITING = "Waiting"
    STARTED = "Started"
    ENDED = "Ended"


class MeetingRead(BaseModel):
    """
    Public representation of a tracked meeting.
    """

    model_config = ConfigDict(from_attributes=True)

    meeting_id: str = Field(..., examples=["85746352712"])
    topic: str | None = Field(None, examples=["Algorithms - Lecture 4"])
    scheduled_duration_minutes: int | None = Field(
        None,
        description="Scheduled duration from the meeting platform; None if unknown.",
        examples=[60],
    )
    status: MeetingStatus = Field(MeetingStatus.WAITING)
    active_session_count: int = Field(0, ge=0)
    tracking_enabled: bool = False
    started_at: datetime | None = None
    ended_at: datetime | None = None


class MeetingStartRequest(BaseModel):
    start_time: datetime | None = Field(None, description="Defaults to now.")
    topic: str | None = Field(None, examples=["Algorithms - Lecture 4"])
    scheduled_duration_minutes: int | None = Field(None, gt=0, examples=[60])


class MeetingEndRequest(BaseModel):
    end_time: datetime | None = Field(
        None, description="Meeting end time; every active session is closed at it."
    )


class MeetingEndResponse(BaseModel):
    meeting_id: str
    closed_sessions: list[SessionRead] = Field(default_factory=list)


class TrackingStatus(BaseModel):
    meeting_id: str
    tracking: bool = Field(..., description="True while a polling task runs for the meeting.")
    changed: bool = Field(
        ..., description="False if tracking was already in the requested state."
    )

# app/schemas/events.py
from __future__ import annotations

from datetime import datetime, timezone
from typing import Annotated, Literal, Union

from pydantic import AfterValidator, BaseModel, Field

from app.schemas.session import EventSource, Identity


def as_utc(value: datetime) -> datetime:
    """
    Normalize to an aware UTC datetime; naive values are taken as UTC.
    """
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


UtcDatetime = Annotated[datetime, AfterValidator(as_utc)]


class JoinEvent(BaseModel):
    kind: Literal["join"] = "join"
    meeting_id: str = Field(..., min_length=1)
    identity: Identity
    source: EventSource
    timestamp: UtcDatetime | None = Field(
        None, description="Event-supplied time; the engine uses 'now' when missing."
    )


class LeaveEvent(BaseModel):
    kind: Literal["leave"] = "leave"
    meeting_id: str = Field(..., min_length=1)
    identity: Identity
    source: EventSource
    timestamp: UtcDatetime | None = None


class MeetingStartedEvent(BaseModel):
    kind: Literal["meeting_started"] = "meeting_started"
    meeting_id: str = Field(..., min_length=1)
    timestamp: UtcDatetime | None = None
    topic: str | None = None
    scheduled_duration_minutes: int | None = None


class MeetingEndedEvent(BaseModel):
    kind: Literal["meeting_ended"] = "meeting_ended"
    meeting_id: str = Field(..., min_length=1)
    timestamp: UtcDatetime | None = None
    source: EventSource = EventSource.PUSH


class PresenceObservedEvent(BaseModel):
    """
    The authoritative snapshot still lists the identity.
    """

    kind: Literal["presence_observed"] = "presence_observed"
    meeting_id: str = Field(..., min_length=1)
    identity_key: str
    timestamp: UtcDatetime


class PresenceMissedEvent(BaseModel):
    """
    The authoritative snapshot no longer lists an identity with an active
    session; enough of these in a row force-close it.
    """

    kind: Literal["presence_missed"] = "presence_missed"
    meeting_id: str = Field(..., min_length=1)
    identity_key: str
    timestamp: UtcDatetime


class SessionExpiredEvent(BaseModel):
    """
    Periodic sweep: the session shows no activity since `stale_before`, so
    its leave was lost. Ignored if the session was refreshed meanwhile.
    """

    kind: Literal["session_expired"] = "session_expired"
    meeting_id: str = Field(..., min_length=1)
    identity_key: str
    stale_before: UtcDatetime
    timestamp: UtcDatetime | None = None


SessionEvent = Annotated[
    Union[
        JoinEvent,
        LeaveEvent,
        MeetingStartedEvent,
        MeetingEndedEvent,
        PresenceObservedEvent,
        PresenceMissedEvent,
        SessionExpiredEvent,
    ],
    Field(discriminator="kind"),
]

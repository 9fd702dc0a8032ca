# app/schemas/session.py
from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class LifecycleState(str, Enum):
    ACTIVE = "Active"
    CLOSED = "Closed"


class CloseReason(str, Enum):
    SELF_REPORTED = "SelfReported"
    PUSH_EVENT = "PushEvent"
    POLLING_TIMEOUT = "PollingTimeout"
    MEETING_ENDED = "MeetingEnded"
    STALE_SESSION = "StaleSession"


class EventSource(str, Enum):
    """
    Provenance of a transition.
    """

    PUSH = "push"
    TOKEN = "token"
    POLL = "poll"


class TransitionKind(str, Enum):
    CREATED = "created"
    REFRESHED = "refreshed"
    CLOSED = "closed"
    OBSERVED = "observed"
    NOOP = "noop"


class Identity(BaseModel):
    """
    Normalized participant identity shared by all event sources.
    """

    key: str = Field(
        ...,
        description="Stable identity key (roster:<id>, email:<address> or user:<id>).",
        examples=["email:ada@example.edu"],
    )
    subject: str | None = Field(
        None, description="Token subject or platform user id the identity came from."
    )
    display_name: str = Field("Unknown Participant", examples=["Ada Lovelace"])
    email: str | None = Field(None, examples=["ada@example.edu"])
    role: str | None = Field(None, examples=["participant"])
    roster_id: int | None = Field(
        None, description="Matched roster record id, if the lookup succeeded."
    )


class SessionRead(BaseModel):
    """
    Consistent snapshot of one stored session row.
    """

    model_config = ConfigDict(from_attributes=True)

    id: int
    meeting_id: str
    identity_key: str
    display_name: str
    email: str | None = None
    role: str | None = None
    join_time: datetime
    leave_time: datetime | None = None
    last_seen_at: datetime | None = None
    duration_minutes: int = 0
    lifecycle_state: LifecycleState
    close_reason: CloseReason | None = None
    source: EventSource
    roster_id: int | None = None
    missed_polls: int = 0
    version: int = 1

    @property
    def is_active(self) -> bool:
        return self.lifecycle_state == LifecycleState.ACTIVE


class TransitionResult(BaseModel):
    """
    Outcome of applying one event to one session key.
    """

    kind: TransitionKind
    session: SessionRead | None = None

    @property
    def changed(self) -> bool:
        return self.kind in (
            TransitionKind.CREATED,
            TransitionKind.REFRESHED,
            TransitionKind.CLOSED,
        )

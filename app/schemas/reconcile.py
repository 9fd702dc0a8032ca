# app/schemas/reconcile.py
from datetime import datetime
from typing import List

from pydantic import BaseModel, Field


class ReconcileSummary(BaseModel):
    """
    Outcome of one polling reconciliation tick for a meeting.
    """

    meeting_id: str = Field(..., examples=["85746352712"])
    ran_at: datetime
    skipped: bool = Field(
        False, description="True if a previous tick for the meeting was still running."
    )
    failed: bool = Field(
        False, description="True if the authoritative snapshot could not be fetched."
    )
    meeting_ended: bool = False
    from_cache: bool = False
    participants: int = Field(0, ge=0, description="Identities in the authoritative snapshot.")
    opened: int = Field(0, ge=0, description="Sessions recovered from a missed join.")
    observed: int = Field(0, ge=0)
    missed: int = Field(0, ge=0)
    closed: int = Field(0, ge=0, description="Sessions force-closed with PollingTimeout.")
    error: str | None = None


class SweepSummary(BaseModel):
    """
    Outcome of one periodic sweep for overdue meetings and stuck sessions.
    """

    ran_at: datetime
    failed: bool = False
    meetings_ended: List[str] = Field(
        default_factory=list,
        description="Meetings ended because their scheduled duration plus grace passed.",
    )
    sessions_closed: int = Field(0, ge=0, description="Sessions force-closed with StaleSession.")
    error: str | None = None

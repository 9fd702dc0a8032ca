# app/schemas/attendance.py
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field

from app.schemas.session import SessionRead


class AttendanceStatus(str, Enum):
    IN_PROGRESS = "InProgress"
    PRESENT = "Present"
    ABSENT = "Absent"


class AttendanceView(BaseModel):
    """
    Derived attendance classification for a session (or a participant's
    sessions combined). Never stored: recomputed on every read so a changed
    threshold reclassifies history consistently.
    """

    duration_minutes: int = Field(
        ...,
        ge=0,
        description="Minutes attended, rounded; measured up to now for active sessions.",
        examples=[52],
    )
    percentage: int = Field(
        ...,
        ge=0,
        description="duration / scheduled duration * 100, rounded.",
        examples=[87],
    )
    status: AttendanceStatus = Field(..., examples=["Present"])
    threshold: int = Field(..., ge=0, le=100, examples=[85])
    threshold_minutes: int = Field(
        ...,
        ge=0,
        description="Minutes needed to reach the threshold for the scheduled duration.",
        examples=[51],
    )
    meets_threshold: bool = Field(..., examples=[True])


class ParticipantAttendance(BaseModel):
    """
    Attendance of one identity in one meeting: its most recent session plus
    the derived view.
    """

    session: SessionRead
    attendance: AttendanceView
    session_count: int = Field(
        1,
        ge=1,
        description="Number of stored sessions (join/leave pairs) for this identity.",
    )


class AttendanceStatistics(BaseModel):
    total: int = 0
    present: int = 0
    absent: int = 0
    in_progress: int = 0
    active: int = 0
    average_percentage: float = Field(
        0.0, description="Mean percentage across all participants, one decimal."
    )


class AttendanceReport(BaseModel):
    """
    Response of get_attendance: per-participant rows plus aggregate statistics.
    """

    meeting_id: str
    threshold: int
    scheduled_duration_minutes: int
    rejoin_policy: str = Field(..., examples=["reset"])
    sessions: list[ParticipantAttendance] = Field(default_factory=list)
    statistics: AttendanceStatistics
    generated_at: datetime

# app/models/attendance_session.py
from datetime import datetime, timezone

from sqlalchemy import Column, Index, Integer, String, text

from app.db.base import Base
from app.db.types import UTCDateTime


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


class AttendanceSession(Base):
    """
    One participant's presence interval in one meeting.

    Rows are only mutated by the session engine while it holds the lock for
    (meeting_id, identity_key). Closed rows are never reopened; a later join
    inserts a new row.
    """

    __tablename__ = "attendance_sessions"

    id = Column(Integer, primary_key=True, index=True)

    meeting_id = Column(String(64), nullable=False, index=True)
    identity_key = Column(String(255), nullable=False, index=True)

    display_name = Column(String(255), nullable=False, default="Unknown Participant")
    email = Column(String(255), nullable=True)
    role = Column(String(64), nullable=True)

    join_time = Column(UTCDateTime, nullable=False)
    leave_time = Column(UTCDateTime, nullable=True)
    last_seen_at = Column(UTCDateTime, nullable=True)

    duration_minutes = Column(Integer, nullable=False, default=0)

    lifecycle_state = Column(String(16), nullable=False, default="Active")
    close_reason = Column(String(32), nullable=True)
    source = Column(String(16), nullable=False)

    # Weak reference: lookup only, never owned by the session.
    roster_id = Column(Integer, nullable=True)

    missed_polls = Column(Integer, nullable=False, default=0)
    version = Column(Integer, nullable=False, default=1)

    created_at = Column(UTCDateTime, nullable=False, default=_utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=_utcnow)

    __table_args__ = (
        Index(
            "uq_attendance_sessions_active_identity",
            "meeting_id",
            "identity_key",
            unique=True,
            sqlite_where=text("lifecycle_state = 'Active'"),
            postgresql_where=text("lifecycle_state = 'Active'"),
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<AttendanceSession id={self.id} meeting_id={self.meeting_id} "
            f"identity_key={self.identity_key} state={self.lifecycle_state}>"
        )

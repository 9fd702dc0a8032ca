# app/models/meeting.py
from sqlalchemy import Boolean, Column, Integer, String

from app.db.base import Base
from app.db.types import UTCDateTime


class Meeting(Base):
    """
    Scheduling and reconciliation context for a tracked meeting.
    """

    __tablename__ = "meetings"

    meeting_id = Column(String(64), primary_key=True)
    topic = Column(String(255), nullable=True)

    # Nullable: the calculator falls back to the configured default.
    scheduled_duration_minutes = Column(Integer, nullable=True)

    status = Column(String(16), nullable=False, default="Waiting")
    active_session_count = Column(Integer, nullable=False, default=0)
    tracking_enabled = Column(Boolean, nullable=False, default=False)

    started_at = Column(UTCDateTime, nullable=True)
    ended_at = Column(UTCDateTime, nullable=True)

    def __repr__(self) -> str:
        return f"<Meeting meeting_id={self.meeting_id} status={self.status}>"

# app/models/roster.py
from sqlalchemy import Column, Integer, String

from app.db.base import Base


class RosterRecord(Base):
    """
    Externally maintained roster entry (e.g. an enrolled student) that
    participants are matched against by email or external id.
    """

    __tablename__ = "roster_records"

    id = Column(Integer, primary_key=True, index=True)
    external_id = Column(String(64), nullable=True, unique=True, index=True)
    email = Column(String(255), nullable=True, index=True)
    first_name = Column(String(128), nullable=True)
    last_name = Column(String(128), nullable=True)
    department = Column(String(128), nullable=True)

    @property
    def full_name(self) -> str:
        return " ".join(part for part in (self.first_name, self.last_name) if part)

    def __repr__(self) -> str:
        return f"<RosterRecord id={self.id} email={self.email}>"

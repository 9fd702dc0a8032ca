# app/services/session_store.py
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.errors import StoreConflict
from app.models.attendance_session import AttendanceSession
from app.models.meeting import Meeting
from app.schemas.meeting import MeetingRead, MeetingStatus
from app.schemas.session import LifecycleState, SessionRead

logger = logging.getLogger(__name__)


class SessionStore:
    """
    Durable, keyed collection of per-(meeting, identity) session records.

    Every call opens its own short database session, so callers never hold a
    connection across an await on something else. Session rows are returned
    as `SessionRead` snapshots (whole rows, never partially updated).

    Writes are guarded by the row `version` column: `update_session` only
    succeeds if the caller saw the latest version, otherwise StoreConflict is
    raised. Together with the partial unique index on active rows this
    detects any write that bypassed the engine's per-key lock.
    """

    def __init__(self, sessionmaker: async_sessionmaker[AsyncSession]) -> None:
        self._sessionmaker = sessionmaker

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------
    async def find_active(self, meeting_id: str, identity_key: str) -> Optional[SessionRead]:
        stmt = select(AttendanceSession).where(
            AttendanceSession.meeting_id == meeting_id,
            AttendanceSession.identity_key == identity_key,
            AttendanceSession.lifecycle_state == LifecycleState.ACTIVE.value,
        )
        async with self._sessionmaker() as db:
            row = (await db.execute(stmt)).scalar_one_or_none()
        return SessionRead.model_validate(row) if row is not None else None

    async def find_latest(self, meeting_id: str, identity_key: str) -> Optional[SessionRead]:
        """
        Most recent session for the key, active or closed.
        """
        stmt = (
            select(AttendanceSession)
            .where(
                AttendanceSession.meeting_id == meeting_id,
                AttendanceSession.identity_key == identity_key,
            )
            .order_by(AttendanceSession.join_time.desc(), AttendanceSession.id.desc())
            .limit(1)
        )
        async with self._sessionmaker() as db:
            row = (await db.execute(stmt)).scalar_one_or_none()
        return SessionRead.model_validate(row) if row is not None else None

    async def list_sessions(
        self,
        meeting_id: str,
        identity_key: str | None = None,
    ) -> List[SessionRead]:
        stmt = select(AttendanceSession).where(AttendanceSession.meeting_id == meeting_id)
        if identity_key is not None:
            stmt = stmt.where(AttendanceSession.identity_key == identity_key)
        stmt = stmt.order_by(AttendanceSession.join_time.asc(), AttendanceSession.id.asc())
        async with self._sessionmaker() as db:
            rows = (await db.execute(stmt)).scalars().all()
        return [SessionRead.model_validate(r) for r in rows]

    async def list_active(self, meeting_id: str) -> List[SessionRead]:
        stmt = (
            select(AttendanceSession)
            .where(
                AttendanceSession.meeting_id == meeting_id,
                AttendanceSession.lifecycle_state == LifecycleState.ACTIVE.value,
            )
            .order_by(AttendanceSession.id.asc())
        )
        async with self._sessionmaker() as db:
            rows = (await db.execute(stmt)).scalars().all()
        return [SessionRead.model_validate(r) for r in rows]

    async def list_stale_sessions(self, before: datetime) -> List[SessionRead]:
        """
        Active sessions, across all meetings, with no join or confirmed
        presence since `before`.
        """
        stmt = (
            select(AttendanceSession)
            .where(
                AttendanceSession.lifecycle_state == LifecycleState.ACTIVE.value,
                AttendanceSession.join_time < before,
                or_(
                    AttendanceSession.last_seen_at.is_(None),
                    AttendanceSession.last_seen_at < before,
                ),
            )
            .order_by(AttendanceSession.meeting_id.asc(), AttendanceSession.id.asc())
        )
        async with self._sessionmaker() as db:
            rows = (await db.execute(stmt)).scalars().all()
        return [SessionRead.model_validate(r) for r in rows]

    async def count_active(self, meeting_id: str) -> int:
        stmt = select(func.count(AttendanceSession.id)).where(
            AttendanceSession.meeting_id == meeting_id,
            AttendanceSession.lifecycle_state == LifecycleState.ACTIVE.value,
        )
        async with self._sessionmaker() as db:
            return int((await db.execute(stmt)).scalar_one())

    async def insert_session(self, **fields: Any) -> SessionRead:
        """
        Insert a new session row.

        Raises StoreConflict if another active session already exists for the
        same (meeting_id, identity_key).
        """
        row = AttendanceSession(version=1, missed_polls=0, **fields)
        async with self._sessionmaker() as db:
            db.add(row)
            try:
                await db.commit()
            except IntegrityError as exc:
                await db.rollback()
                raise StoreConflict(
                    f"Active session already exists for meeting={fields.get('meeting_id')} "
                    f"identity={fields.get('identity_key')}"
                ) from exc
            await db.refresh(row)
        return SessionRead.model_validate(row)

    async def update_session(
        self,
        session_id: int,
        expected_version: int,
        **changes: Any,
    ) -> SessionRead:
        """
        Compare-and-swap update of a session row.

        The row is only written if its version still equals
        `expected_version`; the version is bumped as part of the same
        statement.
        """
        stmt = (
            update(AttendanceSession)
            .where(
                AttendanceSession.id == session_id,
                AttendanceSession.version == expected_version,
            )
            .values(version=AttendanceSession.version + 1, **changes)
            .execution_options(synchronize_session=False)
        )
        async with self._sessionmaker() as db:
            result = await db.execute(stmt)
            if result.rowcount != 1:
                await db.rollback()
                raise StoreConflict(
                    f"Session {session_id} changed concurrently "
                    f"(expected version {expected_version})"
                )
            await db.commit()
            row = await db.get(AttendanceSession, session_id)
        return SessionRead.model_validate(row)

    # ------------------------------------------------------------------
    # Meetings
    # ------------------------------------------------------------------
    async def get_meeting(self, meeting_id: str) -> Optional[MeetingRead]:
        async with self._sessionmaker() as db:
            row = await db.get(Meeting, meeting_id)
        return MeetingRead.model_validate(row) if row is not None else None

    async def upsert_meeting(self, meeting_id: str, **fields: Any) -> MeetingRead:
        """
        Create the meeting if missing, then apply the given fields.

        None values are ignored so partial information (e.g. a webhook
        without a duration) never erases what is already known.
        """
        values: Dict[str, Any] = {k: v for k, v in fields.items() if v is not None}
        async with self._sessionmaker() as db:
            row = await db.get(Meeting, meeting_id)
            if row is None:
                row = Meeting(
                    meeting_id=meeting_id,
                    status=MeetingStatus.WAITING.value,
                    active_session_count=0,
                    tracking_enabled=False,
                )
                db.add(row)
            for key, value in values.items():
                if isinstance(value, MeetingStatus):
                    value = value.value
                setattr(row, key, value)
            try:
                await db.commit()
            except IntegrityError:
                # Created concurrently by another request; apply on top of it.
                await db.rollback()
                row = await db.get(Meeting, meeting_id)
                for key, value in values.items():
                    if isinstance(value, MeetingStatus):
                        value = value.value
                    setattr(row, key, value)
                await db.commit()
            await db.refresh(row)
        return MeetingRead.model_validate(row)

    async def refresh_active_count(self, meeting_id: str) -> int:
        """
        Recompute Meeting.active_session_count from the session rows.
        """
        count = await self.count_active(meeting_id)
        async with self._sessionmaker() as db:
            row = await db.get(Meeting, meeting_id)
            if row is not None:
                row.active_session_count = count
                await db.commit()
        return count

    async def list_tracked_meetings(self) -> List[MeetingRead]:
        stmt = select(Meeting).where(
            Meeting.tracking_enabled.is_(True),
            Meeting.status != MeetingStatus.ENDED.value,
        )
        async with self._sessionmaker() as db:
            rows = (await db.execute(stmt)).scalars().all()
        return [MeetingRead.model_validate(r) for r in rows]

    async def list_scheduled_meetings(self) -> List[MeetingRead]:
        """
        Started meetings with a known start time and scheduled duration.
        """
        stmt = select(Meeting).where(
            Meeting.status == MeetingStatus.STARTED.value,
            Meeting.started_at.is_not(None),
            Meeting.scheduled_duration_minutes.is_not(None),
        )
        async with self._sessionmaker() as db:
            rows = (await db.execute(stmt)).scalars().all()
        return [MeetingRead.model_validate(r) for r in rows]

    async def touch_meeting_clock(self, meeting_id: str, at: datetime) -> None:
        """
        Record the first time activity was seen for a meeting that has no
        explicit start event yet.
        """
        async with self._sessionmaker() as db:
            row = await db.get(Meeting, meeting_id)
            if row is not None and row.started_at is None:
                row.started_at = at
                await db.commit()

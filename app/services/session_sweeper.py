# app/services/session_sweeper.py
from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from typing import Awaitable, Callable, List, Optional

from app.schemas.events import MeetingEndedEvent, SessionExpiredEvent
from app.schemas.reconcile import SweepSummary
from app.schemas.session import EventSource, TransitionKind
from app.services.metrics import HealthMetrics
from app.services.session_engine import Clock, SessionEngine, utcnow
from app.services.session_store import SessionStore

logger = logging.getLogger(__name__)

MeetingEndedHook = Callable[[str], Awaitable[None]]


class SessionSweeper:
    """
    Background cleanup for state that no event will ever finish.

    Per sweep
    ---------
    1. Started meetings whose scheduled duration plus the grace period has
       passed are ended at their scheduled end time.
    2. Active sessions with no join or confirmed presence for
       `stuck_session_hours` are force-closed with StaleSession.

    Both go through the SessionEngine, so they take the same per-key locks
    as push, token and polling events and fan out the same way.
    """

    def __init__(
        self,
        engine: SessionEngine,
        store: SessionStore,
        *,
        interval_seconds: float = 1800.0,
        stuck_session_hours: float = 3.0,
        meeting_end_grace_minutes: int = 15,
        clock: Clock = utcnow,
        metrics: Optional[HealthMetrics] = None,
        on_meeting_ended: Optional[MeetingEndedHook] = None,
    ) -> None:
        self._engine = engine
        self._store = store
        self._interval = interval_seconds
        self._stuck_after = timedelta(hours=stuck_session_hours)
        self._end_grace = timedelta(minutes=meeting_end_grace_minutes)
        self._clock = clock
        self._metrics = metrics
        self._on_meeting_ended = on_meeting_ended

        self._task: Optional[asyncio.Task] = None
        self._stop: Optional[asyncio.Event] = None
        self._lock = asyncio.Lock()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> bool:
        if self.running:
            return False
        self._stop = asyncio.Event()
        self._task = asyncio.create_task(self._run(self._stop), name="sweep")
        logger.info("Session sweep started (interval=%.0fs)", self._interval)
        return True

    async def stop(self) -> None:
        stop, task = self._stop, self._task
        self._stop = self._task = None
        if stop is None or task is None:
            return
        stop.set()
        if task is not asyncio.current_task():
            await task
        logger.info("Session sweep stopped")

    async def _run(self, stop: asyncio.Event) -> None:
        while not stop.is_set():
            try:
                await asyncio.wait_for(stop.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                pass
            if stop.is_set():
                break
            await self.sweep()

    async def sweep(self) -> SweepSummary:
        """
        Run one sweep. Never raises: failures are logged, counted and
        reported on the returned summary.
        """
        async with self._lock:
            self._count("sweeps")
            summary = SweepSummary(ran_at=self._clock())
            try:
                summary.meetings_ended = await self._end_overdue_meetings()
                summary.sessions_closed = await self._close_stale_sessions()
            except Exception as exc:  # noqa: BLE001 - a sweep must never kill its task
                logger.exception("Session sweep failed")
                self._count("sweeps_failed")
                summary.failed = True
                summary.error = type(exc).__name__
            return summary

    async def _end_overdue_meetings(self) -> List[str]:
        now = self._clock()
        ended: List[str] = []
        for meeting in await self._store.list_scheduled_meetings():
            scheduled_end = meeting.started_at + timedelta(
                minutes=meeting.scheduled_duration_minutes
            )
            if scheduled_end + self._end_grace > now:
                continue

            logger.info(
                "Ending meeting %s: scheduled end %s has passed",
                meeting.meeting_id,
                scheduled_end.isoformat(),
            )
            await self._engine.apply(
                MeetingEndedEvent(
                    meeting_id=meeting.meeting_id,
                    timestamp=scheduled_end,
                    source=EventSource.POLL,
                )
            )
            self._count("meetings_auto_ended")
            ended.append(meeting.meeting_id)
            if self._on_meeting_ended is not None:
                await self._on_meeting_ended(meeting.meeting_id)
        return ended

    async def _close_stale_sessions(self) -> int:
        now = self._clock()
        cutoff = now - self._stuck_after
        closed = 0
        for session in await self._store.list_stale_sessions(cutoff):
            results = await self._engine.apply(
                SessionExpiredEvent(
                    meeting_id=session.meeting_id,
                    identity_key=session.identity_key,
                    stale_before=cutoff,
                    timestamp=now,
                )
            )
            if any(r.kind == TransitionKind.CLOSED for r in results):
                closed += 1
        if closed:
            self._count("stale_sessions_closed", closed)
            logger.info("Closed %d stale sessions (no activity since %s)", closed, cutoff.isoformat())
        return closed

    def _count(self, name: str, amount: int = 1) -> None:
        if self._metrics is not None:
            self._metrics.increment(name, amount)

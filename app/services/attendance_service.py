# app/services/attendance_service.py
from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import Settings
from app.core.errors import MeetingNotFound
from app.schemas.attendance import (
    AttendanceReport,
    AttendanceStatistics,
    AttendanceView,
    ParticipantAttendance,
)
from app.schemas.events import MeetingEndedEvent, MeetingStartedEvent
from app.schemas.ingest import IngestResult
from app.schemas.meeting import MeetingRead, MeetingStatus
from app.schemas.reconcile import ReconcileSummary, SweepSummary
from app.schemas.session import EventSource, SessionRead, TransitionKind, TransitionResult
from app.services import fanout as fanout_events
from app.services.attendance_calculator import (
    compute_combined_view,
    compute_view,
    effective_scheduled_minutes,
    summarize,
)
from app.services.event_ingest import MEETING_ENDED, MEETING_STARTED, EventIngest
from app.services.fanout import RealtimeFanout, meeting_channel
from app.services.identity_resolver import (
    IdentityResolver,
    RosterLookup,
    SqlRosterLookup,
    TokenAuthenticator,
)
from app.services.metrics import HealthMetrics
from app.services.polling_reconciler import PollingReconciler
from app.services.session_engine import REJOIN_ACCUMULATE, Clock, SessionEngine, utcnow
from app.services.session_store import SessionStore
from app.services.session_sweeper import SessionSweeper
from app.services.webhook_validator import WebhookValidator
from app.services.zoom_client import MeetingPlatformClient, build_zoom_client

logger = logging.getLogger(__name__)

_EVENT_BY_TRANSITION = {
    TransitionKind.CREATED: fanout_events.SESSION_JOINED,
    TransitionKind.CLOSED: fanout_events.SESSION_LEFT,
    TransitionKind.REFRESHED: fanout_events.ATTENDANCE_UPDATED,
}


class AttendanceService:
    """
    Public face of the attendance reconciliation core.

    Built once per application (see `build_attendance_service`) with every
    collaborator passed in, so tests can swap the platform client, the clock
    and the database freely. Owns the lifecycle of the polling tasks and of
    the real-time subscribers: call `startup()` before use and `shutdown()`
    at exit.
    """

    def __init__(
        self,
        settings: Settings,
        sessionmaker: async_sessionmaker[AsyncSession],
        *,
        platform_client: Optional[MeetingPlatformClient] = None,
        authenticator: Optional[TokenAuthenticator] = None,
        roster: Optional[RosterLookup] = None,
        clock: Clock = utcnow,
        metrics: Optional[HealthMetrics] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.settings = settings
        self.clock = clock
        self.metrics = metrics or HealthMetrics()

        if authenticator is None:
            authenticator = TokenAuthenticator(
                settings.JWT_SECRET_KEY,
                tuple(settings.JWT_ALGORITHMS),
                verify_signature=settings.JWT_VERIFY_SIGNATURE,
                environment=settings.APP_ENV,
            )
        if roster is None:
            roster = SqlRosterLookup(sessionmaker)

        self.store = SessionStore(sessionmaker)
        self.resolver = IdentityResolver(authenticator, roster)
        self.engine = SessionEngine(
            self.store,
            rejoin_policy=settings.REJOIN_POLICY,
            grace_misses=settings.POLL_GRACE_MISSES,
            grace_period_seconds=settings.POLL_GRACE_PERIOD_SECONDS,
            clock=clock,
            metrics=self.metrics,
        )
        self.ingest = EventIngest(self.engine, self.resolver, self.metrics)
        self.fanout = RealtimeFanout(settings.FANOUT_QUEUE_SIZE, self.metrics)
        self.reconciler = PollingReconciler(
            self.engine,
            self.store,
            self.resolver,
            platform_client,
            interval_seconds=settings.POLL_INTERVAL_SECONDS,
            call_timeout_seconds=settings.EXTERNAL_CALL_TIMEOUT_SECONDS,
            max_attempts=settings.RETRY_MAX_ATTEMPTS,
            base_delay_seconds=settings.RETRY_BASE_DELAY_SECONDS,
            max_delay_seconds=settings.RETRY_MAX_DELAY_SECONDS,
            cache_ttl_seconds=settings.SNAPSHOT_CACHE_TTL_SECONDS,
            clock=clock,
            metrics=self.metrics,
            sleep=sleep,
        )
        self.sweeper = SessionSweeper(
            self.engine,
            self.store,
            interval_seconds=settings.SWEEP_INTERVAL_SECONDS,
            stuck_session_hours=settings.STUCK_SESSION_HOURS,
            meeting_end_grace_minutes=settings.MEETING_END_GRACE_MINUTES,
            clock=clock,
            metrics=self.metrics,
            on_meeting_ended=self._stop_after_end,
        )
        self.webhooks = WebhookValidator(settings.ZOOM_WEBHOOK_SECRET_TOKEN)

        self.engine.add_listener(self._publish_transition)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def startup(self) -> None:
        """
        Start the periodic sweep and resume polling for meetings that were
        tracked when the process last stopped.
        """
        if self.settings.SWEEP_ENABLED:
            self.sweeper.start()
        if not self.reconciler.available:
            logger.info("No meeting platform client configured; polling disabled")
            return
        for meeting in await self.store.list_tracked_meetings():
            self.reconciler.start(meeting.meeting_id)
            logger.info("Resumed tracking for meeting %s", meeting.meeting_id)

    async def shutdown(self) -> None:
        await self.sweeper.stop()
        await self.reconciler.shutdown()
        self.fanout.close()
        logger.info("Attendance service stopped")

    # ------------------------------------------------------------------
    # Self check-in / check-out
    # ------------------------------------------------------------------
    async def on_join(
        self,
        meeting_id: str,
        credential: str,
        source_tag: Any = EventSource.TOKEN,
        timestamp: Optional[datetime] = None,
    ) -> IngestResult:
        result = await self.ingest.ingest_token_action(
            meeting_id,
            credential,
            action="join",
            source=source_tag,
            timestamp=timestamp,
        )
        return await self._with_attendance(result)

    async def on_leave(
        self,
        meeting_id: str,
        credential: str,
        timestamp: Optional[datetime] = None,
    ) -> IngestResult:
        result = await self.ingest.ingest_token_action(
            meeting_id,
            credential,
            action="leave",
            source=EventSource.TOKEN,
            timestamp=timestamp,
        )
        return await self._with_attendance(result)

    # ------------------------------------------------------------------
    # Meeting lifecycle
    # ------------------------------------------------------------------
    async def on_meeting_started(
        self,
        meeting_id: str,
        start_time: Optional[datetime] = None,
        *,
        topic: Optional[str] = None,
        scheduled_duration_minutes: Optional[int] = None,
    ) -> MeetingRead:
        await self.engine.apply(
            MeetingStartedEvent(
                meeting_id=meeting_id,
                timestamp=start_time,
                topic=topic,
                scheduled_duration_minutes=scheduled_duration_minutes,
            )
        )
        await self._auto_track(meeting_id)
        return await self.store.get_meeting(meeting_id)

    async def on_meeting_ended(
        self,
        meeting_id: str,
        end_time: Optional[datetime] = None,
    ) -> List[SessionRead]:
        """
        Close every active session of the meeting at `end_time` (or now)
        and stop polling it. Returns the sessions that were closed.
        """
        results = await self.engine.apply(
            MeetingEndedEvent(
                meeting_id=meeting_id,
                timestamp=end_time,
                source=EventSource.PUSH,
            )
        )
        await self._stop_after_end(meeting_id)
        return [r.session for r in results if r.session is not None]

    # ------------------------------------------------------------------
    # Push channel
    # ------------------------------------------------------------------
    async def handle_push_event(self, body: Mapping[str, Any]) -> IngestResult:
        """
        Process a webhook delivery. Never raises.
        """
        result = await self.ingest.ingest_push(body)
        if not result.accepted or not result.meeting_id:
            return result

        try:
            if result.event_type == MEETING_STARTED:
                await self._auto_track(result.meeting_id)
            elif result.event_type == MEETING_ENDED:
                await self._stop_after_end(result.meeting_id)
            return await self._with_attendance(result)
        except Exception:  # noqa: BLE001 - the push channel is always acknowledged
            self.metrics.increment("ingest_failures")
            logger.exception(
                "Post-processing of %s for meeting %s failed",
                result.event_type,
                result.meeting_id,
            )
            return result

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------
    async def start_tracking(self, meeting_id: str) -> MeetingRead:
        """
        Start periodic reconciliation for a meeting.

        Meeting details (topic, scheduled duration) are fetched from the
        platform first. Raises MeetingNotFound when the platform does not
        know the meeting and ExternalCallFailure when it cannot be reached.
        """
        existing = await self.store.get_meeting(meeting_id)
        if existing is not None and existing.status == MeetingStatus.ENDED:
            logger.info("Not tracking meeting %s: it has already ended", meeting_id)
            return existing

        details = await self.reconciler.fetch_meeting_details(meeting_id)
        if details is None:
            raise MeetingNotFound(f"Meeting {meeting_id} was not found on the platform.")

        meeting = await self.store.upsert_meeting(
            meeting_id,
            topic=details.get("topic"),
            scheduled_duration_minutes=details.get("duration") or None,
            tracking_enabled=True,
        )
        if self.reconciler.start(meeting_id):
            self.fanout.publish(
                meeting_channel(meeting_id),
                fanout_events.TRACKING_STARTED,
                {"meeting_id": meeting_id, "interval_seconds": self.settings.POLL_INTERVAL_SECONDS},
            )
        return meeting

    async def stop_tracking(self, meeting_id: str) -> bool:
        stopped = await self.reconciler.stop(meeting_id)
        if await self.store.get_meeting(meeting_id) is not None:
            await self.store.upsert_meeting(meeting_id, tracking_enabled=False)
        if stopped:
            self.fanout.publish(
                meeting_channel(meeting_id),
                fanout_events.TRACKING_STOPPED,
                {"meeting_id": meeting_id},
            )
        return stopped

    async def reconcile_now(self, meeting_id: str) -> ReconcileSummary:
        return await self.reconciler.reconcile_now(meeting_id)

    def is_tracking(self, meeting_id: str) -> bool:
        return self.reconciler.is_tracking(meeting_id)

    async def sweep_now(self) -> SweepSummary:
        return await self.sweeper.sweep()

    async def _auto_track(self, meeting_id: str) -> None:
        if not self.settings.AUTO_TRACK_ON_MEETING_START or not self.reconciler.available:
            return
        if self.reconciler.is_tracking(meeting_id):
            return
        await self.store.upsert_meeting(meeting_id, tracking_enabled=True)
        if self.reconciler.start(meeting_id):
            self.fanout.publish(
                meeting_channel(meeting_id),
                fanout_events.TRACKING_STARTED,
                {"meeting_id": meeting_id, "interval_seconds": self.settings.POLL_INTERVAL_SECONDS},
            )

    async def _stop_after_end(self, meeting_id: str) -> None:
        if self.reconciler.is_tracking(meeting_id):
            await self.stop_tracking(meeting_id)
            return
        meeting = await self.store.get_meeting(meeting_id)
        if meeting is not None and meeting.tracking_enabled:
            await self.stop_tracking(meeting_id)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    async def get_attendance(
        self,
        meeting_id: str,
        threshold: Optional[int] = None,
    ) -> AttendanceReport:
        """
        Build the attendance report of a meeting: one row per participant
        with its derived view, plus aggregate statistics.

        Under the 'reset' policy a participant is judged on their most recent
        session; under 'accumulate' on the sum of all their sessions.
        """
        if threshold is None:
            threshold = self.settings.DEFAULT_THRESHOLD
        if threshold < 0 or threshold > 100:
            raise ValueError("threshold must be between 0 and 100")

        meeting = await self.store.get_meeting(meeting_id)
        scheduled = meeting.scheduled_duration_minutes if meeting is not None else None
        now = self.clock()

        by_identity: "OrderedDict[str, List[SessionRead]]" = OrderedDict()
        for session in await self.store.list_sessions(meeting_id):
            by_identity.setdefault(session.identity_key, []).append(session)

        rows: List[ParticipantAttendance] = []
        for sessions in by_identity.values():
            rows.append(
                ParticipantAttendance(
                    session=sessions[-1],
                    attendance=self._view(sessions, scheduled, threshold, now),
                    session_count=len(sessions),
                )
            )

        return AttendanceReport(
            meeting_id=meeting_id,
            threshold=threshold,
            scheduled_duration_minutes=effective_scheduled_minutes(
                scheduled, self.settings.DEFAULT_MEETING_DURATION_MINUTES
            ),
            rejoin_policy=self.engine.rejoin_policy,
            sessions=rows,
            statistics=summarize(r.attendance for r in rows),
            generated_at=now,
        )

    async def get_statistics(self, meeting_id: str, threshold: Optional[int] = None) -> AttendanceStatistics:
        return (await self.get_attendance(meeting_id, threshold)).statistics

    def metrics_snapshot(self) -> Dict[str, Any]:
        return self.metrics.snapshot()

    def _view(
        self,
        sessions: List[SessionRead],
        scheduled: Optional[int],
        threshold: int,
        now: datetime,
    ) -> AttendanceView:
        default = self.settings.DEFAULT_MEETING_DURATION_MINUTES
        if self.engine.rejoin_policy == REJOIN_ACCUMULATE:
            return compute_combined_view(sessions, scheduled, threshold, now, default_duration=default)
        return compute_view(sessions[-1], scheduled, threshold, now, default_duration=default)

    async def _session_view(self, session: SessionRead, threshold: Optional[int] = None) -> AttendanceView:
        threshold = self.settings.DEFAULT_THRESHOLD if threshold is None else threshold
        meeting = await self.store.get_meeting(session.meeting_id)
        scheduled = meeting.scheduled_duration_minutes if meeting is not None else None
        if self.engine.rejoin_policy == REJOIN_ACCUMULATE:
            sessions = await self.store.list_sessions(session.meeting_id, session.identity_key)
        else:
            sessions = [session]
        return self._view(sessions or [session], scheduled, threshold, self.clock())

    async def _with_attendance(self, result: IngestResult) -> IngestResult:
        if result.session is None:
            return result
        return result.model_copy(update={"attendance": await self._session_view(result.session)})

    # ------------------------------------------------------------------
    # Real-time fan-out
    # ------------------------------------------------------------------
    def subscribe(self, channel: str) -> asyncio.Queue:
        return self.fanout.subscribe(channel)

    def unsubscribe(self, channel: str, queue: asyncio.Queue) -> None:
        self.fanout.unsubscribe(channel, queue)

    async def _publish_transition(self, meeting_id: str, result: TransitionResult) -> None:
        channel = meeting_channel(meeting_id)
        event = _EVENT_BY_TRANSITION.get(result.kind)
        if event is not None and result.session is not None and self.fanout.subscriber_count(channel):
            attendance = await self._session_view(result.session)
            self.fanout.publish(
                channel,
                event,
                {
                    "meeting_id": meeting_id,
                    "transition": result.kind.value,
                    "session": result.session.model_dump(mode="json"),
                    "attendance": attendance.model_dump(mode="json"),
                },
            )

        stats_channel = fanout_events.STATISTICS_CHANNEL
        if self.fanout.subscriber_count(stats_channel) or self.fanout.subscriber_count(channel):
            statistics = await self.get_statistics(meeting_id)
            data = {"meeting_id": meeting_id, "statistics": statistics.model_dump(mode="json")}
            self.fanout.publish(stats_channel, fanout_events.ATTENDANCE_STATISTICS, data)
            self.fanout.publish(channel, fanout_events.ATTENDANCE_STATISTICS, data)


def build_attendance_service(
    settings: Settings,
    sessionmaker: async_sessionmaker[AsyncSession],
    **overrides: Any,
) -> AttendanceService:
    """
    Wire the service from settings: Zoom client when credentials exist,
    python-jose authenticator, SQL roster lookup. Any constructor argument
    can be overridden.
    """
    if "platform_client" not in overrides:
        overrides["platform_client"] = build_zoom_client(settings)
    return AttendanceService(settings, sessionmaker, **overrides)

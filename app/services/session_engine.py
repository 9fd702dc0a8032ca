# app/services/session_engine.py
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable, List, Optional

from app.core.errors import StoreConflict
from app.schemas.events import (
    JoinEvent,
    LeaveEvent,
    MeetingEndedEvent,
    MeetingStartedEvent,
    PresenceMissedEvent,
    PresenceObservedEvent,
    SessionExpiredEvent,
)
from app.schemas.meeting import MeetingStatus
from app.schemas.session import (
    CloseReason,
    EventSource,
    LifecycleState,
    SessionRead,
    TransitionKind,
    TransitionResult,
)
from app.services.attendance_calculator import elapsed_minutes
from app.services.identity_resolver import UNKNOWN_PARTICIPANT
from app.services.keyed_lock import KeyedLock
from app.services.metrics import HealthMetrics
from app.services.session_store import SessionStore

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]
TransitionListener = Callable[[str, TransitionResult], Awaitable[None]]

REJOIN_RESET = "reset"
REJOIN_ACCUMULATE = "accumulate"

_CLOSE_REASON_BY_SOURCE = {
    EventSource.TOKEN: CloseReason.SELF_REPORTED,
    EventSource.PUSH: CloseReason.PUSH_EVENT,
    EventSource.POLL: CloseReason.POLLING_TIMEOUT,
}

# Passes over the active sessions when a meeting ends; joins that raced the
# status change are picked up by the second pass.
_MEETING_END_PASSES = 3


def utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


class SessionEngine:
    """
    State machine for attendance sessions: NoSession -> Active -> Closed.

    Every event for a (meeting_id, identity_key) is applied while holding
    that key's lock, so a push leave and a polling timeout for the same
    participant can never both close the session. Closed is terminal; a
    later join creates a new row.

    Rules
    -----
    - Join, no active session      => create Active session
    - Join, active session         => refresh (reset policy moves join_time
                                      forward; accumulate keeps it), clear
                                      pending polling misses
    - Join, meeting Ended          => ignored
    - Leave, active session        => close with duration, reason from source
    - Leave, no active session     => no-op, latest record returned
    - Presence observed            => last_seen_at updated, misses cleared
    - Presence missed              => misses + 1; close with PollingTimeout once
                                      misses >= grace_misses and the last
                                      confirmed presence is older than the
                                      grace period
    - Meeting ended                => close every active session at end time
    - Session expired (sweep)      => close with StaleSession if there was no
                                      activity since the cutoff
    """

    def __init__(
        self,
        store: SessionStore,
        *,
        rejoin_policy: str = REJOIN_RESET,
        grace_misses: int = 2,
        grace_period_seconds: float = 60.0,
        clock: Clock = utcnow,
        metrics: Optional[HealthMetrics] = None,
    ) -> None:
        if rejoin_policy not in (REJOIN_RESET, REJOIN_ACCUMULATE):
            raise ValueError(f"Unknown rejoin policy: {rejoin_policy!r}")
        self._store = store
        self._rejoin_policy = rejoin_policy
        self._grace_misses = grace_misses
        self._grace_period_seconds = grace_period_seconds
        self._clock = clock
        self._metrics = metrics
        self._locks = KeyedLock()
        self._listeners: List[TransitionListener] = []

    @property
    def rejoin_policy(self) -> str:
        return self._rejoin_policy

    def add_listener(self, listener: TransitionListener) -> None:
        """
        Register a coroutine called after every committed state change.
        """
        self._listeners.append(listener)

    async def apply(self, event) -> List[TransitionResult]:
        """
        Apply one event and return the resulting transitions.

        Per-participant events yield exactly one result; a meeting end yields
        one result per session it closed; a meeting start yields none.
        """
        if isinstance(event, MeetingEndedEvent):
            return await self._end_meeting(event)
        if isinstance(event, MeetingStartedEvent):
            await self._start_meeting(event)
            return []

        if isinstance(event, JoinEvent):
            handler, identity_key = self._join, event.identity.key
        elif isinstance(event, LeaveEvent):
            handler, identity_key = self._leave, event.identity.key
        elif isinstance(event, PresenceObservedEvent):
            handler, identity_key = self._observe, event.identity_key
        elif isinstance(event, PresenceMissedEvent):
            handler, identity_key = self._miss, event.identity_key
        elif isinstance(event, SessionExpiredEvent):
            handler, identity_key = self._expire, event.identity_key
        else:
            raise TypeError(f"Unsupported event type: {type(event).__name__}")

        async with self._locks.hold((event.meeting_id, identity_key)):
            result = await self._run_with_conflict_retry(lambda: handler(event), event.kind)

        await self._after_transition(event.meeting_id, result)
        return [result]

    async def _run_with_conflict_retry(self, attempt, label: str):
        """
        Run a store mutation, retrying once on StoreConflict. A second
        conflict propagates as an internal error.
        """
        try:
            return await attempt()
        except StoreConflict as exc:
            logger.warning("Store conflict on %s, retrying once: %s", label, exc)
        return await attempt()

    # ------------------------------------------------------------------
    # Per-key transitions (called with the key lock held)
    # ------------------------------------------------------------------
    async def _join(self, event: JoinEvent) -> TransitionResult:
        now = self._clock()
        at = event.timestamp or now
        identity = event.identity

        meeting = await self._store.get_meeting(event.meeting_id)
        if meeting is not None and meeting.status == MeetingStatus.ENDED:
            logger.info(
                "Ignoring join for ended meeting %s (identity=%s, source=%s)",
                event.meeting_id,
                identity.key,
                event.source.value,
            )
            latest = await self._store.find_latest(event.meeting_id, identity.key)
            return TransitionResult(kind=TransitionKind.NOOP, session=latest)

        active = await self._store.find_active(event.meeting_id, identity.key)
        if active is None:
            if meeting is None:
                await self._store.upsert_meeting(event.meeting_id)
            session = await self._store.insert_session(
                meeting_id=event.meeting_id,
                identity_key=identity.key,
                display_name=identity.display_name,
                email=identity.email,
                role=identity.role,
                join_time=at,
                last_seen_at=at,
                duration_minutes=0,
                lifecycle_state=LifecycleState.ACTIVE.value,
                source=event.source.value,
                roster_id=identity.roster_id,
                created_at=now,
                updated_at=now,
            )
            await self._store.touch_meeting_clock(event.meeting_id, at)
            logger.info(
                "Session opened: meeting=%s identity=%s source=%s join_time=%s",
                event.meeting_id,
                identity.key,
                event.source.value,
                at.isoformat(),
            )
            return TransitionResult(kind=TransitionKind.CREATED, session=session)

        changes = {}
        if self._rejoin_policy == REJOIN_RESET and at > active.join_time:
            changes["join_time"] = at
        if active.missed_polls:
            changes["missed_polls"] = 0

        if not changes:
            logger.debug(
                "Duplicate join ignored: meeting=%s identity=%s",
                event.meeting_id,
                identity.key,
            )
            return TransitionResult(kind=TransitionKind.NOOP, session=active)

        last_seen = active.last_seen_at or active.join_time
        changes.update(
            source=event.source.value,
            last_seen_at=max(last_seen, at),
            updated_at=now,
        )
        if identity.display_name != UNKNOWN_PARTICIPANT and identity.display_name != active.display_name:
            changes["display_name"] = identity.display_name
        if identity.email and not active.email:
            changes["email"] = identity.email

        session = await self._store.update_session(active.id, active.version, **changes)
        logger.info(
            "Session refreshed: meeting=%s identity=%s join_time=%s",
            event.meeting_id,
            identity.key,
            session.join_time.isoformat(),
        )
        return TransitionResult(kind=TransitionKind.REFRESHED, session=session)

    async def _leave(self, event: LeaveEvent) -> TransitionResult:
        active = await self._store.find_active(event.meeting_id, event.identity.key)
        if active is None:
            latest = await self._store.find_latest(event.meeting_id, event.identity.key)
            logger.debug(
                "Leave without active session ignored: meeting=%s identity=%s",
                event.meeting_id,
                event.identity.key,
            )
            return TransitionResult(kind=TransitionKind.NOOP, session=latest)

        leave_at = event.timestamp or self._clock()
        session = await self._close(
            active,
            leave_at,
            _CLOSE_REASON_BY_SOURCE[event.source],
            event.source,
        )
        return TransitionResult(kind=TransitionKind.CLOSED, session=session)

    async def _observe(self, event: PresenceObservedEvent) -> TransitionResult:
        active = await self._store.find_active(event.meeting_id, event.identity_key)
        if active is None:
            return TransitionResult(kind=TransitionKind.NOOP, session=None)

        last_seen = active.last_seen_at or active.join_time
        session = await self._store.update_session(
            active.id,
            active.version,
            last_seen_at=max(last_seen, event.timestamp),
            missed_polls=0,
            updated_at=self._clock(),
        )
        return TransitionResult(kind=TransitionKind.OBSERVED, session=session)

    async def _miss(self, event: PresenceMissedEvent) -> TransitionResult:
        active = await self._store.find_active(event.meeting_id, event.identity_key)
        if active is None:
            return TransitionResult(kind=TransitionKind.NOOP, session=None)

        misses = active.missed_polls + 1
        last_seen = active.last_seen_at or active.join_time
        absent_for = (event.timestamp - last_seen).total_seconds()

        if misses >= self._grace_misses and absent_for >= self._grace_period_seconds:
            logger.info(
                "Polling timeout: meeting=%s identity=%s misses=%d absent_for=%.0fs",
                event.meeting_id,
                event.identity_key,
                misses,
                absent_for,
            )
            session = await self._close(
                active,
                last_seen,
                CloseReason.POLLING_TIMEOUT,
                EventSource.POLL,
            )
            return TransitionResult(kind=TransitionKind.CLOSED, session=session)

        session = await self._store.update_session(
            active.id,
            active.version,
            missed_polls=misses,
            updated_at=self._clock(),
        )
        return TransitionResult(kind=TransitionKind.OBSERVED, session=session)

    async def _expire(self, event: SessionExpiredEvent) -> TransitionResult:
        active = await self._store.find_active(event.meeting_id, event.identity_key)
        if active is None:
            return TransitionResult(kind=TransitionKind.NOOP, session=None)

        last_activity = max(active.join_time, active.last_seen_at or active.join_time)
        if last_activity >= event.stale_before:
            # Rejoined or observed after the sweep listed it.
            return TransitionResult(kind=TransitionKind.NOOP, session=active)

        logger.warning(
            "Closing stale session: meeting=%s identity=%s last_activity=%s",
            event.meeting_id,
            event.identity_key,
            last_activity.isoformat(),
        )
        session = await self._close(
            active,
            event.timestamp or self._clock(),
            CloseReason.STALE_SESSION,
            active.source,
        )
        return TransitionResult(kind=TransitionKind.CLOSED, session=session)

    async def _close(
        self,
        active: SessionRead,
        leave_at: datetime,
        reason: CloseReason,
        source: EventSource,
    ) -> SessionRead:
        leave_at = max(leave_at, active.join_time)
        duration = elapsed_minutes(active.join_time, leave_at)
        session = await self._store.update_session(
            active.id,
            active.version,
            lifecycle_state=LifecycleState.CLOSED.value,
            leave_time=leave_at,
            duration_minutes=duration,
            close_reason=reason.value,
            source=source.value,
            missed_polls=0,
            updated_at=self._clock(),
        )
        logger.info(
            "Session closed: meeting=%s identity=%s reason=%s duration=%dmin",
            active.meeting_id,
            active.identity_key,
            reason.value,
            duration,
        )
        return session

    # ------------------------------------------------------------------
    # Meeting-level transitions
    # ------------------------------------------------------------------
    async def _start_meeting(self, event: MeetingStartedEvent) -> None:
        await self._store.upsert_meeting(
            event.meeting_id,
            status=MeetingStatus.STARTED,
            started_at=event.timestamp or self._clock(),
            topic=event.topic,
            scheduled_duration_minutes=event.scheduled_duration_minutes,
        )
        logger.info("Meeting started: %s", event.meeting_id)

    async def _end_meeting(self, event: MeetingEndedEvent) -> List[TransitionResult]:
        end_at = event.timestamp or self._clock()

        # Status first: joins checked after this point are rejected.
        await self._store.upsert_meeting(
            event.meeting_id,
            status=MeetingStatus.ENDED,
            ended_at=end_at,
        )

        results: List[TransitionResult] = []
        for _ in range(_MEETING_END_PASSES):
            actives = await self._store.list_active(event.meeting_id)
            if not actives:
                break
            for candidate in actives:
                key = (event.meeting_id, candidate.identity_key)
                async with self._locks.hold(key):
                    result = await self._run_with_conflict_retry(
                        lambda: self._close_for_meeting_end(key, end_at, event.source),
                        event.kind,
                    )
                if result is not None:
                    results.append(result)
                    await self._after_transition(event.meeting_id, result)

        logger.info(
            "Meeting ended: %s (%d active sessions closed)",
            event.meeting_id,
            len(results),
        )
        return results

    async def _close_for_meeting_end(
        self,
        key,
        end_at: datetime,
        source: EventSource,
    ) -> Optional[TransitionResult]:
        meeting_id, identity_key = key
        current = await self._store.find_active(meeting_id, identity_key)
        if current is None:
            return None
        session = await self._close(current, end_at, CloseReason.MEETING_ENDED, source)
        return TransitionResult(kind=TransitionKind.CLOSED, session=session)

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------
    async def _after_transition(self, meeting_id: str, result: Optional[TransitionResult]) -> None:
        if result is None or not result.changed:
            return

        count = await self._store.refresh_active_count(meeting_id)
        if self._metrics is not None:
            self._metrics.increment("transitions")
            self._metrics.set_active_sessions(meeting_id, count)

        for listener in list(self._listeners):
            try:
                await listener(meeting_id, result)
            except Exception:  # noqa: BLE001 - listeners must never fail a transition
                logger.exception("Transition listener failed for meeting %s", meeting_id)

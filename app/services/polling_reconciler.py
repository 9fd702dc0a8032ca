# app/services/polling_reconciler.py
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

from app.core.errors import ExternalCallFailure, InvalidCredential, PlatformNotConfigured
from app.schemas.events import JoinEvent, PresenceMissedEvent, PresenceObservedEvent
from app.schemas.meeting import MeetingStatus
from app.schemas.reconcile import ReconcileSummary
from app.schemas.session import EventSource, Identity, TransitionKind
from app.services.event_ingest import parse_timestamp
from app.services.identity_resolver import IdentityResolver
from app.services.metrics import HealthMetrics
from app.services.session_engine import Clock, SessionEngine, utcnow
from app.services.session_store import SessionStore
from app.services.zoom_client import MeetingPlatformClient

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class _Snapshot:
    participants: List[Dict[str, Any]]
    fetched_at: datetime
    expires_at: float


class PollingReconciler:
    """
    Periodically compares the platform's live participant list with the
    local active sessions and feeds the differences to the SessionEngine.

    Per tick
    --------
    1. Fetch the authoritative snapshot (cached briefly, bounded timeout,
       retried with exponential backoff on retryable failures). A tick
       served from the cache reports the snapshot but applies nothing.
    2. Present identity without an active session  -> Join (source=poll).
    3. Present identity with an active session     -> PresenceObserved.
    4. Active session missing from the snapshot    -> PresenceMissed; the
       engine force-closes it once the grace rules are met.

    Ticks for one meeting never overlap: a tick that finds the previous one
    still running is skipped. Stopping a meeting sets its stop event, so no
    further tick is scheduled while an in-flight tick completes normally.
    """

    def __init__(
        self,
        engine: SessionEngine,
        store: SessionStore,
        resolver: IdentityResolver,
        client: Optional[MeetingPlatformClient],
        *,
        interval_seconds: float = 60.0,
        call_timeout_seconds: float = 10.0,
        max_attempts: int = 3,
        base_delay_seconds: float = 1.0,
        max_delay_seconds: float = 30.0,
        cache_ttl_seconds: float = 15.0,
        clock: Clock = utcnow,
        metrics: Optional[HealthMetrics] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._engine = engine
        self._store = store
        self._resolver = resolver
        self._client = client
        self._interval = interval_seconds
        self._call_timeout = call_timeout_seconds
        self._max_attempts = max(1, max_attempts)
        self._base_delay = base_delay_seconds
        self._max_delay = max_delay_seconds
        self._cache_ttl = cache_ttl_seconds
        self._clock = clock
        self._metrics = metrics
        self._sleep = sleep

        self._tasks: Dict[str, asyncio.Task] = {}
        self._stop_events: Dict[str, asyncio.Event] = {}
        self._tick_locks: Dict[str, asyncio.Lock] = {}
        self._cache: Dict[str, _Snapshot] = {}

    @property
    def available(self) -> bool:
        return self._client is not None

    def is_tracking(self, meeting_id: str) -> bool:
        task = self._tasks.get(meeting_id)
        return task is not None and not task.done()

    def tracked_meetings(self) -> List[str]:
        return [m for m in self._tasks if self.is_tracking(m)]

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def start(self, meeting_id: str) -> bool:
        """
        Schedule periodic ticks for the meeting.

        Returns False if the meeting is already tracked. Raises
        PlatformNotConfigured when no platform client is configured.
        """
        self._require_client()
        if self.is_tracking(meeting_id):
            return False

        stop = asyncio.Event()
        self._stop_events[meeting_id] = stop
        self._tasks[meeting_id] = asyncio.create_task(
            self._run(meeting_id, stop),
            name=f"poll:{meeting_id}",
        )
        logger.info(
            "Polling started for meeting %s (interval=%.0fs)", meeting_id, self._interval
        )
        return True

    async def stop(self, meeting_id: str) -> bool:
        """
        Stop tracking a meeting and wait for its task to finish.

        Returns False if the meeting was not tracked.
        """
        stop = self._stop_events.pop(meeting_id, None)
        task = self._tasks.pop(meeting_id, None)
        self._cache.pop(meeting_id, None)
        if stop is None or task is None:
            return False

        stop.set()
        if task is not asyncio.current_task():
            await task
        logger.info("Polling stopped for meeting %s", meeting_id)
        return True

    async def shutdown(self) -> None:
        for meeting_id in list(self._tasks):
            await self.stop(meeting_id)
        self._tick_locks.clear()

    async def _run(self, meeting_id: str, stop: asyncio.Event) -> None:
        while not stop.is_set():
            try:
                await asyncio.wait_for(stop.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                pass
            if stop.is_set():
                break

            summary = await self.tick(meeting_id)
            if summary.meeting_ended:
                logger.info("Meeting %s ended; polling task exits", meeting_id)
                break

        # Leave the registry only if nobody restarted tracking meanwhile.
        if self._stop_events.get(meeting_id) is stop:
            self._stop_events.pop(meeting_id, None)
            self._tasks.pop(meeting_id, None)
            self._cache.pop(meeting_id, None)

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------
    async def reconcile_now(self, meeting_id: str) -> ReconcileSummary:
        """
        Run one tick on demand, independent of the periodic schedule.
        """
        self._require_client()
        return await self.tick(meeting_id)

    async def tick(self, meeting_id: str) -> ReconcileSummary:
        """
        Run one reconciliation pass. Never raises: failures are logged,
        counted and reported on the returned summary.
        """
        lock = self._tick_locks.setdefault(meeting_id, asyncio.Lock())
        if lock.locked():
            logger.info("Skipping tick for meeting %s: previous tick still running", meeting_id)
            self._count("reconciler_ticks_skipped")
            return ReconcileSummary(meeting_id=meeting_id, ran_at=self._clock(), skipped=True)

        async with lock:
            self._count("reconciler_ticks")
            try:
                return await self._tick(meeting_id)
            except ExternalCallFailure as exc:
                logger.warning("Reconciliation of meeting %s failed: %s", meeting_id, exc)
                self._count("reconciler_ticks_failed")
                return ReconcileSummary(
                    meeting_id=meeting_id,
                    ran_at=self._clock(),
                    failed=True,
                    error=str(exc),
                )
            except Exception as exc:  # noqa: BLE001 - a tick must never kill the polling task
                logger.exception("Unexpected error reconciling meeting %s", meeting_id)
                self._count("reconciler_ticks_failed")
                return ReconcileSummary(
                    meeting_id=meeting_id,
                    ran_at=self._clock(),
                    failed=True,
                    error=type(exc).__name__,
                )

    async def _tick(self, meeting_id: str) -> ReconcileSummary:
        meeting = await self._store.get_meeting(meeting_id)
        if meeting is not None and meeting.status == MeetingStatus.ENDED:
            return ReconcileSummary(
                meeting_id=meeting_id, ran_at=self._clock(), meeting_ended=True
            )

        snapshot, from_cache = await self._snapshot(meeting_id)
        observed_at = snapshot.fetched_at
        summary = ReconcileSummary(
            meeting_id=meeting_id, ran_at=self._clock(), from_cache=from_cache
        )

        present: Dict[str, tuple[Identity, Optional[datetime]]] = {}
        for entry in snapshot.participants:
            try:
                identity = await self._resolver.resolve_participant(entry)
            except InvalidCredential as exc:
                logger.debug("Skipping unidentifiable participant in %s: %s", meeting_id, exc)
                continue
            present.setdefault(identity.key, (identity, parse_timestamp(entry.get("join_time"))))
        summary.participants = len(present)

        if from_cache:
            # The tick that fetched this snapshot already applied it; replaying
            # it would count one platform observation as several misses.
            logger.debug("Tick for meeting %s served from cache; no presence events", meeting_id)
            return summary

        active_keys = {s.identity_key for s in await self._store.list_active(meeting_id)}

        for key, (identity, joined_at) in present.items():
            if key in active_keys:
                await self._engine.apply(
                    PresenceObservedEvent(
                        meeting_id=meeting_id, identity_key=key, timestamp=observed_at
                    )
                )
                summary.observed += 1
                continue

            at = await self._recovered_join_time(meeting_id, key, joined_at, observed_at)
            results = await self._engine.apply(
                JoinEvent(
                    meeting_id=meeting_id,
                    identity=identity,
                    source=EventSource.POLL,
                    timestamp=at,
                )
            )
            if any(r.kind == TransitionKind.CREATED for r in results):
                summary.opened += 1

        for key in active_keys - present.keys():
            results = await self._engine.apply(
                PresenceMissedEvent(
                    meeting_id=meeting_id, identity_key=key, timestamp=observed_at
                )
            )
            summary.missed += 1
            if any(r.kind == TransitionKind.CLOSED for r in results):
                summary.closed += 1

        logger.info(
            "Tick for meeting %s: present=%d opened=%d observed=%d missed=%d closed=%d",
            meeting_id,
            summary.participants,
            summary.opened,
            summary.observed,
            summary.missed,
            summary.closed,
        )
        return summary

    async def _recovered_join_time(
        self,
        meeting_id: str,
        identity_key: str,
        joined_at: Optional[datetime],
        observed_at: datetime,
    ) -> datetime:
        """
        Join time for a session recovered from the snapshot: the platform's
        join time when plausible, never in the future and never before the
        previous session of the same identity ended.
        """
        at = joined_at if joined_at is not None and joined_at <= observed_at else observed_at
        latest = await self._store.find_latest(meeting_id, identity_key)
        if latest is not None and latest.leave_time is not None and at < latest.leave_time:
            at = latest.leave_time
        return at

    async def _snapshot(self, meeting_id: str) -> tuple[_Snapshot, bool]:
        cached = self._cache.get(meeting_id)
        if cached is not None and cached.expires_at > time.monotonic():
            self._count("snapshot_cache_hits")
            return cached, True

        self._count("snapshot_cache_misses")
        client = self._require_client()
        participants = await self.call_with_retry(
            lambda: client.list_current_participants(meeting_id),
            label=f"list participants of {meeting_id}",
        )
        snapshot = _Snapshot(
            participants=list(participants or []),
            fetched_at=self._clock(),
            expires_at=time.monotonic() + self._cache_ttl,
        )
        if self._cache_ttl > 0:
            self._cache[meeting_id] = snapshot
        return snapshot, False

    async def fetch_meeting_details(self, meeting_id: str) -> Optional[Dict[str, Any]]:
        client = self._require_client()
        return await self.call_with_retry(
            lambda: client.get_meeting(meeting_id),
            label=f"get meeting {meeting_id}",
        )

    async def call_with_retry(
        self,
        call: Callable[[], Awaitable[T]],
        *,
        label: str,
    ) -> T:
        """
        Run an external call with a per-attempt timeout, retrying retryable
        failures with exponential backoff. The last failure is re-raised as
        ExternalCallFailure.
        """
        attempt = 0
        while True:
            attempt += 1
            self._count("external_calls_total")
            try:
                return await asyncio.wait_for(call(), timeout=self._call_timeout)
            except asyncio.TimeoutError:
                error = ExternalCallFailure(
                    f"{label} timed out after {self._call_timeout:.1f}s", retryable=True
                )
            except ExternalCallFailure as exc:
                error = exc

            self._count("external_calls_failed")
            if not error.retryable or attempt >= self._max_attempts:
                logger.warning("%s failed after %d attempt(s): %s", label, attempt, error)
                raise error

            delay = min(self._base_delay * 2 ** (attempt - 1), self._max_delay)
            self._count("external_call_retries")
            logger.warning(
                "%s failed (attempt %d/%d), retrying in %.1fs: %s",
                label,
                attempt,
                self._max_attempts,
                delay,
                error,
            )
            await self._sleep(delay)

    def _require_client(self) -> MeetingPlatformClient:
        if self._client is None:
            raise PlatformNotConfigured("No meeting platform client is configured.")
        return self._client

    def _count(self, name: str) -> None:
        if self._metrics is not None:
            self._metrics.increment(name)

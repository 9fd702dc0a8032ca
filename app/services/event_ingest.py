# app/services/event_ingest.py
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, List, Mapping, Optional

from pydantic import ValidationError

from app.core.errors import InvalidCredential, MalformedEvent
from app.schemas.events import (
    JoinEvent,
    LeaveEvent,
    MeetingEndedEvent,
    MeetingStartedEvent,
)
from app.schemas.ingest import IngestResult
from app.schemas.session import EventSource, TransitionKind, TransitionResult
from app.services.identity_resolver import IdentityResolver
from app.services.metrics import HealthMetrics
from app.services.session_engine import SessionEngine

logger = logging.getLogger(__name__)

PARTICIPANT_JOINED = "meeting.participant_joined"
PARTICIPANT_LEFT = "meeting.participant_left"
MEETING_STARTED = "meeting.started"
MEETING_ENDED = "meeting.ended"

SUPPORTED_PUSH_EVENTS = (PARTICIPANT_JOINED, PARTICIPANT_LEFT, MEETING_STARTED, MEETING_ENDED)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse an ISO-8601 string or epoch milliseconds into an aware UTC datetime.

    Returns None if the value is missing or unparsable.
    """
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, (int, float)):
        try:
            dt = datetime.fromtimestamp(float(value) / 1000.0, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    elif isinstance(value, str):
        try:
            dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None

    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_source(value: Any) -> EventSource:
    if isinstance(value, EventSource):
        return value
    try:
        return EventSource(str(value).lower())
    except ValueError as exc:
        raise MalformedEvent(f"Unknown event source: {value!r}") from exc


def _summarize(results: List[TransitionResult], meeting_id: str, event_type: str) -> IngestResult:
    if not results:
        return IngestResult(accepted=True, event_type=event_type, meeting_id=meeting_id)
    changed = [r for r in results if r.changed]
    primary = changed[-1] if changed else results[-1]
    return IngestResult(
        accepted=True,
        event_type=event_type,
        meeting_id=meeting_id,
        transition=primary.kind if len(results) == 1 else (
            TransitionKind.CLOSED if changed else TransitionKind.NOOP
        ),
        session=primary.session if len(results) == 1 else None,
    )


class EventIngest:
    """
    Normalizes heterogeneous inbound events (webhook deliveries and
    authenticated self check-in/out) into engine events.

    Every entry point returns an IngestResult; rejections (invalid
    credential, malformed event) are counted and reported, never raised.
    """

    def __init__(
        self,
        engine: SessionEngine,
        resolver: IdentityResolver,
        metrics: Optional[HealthMetrics] = None,
    ) -> None:
        self._engine = engine
        self._resolver = resolver
        self._metrics = metrics

    # ------------------------------------------------------------------
    # Push channel
    # ------------------------------------------------------------------
    async def to_events(self, body: Mapping[str, Any]) -> list:
        """
        Translate one webhook delivery into engine events.

        Raises MalformedEvent for missing fields and InvalidCredential for a
        participant without any identifying field. Unsupported event types
        yield an empty list.
        """
        if not isinstance(body, Mapping):
            raise MalformedEvent("Webhook body must be an object.")

        event_type = body.get("event")
        payload = body.get("payload")
        if not event_type or not isinstance(payload, Mapping):
            raise MalformedEvent("Webhook body is missing 'event' or 'payload'.")
        if event_type not in SUPPORTED_PUSH_EVENTS:
            return []

        obj = payload.get("object")
        if not isinstance(obj, Mapping):
            raise MalformedEvent(f"{event_type} has no 'object'.")

        meeting_id = obj.get("id")
        if meeting_id in (None, ""):
            raise MalformedEvent(f"{event_type} is missing the meeting id.")
        meeting_id = str(meeting_id)
        event_ts = parse_timestamp(body.get("event_ts"))

        try:
            if event_type == MEETING_STARTED:
                return [
                    MeetingStartedEvent(
                        meeting_id=meeting_id,
                        timestamp=parse_timestamp(obj.get("start_time")) or event_ts,
                        topic=obj.get("topic"),
                        scheduled_duration_minutes=obj.get("duration") or None,
                    )
                ]
            if event_type == MEETING_ENDED:
                return [
                    MeetingEndedEvent(
                        meeting_id=meeting_id,
                        timestamp=parse_timestamp(obj.get("end_time")) or event_ts,
                        source=EventSource.PUSH,
                    )
                ]

            participant = obj.get("participant")
            if not isinstance(participant, Mapping):
                raise MalformedEvent(f"{event_type} is missing the participant.")
            identity = await self._resolver.resolve_participant(participant)

            if event_type == PARTICIPANT_JOINED:
                return [
                    JoinEvent(
                        meeting_id=meeting_id,
                        identity=identity,
                        source=EventSource.PUSH,
                        timestamp=parse_timestamp(participant.get("join_time")) or event_ts,
                    )
                ]
            return [
                LeaveEvent(
                    meeting_id=meeting_id,
                    identity=identity,
                    source=EventSource.PUSH,
                    timestamp=parse_timestamp(participant.get("leave_time")) or event_ts,
                )
            ]
        except ValidationError as exc:
            raise MalformedEvent(f"{event_type} could not be normalized: {exc}") from exc

    async def ingest_push(self, body: Mapping[str, Any]) -> IngestResult:
        """
        Process one webhook delivery. Never raises: the push channel is
        at-least-once, so internal failures are logged and counted only.
        """
        self._count("events_received")
        event_type = body.get("event") if isinstance(body, Mapping) else None
        meeting_id = None

        try:
            events = await self.to_events(body)
            if not events:
                logger.debug("Ignoring unsupported webhook event %r", event_type)
                return IngestResult(
                    accepted=False,
                    event_type=event_type,
                    detail="Unsupported event type; acknowledged and ignored.",
                )

            results: List[TransitionResult] = []
            for event in events:
                meeting_id = event.meeting_id
                results.extend(await self._engine.apply(event))
            return _summarize(results, meeting_id, event_type)

        except (MalformedEvent, InvalidCredential) as exc:
            self._count("events_rejected")
            logger.warning("Rejected webhook %r: %s", event_type, exc)
            return IngestResult.rejected(exc, event_type=event_type, meeting_id=meeting_id)
        except Exception as exc:  # noqa: BLE001 - the push channel is always acknowledged
            self._count("ingest_failures")
            logger.exception("Failed to process webhook %r", event_type)
            return IngestResult.rejected(exc, event_type=event_type, meeting_id=meeting_id)

    # ------------------------------------------------------------------
    # Authenticated self check-in / check-out
    # ------------------------------------------------------------------
    async def ingest_token_action(
        self,
        meeting_id: str,
        credential: str,
        *,
        action: str,
        source: Any = EventSource.TOKEN,
        timestamp: Optional[datetime] = None,
    ) -> IngestResult:
        """
        Resolve the credential and apply a join or leave on behalf of its
        owner.

        Invalid credentials and malformed requests come back as rejected
        results; store failures propagate to the caller.
        """
        self._count("events_received")
        event_type = f"token.{action}"

        try:
            if not meeting_id or not str(meeting_id).strip():
                raise MalformedEvent("Meeting id is required.")
            meeting_id = str(meeting_id).strip()
            event_source = parse_source(source)
            identity = await self._resolver.resolve_token(credential)

            if action == "join":
                event = JoinEvent(
                    meeting_id=meeting_id,
                    identity=identity,
                    source=event_source,
                    timestamp=timestamp,
                )
            elif action == "leave":
                event = LeaveEvent(
                    meeting_id=meeting_id,
                    identity=identity,
                    source=event_source,
                    timestamp=timestamp,
                )
            else:
                raise MalformedEvent(f"Unknown action: {action!r}")
        except (MalformedEvent, InvalidCredential) as exc:
            self._count("events_rejected")
            logger.info("Rejected %s for meeting %s: %s", event_type, meeting_id, exc)
            return IngestResult.rejected(exc, event_type=event_type, meeting_id=meeting_id)

        results = await self._engine.apply(event)
        return _summarize(results, meeting_id, event_type)

    def _count(self, name: str) -> None:
        if self._metrics is not None:
            self._metrics.increment(name)

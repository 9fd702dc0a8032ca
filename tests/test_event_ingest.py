# tests/test_event_ingest.py
from datetime import datetime, timezone

import pytest

from app.core.errors import MalformedEvent
from app.schemas.events import JoinEvent, LeaveEvent, MeetingEndedEvent, MeetingStartedEvent
from app.schemas.session import EventSource, TransitionKind
from app.services.event_ingest import parse_source, parse_timestamp

from tests.conftest import T0, make_token

MEETING = "85746352712"


def _participant_event(event: str, **participant) -> dict:
    participant.setdefault("user_id", "zu-1")
    participant.setdefault("email", "ada@example.edu")
    return {
        "event": event,
        "event_ts": 1741006800000,
        "payload": {"object": {"id": MEETING, "participant": participant}},
    }


def test_parse_timestamp_formats():
    assert parse_timestamp("2025-03-03T09:00:00Z") == T0
    assert parse_timestamp("2025-03-03T10:00:00+01:00") == T0
    assert parse_timestamp(int(T0.timestamp() * 1000)) == T0
    # Naive values are taken as UTC.
    assert parse_timestamp(datetime(2025, 3, 3, 9, 0)) == T0
    assert parse_timestamp(None) is None
    assert parse_timestamp("") is None
    assert parse_timestamp("not a date") is None
    assert parse_timestamp(["2025"]) is None


def test_parse_source():
    assert parse_source("TOKEN") == EventSource.TOKEN
    assert parse_source(EventSource.POLL) == EventSource.POLL
    with pytest.raises(MalformedEvent):
        parse_source("carrier-pigeon")


@pytest.mark.asyncio
async def test_participant_joined_is_normalized(service):
    (event,) = await service.ingest.to_events(
        _participant_event(
            "meeting.participant_joined",
            user_name="Ada Lovelace",
            join_time="2025-03-03T09:02:00Z",
        )
    )

    assert isinstance(event, JoinEvent)
    assert event.meeting_id == MEETING
    assert event.source == EventSource.PUSH
    assert event.identity.key == "email:ada@example.edu"
    assert event.timestamp == datetime(2025, 3, 3, 9, 2, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_participant_left_falls_back_to_event_ts(service):
    (event,) = await service.ingest.to_events(_participant_event("meeting.participant_left"))

    assert isinstance(event, LeaveEvent)
    assert event.timestamp == parse_timestamp(1741006800000)


@pytest.mark.asyncio
async def test_meeting_lifecycle_events_are_normalized(service):
    (started,) = await service.ingest.to_events(
        {
            "event": "meeting.started",
            "payload": {
                "object": {
                    "id": 85746352712,
                    "topic": "Algorithms",
                    "duration": 90,
                    "start_time": "2025-03-03T09:00:00Z",
                }
            },
        }
    )
    (ended,) = await service.ingest.to_events(
        {
            "event": "meeting.ended",
            "payload": {"object": {"id": MEETING, "end_time": "2025-03-03T10:30:00Z"}},
        }
    )

    assert isinstance(started, MeetingStartedEvent)
    assert started.meeting_id == MEETING
    assert started.scheduled_duration_minutes == 90
    assert started.timestamp == T0
    assert isinstance(ended, MeetingEndedEvent)
    assert ended.timestamp == datetime(2025, 3, 3, 10, 30, tzinfo=timezone.utc)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "body",
    [
        {},
        {"event": "meeting.participant_joined"},
        {"event": "meeting.participant_joined", "payload": {}},
        {"event": "meeting.participant_joined", "payload": {"object": {"participant": {}}}},
        {"event": "meeting.participant_joined", "payload": {"object": {"id": MEETING}}},
    ],
)
async def test_malformed_push_bodies_raise(service, body):
    with pytest.raises(MalformedEvent):
        await service.ingest.to_events(body)


@pytest.mark.asyncio
async def test_unsupported_event_is_acknowledged_and_ignored(service):
    result = await service.ingest.ingest_push(
        {"event": "recording.completed", "payload": {"object": {"id": MEETING}}}
    )

    assert result.accepted is False
    assert result.error is None
    assert service.metrics.get("events_received") == 1
    assert service.metrics.get("events_rejected") == 0


@pytest.mark.asyncio
async def test_push_without_identity_is_rejected_not_raised(service):
    result = await service.ingest.ingest_push(
        _participant_event("meeting.participant_joined", user_id=None, email=None)
    )

    assert result.accepted is False
    assert result.error == "InvalidCredential"
    assert service.metrics.get("events_rejected") == 1
    assert await service.store.list_sessions(MEETING) == []


@pytest.mark.asyncio
async def test_push_join_reaches_engine(service):
    result = await service.ingest.ingest_push(
        _participant_event("meeting.participant_joined", join_time="2025-03-03T09:00:00Z")
    )

    assert result.accepted is True
    assert result.transition == TransitionKind.CREATED
    assert result.meeting_id == MEETING
    assert result.session.join_time == T0


@pytest.mark.asyncio
async def test_token_action_with_bad_credential_is_rejected(service):
    result = await service.ingest.ingest_token_action(MEETING, "garbage", action="join")

    assert result.accepted is False
    assert result.error == "InvalidCredential"
    assert await service.store.list_sessions(MEETING) == []


@pytest.mark.asyncio
async def test_token_action_with_bad_source_or_meeting_is_malformed(service):
    bad_source = await service.ingest.ingest_token_action(
        MEETING, make_token(), action="join", source="fax"
    )
    no_meeting = await service.ingest.ingest_token_action("  ", make_token(), action="join")

    assert bad_source.error == "MalformedEvent"
    assert no_meeting.error == "MalformedEvent"


@pytest.mark.asyncio
async def test_token_join_then_leave(service, clock):
    joined = await service.ingest.ingest_token_action(MEETING, make_token(), action="join")
    clock.advance(minutes=30)
    left = await service.ingest.ingest_token_action(MEETING, make_token(), action="leave")

    assert joined.transition == TransitionKind.CREATED
    assert joined.session.source == EventSource.TOKEN
    assert left.transition == TransitionKind.CLOSED
    assert left.session.duration_minutes == 30

# tests/test_fanout.py
import pytest

from app.services.fanout import (
    SESSION_JOINED,
    STATISTICS_CHANNEL,
    RealtimeFanout,
    meeting_channel,
)
from app.services.metrics import HealthMetrics


@pytest.mark.asyncio
async def test_publish_reaches_every_subscriber_of_the_channel():
    fanout = RealtimeFanout()
    channel = meeting_channel("m-1")
    first = fanout.subscribe(channel)
    second = fanout.subscribe(channel)
    other = fanout.subscribe(STATISTICS_CHANNEL)

    delivered = fanout.publish(channel, SESSION_JOINED, {"identity_key": "user:1"})

    assert delivered == 2
    message = first.get_nowait()
    assert message["event"] == SESSION_JOINED
    assert message["channel"] == "meeting:m-1"
    assert message["data"] == {"identity_key": "user:1"}
    assert second.qsize() == 1
    assert other.empty()


@pytest.mark.asyncio
async def test_full_queue_drops_message_without_blocking_others():
    metrics = HealthMetrics()
    fanout = RealtimeFanout(queue_size=1, metrics=metrics)
    slow = fanout.subscribe("meeting:m-1")
    fast = fanout.subscribe("meeting:m-1")

    fanout.publish("meeting:m-1", SESSION_JOINED, {"n": 1})
    fast.get_nowait()
    delivered = fanout.publish("meeting:m-1", SESSION_JOINED, {"n": 2})

    assert delivered == 1
    assert slow.qsize() == 1
    assert slow.get_nowait()["data"] == {"n": 1}
    assert metrics.get("fanout_dropped") == 1
    assert metrics.get("fanout_published") == 3


@pytest.mark.asyncio
async def test_unsubscribe_stops_delivery():
    fanout = RealtimeFanout()
    queue = fanout.subscribe("statistics")
    fanout.unsubscribe("statistics", queue)
    # Unknown queues and channels are ignored.
    fanout.unsubscribe("statistics", queue)
    fanout.unsubscribe("nope", queue)

    assert fanout.publish("statistics", "attendanceStatistics", {}) == 0
    assert fanout.subscriber_count("statistics") == 0
    assert queue.empty()

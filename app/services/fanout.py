# app/services/fanout.py
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Set

from app.services.metrics import HealthMetrics

logger = logging.getLogger(__name__)

STATISTICS_CHANNEL = "statistics"

SESSION_JOINED = "sessionJoined"
SESSION_LEFT = "sessionLeft"
ATTENDANCE_UPDATED = "attendanceUpdated"
ATTENDANCE_STATISTICS = "attendanceStatistics"
TRACKING_STARTED = "trackingStarted"
TRACKING_STOPPED = "trackingStopped"


def meeting_channel(meeting_id: str) -> str:
    return f"meeting:{meeting_id}"


class RealtimeFanout:
    """
    Per-channel subscriber registry.

    Each subscriber owns a bounded asyncio.Queue. Publishing is synchronous
    and uses put_nowait: a subscriber whose queue is full simply misses that
    message, so a slow or disconnected client can never block or fail the
    session transition that produced it.
    """

    def __init__(self, queue_size: int = 100, metrics: Optional[HealthMetrics] = None) -> None:
        self._queue_size = queue_size
        self._metrics = metrics
        # Key: channel, Value: set of subscriber queues
        self._subscribers: Dict[str, Set[asyncio.Queue]] = {}

    def subscribe(self, channel: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)
        self._subscribers.setdefault(channel, set()).add(queue)
        logger.debug("Subscriber added: channel=%s total=%d", channel, len(self._subscribers[channel]))
        return queue

    def unsubscribe(self, channel: str, queue: asyncio.Queue) -> None:
        subscribers = self._subscribers.get(channel)
        if not subscribers:
            return
        subscribers.discard(queue)
        if not subscribers:
            self._subscribers.pop(channel, None)
        logger.debug("Subscriber removed: channel=%s", channel)

    def subscriber_count(self, channel: str) -> int:
        return len(self._subscribers.get(channel, ()))

    def publish(self, channel: str, event: str, data: Dict[str, Any]) -> int:
        """
        Deliver a message to every subscriber of `channel`.

        Returns the number of subscribers that received it.
        """
        message = {
            "event": event,
            "channel": channel,
            "data": data,
            "timestamp": datetime.now(tz=timezone.utc).isoformat(),
        }
        delivered = 0
        # Iterate over a snapshot: unsubscribe() may run from other handlers.
        for queue in list(self._subscribers.get(channel, ())):
            try:
                queue.put_nowait(message)
            except asyncio.QueueFull:
                logger.warning("Dropping %s for a slow subscriber on %s", event, channel)
                self._count("fanout_dropped")
                continue
            delivered += 1
        if delivered:
            self._count("fanout_published", delivered)
        return delivered

    def _count(self, name: str, amount: int = 1) -> None:
        if self._metrics is not None:
            self._metrics.increment(name, amount)

    def close(self) -> None:
        self._subscribers.clear()

# app/services/metrics.py
from __future__ import annotations

import threading
from collections import Counter
from datetime import datetime, timezone
from typing import Any, Dict


class HealthMetrics:
    """
    Passive operational counters shared by all components.

    Components only increment; nothing here reads or mutates session state.
    A plain threading lock keeps increments safe from worker threads as well
    as the event loop.
    """

    COUNTERS = (
        "external_calls_total",
        "external_calls_failed",
        "external_call_retries",
        "snapshot_cache_hits",
        "snapshot_cache_misses",
        "reconciler_ticks",
        "reconciler_ticks_failed",
        "reconciler_ticks_skipped",
        "sweeps",
        "sweeps_failed",
        "meetings_auto_ended",
        "stale_sessions_closed",
        "transitions",
        "events_received",
        "events_rejected",
        "ingest_failures",
        "fanout_published",
        "fanout_dropped",
    )

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counters: Counter[str] = Counter({name: 0 for name in self.COUNTERS})
        self._active_sessions: Dict[str, int] = {}
        self._started_at = datetime.now(tz=timezone.utc)

    def increment(self, name: str, amount: int = 1) -> None:
        with self._lock:
            self._counters[name] += amount

    def get(self, name: str) -> int:
        with self._lock:
            return self._counters[name]

    def set_active_sessions(self, meeting_id: str, count: int) -> None:
        with self._lock:
            if count <= 0:
                self._active_sessions.pop(meeting_id, None)
            else:
                self._active_sessions[meeting_id] = count

    def snapshot(self) -> Dict[str, Any]:
        """
        Return a copy of every counter and gauge.
        """
        with self._lock:
            return {
                "counters": dict(self._counters),
                "active_sessions": dict(self._active_sessions),
                "started_at": self._started_at.isoformat(),
                "generated_at": datetime.now(tz=timezone.utc).isoformat(),
            }

# tests/test_metrics.py
from app.services.metrics import HealthMetrics


def test_counters_start_at_zero_and_increment():
    metrics = HealthMetrics()

    assert metrics.get("external_calls_total") == 0
    metrics.increment("external_calls_total")
    metrics.increment("external_calls_total", 2)

    assert metrics.get("external_calls_total") == 3


def test_snapshot_is_a_copy():
    metrics = HealthMetrics()
    metrics.set_active_sessions("m-1", 2)
    metrics.set_active_sessions("m-2", 1)
    metrics.set_active_sessions("m-2", 0)

    snapshot = metrics.snapshot()
    snapshot["counters"]["transitions"] = 99
    snapshot["active_sessions"]["m-3"] = 5

    assert metrics.get("transitions") == 0
    fresh = metrics.snapshot()
    assert fresh["active_sessions"] == {"m-1": 2}
    assert set(HealthMetrics.COUNTERS) <= set(fresh["counters"])
    assert "started_at" in fresh and "generated_at" in fresh

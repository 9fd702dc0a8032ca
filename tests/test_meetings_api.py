# tests/test_meetings_api.py
from http import HTTPStatus

from fastapi.testclient import TestClient

from app.core.errors import ExternalCallFailure
from app.main import create_app

from tests.conftest import build_settings, make_token

MEETING = "85746352712"


def _join(client, minute_iso: str, **claims):
    return client.post(
        f"/attendance/{MEETING}/join",
        headers={"Authorization": f"Bearer {make_token(**claims)}"},
        json={"timestamp": minute_iso},
    )


def test_unknown_meeting_is_404(client):
    resp = client.get("/meetings/nope")
    assert resp.status_code == HTTPStatus.NOT_FOUND


def test_start_meeting_records_schedule(client):
    resp = client.post(
        f"/meetings/{MEETING}/start",
        json={"topic": "Algorithms", "scheduled_duration_minutes": 90},
    )

    assert resp.status_code == HTTPStatus.OK
    data = resp.json()
    assert data["status"] == "Started"
    assert data["topic"] == "Algorithms"
    assert data["scheduled_duration_minutes"] == 90
    assert client.get(f"/meetings/{MEETING}").json()["status"] == "Started"


def test_start_meeting_rejects_non_positive_duration(client):
    resp = client.post(f"/meetings/{MEETING}/start", json={"scheduled_duration_minutes": 0})
    assert resp.status_code == HTTPStatus.UNPROCESSABLE_ENTITY


def test_end_meeting_closes_sessions_and_blocks_later_joins(client):
    _join(client, "2025-03-03T09:00:00Z")
    _join(client, "2025-03-03T09:05:00Z", sub="s-2", email="bob@example.edu")

    resp = client.post(f"/meetings/{MEETING}/end", json={"end_time": "2025-03-03T10:00:00Z"})

    assert resp.status_code == HTTPStatus.OK
    closed = resp.json()["closed_sessions"]
    assert len(closed) == 2
    assert {s["close_reason"] for s in closed} == {"MeetingEnded"}
    assert {s["leave_time"] for s in closed} == {"2025-03-03T10:00:00Z"}

    late = _join(client, "2025-03-03T10:05:00Z")
    assert late.json()["transition"] == "noop"

    meeting = client.get(f"/meetings/{MEETING}").json()
    assert meeting["status"] == "Ended"
    assert meeting["active_session_count"] == 0


def test_tracking_unknown_meeting_is_404(client):
    resp = client.post("/meetings/unknown/tracking")
    assert resp.status_code == HTTPStatus.NOT_FOUND


def test_start_and_stop_tracking(client, platform):
    platform.meetings[MEETING] = {"id": MEETING, "topic": "Algorithms", "duration": 60}

    started = client.post(f"/meetings/{MEETING}/tracking")
    assert started.status_code == HTTPStatus.OK
    assert started.json()["tracking_enabled"] is True

    metrics = client.get("/health/metrics").json()
    assert metrics["tracked_meetings"] == [MEETING]

    stopped = client.delete(f"/meetings/{MEETING}/tracking")
    assert stopped.status_code == HTTPStatus.OK
    assert stopped.json() == {"meeting_id": MEETING, "tracking": False, "changed": True}

    again = client.delete(f"/meetings/{MEETING}/tracking")
    assert again.json()["changed"] is False


def test_reconcile_now_recovers_missed_join(client, platform):
    platform.participants[MEETING] = [
        {"user_id": "zu-9", "user_name": "Grace Hopper", "email": "grace@example.edu"}
    ]

    resp = client.post(f"/meetings/{MEETING}/reconcile")

    assert resp.status_code == HTTPStatus.OK
    summary = resp.json()
    assert summary["failed"] is False
    assert summary["participants"] == 1
    assert summary["opened"] == 1

    report = client.get(f"/attendance/{MEETING}").json()
    assert report["sessions"][0]["session"]["source"] == "poll"


def test_reconcile_failure_is_reported_not_raised(client, platform):
    platform.failures = [ExternalCallFailure("forbidden", status_code=403, retryable=False)]

    resp = client.post(f"/meetings/{MEETING}/reconcile")

    assert resp.status_code == HTTPStatus.OK
    assert resp.json()["failed"] is True


def test_tracking_without_platform_credentials_is_503(tmp_path):
    app = create_app(build_settings(tmp_path))
    with TestClient(app) as client:
        resp = client.post(f"/meetings/{MEETING}/tracking")
        assert resp.status_code == HTTPStatus.SERVICE_UNAVAILABLE

        resp = client.post(f"/meetings/{MEETING}/reconcile")
        assert resp.status_code == HTTPStatus.SERVICE_UNAVAILABLE

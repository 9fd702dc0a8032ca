# tests/test_health.py
from http import HTTPStatus

from fastapi.testclient import TestClient

from app.main import create_app

from tests.conftest import build_settings


def test_health_endpoint_ok(client):
    """
    Basic sanity test to verify that /health responds with 200 OK
    and has the expected JSON shape and types.
    """
    response = client.get("/health")

    assert response.status_code == HTTPStatus.OK
    data = response.json()

    assert data["status"] == "ok"
    assert isinstance(data["app_name"], str)
    assert data["environment"] == "test"
    assert "timestamp_utc" in data


def test_health_endpoint_reports_configured_app_name(tmp_path):
    """
    The /health response reflects the settings the app was built with.
    """
    app = create_app(build_settings(tmp_path, APP_NAME="Attendance Test App", APP_ENV="stage"))
    with TestClient(app) as test_client:
        response = test_client.get("/health")

    assert response.status_code == HTTPStatus.OK
    data = response.json()
    assert data["app_name"] == "Attendance Test App"
    assert data["environment"] == "stage"


def test_health_metrics_endpoint(client):
    """
    /health/metrics exposes the counters and gauges without touching state.
    """
    client.post(
        "/webhooks/zoom",
        json={"event": "recording.completed", "payload": {}},
    )

    response = client.get("/health/metrics")

    assert response.status_code == HTTPStatus.OK
    data = response.json()
    assert data["counters"]["events_received"] == 1
    assert data["counters"]["external_calls_total"] == 0
    assert data["active_sessions"] == {}
    assert data["tracked_meetings"] == []
    assert "started_at" in data and "generated_at" in data

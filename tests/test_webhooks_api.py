# tests/test_webhooks_api.py
import hashlib
import hmac
import json
import time
from http import HTTPStatus

import pytest
from fastapi.testclient import TestClient

from app.main import create_app
from app.services.webhook_validator import WebhookValidator

from tests.conftest import WEBHOOK_SECRET, build_settings

MEETING = "85746352712"


def _joined(join_time: str = "2025-03-03T09:00:00Z") -> dict:
    return {
        "event": "meeting.participant_joined",
        "payload": {
            "object": {
                "id": MEETING,
                "participant": {
                    "user_id": "zu-1",
                    "user_name": "Ada Lovelace",
                    "email": "ada@example.edu",
                    "join_time": join_time,
                },
            }
        },
    }


@pytest.fixture
def signed_client(tmp_path, clock, platform):
    app = create_app(
        build_settings(tmp_path, ZOOM_WEBHOOK_SECRET_TOKEN=WEBHOOK_SECRET),
        platform_client=platform,
        clock=clock,
    )
    with TestClient(app) as test_client:
        yield test_client


def _signed_post(client, body: dict, *, secret: str = WEBHOOK_SECRET, timestamp: str | None = None):
    raw = json.dumps(body).encode("utf-8")
    timestamp = timestamp or str(int(time.time()))
    return client.post(
        "/webhooks/zoom",
        content=raw,
        headers={
            "Content-Type": "application/json",
            "x-zm-request-timestamp": timestamp,
            "x-zm-signature": WebhookValidator(secret).sign(timestamp, raw),
        },
    )


def test_unsigned_webhook_is_processed_without_secret(client):
    resp = client.post("/webhooks/zoom", json=_joined())

    assert resp.status_code == HTTPStatus.OK
    assert resp.json() == {
        "received": True,
        "event_type": "meeting.participant_joined",
        "meeting_id": MEETING,
        "processed": True,
    }

    report = client.get(f"/attendance/{MEETING}").json()
    assert report["sessions"][0]["session"]["source"] == "push"


def test_unprocessable_delivery_is_still_acknowledged(client):
    resp = client.post(
        "/webhooks/zoom",
        json={"event": "meeting.participant_left", "payload": {"object": {"id": MEETING}}},
    )

    assert resp.status_code == HTTPStatus.OK
    assert resp.json()["processed"] is False


def test_unsupported_event_is_acknowledged(client):
    resp = client.post("/webhooks/zoom", json={"event": "recording.completed", "payload": {}})

    assert resp.status_code == HTTPStatus.OK
    assert resp.json()["processed"] is False


def test_non_json_body_is_bad_request(client):
    resp = client.post(
        "/webhooks/zoom",
        content=b"not json",
        headers={"Content-Type": "application/json"},
    )
    assert resp.status_code == HTTPStatus.BAD_REQUEST


def test_url_validation_without_secret_is_bad_request(client):
    resp = client.post(
        "/webhooks/zoom",
        json={"event": "endpoint.url_validation", "payload": {"plainToken": "abc"}},
    )
    assert resp.status_code == HTTPStatus.BAD_REQUEST


def test_signed_delivery_is_accepted(signed_client):
    resp = _signed_post(signed_client, _joined())

    assert resp.status_code == HTTPStatus.OK
    assert resp.json()["processed"] is True


def test_bad_signature_is_unauthorized(signed_client):
    resp = _signed_post(signed_client, _joined(), secret="someone-else")

    assert resp.status_code == HTTPStatus.UNAUTHORIZED
    assert signed_client.get(f"/attendance/{MEETING}").json()["sessions"] == []


def test_missing_signature_is_unauthorized(signed_client):
    resp = signed_client.post("/webhooks/zoom", json=_joined())
    assert resp.status_code == HTTPStatus.UNAUTHORIZED


def test_replayed_delivery_is_unauthorized(signed_client):
    stale = str(int(time.time()) - 3600)
    resp = _signed_post(signed_client, _joined(), timestamp=stale)
    assert resp.status_code == HTTPStatus.UNAUTHORIZED


def test_url_validation_challenge_is_answered(signed_client):
    resp = _signed_post(
        signed_client,
        {"event": "endpoint.url_validation", "payload": {"plainToken": "qgg8vlvZRS6UYooatFL8Aw"}},
    )

    assert resp.status_code == HTTPStatus.OK
    expected = hmac.new(
        WEBHOOK_SECRET.encode("utf-8"), b"qgg8vlvZRS6UYooatFL8Aw", hashlib.sha256
    ).hexdigest()
    assert resp.json() == {"plainToken": "qgg8vlvZRS6UYooatFL8Aw", "encryptedToken": expected}

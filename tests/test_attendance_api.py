# tests/test_attendance_api.py
from http import HTTPStatus

from tests.conftest import make_token

MEETING = "85746352712"


def _auth(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


def test_check_in_without_token_is_unauthorized(client):
    resp = client.post(f"/attendance/{MEETING}/join")

    assert resp.status_code == HTTPStatus.UNAUTHORIZED
    assert "detail" in resp.json()


def test_check_in_with_foreign_signature_is_unauthorized(client):
    from jose import jwt

    token = jwt.encode({"sub": "s-1"}, "not-our-secret", algorithm="HS256")
    resp = client.post(f"/attendance/{MEETING}/join", headers=_auth(token))

    assert resp.status_code == HTTPStatus.UNAUTHORIZED


def test_check_in_source_tag_is_validated(client):
    resp = client.post(
        f"/attendance/{MEETING}/join",
        headers=_auth(make_token()),
        json={"source": "push", "timestamp": "2025-03-03T09:00:00Z"},
    )
    # "push" is a valid source tag, so this is accepted.
    assert resp.status_code == HTTPStatus.OK

    resp = client.post(
        f"/attendance/{MEETING}/join",
        headers=_auth(make_token()),
        json={"source": "fax"},
    )
    assert resp.status_code == HTTPStatus.UNPROCESSABLE_ENTITY


def test_check_in_check_out_and_report(client, clock):
    client.post(
        f"/meetings/{MEETING}/start",
        json={"start_time": "2025-03-03T09:00:00Z", "scheduled_duration_minutes": 60},
    )

    joined = client.post(
        f"/attendance/{MEETING}/join",
        headers=_auth(make_token()),
        json={"timestamp": "2025-03-03T09:02:00Z"},
    )
    assert joined.status_code == HTTPStatus.OK
    body = joined.json()
    assert body["accepted"] is True
    assert body["transition"] == "created"
    assert body["session"]["identity_key"] == "email:ada@example.edu"
    assert body["attendance"]["status"] == "InProgress"

    # Second check-in does not open a second session.
    again = client.post(
        f"/attendance/{MEETING}/join",
        headers=_auth(make_token()),
        json={"timestamp": "2025-03-03T09:02:00Z"},
    )
    assert again.json()["transition"] == "noop"

    clock.advance(minutes=54)
    left = client.post(f"/attendance/{MEETING}/leave", headers=_auth(make_token()))
    assert left.status_code == HTTPStatus.OK
    assert left.json()["transition"] == "closed"
    assert left.json()["session"]["close_reason"] == "SelfReported"

    report = client.get(f"/attendance/{MEETING}")
    assert report.status_code == HTTPStatus.OK
    data = report.json()
    assert data["threshold"] == 85
    assert data["scheduled_duration_minutes"] == 60
    (row,) = data["sessions"]
    assert row["attendance"]["duration_minutes"] == 52
    assert row["attendance"]["percentage"] == 87
    assert row["attendance"]["status"] == "Present"
    assert data["statistics"]["present"] == 1

    strict = client.get(f"/attendance/{MEETING}", params={"threshold": 90}).json()
    assert strict["sessions"][0]["attendance"]["status"] == "Absent"


def test_leave_without_session_is_ok_noop(client):
    resp = client.post(f"/attendance/{MEETING}/leave", headers=_auth(make_token()))

    assert resp.status_code == HTTPStatus.OK
    assert resp.json()["transition"] == "noop"
    assert resp.json()["session"] is None


def test_report_threshold_out_of_range_is_rejected(client):
    resp = client.get(f"/attendance/{MEETING}", params={"threshold": 150})

    assert resp.status_code == HTTPStatus.UNPROCESSABLE_ENTITY

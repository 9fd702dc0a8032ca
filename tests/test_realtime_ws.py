# tests/test_realtime_ws.py
from tests.conftest import make_token

MEETING = "85746352712"


def test_meeting_socket_acknowledges_and_answers_ping(client):
    with client.websocket_connect(f"/ws/meetings/{MEETING}") as ws:
        ack = ws.receive_json()
        assert ack == {"type": "connection_ack", "channel": f"meeting:{MEETING}"}

        ws.send_json({"type": "ping"})
        pong = ws.receive_json()
        assert pong["type"] == "pong"
        assert "timestamp" in pong


def test_meeting_socket_streams_session_events(client):
    with client.websocket_connect(f"/ws/meetings/{MEETING}") as ws:
        ws.receive_json()

        resp = client.post(
            f"/attendance/{MEETING}/join",
            headers={"Authorization": f"Bearer {make_token()}"},
        )
        assert resp.status_code == 200

        joined = ws.receive_json()
        assert joined["event"] == "sessionJoined"
        assert joined["channel"] == f"meeting:{MEETING}"
        assert joined["data"]["session"]["identity_key"] == "email:ada@example.edu"
        assert joined["data"]["attendance"]["status"] == "InProgress"

        stats = ws.receive_json()
        assert stats["event"] == "attendanceStatistics"
        assert stats["data"]["statistics"]["total"] == 1


def test_statistics_socket_receives_every_meeting(client):
    with client.websocket_connect("/ws/statistics") as ws:
        assert ws.receive_json()["channel"] == "statistics"

        client.post(
            "/attendance/other-meeting/join",
            headers={"Authorization": f"Bearer {make_token()}"},
        )

        message = ws.receive_json()
        assert message["event"] == "attendanceStatistics"
        assert message["data"]["meeting_id"] == "other-meeting"

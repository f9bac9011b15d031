"""
Tests for the event hub and the WebSocket event channel.
"""

from smartscribe.core import realtime


def _join(ws, user_id, token):
    ws.send_json({"type": "join", "data": {"userId": user_id, "token": token}})
    return ws.receive_json()


def test_ping(client):
    with client.websocket_connect("/ws/events") as ws:
        ws.send_json({"type": "ping"})
        assert ws.receive_json()["type"] == "pong"


def test_join_receives_private_notification(client, admin_token, make_user):
    user, token = make_user()
    with client.websocket_connect("/ws/events") as ws:
        reply = _join(ws, user["id"], token)
        assert reply["type"] == "joined"
        assert reply["data"]["userId"] == user["id"]

        response = client.post(
            "/api/notifications/",
            headers={"Authorization": f"Bearer {admin_token}"},
            json={"title": "Ping", "message": "For you", "audience": "user", "targetUserId": user["id"]},
        )
        assert response.status_code == 201

        event = ws.receive_json()
        assert event["type"] == realtime.NEW_NOTIFICATION
        assert event["data"]["title"] == "Ping"
        assert event["data"]["isRead"] is False


def test_join_with_someone_elses_token_fails(client, make_user):
    victim, _ = make_user()
    _, attacker_token = make_user()
    with client.websocket_connect("/ws/events") as ws:
        reply = _join(ws, victim["id"], attacker_token)
        assert reply["type"] == "join_fail"
        assert reply["data"]["message"] == "Token does not match user"


def test_join_with_bad_token_fails(client, make_user):
    user, _ = make_user()
    with client.websocket_connect("/ws/events") as ws:
        reply = _join(ws, user["id"], "garbage")
        assert reply["type"] == "join_fail"


def test_broadcast_reaches_unjoined_sockets(client, admin_token):
    with client.websocket_connect("/ws/events") as ws:
        # Round trip so the socket is registered before the broadcast
        ws.send_json({"type": "ping"})
        assert ws.receive_json()["type"] == "pong"
        client.post(
            "/api/maintenance/toggle-mode",
            headers={"Authorization": f"Bearer {admin_token}"},
            json={"maintenanceMode": True, "maintenanceMessage": "Upgrading"},
        )
        event = ws.receive_json()
        assert event["type"] == realtime.MAINTENANCE_MODE_CHANGED
        assert event["data"] == {"maintenanceMode": True, "maintenanceMessage": "Upgrading"}


async def test_emit_to_offline_user_is_dropped():
    hub = realtime.EventHub()
    assert await hub.emit_to_user(12345, realtime.NEW_NOTIFICATION, {"id": 1}) == 0
    assert hub.is_online(12345) is False
    assert hub.connection_count == 0

"""Tests for the realtime WebSocket channel.

Each frame is ``{"event": <name>, "data": <payload>}``; the channel is
push-only and clients act through the HTTP endpoints.
"""
import pytest
from fastapi import WebSocketDisconnect
from fastapi.testclient import TestClient

from chatline.auth.tokens import issue_token
from chatline.main import app


@pytest.fixture
def client(users):
    """TestClient sharing one event loop between sockets and requests."""
    with TestClient(app) as c:
        yield c


def ws_url(user_id: str) -> str:
    return f"/ws?token={issue_token(user_id)}"


def receive_ack(ws, user_id: str) -> None:
    assert ws.receive_json() == {"event": "connection:ack", "data": {"userId": user_id}}


def test_rejects_invalid_token(client):
    with pytest.raises(WebSocketDisconnect) as exc_info:
        with client.websocket_connect("/ws?token=not-a-jwt") as ws:
            ws.receive_json()
    assert exc_info.value.code == 1008


def test_rejects_missing_token(client):
    with pytest.raises(WebSocketDisconnect) as exc_info:
        with client.websocket_connect("/ws") as ws:
            ws.receive_json()
    assert exc_info.value.code == 1008


def test_connect_announces_online(client):
    with client.websocket_connect(ws_url("alice")) as ws:
        receive_ack(ws, "alice")
        assert ws.receive_json() == {
            "event": "presence:update",
            "data": {"userId": "alice", "status": "online"},
        }


def test_observer_sees_online_then_offline(client):
    with client.websocket_connect(ws_url("bob")) as bob:
        receive_ack(bob, "bob")
        bob.receive_json()  # own presence

        with client.websocket_connect(ws_url("alice")) as alice:
            receive_ack(alice, "alice")
            assert bob.receive_json()["data"] == {"userId": "alice", "status": "online"}

        assert bob.receive_json() == {
            "event": "presence:update",
            "data": {"userId": "alice", "status": "offline"},
        }


def test_message_pushed_to_recipient(client):
    with client.websocket_connect(ws_url("bob")) as bob:
        receive_ack(bob, "bob")
        bob.receive_json()  # own presence

        response = client.post(
            "/api/chat/messages/direct",
            json={"toUserId": "bob", "text": "ping"},
            headers={"Authorization": f"Bearer {issue_token('alice')}"},
        )
        assert response.status_code == 201

        frame = bob.receive_json()
        assert frame["event"] == "message:new"
        assert frame["data"]["message"]["id"] == response.json()["id"]
        assert frame["data"]["message"]["text"] == "ping"
        # Recipient was live, so the stored status advanced
        assert response.json()["status"] == "delivered"


def test_hidden_user_is_not_broadcast(client):
    with client.websocket_connect(ws_url("bob")) as bob:
        receive_ack(bob, "bob")
        bob.receive_json()  # own presence

        with client.websocket_connect(ws_url("dana")) as dana:
            receive_ack(dana, "dana")
            assert dana.receive_json() == {
                "event": "presence:self",
                "data": {"userId": "dana", "status": "online", "hidden": True},
            }

            client.post(
                "/api/chat/messages/direct",
                json={"toUserId": "bob", "text": "after dana"},
                headers={"Authorization": f"Bearer {issue_token('alice')}"},
            )
            # The next frame bob sees is the message, not dana's presence
            assert bob.receive_json()["event"] == "message:new"


def test_mark_read_pushes_to_reader(client):
    alice_auth = {"Authorization": f"Bearer {issue_token('alice')}"}
    message = client.post(
        "/api/chat/messages/direct", json={"toUserId": "bob", "text": "read me"}, headers=alice_auth
    ).json()

    with client.websocket_connect(ws_url("bob")) as bob:
        receive_ack(bob, "bob")
        bob.receive_json()  # own presence

        client.post(
            "/api/chat/messages/mark-read",
            json={"messageIds": [message["id"]]},
            headers={"Authorization": f"Bearer {issue_token('bob')}"},
        )
        assert bob.receive_json() == {
            "event": "messages:read",
            "data": {"messageIds": [message["id"]]},
        }
        assert bob.receive_json() == {
            "event": "unread:update",
            "data": {"type": "direct", "id": "alice", "unread": 0},
        }


def test_inbound_frames_are_ignored(client):
    with client.websocket_connect(ws_url("bob")) as bob:
        receive_ack(bob, "bob")
        bob.receive_json()  # own presence

        bob.send_bytes(b"\x00\x01")
        bob.send_text("still here")

        response = client.post(
            "/api/chat/messages/direct",
            json={"toUserId": "bob", "text": "after binary"},
            headers={"Authorization": f"Bearer {issue_token('alice')}"},
        )
        frame = bob.receive_json()
        assert frame["event"] == "message:new"
        assert frame["data"]["message"]["id"] == response.json()["id"]
        assert response.json()["status"] == "delivered"

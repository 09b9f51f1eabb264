"""Tests for the chat WebSocket and history endpoints with multiple clients.

Protocol reminders:
1. The token is checked during the handshake; bad tokens never get a session
2. On connect, backend sends {type: "connected", userId, name, connectionId}
3. Every `join` broadcasts {type: "onlineUsers"} to every open connection
"""
import asyncio
from datetime import datetime, timezone

import pytest
from fastapi import WebSocketDisconnect

from app.chat.schemas import ChatMessage


def open_ws(client, token=None):
    url = "/ws/chat" if token is None else f"/ws/chat?token={token}"
    return client.websocket_connect(url)


def receive_type(ws, expected_type):
    """Helper to receive the next event and check its type."""
    event = ws.receive_json()
    assert event["type"] == expected_type, event
    return event


def receive_credentials(ws):
    """Helper to receive and validate the connected event."""
    connected = receive_type(ws, "connected")
    assert "userId" in connected
    assert "connectionId" in connected
    return connected


def join_all(sockets_and_ids):
    """Join each user in turn, draining the presence broadcast everywhere."""
    sockets = [ws for ws, _ in sockets_and_ids]
    for ws, user_id in sockets_and_ids:
        ws.send_json({"type": "join", "userId": user_id})
        for other in sockets:
            receive_type(other, "onlineUsers")


def sync_point(ws, sockets):
    """Round-trip a typing event so everything `ws` sent before is processed."""
    ws.send_json({"type": "typing", "isTyping": False})
    for other in sockets:
        receive_type(other, "userTyping")


# =============================================================================
# Handshake
# =============================================================================


def test_connect_without_token_is_rejected(api_client, chat_service):
    with pytest.raises(WebSocketDisconnect) as exc_info:
        with open_ws(api_client):
            pass

    assert exc_info.value.code == 1008
    assert exc_info.value.reason == "Authentication required"
    assert chat_service.hub.connections == {}


def test_connect_with_bad_token_is_rejected(api_client, chat_service):
    with pytest.raises(WebSocketDisconnect) as exc_info:
        with open_ws(api_client, "not-a-jwt"):
            pass

    assert exc_info.value.code == 1008
    assert exc_info.value.reason == "Invalid token"
    assert len(chat_service.presence) == 0


def test_connected_event_carries_token_identity(api_client, token_for):
    with open_ws(api_client, token_for("u1", "Alice")) as ws:
        creds = receive_credentials(ws)

        assert creds["userId"] == "u1"
        assert creds["name"] == "Alice"


# =============================================================================
# Messaging
# =============================================================================


def test_global_message_reaches_all_global_members(api_client, token_for, store):
    """User u1 sends to the global room; every joined session receives it."""
    with open_ws(api_client, token_for("u1")) as ws1, \
         open_ws(api_client, token_for("u2")) as ws2:
        receive_credentials(ws1)
        receive_credentials(ws2)
        join_all([(ws1, "u1"), (ws2, "u2")])

        ws1.send_json({
            "type": "sendMessage",
            "senderId": "u1",
            "message": "hi",
            "messageId": "m1",
            "recipientId": None,
            "timestamp": "2024-05-01T18:30:00Z",
        })

        data1 = receive_type(ws1, "receiveMessage")
        data2 = receive_type(ws2, "receiveMessage")

        assert data1 == data2
        assert data1["messageId"] == "m1"
        assert data1["senderId"] == "u1"
        assert data1["senderName"] == "U1"
        assert data1["message"] == "hi"
        assert data1["recipientId"] is None
        assert data1["read"] is False
        assert data1["edited"] is False

    stored = asyncio.run(store.get("m1"))
    assert stored is not None
    assert stored.read is False
    assert stored.edited is False
    assert len(store) == 1


def test_direct_message_only_reaches_the_pair(api_client, token_for):
    """u1 -> u2 direct message is not seen by u3 in the global room."""
    with open_ws(api_client, token_for("u1")) as ws1, \
         open_ws(api_client, token_for("u2")) as ws2, \
         open_ws(api_client, token_for("u3")) as ws3:
        sockets = [ws1, ws2, ws3]
        for ws in sockets:
            receive_credentials(ws)
        join_all([(ws1, "u1"), (ws2, "u2"), (ws3, "u3")])

        ws1.send_json({"type": "joinDirect", "userId": "u1", "targetUserId": "u2"})
        ws2.send_json({"type": "joinDirect", "userId": "u2", "targetUserId": "u1"})
        sync_point(ws2, sockets)

        ws1.send_json({
            "type": "sendMessage",
            "message": "just us",
            "messageId": "m2",
            "recipientId": "u2",
        })
        assert receive_type(ws1, "receiveMessage")["messageId"] == "m2"
        assert receive_type(ws2, "receiveMessage")["messageId"] == "m2"

        # u3's next event is the global message, so m2 never reached it
        ws3.send_json({"type": "sendMessage", "message": "anyone?", "messageId": "m3"})
        assert receive_type(ws3, "receiveMessage")["messageId"] == "m3"
        assert receive_type(ws1, "receiveMessage")["messageId"] == "m3"
        assert receive_type(ws2, "receiveMessage")["messageId"] == "m3"


def test_edit_is_broadcast_to_owning_room(api_client, token_for, store):
    with open_ws(api_client, token_for("u1")) as ws1, \
         open_ws(api_client, token_for("u2")) as ws2:
        receive_credentials(ws1)
        receive_credentials(ws2)
        join_all([(ws1, "u1"), (ws2, "u2")])

        ws1.send_json({"type": "sendMessage", "message": "hi", "messageId": "m1"})
        receive_type(ws1, "receiveMessage")
        receive_type(ws2, "receiveMessage")

        ws1.send_json({"type": "editMessage", "messageId": "m1", "newMessage": "hi there"})

        expected = {"type": "messageEdited", "messageId": "m1", "newMessage": "hi there"}
        assert ws1.receive_json() == expected
        assert ws2.receive_json() == expected

    stored = asyncio.run(store.get("m1"))
    assert stored.message == "hi there"
    assert stored.edited is True


def test_delete_unknown_message_reports_error_to_caller(api_client, token_for):
    with open_ws(api_client, token_for("u1")) as ws1, \
         open_ws(api_client, token_for("u2")) as ws2:
        receive_credentials(ws1)
        receive_credentials(ws2)
        join_all([(ws1, "u1"), (ws2, "u2")])

        ws1.send_json({"type": "deleteMessage", "messageId": "m1"})
        error = receive_type(ws1, "error")
        assert "m1" in error["message"]

        # ws2 got nothing for the failed delete: its next event is this message
        ws2.send_json({"type": "sendMessage", "message": "still here", "messageId": "m9"})
        assert receive_type(ws2, "receiveMessage")["messageId"] == "m9"
        assert receive_type(ws1, "receiveMessage")["messageId"] == "m9"


def test_invalid_frames_keep_connection_open(api_client, token_for):
    with open_ws(api_client, token_for("u1")) as ws:
        receive_credentials(ws)

        ws.send_text("{not json")
        assert "Invalid message format" in receive_type(ws, "error")["message"]

        ws.send_json({"type": "shout", "message": "hi"})
        receive_type(ws, "error")

        ws.send_json({"type": "sendMessage", "message": "too early"})
        assert receive_type(ws, "error")["message"] == "Join the chat first"

        ws.send_json({"type": "join"})
        assert receive_type(ws, "onlineUsers")["users"][0]["userId"] == "u1"


def test_binary_frame_reports_error_and_keeps_connection(api_client, token_for):
    with open_ws(api_client, token_for("u1")) as ws:
        receive_credentials(ws)

        ws.send_bytes(b'{"type": "join"}')
        error = receive_type(ws, "error")
        assert error["message"] == "Invalid message format: expected a text frame"

        ws.send_json({"type": "join"})
        assert receive_type(ws, "onlineUsers")["users"][0]["status"] == "online"


# =============================================================================
# Presence
# =============================================================================


def test_disconnect_marks_user_offline(api_client, token_for):
    with open_ws(api_client, token_for("u1")) as ws1:
        receive_credentials(ws1)
        with open_ws(api_client, token_for("u2")) as ws2:
            receive_credentials(ws2)
            join_all([(ws1, "u1"), (ws2, "u2")])

        # ws2 closed without sending leave
        presence = receive_type(ws1, "onlineUsers")
        users = {u["userId"]: u for u in presence["users"]}

        assert users["u1"]["status"] == "online"
        assert users["u2"]["status"] == "offline"
        assert users["u2"]["lastSeen"] is not None
        assert users["u2"]["connectionId"] is None


def test_join_twice_keeps_one_entry(api_client, token_for, chat_service):
    with open_ws(api_client, token_for("u1")) as ws:
        receive_credentials(ws)

        ws.send_json({"type": "join", "userId": "u1"})
        receive_type(ws, "onlineUsers")
        ws.send_json({"type": "join", "userId": "u1"})
        users = receive_type(ws, "onlineUsers")["users"]

        assert [u["userId"] for u in users] == ["u1"]
        assert users[0]["status"] == "online"
        assert len(chat_service.presence) == 1


# =============================================================================
# History endpoint
# =============================================================================


def _message(message_id, sender, recipient=None, minute=0):
    return ChatMessage(
        messageId=message_id,
        senderId=sender,
        senderName=sender.upper(),
        message=f"body of {message_id}",
        recipientId=recipient,
        timestamp=datetime(2024, 5, 1, 18, minute, tzinfo=timezone.utc),
    )


def test_history_requires_bearer_token(api_client):
    response = api_client.get("/chat/history")
    assert response.status_code == 401
    assert response.json()["detail"] == "Access Denied"


def test_history_rejects_invalid_token(api_client):
    response = api_client.get("/chat/history", headers={"Authorization": "Bearer nope"})
    assert response.status_code == 400
    assert response.json()["detail"] == "Invalid Token"


def test_history_returns_visible_messages_oldest_first(api_client, token_for, store):
    async def seed():
        await store.insert(_message("g2", "u2", minute=5))
        await store.insert(_message("g1", "u1", minute=1))
        await store.insert(_message("d1", "u1", "u2", minute=3))
        await store.insert(_message("d2", "u2", "u3", minute=4))

    asyncio.run(seed())

    response = api_client.get(
        "/chat/history", headers={"Authorization": f"Bearer {token_for('u1')}"}
    )

    assert response.status_code == 200
    assert [m["messageId"] for m in response.json()] == ["g1", "d1", "g2"]


def test_history_limit(api_client, token_for, store):
    async def seed():
        for minute in range(5):
            await store.insert(_message(f"g{minute}", "u1", minute=minute))

    asyncio.run(seed())

    response = api_client.get(
        "/chat/history?limit=2", headers={"Authorization": f"Bearer {token_for('u1')}"}
    )

    assert [m["messageId"] for m in response.json()] == ["g3", "g4"]


def test_health(api_client):
    assert api_client.get("/health").json() == {"status": "ok"}

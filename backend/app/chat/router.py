"""Chat router providing WebSocket and HTTP endpoints.

This module provides:
    - GET /chat/history: Recent messages visible to the caller
    - WebSocket /ws/chat?token=<jwt>: Real-time chat messaging

The WebSocket protocol supports:
    - Token authentication during the handshake
    - Online presence (join / leave / disconnect)
    - One global room and pairwise direct rooms
    - Message send, edit, delete and read receipts
    - Typing indicators

Protocol Message Types (client -> server):
    - join: Go online and enter the global room
    - joinGlobal: Enter the global room without a presence update
    - joinDirect: Enter the direct room shared with targetUserId
    - sendMessage: Send to the global room or a direct room
    - editMessage / deleteMessage: Change or remove one of your messages
    - markAsRead: Acknowledge a message; its sender gets a receipt
    - typing: Typing indicator (start/stop)
    - leave: Go offline without closing the connection
"""
import json
import logging
from typing import Optional

import anyio
from fastapi import APIRouter, Header, HTTPException, Query, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse

from app.auth.service import bearer_token

from .errors import AuthenticationError, ValidationError
from .session import get_chat_service

logger = logging.getLogger(__name__)

router = APIRouter()

# 1008 = Policy Violation
WS_POLICY_VIOLATION = 1008


@router.get("/chat/history")
async def get_chat_history(
    authorization: Optional[str] = Header(None),
    limit: Optional[int] = Query(None, ge=1, description="Number of messages to return"),
) -> JSONResponse:
    """Get the caller's recent chat history.

    Returns global messages plus direct messages the caller sent or
    received, at most ``limit`` of them (default 50, capped at 100), sorted
    oldest first.

    Example:
        GET /chat/history
        Authorization: Bearer <token>
    """
    token = bearer_token(authorization)
    if token is None:
        raise HTTPException(status_code=401, detail="Access Denied")

    service = get_chat_service()
    try:
        identity = service.authenticate(token)
    except AuthenticationError:
        raise HTTPException(status_code=400, detail="Invalid Token")

    messages = await service.history(identity.user_id, limit)
    return JSONResponse([msg.model_dump(mode="json") for msg in messages])


@router.websocket("/ws/chat")
async def websocket_chat_endpoint(
    websocket: WebSocket,
    token: Optional[str] = Query(None, description="Bearer token issued at login"),
) -> None:
    """WebSocket endpoint for real-time chat.

    Protocol Flow:
        1. Client connects with ?token=... → token is verified before accept;
           failure closes the handshake with 1008 and the reason
           ("Authentication required" / "Invalid token")
           → Server sends: {type: "connected", userId, name, connectionId}
        2. Client sends: {type: "join"}
           → Server broadcasts: {type: "onlineUsers", users: [...]}
        3. Client sends: {type: "sendMessage", messageId, message, recipientId}
           → Server broadcasts to the owning room: {type: "receiveMessage", ...}
        4. Client sends: {type: "editMessage" | "deleteMessage" | "markAsRead", ...}
           → Owning room (or original sender) gets the matching event
        5. On disconnect → Server broadcasts: {type: "onlineUsers", users: [...]}

    Args:
        websocket: The WebSocket connection.
        token: Credential issued by the account service.
    """
    service = get_chat_service()

    try:
        identity = service.authenticate(token)
    except AuthenticationError as e:
        logger.info(f"[WS] Connection rejected: {e.message}")
        await websocket.close(code=WS_POLICY_VIOLATION, reason=e.message)
        return

    await websocket.accept()
    session = service.open_session(websocket, identity)
    logger.info(f"[WS] Connection accepted for userId={identity.user_id}")

    try:
        await service.send_connected(session)

        # Main message loop
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                raise WebSocketDisconnect(message.get("code", 1000), message.get("reason"))

            text = message.get("text")
            if text is None:
                await service.report_error(
                    session, ValidationError("Invalid message format: expected a text frame")
                )
                continue
            try:
                data = json.loads(text)
            except json.JSONDecodeError:
                await service.report_error(
                    session, ValidationError("Invalid message format: not JSON")
                )
                continue
            await service.dispatch(session, data)

    except WebSocketDisconnect:
        logger.info(f"[WS] userId={identity.user_id} disconnected")
    finally:
        # The handler may already be cancelled; the offline broadcast must still go out.
        with anyio.CancelScope(shield=True):
            await service.close_session(session)

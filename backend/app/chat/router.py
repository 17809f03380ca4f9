"""Real-time course chat over WebSocket.

This module provides:
    - WebSocket /ws/chat: authenticated socket carrying every course room

Authentication:
    The credential is taken from the ``token`` query parameter, then the
    ``Authorization: Bearer`` header. If neither is present the first frame
    must be ``{"type": "authenticate", "token": "..."}`` and must arrive
    within ``chat.auth_timeout_seconds``. On failure the server sends
    ``auth-error`` and closes with 4401 (4408 on timeout); nothing else is
    processed for that socket.

Protocol Message Types (client -> server):
    - join-room: {courseId}
    - leave-room: {courseId?}
    - send-message: {courseId, content, messageType?, replyTo?, isAnnouncement?}
    - edit-message: {messageId, content}
    - delete-message: {messageId}
    - react-to-message: {messageId, reaction}
    - mark-read: {messageIds}
    - typing-start / typing-stop: {courseId}

Errors other than authentication are answered with an ``error`` frame and
the socket stays open.
"""
import asyncio
import json
import logging
from typing import Optional

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect

from app.auth.schemas import Identity
from app.auth.service import extract_bearer, get_verifier
from app.config import get_config
from app.errors import (
    AuthenticationError,
    AuthenticationTimeout,
    ChatError,
    MissingCredential,
    ValidationError,
)

from .coordinator import get_coordinator
from .manager import Connection, registry

logger = logging.getLogger(__name__)

router = APIRouter()

CLOSE_AUTH_FAILED = 4401
CLOSE_AUTH_TIMEOUT = 4408

SERVER_ERROR_EVENT = {
    "type": "error",
    "code": "server_error",
    "message": "Something went wrong handling that request",
}


async def _await_credential(websocket: WebSocket) -> Optional[str]:
    """Wait for the first frame and pull the token out of it."""
    timeout = get_config().chat.auth_timeout_seconds
    try:
        raw = await asyncio.wait_for(websocket.receive_text(), timeout)
    except asyncio.TimeoutError:
        raise AuthenticationTimeout()

    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        raise MissingCredential("Authentication error: expected an authenticate frame")
    if not isinstance(data, dict) or data.get("type") != "authenticate":
        raise MissingCredential("Authentication error: expected an authenticate frame")
    return data.get("token")


async def _authenticate(websocket: WebSocket, token: Optional[str]) -> Optional[Identity]:
    """Verify the socket's credential, or refuse the socket.

    Returns:
        The identity, or None if the socket was closed.
    """
    try:
        if not token:
            token = await _await_credential(websocket)
        return get_verifier().verify(token)
    except AuthenticationError as e:
        logger.info(f"[WS] Authentication failed: {e.code}")
        await websocket.send_json(e.to_event())
        code = CLOSE_AUTH_TIMEOUT if isinstance(e, AuthenticationTimeout) else CLOSE_AUTH_FAILED
        await websocket.close(code=code)
        return None


async def _handle_frame(conn: Connection, data: dict) -> None:
    """Apply one client frame. Domain errors propagate to the caller."""
    coordinator = get_coordinator()
    identity = conn.identity
    message_type = data.get("type")

    if message_type == "join-room":
        await registry.join_room(conn, data.get("courseId"))
        return

    if message_type == "leave-room":
        course_id = conn.course_id
        if not await registry.leave_room(conn, data.get("courseId")):
            raise ValidationError("Not in that course chat")
        await registry.send_to(conn, {"type": "room-left", "courseId": course_id})
        return

    if message_type == "send-message":
        await coordinator.send(
            identity,
            data.get("courseId") or conn.course_id,
            data.get("content"),
            message_type=data.get("messageType"),
            reply_to=data.get("replyTo"),
            is_announcement=bool(data.get("isAnnouncement", False)),
        )
        return

    if message_type == "edit-message":
        await coordinator.edit(identity, data.get("messageId"), data.get("content"))
        return

    if message_type == "delete-message":
        await coordinator.soft_delete(identity, data.get("messageId"))
        return

    if message_type == "react-to-message":
        await coordinator.react(identity, data.get("messageId"), data.get("reaction"))
        return

    if message_type == "mark-read":
        message_ids = data.get("messageIds")
        marked = await coordinator.mark_read(identity, message_ids)
        await registry.send_to(
            conn, {"type": "read-ack", "messageIds": message_ids, "marked": marked}
        )
        return

    if message_type == "typing-start":
        await registry.start_typing(conn, data.get("courseId") or conn.course_id)
        return

    if message_type == "typing-stop":
        await registry.stop_typing(conn, data.get("courseId") or conn.course_id)
        return

    if message_type == "authenticate":
        raise ValidationError("Already authenticated")

    raise ValidationError(f"Unknown message type: {message_type}")


@router.websocket("/ws/chat")
async def websocket_chat_endpoint(
    websocket: WebSocket,
    token: Optional[str] = Query(None, description="Bearer credential"),
) -> None:
    """WebSocket endpoint for real-time course chat.

    Protocol Flow:
        1. Client connects with a credential (query, header or first frame)
           -> Server sends: {type: "connected", connectionId, userId, role, displayName}
        2. Client sends: {type: "join-room", courseId}
           -> Server sends: {type: "recent-messages", courseId, messages}
           -> Others receive: {type: "user-joined", ...}
        3. Client sends: {type: "send-message", courseId, content}
           -> Room receives: {type: "new-message", courseId, message}
        4. On disconnect -> Others receive: {type: "user-left", ...}

    Args:
        websocket: The WebSocket connection.
        token: Optional credential passed as a query parameter.
    """
    await websocket.accept()
    token = token or extract_bearer(websocket.headers.get("authorization"))

    try:
        identity = await _authenticate(websocket, token)
    except WebSocketDisconnect:
        logger.info("[WS] Client went away before authenticating")
        return
    if identity is None:
        return

    conn = registry.register(websocket, identity)
    try:
        await websocket.send_json({
            "type": "connected",
            "connectionId": conn.id,
            "userId": identity.user_id,
            "role": identity.role.value,
            "displayName": identity.display_name,
        })

        # Main message loop
        while True:
            raw = await websocket.receive_text()
            try:
                data = json.loads(raw)
            except json.JSONDecodeError:
                await registry.send_to(conn, ValidationError("Malformed JSON frame").to_event())
                continue
            if not isinstance(data, dict):
                await registry.send_to(conn, ValidationError("Frame must be a JSON object").to_event())
                continue

            logger.debug("[WS] %s received: type=%s", conn.id, data.get("type", "?"))
            try:
                await _handle_frame(conn, data)
            except WebSocketDisconnect:
                raise
            except ChatError as e:
                await registry.send_to(conn, e.to_event())
            except Exception:
                logger.exception(f"[WS] Failed handling {data.get('type')!r} from {conn.user_id}")
                await registry.send_to(conn, SERVER_ERROR_EVENT)

    except WebSocketDisconnect:
        logger.info(f"[WS] {conn.user_id} disconnected")
    finally:
        await registry.disconnect(conn)

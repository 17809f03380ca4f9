"""Course chat REST endpoints.

This module provides:
    - GET /chat/courses/{course_id}/messages: Paginated history
    - GET /chat/courses/{course_id}/search: Substring search
    - GET /chat/courses/{course_id}/unread-count: Unread messages for the caller
    - GET /chat/courses/{course_id}/presence: Users currently in the room
    - POST /chat/courses/{course_id}/messages: Send a message
    - PUT /chat/messages/{message_id}: Edit a message
    - DELETE /chat/messages/{message_id}: Soft-delete a message
    - POST /chat/messages/{message_id}/react: Toggle a reaction
    - POST /chat/messages/read: Mark messages as read

Every endpoint needs ``Authorization: Bearer <token>``. The write endpoints
go through the same coordinator as the socket, so connected room members
see REST changes live.
"""
import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query

from app.auth.dependencies import get_current_identity
from app.auth.schemas import Identity

from .coordinator import get_coordinator
from .manager import registry
from .schemas import EditMessageRequest, MarkReadRequest, ReactRequest, SendMessageRequest

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/chat", tags=["chat"])


@router.get("/courses/{course_id}/messages")
async def list_messages(
    course_id: str,
    limit: Optional[int] = Query(None, description="Page size (1-100, default 50)"),
    before: Optional[datetime] = Query(None, description="Only messages created before this time"),
    markRead: bool = Query(False, description="Mark returned messages as read"),
    identity: Identity = Depends(get_current_identity),
) -> dict:
    """Get one page of course chat history, oldest first.

    Args:
        course_id: The course whose chat to read.
        limit: Maximum number of messages to return.
        before: Cursor; pass the ``createdAt`` of the oldest message held.
        markRead: Also record the returned messages as read by the caller.

    Returns:
        dict with messages, hasMore and courseId.
    """
    coordinator = get_coordinator()
    messages, has_more = coordinator.list_recent(identity, course_id, limit, before)
    if markRead:
        unread = [m.id for m in messages if m.senderId != identity.user_id]
        if unread:
            await coordinator.mark_read(identity, unread)
    return {
        "courseId": course_id,
        "messages": [m.to_payload() for m in messages],
        "hasMore": has_more,
    }


@router.get("/courses/{course_id}/search")
async def search_messages(
    course_id: str,
    q: str = Query("", description="Search text (at least 2 characters)"),
    limit: Optional[int] = Query(None, description="Maximum results (default 20)"),
    identity: Identity = Depends(get_current_identity),
) -> dict:
    results = get_coordinator().search(identity, course_id, q, limit)
    return {
        "courseId": course_id,
        "query": q.strip(),
        "messages": [m.to_payload() for m in results],
        "count": len(results),
    }


@router.get("/courses/{course_id}/unread-count")
async def unread_count(
    course_id: str,
    identity: Identity = Depends(get_current_identity),
) -> dict:
    count = get_coordinator().unread_count(identity, course_id)
    return {"courseId": course_id, "unreadCount": count}


@router.get("/courses/{course_id}/presence")
async def presence(
    course_id: str,
    identity: Identity = Depends(get_current_identity),
) -> dict:
    """Users currently connected to the course chat, and who is typing."""
    get_coordinator().require_access(identity.user_id, course_id)
    typing = [
        {"userId": entry.user_id, "userName": entry.display_name}
        for entry in registry.typing.typing_in(course_id)
    ]
    return {"courseId": course_id, "users": registry.presence(course_id), "typing": typing}


@router.post("/courses/{course_id}/messages", status_code=201)
async def send_message(
    course_id: str,
    body: SendMessageRequest,
    identity: Identity = Depends(get_current_identity),
) -> dict:
    message = await get_coordinator().send(
        identity,
        course_id,
        body.content,
        message_type=body.messageType,
        reply_to=body.replyTo,
        is_announcement=body.isAnnouncement,
    )
    return message.to_payload()


@router.put("/messages/{message_id}")
async def edit_message(
    message_id: str,
    body: EditMessageRequest,
    identity: Identity = Depends(get_current_identity),
) -> dict:
    message = await get_coordinator().edit(identity, message_id, body.content)
    return message.to_payload()


@router.delete("/messages/{message_id}")
async def delete_message(
    message_id: str,
    identity: Identity = Depends(get_current_identity),
) -> dict:
    message = await get_coordinator().soft_delete(identity, message_id)
    return message.to_payload()


@router.post("/messages/{message_id}/react")
async def react_to_message(
    message_id: str,
    body: ReactRequest,
    identity: Identity = Depends(get_current_identity),
) -> dict:
    message = await get_coordinator().react(identity, message_id, body.reaction)
    return message.reactions_payload()


@router.post("/messages/read")
async def mark_messages_read(
    body: MarkReadRequest,
    identity: Identity = Depends(get_current_identity),
) -> dict:
    marked = await get_coordinator().mark_read(identity, body.messageIds)
    return {"marked": marked}

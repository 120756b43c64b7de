"""Chat router providing HTTP endpoints and the realtime WebSocket.

This module provides (all HTTP routes require ``Authorization: Bearer``):
    - POST /api/chat/messages/direct               Send a direct message
    - POST /api/chat/messages/direct/by-username   Send a direct message by username
    - POST /api/chat/messages/group                Send a group message
    - POST /api/chat/messages/mark-read            Mark messages read
    - GET  /api/chat/messages/direct/{userId}      Direct conversation page
    - GET  /api/chat/messages/group/{groupId}      Group conversation page
    - GET  /api/chat/direct/partners               Direct partners
    - GET  /api/chat/unread-counts                 Combined unread counts
    - /api/chat/groups...                          Group lifecycle
    - WebSocket /ws?token=...                      Push-only event stream

WebSocket frames are ``{"event": <name>, "data": <payload>}``. Inbound frames
are ignored; clients act through the HTTP endpoints.
"""
import logging
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Query, WebSocket
from fastapi.responses import JSONResponse

from chatline.auth.dependencies import current_user_id
from chatline.auth.tokens import verify_token
from chatline.errors import AuthenticationError

from .schemas import (
    CreateGroupRequest,
    MarkReadRequest,
    MemberRequest,
    RenameGroupRequest,
    SendDirectByUsernameRequest,
    SendDirectRequest,
    SendGroupRequest,
    UsernameRequest,
)
from .service import ChatService, get_chat_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/chat", tags=["chat"])
ws_router = APIRouter(tags=["realtime"])


def _page(messages, has_more: bool) -> dict:
    return {
        "messages": [m.model_dump(mode="json") for m in messages],
        "hasMore": has_more,
    }


# =============================================================================
# Messages
# =============================================================================


@router.post("/messages/direct", status_code=201)
async def send_direct_message(
    body: SendDirectRequest,
    user_id: str = Depends(current_user_id),
    chat: ChatService = Depends(get_chat_service),
) -> JSONResponse:
    """Send a direct message.

    Returns:
        The created message (201 Created).
    """
    message = await chat.read_state.send_direct(user_id, body.toUserId, body.text, body.attachment)
    return JSONResponse(message.model_dump(mode="json"), status_code=201)


@router.post("/messages/direct/by-username", status_code=201)
async def send_direct_message_by_username(
    body: SendDirectByUsernameRequest,
    user_id: str = Depends(current_user_id),
    chat: ChatService = Depends(get_chat_service),
) -> JSONResponse:
    """Send a direct message to the user with ``username``.

    Returns:
        ``{"message": ..., "user": ...}`` (201 Created).
    """
    result = await chat.read_state.send_direct_by_username(
        user_id, body.username, body.text, body.attachment
    )
    return JSONResponse(result, status_code=201)


@router.post("/messages/group", status_code=201)
async def send_group_message(
    body: SendGroupRequest,
    user_id: str = Depends(current_user_id),
    chat: ChatService = Depends(get_chat_service),
) -> JSONResponse:
    """Send a message to a group the caller belongs to."""
    message = await chat.read_state.send_group(user_id, body.groupId, body.text, body.attachment)
    return JSONResponse(message.model_dump(mode="json"), status_code=201)


@router.post("/messages/mark-read")
async def mark_messages_read(
    body: MarkReadRequest,
    user_id: str = Depends(current_user_id),
    chat: ChatService = Depends(get_chat_service),
) -> dict:
    """Mark messages read for the caller.

    Returns:
        ``{"updated": n}`` where n counts the existing messages referenced.
    """
    updated = await chat.read_state.mark_read(user_id, body.messageIds)
    return {"updated": updated}


@router.get("/messages/direct/{other_user_id}")
async def get_direct_messages(
    other_user_id: str,
    before: Optional[float] = Query(None, description="Only messages older than this timestamp"),
    limit: Optional[int] = Query(None, ge=1, description="Page size"),
    user_id: str = Depends(current_user_id),
    chat: ChatService = Depends(get_chat_service),
) -> dict:
    """Page of the direct conversation with ``other_user_id``, oldest first."""
    messages, has_more = chat.read_state.fetch_direct(user_id, other_user_id, before, limit)
    return _page(messages, has_more)


@router.get("/messages/group/{group_id}")
async def get_group_messages(
    group_id: str,
    before: Optional[float] = Query(None, description="Only messages older than this timestamp"),
    limit: Optional[int] = Query(None, ge=1, description="Page size"),
    user_id: str = Depends(current_user_id),
    chat: ChatService = Depends(get_chat_service),
) -> dict:
    """Page of a group conversation, oldest first. Members only."""
    messages, has_more = chat.read_state.fetch_group(user_id, group_id, before, limit)
    return _page(messages, has_more)


@router.get("/direct/partners")
async def get_direct_partners(
    user_id: str = Depends(current_user_id),
    chat: ChatService = Depends(get_chat_service),
) -> list:
    return chat.read_state.direct_partners(user_id)


# =============================================================================
# Unread counts
# =============================================================================


@router.get("/unread-counts")
async def get_unread_counts(
    user_id: str = Depends(current_user_id),
    chat: ChatService = Depends(get_chat_service),
) -> list:
    """Combined ``[{type, id, unread}]`` for every group and direct partner."""
    return [c.model_dump(mode="json") for c in chat.read_state.unread_counts(user_id)]


@router.get("/groups/unread-counts")
async def get_group_unread_counts(
    user_id: str = Depends(current_user_id),
    chat: ChatService = Depends(get_chat_service),
) -> list:
    return chat.read_state.group_unread_counts(user_id)


@router.get("/direct/unread-counts")
async def get_direct_unread_counts(
    user_id: str = Depends(current_user_id),
    chat: ChatService = Depends(get_chat_service),
) -> list:
    return chat.read_state.direct_unread_counts(user_id)


# =============================================================================
# Groups
# =============================================================================


@router.get("/groups")
async def list_groups(
    user_id: str = Depends(current_user_id),
    chat: ChatService = Depends(get_chat_service),
) -> list:
    """Groups of the caller, most recent activity first."""
    return [g.model_dump(mode="json") for g in chat.groups.list_groups(user_id)]


@router.post("/groups", status_code=201)
async def create_group(
    body: CreateGroupRequest,
    user_id: str = Depends(current_user_id),
    chat: ChatService = Depends(get_chat_service),
) -> JSONResponse:
    """Create a group with the caller as creator and first admin."""
    group = await chat.groups.create(user_id, body.name, body.members)
    return JSONResponse(group.model_dump(mode="json"), status_code=201)


@router.put("/groups/{group_id}")
async def rename_group(
    group_id: str,
    body: RenameGroupRequest,
    user_id: str = Depends(current_user_id),
    chat: ChatService = Depends(get_chat_service),
) -> dict:
    group = await chat.groups.rename(user_id, group_id, body.name)
    return group.model_dump(mode="json")


@router.get("/groups/{group_id}/members")
async def get_group_members(
    group_id: str,
    user_id: str = Depends(current_user_id),
    chat: ChatService = Depends(get_chat_service),
) -> list:
    return chat.groups.members(user_id, group_id)


@router.post("/groups/{group_id}/members")
async def add_group_member(
    group_id: str,
    body: MemberRequest,
    user_id: str = Depends(current_user_id),
    chat: ChatService = Depends(get_chat_service),
) -> dict:
    group = await chat.groups.add_member(user_id, group_id, body.userId)
    return group.model_dump(mode="json")


@router.post("/groups/{group_id}/members/by-username")
async def add_group_member_by_username(
    group_id: str,
    body: UsernameRequest,
    user_id: str = Depends(current_user_id),
    chat: ChatService = Depends(get_chat_service),
) -> dict:
    group = await chat.groups.add_member_by_username(user_id, group_id, body.username)
    return group.model_dump(mode="json")


@router.post("/groups/{group_id}/leave")
async def leave_group(
    group_id: str,
    user_id: str = Depends(current_user_id),
    chat: ChatService = Depends(get_chat_service),
) -> dict:
    await chat.groups.leave(user_id, group_id)
    return {"left": group_id}


@router.post("/groups/{group_id}/promote")
async def promote_group_member(
    group_id: str,
    body: MemberRequest,
    user_id: str = Depends(current_user_id),
    chat: ChatService = Depends(get_chat_service),
) -> dict:
    group = await chat.groups.promote(user_id, group_id, body.userId)
    return group.model_dump(mode="json")


# =============================================================================
# Realtime channel
# =============================================================================


@ws_router.websocket("/ws")
async def realtime_endpoint(
    websocket: WebSocket,
    token: Optional[str] = Query(None, description="Bearer token"),
) -> None:
    """Push-only realtime channel for one authenticated connection.

    Protocol Flow:
        1. Client connects with ``?token=<jwt>``; an invalid token closes
           the socket with 1008 (policy violation).
        2. Server sends ``connection:ack{userId}`` and, depending on the
           user's visibility, ``presence:update`` to everyone or
           ``presence:self`` to the user only.
        3. Server pushes message/group/unread events until disconnect.
        4. On disconnect the connection is unregistered; the last one
           announces the user offline.
    """
    try:
        user_id = verify_token(token)
    except AuthenticationError as e:
        logger.warning(f"[WS] Rejected connection: {e.message}")
        await websocket.close(code=1008)  # 1008 = Policy Violation
        return

    await websocket.accept()
    chat = get_chat_service()
    connection_id = uuid.uuid4().hex
    await chat.presence.connect(user_id, connection_id, websocket)
    logger.info(f"[WS] User {user_id} connected ({connection_id})")

    try:
        while True:
            # Push-only: inbound text or binary frames are dropped
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                logger.info(
                    f"[WS] User {user_id} disconnected ({connection_id}), "
                    f"code={message.get('code')}"
                )
                break
    finally:
        await chat.presence.disconnect(user_id, connection_id)

"""User directory endpoints consumed by chat clients.

    - GET /api/chat/users                 List users
    - GET /api/chat/users/search?q=...    Search users to start a conversation with
    - GET /api/chat/users/{userId}        Single user
    - GET /api/chat/presence              Visible users that are not offline
    - PUT /api/users/me/status            Explicit status change
    - PUT /api/users/me/presence          Presence visibility toggle
"""
import logging

from fastapi import APIRouter, Depends, Query

from chatline.auth.dependencies import current_user_id
from chatline.chat.service import ChatService, get_chat_service
from chatline.errors import NotFoundError

from .schemas import PresenceVisibilityUpdate, StatusUpdate
from .service import MAX_LIST_SIZE, MAX_SEARCH_RESULTS

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/chat", tags=["users"])
me_router = APIRouter(prefix="/api/users/me", tags=["users"])

MIN_SEARCH_LENGTH = 2


@router.get("/users")
async def list_users(
    limit: int = Query(MAX_LIST_SIZE, ge=1),
    user_id: str = Depends(current_user_id),
    chat: ChatService = Depends(get_chat_service),
) -> list:
    return [u.public() for u in chat.directory.list_users(limit)]


@router.get("/users/search")
async def search_users(
    q: str = Query("", description="Substring of username or display name"),
    limit: int = Query(20, ge=1),
    user_id: str = Depends(current_user_id),
    chat: ChatService = Depends(get_chat_service),
) -> list:
    """Find users the caller has no direct conversation with yet.

    Queries shorter than two characters return an empty list. The caller
    and existing direct partners are excluded; at most 25 results.
    """
    query = q.strip()
    if len(query) < MIN_SEARCH_LENGTH:
        return []
    excluded = [user_id] + chat.store.partner_ids(user_id)
    results = chat.directory.search(query, excluded, min(limit, MAX_SEARCH_RESULTS))
    return [u.public() for u in results]


@router.get("/users/{target_id}")
async def get_user(
    target_id: str,
    user_id: str = Depends(current_user_id),
    chat: ChatService = Depends(get_chat_service),
) -> dict:
    user = chat.directory.get(target_id)
    if user is None:
        raise NotFoundError("User not found")
    return user.public()


@router.get("/presence")
async def presence_summary(
    user_id: str = Depends(current_user_id),
    chat: ChatService = Depends(get_chat_service),
) -> list:
    """Users whose status is not offline and who do not hide presence."""
    return [
        {"userId": u.id, "status": u.status.value}
        for u in chat.directory.visible_presence()
    ]


@me_router.put("/status")
async def update_my_status(
    body: StatusUpdate,
    user_id: str = Depends(current_user_id),
    chat: ChatService = Depends(get_chat_service),
) -> dict:
    """Overwrite the caller's status (online, away, busy or offline)."""
    status = await chat.presence.set_status(user_id, body.status)
    return {"userId": user_id, "status": status.value}


@me_router.put("/presence")
async def update_my_presence_visibility(
    body: PresenceVisibilityUpdate,
    user_id: str = Depends(current_user_id),
    chat: ChatService = Depends(get_chat_service),
) -> dict:
    hidden = await chat.presence.set_visibility(user_id, body.hidePresence)
    return {"userId": user_id, "hidePresence": hidden}

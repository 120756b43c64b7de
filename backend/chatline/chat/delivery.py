"""Delivery Router.

Resolves the recipients of a persisted message and pushes it to every live
connection they hold. Live delivery is best-effort: a recipient without
connections gets nothing now and sees the message on the next fetch, and a
failing connection never stops fan-out to the others.
"""
import logging
from typing import Iterable, List, Set

from .events import GROUP_NEW, GROUP_UPDATED, MESSAGE_NEW, envelope
from .registry import ConnectionRegistry
from .schemas import Group, Message, MessageStatus
from .store import ConversationStore

logger = logging.getLogger(__name__)


class DeliveryRouter:
    """Fans realtime events out to recipient connections."""

    def __init__(self, registry: ConnectionRegistry, store: ConversationStore) -> None:
        self._registry = registry
        self._store = store

    def recipients_for(self, message: Message) -> List[str]:
        """Users who should see ``message``.

        Group membership is read fresh from the store at routing time.
        """
        if message.is_group:
            return self._store.member_ids(message.target.groupId)
        return list(dict.fromkeys([message.senderId, message.target.userId]))

    async def route_message(self, message: Message) -> Set[str]:
        """Push ``message:new`` to every live connection of every recipient.

        Each connection receives the event exactly once. If at least one
        connection of a non-sender recipient accepted it, the message's
        coarse status advances to ``delivered``.

        Returns:
            User ids that received the event on at least one connection.
        """
        recipients = self.recipients_for(message)
        connections: List[str] = []
        for user_id in recipients:
            connections.extend(self._registry.active_connections(user_id))

        frame = envelope(MESSAGE_NEW, {"message": message.model_dump(mode="json")})
        delivered = await self._registry.deliver(connections, frame)
        notified = {self._registry.owner_of(cid) for cid in delivered}
        notified.discard(None)

        logger.info(
            f"[Delivery] Message {message.id} -> {len(recipients)} recipients, "
            f"{len(delivered)}/{len(connections)} connections"
        )

        if notified - {message.senderId}:
            try:
                self._store.advance_status(message.id, MessageStatus.DELIVERED)
            except Exception as e:
                logger.warning(f"[Delivery] Could not mark {message.id} delivered: {e}")
        return notified

    async def push_group_event(self, group: Group, created: bool = False) -> int:
        """Send ``group:new`` or ``group:updated`` to all current members."""
        event = GROUP_NEW if created else GROUP_UPDATED
        members = self._store.member_ids(group.id)
        return await self.push_to_users(members, envelope(event, {"group": group.model_dump(mode="json")}))

    async def push_to_user(self, user_id: str, frame: dict) -> int:
        return await self._registry.emit(user_id, frame)

    async def push_to_users(self, user_ids: Iterable[str], frame: dict) -> int:
        connections: List[str] = []
        for user_id in dict.fromkeys(user_ids):
            connections.extend(self._registry.active_connections(user_id))
        return len(await self._registry.deliver(connections, frame))

"""Unread/Read-State Engine.

Owns every mutation of a message's reader set:

    send:      group messages start with readBy = {sender},
               direct messages start with readBy = {}
    markRead:  union of the reader into readBy (idempotent)

Unread counts are never stored. For reader R on conversation C they are
the number of persisted messages in C where R is not in readBy; direct
conversations count only messages addressed to R.

Validation, authorization and not-found checks run before anything is
persisted. Live pushes after a successful write are best-effort.
"""
import logging
from typing import Any, Dict, List, Optional, Tuple

from chatline.config import MessageSettings
from chatline.errors import AuthorizationError, NotFoundError, ValidationError
from chatline.users.service import UserDirectory

from .delivery import DeliveryRouter
from .events import MESSAGES_READ, UNREAD_UPDATE, envelope
from .schemas import (
    Attachment,
    DirectTarget,
    GroupTarget,
    Message,
    TargetKind,
    UnreadCount,
)
from .store import ConversationStore

logger = logging.getLogger(__name__)


class ReadStateEngine:
    """Sends messages, records reads and derives unread counts."""

    def __init__(
        self,
        store: ConversationStore,
        directory: UserDirectory,
        delivery: DeliveryRouter,
        settings: Optional[MessageSettings] = None,
    ) -> None:
        self._store = store
        self._directory = directory
        self._delivery = delivery
        self._settings = settings or MessageSettings()

    # =========================================================================
    # Sending
    # =========================================================================

    async def send_direct(
        self,
        sender_id: str,
        to_user_id: Optional[str],
        text: Optional[str] = None,
        attachment: Optional[Attachment] = None,
    ) -> Message:
        """Persist a direct message and route it to both participants.

        Raises:
            ValidationError: Missing recipient or content, or self-target.
            NotFoundError: The recipient does not exist.
        """
        text = self._clean_text(text)
        if not to_user_id or (text is None and attachment is None):
            raise ValidationError("Recipient and message text or attachment are required")
        if to_user_id == sender_id:
            raise ValidationError("Cannot send message to yourself")
        if self._directory.get(to_user_id) is None:
            raise NotFoundError("Recipient not found")

        message = self._store.create_message(
            sender_id, DirectTarget(userId=to_user_id), text=text, attachment=attachment
        )
        logger.info(f"[ReadState] Direct message {message.id} {sender_id} -> {to_user_id}")
        return await self._route(message)

    async def send_direct_by_username(
        self,
        sender_id: str,
        username: Optional[str],
        text: Optional[str] = None,
        attachment: Optional[Attachment] = None,
    ) -> Dict[str, Any]:
        """Resolve ``username`` and send a direct message to that user.

        Returns:
            ``{"message": ..., "user": ...}`` with the recipient's public fields.
        """
        username = (username or "").strip()
        if not username:
            raise ValidationError("Username is required")
        user = self._directory.find_by_username(username)
        if user is None:
            raise NotFoundError("User not found")
        message = await self.send_direct(sender_id, user.id, text, attachment)
        return {"message": message.model_dump(mode="json"), "user": user.public()}

    async def send_group(
        self,
        sender_id: str,
        group_id: Optional[str],
        text: Optional[str] = None,
        attachment: Optional[Attachment] = None,
    ) -> Message:
        """Persist a group message (sender already in readBy) and route it.

        Raises:
            ValidationError: Missing group or content.
            NotFoundError: The group does not exist.
            AuthorizationError: The sender is not a member.
        """
        text = self._clean_text(text)
        if not group_id or (text is None and attachment is None):
            raise ValidationError("Group and message text or attachment are required")
        if self._store.get_group(group_id) is None:
            raise NotFoundError("Group not found")
        if not self._store.is_member(group_id, sender_id):
            raise AuthorizationError("Not a member of this group")

        message = self._store.create_message(
            sender_id,
            GroupTarget(groupId=group_id),
            text=text,
            attachment=attachment,
            read_by=[sender_id],
        )
        self._store.set_last_message(group_id, message.id)
        logger.info(f"[ReadState] Group message {message.id} {sender_id} -> {group_id}")
        return await self._route(message)

    async def _route(self, message: Message) -> Message:
        try:
            await self._delivery.route_message(message)
        except Exception as e:
            logger.warning(f"[ReadState] Live delivery of {message.id} failed: {e}")
        return self._store.get_message(message.id) or message

    def _clean_text(self, text: Optional[str]) -> Optional[str]:
        if text is None:
            return None
        if not isinstance(text, str):
            raise ValidationError("Message text must be a string")
        text = text.strip()
        if len(text) > self._settings.max_text_length:
            raise ValidationError(
                f"Message text exceeds {self._settings.max_text_length} characters"
            )
        return text or None

    # =========================================================================
    # Reading
    # =========================================================================

    async def mark_read(self, reader_id: str, message_ids: Any) -> int:
        """Add ``reader_id`` to the readers of every referenced message.

        Unknown ids are ignored and repeating a call changes nothing. No
        participation check is made on the reader. Afterwards the reader's
        own connections receive ``messages:read`` and one ``unread:update``
        per touched conversation.

        Returns:
            Number of existing messages referenced.

        Raises:
            ValidationError: If ``message_ids`` is not a non-empty list of ids.
        """
        if (
            not isinstance(message_ids, list)
            or not message_ids
            or not all(isinstance(i, str) and i for i in message_ids)
        ):
            raise ValidationError("messageIds must be a non-empty array")

        messages = self._store.mark_read(message_ids, reader_id)
        logger.info(
            f"[ReadState] {reader_id} marked {len(messages)}/{len(message_ids)} messages read"
        )
        if not messages:
            return 0

        try:
            await self._delivery.push_to_user(
                reader_id, envelope(MESSAGES_READ, {"messageIds": [m.id for m in messages]})
            )
            for count in self._touched_counts(reader_id, messages):
                await self._delivery.push_to_user(
                    reader_id, envelope(UNREAD_UPDATE, count.model_dump(mode="json"))
                )
        except Exception as e:
            logger.warning(f"[ReadState] Unread refresh for {reader_id} failed: {e}")
        return len(messages)

    def _touched_counts(self, reader_id: str, messages: List[Message]) -> List[UnreadCount]:
        """Recompute unread counts for the conversations ``messages`` belong to."""
        group_ids: Dict[str, None] = {}
        partner_ids: Dict[str, None] = {}
        for message in messages:
            if message.is_group:
                group_ids[message.target.groupId] = None
            elif message.target.userId == reader_id:
                partner_ids[message.senderId] = None

        counts = [
            UnreadCount(
                type=TargetKind.GROUP,
                id=group_id,
                unread=self._store.count_unread_group(group_id, reader_id),
            )
            for group_id in group_ids
        ]
        counts.extend(
            UnreadCount(
                type=TargetKind.DIRECT,
                id=partner_id,
                unread=self._store.count_unread_direct(reader_id, partner_id),
            )
            for partner_id in partner_ids
        )
        return counts

    # =========================================================================
    # Unread counts
    # =========================================================================

    def unread_counts(self, user_id: str) -> List[UnreadCount]:
        """Combined unread counts: every group of the user, then direct partners."""
        counts = [
            UnreadCount(type=TargetKind.GROUP, id=gid, unread=n)
            for gid, n in self._store.unread_by_group(user_id).items()
        ]
        counts.extend(
            UnreadCount(type=TargetKind.DIRECT, id=uid, unread=n)
            for uid, n in self._store.unread_by_partner(user_id).items()
        )
        return counts

    def group_unread_counts(self, user_id: str) -> List[Dict[str, Any]]:
        return [
            {"id": gid, "unread": n}
            for gid, n in self._store.unread_by_group(user_id).items()
        ]

    def direct_unread_counts(self, user_id: str) -> List[Dict[str, Any]]:
        return [
            {"id": uid, "unread": n}
            for uid, n in self._store.unread_by_partner(user_id).items()
        ]

    # =========================================================================
    # Conversation fetch
    # =========================================================================

    def fetch_direct(
        self,
        user_id: str,
        other_user_id: str,
        before: Optional[float] = None,
        limit: Optional[int] = None,
    ) -> Tuple[List[Message], bool]:
        """Page of the direct conversation with ``other_user_id``, oldest first."""
        return self._store.direct_page(user_id, other_user_id, before, self._page_size(limit))

    def fetch_group(
        self,
        user_id: str,
        group_id: str,
        before: Optional[float] = None,
        limit: Optional[int] = None,
    ) -> Tuple[List[Message], bool]:
        """Page of a group conversation, oldest first.

        Raises:
            NotFoundError: The group does not exist.
            AuthorizationError: The caller is not a member.
        """
        if self._store.get_group(group_id) is None:
            raise NotFoundError("Group not found")
        if not self._store.is_member(group_id, user_id):
            raise AuthorizationError("Not a member of this group")
        return self._store.group_page(group_id, before, self._page_size(limit))

    def _page_size(self, limit: Optional[int]) -> int:
        if limit is None:
            return self._settings.default_page_size
        return max(1, min(int(limit), self._settings.max_page_size))

    def direct_partners(self, user_id: str) -> List[Dict[str, Any]]:
        """Direct partners, newest conversation first, with directory details."""
        partners = self._store.direct_partners(user_id)
        users = {u.id: u for u in self._directory.get_many(p["userId"] for p in partners)}
        for partner in partners:
            user = users.get(partner["userId"])
            partner["user"] = user.public() if user else None
        return partners

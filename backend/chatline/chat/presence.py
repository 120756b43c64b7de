"""Presence Tracker.

Derives online/offline transitions from Connection Registry occupancy and
applies explicit status changes, honouring each user's ``hidePresence``
opt-out:

    first connection, visible  -> persist online,  broadcast presence:update
    last disconnect,  visible  -> persist offline, broadcast presence:update
    hidden user                -> no global broadcast; presence:self to the
                                  user's own connections only

Presence is best-effort: a failure to read ``hidePresence`` or to persist a
status is logged and never blocks the connect/disconnect flow. The
"connection count is zero -> persist offline" sequence may race with a
reconnect; the next transition corrects it.
"""
import logging
from typing import Any

from chatline.errors import NotFoundError
from chatline.users.schemas import PresenceStatus
from chatline.users.service import UserDirectory

from .events import CONNECTION_ACK, PRESENCE_SELF, PRESENCE_UPDATE, envelope
from .registry import ConnectionRegistry

logger = logging.getLogger(__name__)


class PresenceTracker:
    """Owns the connect/disconnect lifecycle and presence announcements."""

    def __init__(
        self,
        registry: ConnectionRegistry,
        directory: UserDirectory,
        broadcast_enabled: bool = True,
    ) -> None:
        self._registry = registry
        self._directory = directory
        self._broadcast_enabled = broadcast_enabled

    # =========================================================================
    # Connection lifecycle
    # =========================================================================

    async def connect(self, user_id: str, connection_id: str, channel: Any) -> bool:
        """Register an authenticated connection and announce presence.

        Returns:
            True if this was the user's first live connection.
        """
        first = self._registry.register(user_id, connection_id, channel)
        await self._registry.deliver(
            [connection_id], envelope(CONNECTION_ACK, {"userId": user_id})
        )

        if self._is_hidden(user_id):
            # Hidden users still learn their own true state
            targets = self._registry.active_connections(user_id) if first else [connection_id]
            await self._registry.deliver(
                targets, self._self_frame(user_id, PresenceStatus.ONLINE)
            )
            return first

        if first:
            self._persist_status(user_id, PresenceStatus.ONLINE)
            await self._announce(user_id, PresenceStatus.ONLINE)
        return first

    async def disconnect(self, user_id: str, connection_id: str) -> bool:
        """Unregister a connection; announce offline if it was the last one.

        Returns:
            True if the user has no live connection left.
        """
        last = self._registry.unregister(user_id, connection_id)
        if not last:
            return False

        if self._is_hidden(user_id):
            # Nobody was told this user was online
            return True

        self._persist_status(user_id, PresenceStatus.OFFLINE)
        await self._announce(user_id, PresenceStatus.OFFLINE)
        return True

    # =========================================================================
    # Explicit changes (profile updates)
    # =========================================================================

    async def set_status(self, user_id: str, status: PresenceStatus) -> PresenceStatus:
        """Overwrite a user's status regardless of connection count.

        Raises:
            NotFoundError: If the user does not exist.
        """
        status = PresenceStatus(status)
        if not self._directory.set_status(user_id, status):
            raise NotFoundError("User not found")
        logger.info(f"[Presence] User {user_id} set status to {status.value}")

        if self._is_hidden(user_id):
            await self._registry.emit(user_id, self._self_frame(user_id, status))
        else:
            await self._announce(user_id, status)
        return status

    async def set_visibility(self, user_id: str, hidden: bool) -> bool:
        """Toggle ``hidePresence`` and reconcile what others see.

        Hiding while online announces the user as offline to others;
        un-hiding while online announces them as online again.

        Raises:
            NotFoundError: If the user does not exist.
        """
        if not self._directory.set_hide_presence(user_id, hidden):
            raise NotFoundError("User not found")
        online = self._registry.is_online(user_id)
        logger.info(f"[Presence] User {user_id} hidePresence={hidden} (online={online})")

        if hidden:
            if online:
                self._persist_status(user_id, PresenceStatus.OFFLINE)
                await self._announce(user_id, PresenceStatus.OFFLINE)
            true_status = PresenceStatus.ONLINE if online else PresenceStatus.OFFLINE
            await self._registry.emit(user_id, self._self_frame(user_id, true_status))
        elif online:
            self._persist_status(user_id, PresenceStatus.ONLINE)
            await self._announce(user_id, PresenceStatus.ONLINE)
        return hidden

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _announce(self, user_id: str, status: PresenceStatus) -> None:
        if not self._broadcast_enabled:
            return
        delivered = await self._registry.broadcast(
            envelope(PRESENCE_UPDATE, {"userId": user_id, "status": status.value})
        )
        logger.debug(f"[Presence] {user_id} -> {status.value} broadcast to {delivered} connections")

    def _self_frame(self, user_id: str, status: PresenceStatus) -> dict:
        return envelope(
            PRESENCE_SELF, {"userId": user_id, "status": status.value, "hidden": True}
        )

    def _is_hidden(self, user_id: str) -> bool:
        try:
            return self._directory.is_hidden(user_id)
        except Exception as e:
            logger.warning(f"[Presence] Could not read hidePresence for {user_id}: {e}")
            return False

    def _persist_status(self, user_id: str, status: PresenceStatus) -> None:
        try:
            self._directory.set_status(user_id, status)
        except Exception as e:
            logger.warning(f"[Presence] Failed to persist status {status.value} for {user_id}: {e}")

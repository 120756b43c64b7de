"""Connection Registry for live realtime connections.

Maps a user id to the set of that user's open connections (several devices
or tabs may be connected at once). This is the only in-memory shared
mutable structure of the realtime core: it lives for the process lifetime
and is mutated only by the connect/disconnect handlers. Every other
component reaches live connections through the query/emit methods below.

Registry state is advisory, not business data: register/unregister never
fail, duplicate or unknown input is a no-op.

Thread Safety:
    Designed for a single event loop. register/unregister run without
    awaiting, so they are atomic with respect to each other.

Performance Notes:
    - Delivery uses asyncio.gather() so one slow connection does not delay
      the others
    - A failing send is logged and skipped; the connection stays registered
      until its own disconnect handler unregisters it
"""
import asyncio
import logging
from typing import Any, Dict, Iterable, List, Optional, Set

logger = logging.getLogger(__name__)


class ConnectionRegistry:
    """Tracks live connections per user and pushes frames to them.

    A connection is identified by ``connection_id`` and backed by a channel
    object exposing ``async send_json(dict)`` (a Starlette ``WebSocket`` in
    production).
    """

    def __init__(self) -> None:
        # user_id -> set of connection ids
        self._by_user: Dict[str, Set[str]] = {}

        # connection_id -> (user_id, channel)
        self._channels: Dict[str, tuple] = {}

    # =========================================================================
    # Mutation (connect/disconnect handlers only)
    # =========================================================================

    def register(self, user_id: str, connection_id: str, channel: Any) -> bool:
        """Add a connection to a user's set.

        Args:
            user_id: Authenticated owner of the connection.
            connection_id: Unique id of the connection.
            channel: Object used to push frames to this connection.

        Returns:
            True if this is the user's first connection (a presence-relevant
            transition), False otherwise, including duplicate registration.
        """
        if connection_id in self._channels:
            logger.debug(f"[Registry] Connection {connection_id} already registered")
            return False

        connections = self._by_user.setdefault(user_id, set())
        first = not connections
        connections.add(connection_id)
        self._channels[connection_id] = (user_id, channel)
        logger.info(
            f"[Registry] Registered connection {connection_id} for user {user_id} "
            f"({len(connections)} active)"
        )
        return first

    def unregister(self, user_id: str, connection_id: str) -> bool:
        """Remove a connection from a user's set.

        Returns:
            True if the user's set became empty (a presence-relevant
            transition), False otherwise, including unknown input.
        """
        connections = self._by_user.get(user_id)
        if not connections or connection_id not in connections:
            return False

        connections.discard(connection_id)
        self._channels.pop(connection_id, None)
        logger.info(
            f"[Registry] Unregistered connection {connection_id} for user {user_id} "
            f"({len(connections)} remaining)"
        )
        if connections:
            return False
        del self._by_user[user_id]
        return True

    # =========================================================================
    # Queries
    # =========================================================================

    def active_connections(self, user_id: str) -> Set[str]:
        """Connection ids currently open for a user (a copy)."""
        return set(self._by_user.get(user_id, ()))

    def is_online(self, user_id: str) -> bool:
        return bool(self._by_user.get(user_id))

    def online_users(self) -> Set[str]:
        return set(self._by_user)

    def all_connections(self) -> Set[str]:
        return set(self._channels)

    def owner_of(self, connection_id: str) -> Optional[str]:
        entry = self._channels.get(connection_id)
        return entry[0] if entry else None

    def connection_count(self) -> int:
        return len(self._channels)

    # =========================================================================
    # Emission
    # =========================================================================

    async def deliver(self, connection_ids: Iterable[str], frame: dict) -> List[str]:
        """Push one frame to each listed connection concurrently.

        Each connection id is sent to at most once per call. Unknown ids are
        skipped.

        Returns:
            Connection ids that accepted the frame.
        """
        targets = [
            (cid, self._channels[cid][1])
            for cid in dict.fromkeys(connection_ids)
            if cid in self._channels
        ]
        if not targets:
            return []

        results = await asyncio.gather(
            *[self._safe_send(channel, frame) for _, channel in targets],
            return_exceptions=True,
        )
        delivered = [cid for (cid, _), ok in zip(targets, results) if ok is True]
        if len(delivered) < len(targets):
            logger.debug(
                f"[Registry] {len(targets) - len(delivered)} of {len(targets)} sends "
                f"failed for event {frame.get('event')}"
            )
        return delivered

    async def emit(self, user_id: str, frame: dict) -> int:
        """Push a frame to every connection of one user. Returns deliveries."""
        return len(await self.deliver(self.active_connections(user_id), frame))

    async def broadcast(self, frame: dict) -> int:
        """Push a frame to every registered connection. Returns deliveries."""
        return len(await self.deliver(self.all_connections(), frame))

    async def _safe_send(self, channel: Any, frame: dict) -> bool:
        """Send a frame with error handling.

        Returns:
            True if successful, False if the connection failed.
        """
        try:
            await channel.send_json(frame)
            return True
        except Exception as e:
            logger.debug(f"[Registry] Failed to send to connection: {e}")
            return False

    def clear(self) -> None:
        """Drop all registrations (used on shutdown and by tests)."""
        self._by_user.clear()
        self._channels.clear()


# Global singleton instance shared by the connect/disconnect handlers
registry = ConnectionRegistry()

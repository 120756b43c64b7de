"""ChatService: wires the realtime core together.

One instance per process, built from the active configuration:

    ConnectionRegistry (module singleton)
        -> PresenceTracker   (connect/disconnect, status)
        -> DeliveryRouter    (fan-out)
            -> ReadStateEngine (send, markRead, unread counts, fetch)
            -> GroupService    (group lifecycle)

Routers reach the components through :meth:`ChatService.get_instance`.
"""
import logging
from typing import Optional

from chatline.config import AppConfig, get_config
from chatline.users.service import UserDirectory

from .delivery import DeliveryRouter
from .groups import GroupService
from .presence import PresenceTracker
from .read_state import ReadStateEngine
from .registry import ConnectionRegistry, registry as default_registry
from .store import ConversationStore

logger = logging.getLogger(__name__)


class ChatService:
    """Holds the shared collaborators of the realtime core."""

    _instance: Optional["ChatService"] = None

    def __init__(
        self,
        config: AppConfig,
        store: ConversationStore,
        directory: UserDirectory,
        registry: ConnectionRegistry,
    ) -> None:
        self.config = config
        self.store = store
        self.directory = directory
        self.registry = registry
        self.presence = PresenceTracker(
            registry, directory, broadcast_enabled=config.presence.broadcast_enabled
        )
        self.delivery = DeliveryRouter(registry, store)
        self.read_state = ReadStateEngine(store, directory, self.delivery, config.messages)
        self.groups = GroupService(store, directory, self.delivery)

    @classmethod
    def get_instance(cls) -> "ChatService":
        if cls._instance is None:
            config = get_config()
            cls._instance = cls(
                config,
                ConversationStore.get_instance(config.storage.chat_db_path),
                UserDirectory.get_instance(config.storage.users_db_path),
                default_registry,
            )
            logger.info("[ChatService] Initialized")
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Drop the service and the stores it opened (used on shutdown and by tests)."""
        cls._instance = None
        ConversationStore.reset_instance()
        UserDirectory.reset_instance()
        default_registry.clear()


def get_chat_service() -> ChatService:
    return ChatService.get_instance()

"""Shared test fixtures and configuration for backend tests."""
import uuid
from typing import List, Optional

import pytest

from chatline.chat.service import ChatService
from chatline.config import AppConfig, StorageSettings, reset_config, set_config


class FakeConnection:
    """Records frames pushed to it, standing in for a WebSocket."""

    def __init__(self, fail: bool = False) -> None:
        self.frames: List[dict] = []
        self.fail = fail

    async def send_json(self, frame: dict) -> None:
        if self.fail:
            raise RuntimeError("connection closed")
        self.frames.append(frame)

    def events(self, name: Optional[str] = None) -> List[dict]:
        """Payloads of received frames, optionally only those named ``name``."""
        return [f["data"] for f in self.frames if name is None or f["event"] == name]


@pytest.fixture(autouse=True)
def app_config():
    """In-memory stores and a fixed signing key for every test."""
    config = AppConfig(
        storage=StorageSettings(chat_db_path=":memory:", users_db_path=":memory:")
    )
    config.secrets.jwt.secret_key = "test-secret"
    set_config(config)
    ChatService.reset_instance()
    yield config
    ChatService.reset_instance()
    reset_config()


@pytest.fixture
def chat(app_config) -> ChatService:
    return ChatService.get_instance()


@pytest.fixture
def users(chat):
    """alice, bob and carol are visible; dana hides presence."""
    directory = chat.directory
    return {
        "alice": directory.create_user("alice", "Alice", user_id="alice"),
        "bob": directory.create_user("bob", "Bob", user_id="bob"),
        "carol": directory.create_user("carol", "Carol", user_id="carol"),
        "dana": directory.create_user("dana", "Dana", user_id="dana", hide_presence=True),
    }


@pytest.fixture
def connect(chat):
    """Open a fake live connection for a user through the Presence Tracker."""

    async def _connect(user_id: str, fail: bool = False) -> FakeConnection:
        conn = FakeConnection(fail=fail)
        conn.id = uuid.uuid4().hex
        await chat.presence.connect(user_id, conn.id, conn)
        return conn

    return _connect

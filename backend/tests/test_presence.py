"""Tests for the Presence Tracker."""
import pytest

from chatline.chat.presence import PresenceTracker
from chatline.errors import NotFoundError
from chatline.users.schemas import PresenceStatus


def _updates(conn, user_id):
    return [d for d in conn.events("presence:update") if d["userId"] == user_id]


class TestConnect:
    @pytest.mark.asyncio
    async def test_first_connection_broadcasts_online_once(self, chat, users, connect):
        observer = await connect("bob")
        alice = await connect("alice")

        assert _updates(observer, "alice") == [{"userId": "alice", "status": "online"}]
        assert chat.directory.get("alice").status == PresenceStatus.ONLINE
        assert alice.frames[0] == {"event": "connection:ack", "data": {"userId": "alice"}}

        # A second device is not a transition
        await connect("alice")
        assert len(_updates(observer, "alice")) == 1

    @pytest.mark.asyncio
    async def test_hidden_user_connect_is_private(self, chat, users, connect):
        observer = await connect("bob")
        dana = await connect("dana")

        assert _updates(observer, "dana") == []
        assert dana.events("presence:self") == [
            {"userId": "dana", "status": "online", "hidden": True}
        ]
        assert dana.events("presence:update") == []
        assert chat.directory.get("dana").status == PresenceStatus.OFFLINE

    @pytest.mark.asyncio
    async def test_persistence_failure_does_not_block_connect(
        self, chat, users, connect, monkeypatch
    ):
        def broken(*args, **kwargs):
            raise RuntimeError("disk full")

        monkeypatch.setattr(chat.directory, "set_status", broken)
        observer = await connect("bob")
        await connect("alice")

        assert chat.registry.is_online("alice")
        assert _updates(observer, "alice") == [{"userId": "alice", "status": "online"}]

    @pytest.mark.asyncio
    async def test_unknown_user_treated_as_visible(self, chat, connect):
        observer = await connect("ghost-observer")
        await connect("ghost")
        assert _updates(observer, "ghost") == [{"userId": "ghost", "status": "online"}]


class TestDisconnect:
    @pytest.mark.asyncio
    async def test_last_disconnect_broadcasts_offline(self, chat, users, connect):
        observer = await connect("bob")
        phone = await connect("alice")
        laptop = await connect("alice")

        assert await chat.presence.disconnect("alice", phone.id) is False
        assert _updates(observer, "alice")[-1]["status"] == "online"

        assert await chat.presence.disconnect("alice", laptop.id) is True
        assert _updates(observer, "alice")[-1] == {"userId": "alice", "status": "offline"}
        assert chat.directory.get("alice").status == PresenceStatus.OFFLINE

    @pytest.mark.asyncio
    async def test_hidden_disconnect_not_broadcast(self, chat, users, connect):
        observer = await connect("bob")
        dana = await connect("dana")
        await chat.presence.disconnect("dana", dana.id)
        assert _updates(observer, "dana") == []

    @pytest.mark.asyncio
    async def test_hidden_last_disconnect_emits_nothing(self, chat, users, connect, monkeypatch):
        dana = await connect("dana")
        emitted = []

        async def record(user_id, frame):
            emitted.append((user_id, frame))
            return 0

        monkeypatch.setattr(chat.registry, "emit", record)
        assert await chat.presence.disconnect("dana", dana.id) is True

        assert emitted == []
        assert dana.events("presence:self") == [
            {"userId": "dana", "status": "online", "hidden": True}
        ]
        assert chat.directory.get("dana").status == PresenceStatus.OFFLINE

    @pytest.mark.asyncio
    async def test_unknown_connection_disconnect_is_noop(self, chat, users, connect):
        observer = await connect("bob")
        assert await chat.presence.disconnect("alice", "never-registered") is False
        assert _updates(observer, "alice") == []


class TestExplicitStatus:
    @pytest.mark.asyncio
    async def test_status_accepted_without_connections(self, chat, users, connect):
        observer = await connect("bob")

        status = await chat.presence.set_status("alice", PresenceStatus.BUSY)

        assert status == PresenceStatus.BUSY
        assert chat.directory.get("alice").status == PresenceStatus.BUSY
        assert _updates(observer, "alice") == [{"userId": "alice", "status": "busy"}]

    @pytest.mark.asyncio
    async def test_hidden_status_goes_to_self_only(self, chat, users, connect):
        observer = await connect("bob")
        dana = await connect("dana")

        await chat.presence.set_status("dana", PresenceStatus.AWAY)

        assert _updates(observer, "dana") == []
        assert dana.events("presence:self")[-1] == {
            "userId": "dana", "status": "away", "hidden": True
        }

    @pytest.mark.asyncio
    async def test_unknown_user(self, chat):
        with pytest.raises(NotFoundError):
            await chat.presence.set_status("ghost", PresenceStatus.AWAY)


class TestVisibility:
    @pytest.mark.asyncio
    async def test_hiding_while_online_announces_offline(self, chat, users, connect):
        observer = await connect("bob")
        alice = await connect("alice")

        await chat.presence.set_visibility("alice", True)

        assert _updates(observer, "alice")[-1] == {"userId": "alice", "status": "offline"}
        assert alice.events("presence:self")[-1]["status"] == "online"
        assert chat.directory.is_hidden("alice")

    @pytest.mark.asyncio
    async def test_unhiding_while_online_announces_online(self, chat, users, connect):
        observer = await connect("bob")
        await connect("dana")

        await chat.presence.set_visibility("dana", False)

        assert _updates(observer, "dana") == [{"userId": "dana", "status": "online"}]
        assert chat.directory.get("dana").status == PresenceStatus.ONLINE


class TestBroadcastDisabled:
    @pytest.mark.asyncio
    async def test_no_global_broadcast(self, chat, users, connect):
        chat.presence = PresenceTracker(chat.registry, chat.directory, broadcast_enabled=False)
        observer = await connect("bob")
        await connect("alice")

        assert observer.events("presence:update") == []
        assert chat.directory.get("alice").status == PresenceStatus.ONLINE

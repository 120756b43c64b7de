"""Tests for group lifecycle operations."""
import itertools

import pytest
import pytest_asyncio

from chatline.errors import AuthorizationError, NotFoundError, ValidationError


@pytest_asyncio.fixture
async def group(chat, users):
    return await chat.groups.create("alice", "  Project  ", ["bob", "bob", "alice"])


class TestCreate:
    @pytest.mark.asyncio
    async def test_creator_is_member_and_admin(self, group):
        assert group.name == "Project"
        assert sorted(group.members) == ["alice", "bob"]
        assert group.admins == ["alice"]
        assert group.createdBy == "alice"

    @pytest.mark.asyncio
    async def test_unknown_member_rejected(self, chat, users):
        with pytest.raises(ValidationError):
            await chat.groups.create("alice", "Bad", ["bob", "ghost"])
        assert chat.groups.list_groups("alice") == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("name", [None, "", "   ", "x" * 101])
    async def test_name_required(self, chat, users, name):
        with pytest.raises(ValidationError):
            await chat.groups.create("alice", name, [])


class TestMembership:
    @pytest.mark.asyncio
    async def test_add_member_notifies_everyone(self, chat, group, connect):
        bob = await connect("bob")
        carol = await connect("carol")

        updated = await chat.groups.add_member("bob", group.id, "carol")

        assert "carol" in updated.members
        assert len(bob.events("group:updated")) == 1
        assert carol.events("group:updated")[0]["group"]["id"] == group.id

    @pytest.mark.asyncio
    async def test_add_existing_member_is_noop(self, chat, group, connect):
        bob = await connect("bob")
        await chat.groups.add_member("alice", group.id, "bob")
        assert bob.events("group:updated") == []

    @pytest.mark.asyncio
    async def test_add_member_checks(self, chat, group):
        with pytest.raises(AuthorizationError):
            await chat.groups.add_member("carol", group.id, "dana")
        with pytest.raises(NotFoundError):
            await chat.groups.add_member("alice", group.id, "ghost")
        with pytest.raises(NotFoundError):
            await chat.groups.add_member("alice", "missing", "carol")
        with pytest.raises(ValidationError):
            await chat.groups.add_member("alice", group.id, None)

    @pytest.mark.asyncio
    async def test_add_by_username(self, chat, group):
        updated = await chat.groups.add_member_by_username("alice", group.id, "dana")
        assert "dana" in updated.members
        with pytest.raises(NotFoundError):
            await chat.groups.add_member_by_username("alice", group.id, "nobody")

    @pytest.mark.asyncio
    async def test_leave(self, chat, group, connect):
        alice = await connect("alice")
        bob = await connect("bob")
        await chat.groups.promote("alice", group.id, "bob")

        remaining = await chat.groups.leave("bob", group.id)

        assert remaining.members == ["alice"]
        assert remaining.admins == ["alice"]
        assert alice.events("group:updated")[-1]["group"]["members"] == ["alice"]
        # The leaver only saw the promotion
        assert len(bob.events("group:updated")) == 1

        with pytest.raises(AuthorizationError):
            await chat.groups.leave("bob", group.id)

    @pytest.mark.asyncio
    async def test_members_listing(self, chat, group):
        members = {m["id"]: m for m in chat.groups.members("bob", group.id)}
        assert members["alice"]["isAdmin"] is True
        assert members["bob"]["isAdmin"] is False
        with pytest.raises(AuthorizationError):
            chat.groups.members("carol", group.id)


class TestAdmins:
    @pytest.mark.asyncio
    async def test_promote(self, chat, group):
        updated = await chat.groups.promote("alice", group.id, "bob")
        assert sorted(updated.admins) == ["alice", "bob"]

    @pytest.mark.asyncio
    async def test_promote_requires_admin(self, chat, group):
        with pytest.raises(AuthorizationError):
            await chat.groups.promote("bob", group.id, "alice")

    @pytest.mark.asyncio
    async def test_promote_requires_membership(self, chat, group):
        with pytest.raises(ValidationError):
            await chat.groups.promote("alice", group.id, "carol")

    @pytest.mark.asyncio
    async def test_rename_permissions(self, chat, group):
        with pytest.raises(AuthorizationError):
            await chat.groups.rename("bob", group.id, "Mine now")

        await chat.groups.promote("alice", group.id, "bob")
        renamed = await chat.groups.rename("bob", group.id, "Renamed")
        assert renamed.name == "Renamed"

        with pytest.raises(AuthorizationError):
            await chat.groups.rename("carol", group.id, "Outsider")


class TestListing:
    @pytest.mark.asyncio
    async def test_most_recent_activity_first(self, chat, users, monkeypatch):
        ticks = itertools.count(1_000)
        monkeypatch.setattr("chatline.chat.store.time.time", lambda: float(next(ticks)))
        older = await chat.groups.create("alice", "Older", ["bob"])
        newer = await chat.groups.create("alice", "Newer", ["bob"])
        message = await chat.read_state.send_group("bob", older.id, "bump")

        groups = chat.groups.list_groups("alice")

        assert [g.id for g in groups] == [older.id, newer.id]
        assert groups[0].lastMessage.id == message.id
        assert groups[1].lastMessage is None

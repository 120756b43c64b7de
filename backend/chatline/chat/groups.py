"""Group lifecycle: create, membership, admins and rename.

Every successful change is pushed to the group's current members
(``group:new`` on creation, ``group:updated`` afterwards). Membership is
stored one row per member, so concurrent adds and leaves on the same group
do not overwrite each other.
"""
import logging
from typing import Any, Dict, Iterable, List, Optional

from chatline.errors import AuthorizationError, NotFoundError, ValidationError
from chatline.users.service import UserDirectory

from .delivery import DeliveryRouter
from .schemas import Group
from .store import ConversationStore

logger = logging.getLogger(__name__)

MAX_GROUP_NAME_LENGTH = 100


class GroupService:
    """Group operations performed on behalf of an authenticated caller."""

    def __init__(
        self,
        store: ConversationStore,
        directory: UserDirectory,
        delivery: DeliveryRouter,
    ) -> None:
        self._store = store
        self._directory = directory
        self._delivery = delivery

    # =========================================================================
    # Reads
    # =========================================================================

    def list_groups(self, user_id: str) -> List[Group]:
        """Groups the caller belongs to, each with its cached last message."""
        return self._store.groups_for_user(user_id)

    def members(self, user_id: str, group_id: str) -> List[Dict[str, Any]]:
        """Directory details for every member, flagged with admin status."""
        group = self._require_member(user_id, group_id)
        users = self._directory.get_many(group.members)
        return [
            {**u.public(), "isAdmin": group.is_admin(u.id)}
            for u in users
        ]

    # =========================================================================
    # Writes
    # =========================================================================

    async def create(
        self, creator_id: str, name: Optional[str], member_ids: Optional[Iterable[str]] = None
    ) -> Group:
        """Create a group; the creator becomes a member and its first admin.

        Raises:
            ValidationError: Missing name, or a listed member does not exist.
        """
        name = self._clean_name(name)
        requested = [m for m in dict.fromkeys(member_ids or []) if m and m != creator_id]
        found = {u.id for u in self._directory.get_many(requested)}
        missing = [m for m in requested if m not in found]
        if missing:
            raise ValidationError("One or more members do not exist")

        group = self._store.create_group(name, creator_id, requested)
        logger.info(f"[Groups] {creator_id} created group {group.id} with {len(group.members)} members")
        await self._push(group, created=True)
        return group

    async def add_member(self, user_id: str, group_id: str, new_member_id: Optional[str]) -> Group:
        """Add a user to the group. Adding an existing member is a no-op.

        Raises:
            ValidationError: No user given.
            NotFoundError: Unknown group or user.
            AuthorizationError: The caller is not a member.
        """
        if not new_member_id:
            raise ValidationError("userId is required")
        group = self._require_member(user_id, group_id)
        if self._directory.get(new_member_id) is None:
            raise NotFoundError("User not found")
        if group.is_member(new_member_id):
            return group

        self._store.add_member(group_id, new_member_id)
        group = self._store.get_group(group_id)
        logger.info(f"[Groups] {user_id} added {new_member_id} to {group_id}")
        await self._push(group)
        return group

    async def add_member_by_username(
        self, user_id: str, group_id: str, username: Optional[str]
    ) -> Group:
        username = (username or "").strip()
        if not username:
            raise ValidationError("Username is required")
        self._require_member(user_id, group_id)
        user = self._directory.find_by_username(username)
        if user is None:
            raise NotFoundError("User not found")
        return await self.add_member(user_id, group_id, user.id)

    async def leave(self, user_id: str, group_id: str) -> Group:
        """Remove the caller from the group and its admins."""
        self._require_member(user_id, group_id)
        self._store.remove_member(group_id, user_id)
        group = self._store.get_group(group_id)
        logger.info(f"[Groups] {user_id} left {group_id} ({len(group.members)} remaining)")
        await self._push(group)
        return group

    async def promote(self, user_id: str, group_id: str, target_id: Optional[str]) -> Group:
        """Make a member an admin. Only admins may promote.

        Raises:
            ValidationError: No user given, or the user is not a member.
            AuthorizationError: The caller is not an admin.
        """
        if not target_id:
            raise ValidationError("userId is required")
        group = self._require_group(group_id)
        if not group.is_admin(user_id):
            raise AuthorizationError("Only admins can promote members")
        if not group.is_member(target_id):
            raise ValidationError("User is not a member of this group")
        if group.is_admin(target_id):
            return group

        self._store.add_admin(group_id, target_id)
        group = self._store.get_group(group_id)
        logger.info(f"[Groups] {user_id} promoted {target_id} in {group_id}")
        await self._push(group)
        return group

    async def rename(self, user_id: str, group_id: str, name: Optional[str]) -> Group:
        """Rename the group. Only its creator or an admin may rename it."""
        name = self._clean_name(name)
        group = self._require_member(user_id, group_id)
        if user_id != group.createdBy and not group.is_admin(user_id):
            raise AuthorizationError("Only the creator or an admin can rename the group")

        self._store.rename_group(group_id, name)
        group = self._store.get_group(group_id)
        logger.info(f"[Groups] {user_id} renamed {group_id} to {name!r}")
        await self._push(group)
        return group

    # =========================================================================
    # Helpers
    # =========================================================================

    def _require_group(self, group_id: str) -> Group:
        group = self._store.get_group(group_id)
        if group is None:
            raise NotFoundError("Group not found")
        return group

    def _require_member(self, user_id: str, group_id: str) -> Group:
        group = self._require_group(group_id)
        if not group.is_member(user_id):
            raise AuthorizationError("Not a member of this group")
        return group

    @staticmethod
    def _clean_name(name: Optional[str]) -> str:
        name = name.strip() if isinstance(name, str) else ""
        if not name:
            raise ValidationError("Group name is required")
        if len(name) > MAX_GROUP_NAME_LENGTH:
            raise ValidationError(f"Group name exceeds {MAX_GROUP_NAME_LENGTH} characters")
        return name

    async def _push(self, group: Group, created: bool = False) -> None:
        try:
            await self._delivery.push_group_event(group, created=created)
        except Exception as e:
            logger.warning(f"[Groups] Push for group {group.id} failed: {e}")

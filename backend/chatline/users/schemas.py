"""Pydantic schemas for the User Directory.

Only the attributes the realtime core reads or writes are modelled here;
credentials and profile fields are owned by the account service.
"""
from enum import Enum

from pydantic import BaseModel, Field


class PresenceStatus(str, Enum):
    """A user's presence indicator.

    Attributes:
        ONLINE: At least one live connection (or set manually).
        AWAY: Set manually by the user.
        BUSY: Set manually by the user.
        OFFLINE: No live connection (or set manually).
    """
    ONLINE = "online"
    AWAY = "away"
    BUSY = "busy"
    OFFLINE = "offline"


class UserRecord(BaseModel):
    """User as seen by the chat core.

    Attributes:
        id: Opaque unique user id.
        username: Unique handle, used for by-username lookups.
        name: Display name.
        status: Persisted presence status.
        hidePresence: When true, presence transitions are not broadcast.
        avatarUrl: Optional avatar location.
    """
    id: str = Field(..., description="Unique user ID")
    username: str = Field(..., description="Unique username")
    name: str = Field(default="", description="Display name")
    status: PresenceStatus = Field(default=PresenceStatus.OFFLINE)
    hidePresence: bool = Field(default=False)
    avatarUrl: str = Field(default="")

    def public(self) -> dict:
        """Fields exposed to other users (hidePresence stays private)."""
        return self.model_dump(mode="json", exclude={"hidePresence"})


class StatusUpdate(BaseModel):
    """Request body for an explicit status change."""
    status: PresenceStatus


class PresenceVisibilityUpdate(BaseModel):
    """Request body for toggling presence visibility."""
    hidePresence: bool

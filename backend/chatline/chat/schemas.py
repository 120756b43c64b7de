"""Pydantic schemas for messages, groups and chat requests.

A message always has exactly one target, modelled as a discriminated union
on ``kind``:

    {"kind": "direct", "userId": "<other user>"}
    {"kind": "group",  "groupId": "<group>"}

These schemas are used by:
    - ConversationStore: row <-> model conversion
    - ReadStateEngine / GroupService: return values
    - chat.router: request bodies and JSON responses
"""
from enum import Enum
from typing import Annotated, Any, List, Literal, Optional, Union

from pydantic import BaseModel, Field, model_validator


class MessageStatus(str, Enum):
    """Coarse, informational delivery status of a message.

    Only ever advances: sent -> delivered -> read. The authoritative read
    state is the per-reader ``readBy`` set.
    """
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"


class TargetKind(str, Enum):
    DIRECT = "direct"
    GROUP = "group"


class DirectTarget(BaseModel):
    """Message addressed to a single other user."""
    kind: Literal["direct"] = "direct"
    userId: str = Field(..., description="Receiving user ID")

    @property
    def target_id(self) -> str:
        return self.userId


class GroupTarget(BaseModel):
    """Message addressed to every member of a group."""
    kind: Literal["group"] = "group"
    groupId: str = Field(..., description="Target group ID")

    @property
    def target_id(self) -> str:
        return self.groupId


ConversationTarget = Annotated[
    Union[DirectTarget, GroupTarget], Field(discriminator="kind")
]


class AttachmentType(str, Enum):
    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"
    FILE = "file"


def classify_attachment(mime: str) -> AttachmentType:
    """Derive the attachment type from its MIME type."""
    mime = (mime or "").lower()
    if mime.startswith("image/"):
        return AttachmentType.IMAGE
    if mime.startswith("video/"):
        return AttachmentType.VIDEO
    if mime.startswith("audio/"):
        return AttachmentType.AUDIO
    return AttachmentType.FILE


class Attachment(BaseModel):
    """Reference to media stored by the upload service.

    Attributes:
        url: Location of the stored file.
        type: image, video, audio or file (derived from mime when omitted).
        mime: MIME type reported by the upload service.
        name: Original filename.
        size: Size in bytes.
        width/height/duration: Optional media metadata.
    """
    url: str = Field(..., min_length=1)
    type: Optional[AttachmentType] = None
    mime: str = ""
    name: str = ""
    size: int = Field(default=0, ge=0)
    width: Optional[int] = None
    height: Optional[int] = None
    duration: Optional[float] = None

    @model_validator(mode="after")
    def _fill_type(self) -> "Attachment":
        if self.type is None:
            self.type = classify_attachment(self.mime)
        return self


class Message(BaseModel):
    """A persisted chat message.

    Attributes:
        id: Unique message ID.
        senderId: User who sent the message.
        target: Direct or group target (discriminated by ``kind``).
        text: Message text (trimmed); None for attachment-only messages.
        attachment: Attachment reference; None for text-only messages.
        ts: Creation time, seconds since epoch.
        status: Coarse delivery status.
        readBy: User IDs that acknowledged the message (append-only).
    """
    id: str
    senderId: str
    target: ConversationTarget
    text: Optional[str] = None
    attachment: Optional[Attachment] = None
    ts: float
    status: MessageStatus = MessageStatus.SENT
    readBy: List[str] = Field(default_factory=list)

    @property
    def is_group(self) -> bool:
        return self.target.kind == TargetKind.GROUP.value


class Group(BaseModel):
    """A chat group.

    ``lastMessageId`` is a cache of the most recent message and can always
    be recomputed from the messages table. ``lastMessage`` is only filled
    in by listings.
    """
    id: str
    name: str
    members: List[str] = Field(default_factory=list)
    admins: List[str] = Field(default_factory=list)
    createdBy: str
    createdAt: float
    lastMessageId: Optional[str] = None
    lastMessage: Optional[Message] = None

    def is_member(self, user_id: str) -> bool:
        return user_id in self.members

    def is_admin(self, user_id: str) -> bool:
        return user_id in self.admins


class UnreadCount(BaseModel):
    """Derived unread count for one conversation of one reader."""
    type: TargetKind
    id: str
    unread: int


# =============================================================================
# Request bodies
# =============================================================================
#
# Fields are optional on purpose: missing values are reported by the services
# as 400 validation errors with a descriptive message.


class SendDirectRequest(BaseModel):
    toUserId: Optional[str] = None
    text: Optional[str] = None
    attachment: Optional[Attachment] = None


class SendDirectByUsernameRequest(BaseModel):
    username: Optional[str] = None
    text: Optional[str] = None
    attachment: Optional[Attachment] = None


class SendGroupRequest(BaseModel):
    groupId: Optional[str] = None
    text: Optional[str] = None
    attachment: Optional[Attachment] = None


class MarkReadRequest(BaseModel):
    messageIds: Any = None


class CreateGroupRequest(BaseModel):
    name: Optional[str] = None
    members: Optional[List[str]] = None


class RenameGroupRequest(BaseModel):
    name: Optional[str] = None


class MemberRequest(BaseModel):
    userId: Optional[str] = None


class UsernameRequest(BaseModel):
    username: Optional[str] = None

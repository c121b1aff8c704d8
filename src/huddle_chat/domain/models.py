"""Domain models for the chat core."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ChatKind(str, Enum):
    DIRECT = "direct"
    GROUP = "group"


class Role(str, Enum):
    MEMBER = "member"
    ADMIN = "admin"


class MessageType(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    VIDEO = "video"
    FILE = "file"


class RequestStatus(str, Enum):
    """Status shared by friend requests and group invitations."""

    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"


class Profile(BaseModel):
    """Public profile of an identity-provider user."""

    id: str
    username: str
    full_name: str
    bio: str = ""
    avatar_url: Optional[str] = None
    is_online: bool = False
    last_seen: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Chat(BaseModel):
    """A direct or group conversation."""

    id: UUID = Field(default_factory=uuid4)
    kind: ChatKind
    name: Optional[str] = None
    description: str = ""
    avatar_url: Optional[str] = None
    created_by: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Membership(BaseModel):
    """A user's membership in a chat."""

    chat_id: UUID
    user_id: str
    role: Role = Role.MEMBER
    joined_at: datetime = Field(default_factory=utcnow)


class Message(BaseModel):
    """Message model.

    ``seq`` is the chat-scoped ordering token and doubles as the cursor for
    ``list_since``.
    """

    id: UUID = Field(default_factory=uuid4)
    chat_id: UUID
    sender_id: str
    content: str
    message_type: MessageType = MessageType.TEXT
    file_name: Optional[str] = None
    file_size: Optional[int] = None
    reply_to: Optional[UUID] = None
    seq: int = 0
    created_at: datetime = Field(default_factory=utcnow)


class FriendRequest(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    sender_id: str
    receiver_id: str
    status: RequestStatus = RequestStatus.PENDING
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Friendship(BaseModel):
    """Symmetric friendship; ``user1_id`` is the side that sent the request."""

    id: UUID = Field(default_factory=uuid4)
    user1_id: str
    user2_id: str
    created_at: datetime = Field(default_factory=utcnow)

    def other(self, user_id: str) -> str:
        return self.user2_id if user_id == self.user1_id else self.user1_id


class GroupInvitation(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    chat_id: UUID
    inviter_id: str
    invitee_id: str
    status: RequestStatus = RequestStatus.PENDING
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class TypingState(BaseModel):
    """Ephemeral typing flag. ``last_updated`` is a monotonic clock reading."""

    chat_id: UUID
    user_id: str
    is_typing: bool
    last_updated: float


class FriendRequestOutcome(BaseModel):
    """Result of answering a friend request."""

    request: FriendRequest
    friendship: Optional[Friendship] = None
    chat_id: Optional[UUID] = None


class Table(str, Enum):
    """Relations whose mutations are published as change events."""

    CHATS = "chats"
    CHAT_MEMBERS = "chat_members"
    MESSAGES = "messages"
    TYPING_STATUS = "typing_status"
    FRIEND_REQUESTS = "friend_requests"
    FRIENDSHIPS = "friendships"
    GROUP_INVITATIONS = "group_invitations"

    @property
    def chat_scoped(self) -> bool:
        return self in CHAT_TABLES


CHAT_TABLES = frozenset({Table.CHATS, Table.CHAT_MEMBERS, Table.MESSAGES, Table.TYPING_STATUS})


class EventKind(str, Enum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


class ChangeEvent(BaseModel):
    """A committed mutation, as pushed to realtime subscribers.

    Chat-scoped events carry ``chat_id`` and reach the chat's current members.
    User-scoped events carry ``audience`` instead. ``extra_recipients`` names
    users who must see this one event even though they are no longer members.
    """

    table: Table
    kind: EventKind
    record: Dict[str, Any]
    chat_id: Optional[UUID] = None
    audience: List[str] = []
    extra_recipients: List[str] = []
    sequence: int = 0
    committed_at: datetime = Field(default_factory=utcnow)


class Topic(BaseModel, frozen=True):
    """A (table, key) pair a subscriber registers interest in."""

    table: Table
    key: str

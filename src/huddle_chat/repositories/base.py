"""Base repository interfaces."""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import AsyncIterator, Callable, FrozenSet, List, Optional, Tuple
from uuid import UUID

import structlog

from ..domain.models import (
    ChangeEvent,
    Chat,
    ChatKind,
    Friendship,
    FriendRequest,
    GroupInvitation,
    Membership,
    Message,
    MessageType,
    Profile,
    RequestStatus,
    Role,
)

logger = structlog.get_logger()

EventListener = Callable[[ChangeEvent], None]


class EventSource:
    """Fan committed change events out to synchronous listeners.

    Stores call ``_emit`` inside the critical section that committed the
    change, so listeners observe events in commit order.
    """

    def __init__(self) -> None:
        self._listeners: List[EventListener] = []

    def add_listener(self, listener: EventListener) -> None:
        """Call ``listener`` with every event this store commits."""
        self._listeners.append(listener)

    def _emit(self, event: ChangeEvent) -> None:
        for listener in self._listeners:
            try:
                listener(event)
            except Exception as e:
                # The mutation is already committed; a broken listener must not undo it.
                logger.error(
                    "event_listener_failed",
                    table=event.table.value,
                    kind=event.kind.value,
                    error=str(e),
                )


class MembershipStore(EventSource, ABC):
    """Chats and their memberships. Single source of truth for authorization."""

    @abstractmethod
    def lookup_chat(self, chat_id: UUID) -> Optional[Chat]:
        """Direct lookup of a chat by id."""

    @abstractmethod
    def lookup_membership(self, chat_id: UUID, user_id: str) -> Optional[Membership]:
        """Direct primary-key lookup of a membership."""

    @abstractmethod
    def current_member_ids(self, chat_id: UUID) -> FrozenSet[str]:
        """User ids currently holding a membership in the chat."""

    @abstractmethod
    def record_activity(self, chat_id: UUID, when: datetime) -> None:
        """Bump the chat's activity timestamp."""

    @abstractmethod
    async def create_chat(
        self,
        kind: ChatKind,
        created_by: str,
        name: Optional[str] = None,
        description: str = "",
        avatar_url: Optional[str] = None,
    ) -> Chat:
        """Create an empty chat."""

    @abstractmethod
    async def get_chat(self, chat_id: UUID) -> Chat:
        """Get a chat or raise NotFound."""

    @abstractmethod
    async def update_chat(
        self,
        chat_id: UUID,
        name: Optional[str] = None,
        description: Optional[str] = None,
        avatar_url: Optional[str] = None,
    ) -> Chat:
        """Update group chat metadata."""

    @abstractmethod
    async def add_member(
        self, chat_id: UUID, user_id: str, role: Role = Role.MEMBER, capacity: Optional[int] = None
    ) -> Membership:
        """Add a membership."""

    @abstractmethod
    async def remove_member(self, chat_id: UUID, user_id: str) -> Membership:
        """Remove a membership."""

    @abstractmethod
    async def set_role(self, chat_id: UUID, user_id: str, role: Role) -> Membership:
        """Change a member's role."""

    @abstractmethod
    async def list_members(self, chat_id: UUID) -> List[Membership]:
        """Memberships of a chat, oldest first."""

    @abstractmethod
    async def list_chats(self, user_id: str) -> List[Chat]:
        """Chats the user currently belongs to."""

    @abstractmethod
    async def get_or_create_direct_chat(self, user_a: str, user_b: str) -> Tuple[Chat, bool]:
        """Atomic create-or-fetch of the direct chat for a user pair."""

    @abstractmethod
    async def purge_user(self, user_id: str) -> int:
        """Remove every membership of a user."""


class MessageStore(EventSource, ABC):
    """Append-only per-chat message log."""

    @abstractmethod
    async def append(
        self,
        chat_id: UUID,
        sender_id: str,
        content: str,
        message_type: MessageType = MessageType.TEXT,
        reply_to: Optional[UUID] = None,
        file_name: Optional[str] = None,
        file_size: Optional[int] = None,
    ) -> Message:
        """Append a message."""

    @abstractmethod
    async def get_message(self, message_id: UUID) -> Message:
        """Get a message or raise NotFound."""

    @abstractmethod
    async def list_since(
        self, chat_id: UUID, cursor: int, requester: str, limit: Optional[int] = None
    ) -> List[Message]:
        """Messages with ``seq > cursor`` in ascending order."""

    @abstractmethod
    def iter_since(
        self, chat_id: UUID, cursor: int, requester: str, page_size: int = 100
    ) -> AsyncIterator[Message]:
        """Lazy, page-at-a-time variant of ``list_since``."""

    @abstractmethod
    async def delete(self, message_id: UUID, requester: str) -> Message:
        """Remove one message."""

    @abstractmethod
    async def delete_all_by_sender(self, chat_id: UUID, sender_id: str, requester: str) -> List[Message]:
        """Remove every message of a sender in a chat."""


class ProfileStore(ABC):
    """User profiles."""

    @abstractmethod
    async def create(
        self,
        user_id: str,
        username: str,
        full_name: str,
        bio: str = "",
        avatar_url: Optional[str] = None,
    ) -> Profile:
        """Create a profile."""

    @abstractmethod
    async def get(self, user_id: str) -> Profile:
        """Get a profile or raise NotFound."""

    @abstractmethod
    async def exists(self, user_id: str) -> bool:
        """Whether a profile exists."""

    @abstractmethod
    async def update(self, requester: str, user_id: str, **fields) -> Profile:
        """Owner-only profile update."""

    @abstractmethod
    async def search(self, query: str, exclude: Optional[str] = None, limit: int = 10) -> List[Profile]:
        """Substring search on username and full name."""

    @abstractmethod
    async def set_online(self, user_id: str, is_online: bool) -> Optional[Profile]:
        """Session lifecycle update."""

    @abstractmethod
    async def delete(self, user_id: str) -> Profile:
        """Delete a profile."""


class SocialStore(EventSource, ABC):
    """Friend requests, friendships and group invitations."""

    @abstractmethod
    async def get_request(self, request_id: UUID) -> FriendRequest:
        """Get a friend request or raise NotFound."""

    @abstractmethod
    async def save_request(self, sender_id: str, receiver_id: str) -> FriendRequest:
        """Create a pending request, or reopen a declined one for the same pair."""

    @abstractmethod
    async def set_request_status(self, request_id: UUID, status: RequestStatus) -> FriendRequest:
        """Move a request to a new status."""

    @abstractmethod
    async def delete_request(self, request_id: UUID) -> FriendRequest:
        """Remove a request."""

    @abstractmethod
    async def list_requests(self, user_id: str, status: Optional[RequestStatus] = None) -> List[FriendRequest]:
        """Requests received by a user."""

    @abstractmethod
    async def ensure_friendship(self, user1_id: str, user2_id: str) -> Tuple[Friendship, bool]:
        """Create the friendship for a pair unless it already exists."""

    @abstractmethod
    async def delete_friendship(self, user_a: str, user_b: str) -> Friendship:
        """Remove a friendship."""

    @abstractmethod
    async def list_friendships(self, user_id: str) -> List[Friendship]:
        """Friendships involving a user."""

    @abstractmethod
    async def save_invitation(self, chat_id: UUID, inviter_id: str, invitee_id: str) -> GroupInvitation:
        """Create a pending invitation."""

    @abstractmethod
    async def get_invitation(self, invitation_id: UUID) -> GroupInvitation:
        """Get an invitation or raise NotFound."""

    @abstractmethod
    async def set_invitation_status(self, invitation_id: UUID, status: RequestStatus) -> GroupInvitation:
        """Move an invitation to a new status."""

    @abstractmethod
    async def list_invitations(self, user_id: str, status: Optional[RequestStatus] = None) -> List[GroupInvitation]:
        """Invitations addressed to a user."""

    @abstractmethod
    async def purge_user(self, user_id: str) -> None:
        """Remove everything that references a user."""


class BlobStore(ABC):
    """Opaque object storage: bytes in, URL out."""

    @abstractmethod
    async def put(self, data: bytes, content_type: str) -> str:
        """Store bytes and return their URL."""

    @abstractmethod
    async def get(self, key: str) -> Tuple[bytes, str]:
        """Return ``(data, content_type)`` for a key."""

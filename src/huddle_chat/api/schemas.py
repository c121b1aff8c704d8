"""Request and response bodies for the HTTP and WebSocket surface."""

from typing import List, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from ..domain.models import Chat, GroupInvitation, Role, Topic


class ProfileCreate(BaseModel):
    username: str = Field(min_length=1, max_length=64)
    full_name: str = Field(min_length=1, max_length=128)
    bio: str = ""
    avatar_url: Optional[str] = None


class ProfileUpdate(BaseModel):
    username: Optional[str] = Field(default=None, min_length=1, max_length=64)
    full_name: Optional[str] = Field(default=None, min_length=1, max_length=128)
    bio: Optional[str] = None
    avatar_url: Optional[str] = None


class FriendRequestCreate(BaseModel):
    receiver_id: str


class DirectChatCreate(BaseModel):
    user_id: str


class DirectChatResponse(BaseModel):
    chat: Chat
    created: bool


class GroupCreate(BaseModel):
    name: str
    description: str = ""
    avatar_url: Optional[str] = None
    invitees: List[str] = []


class GroupCreated(BaseModel):
    chat: Chat
    invitations: List[GroupInvitation]


class ChatUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    avatar_url: Optional[str] = None


class MemberAdd(BaseModel):
    user_id: str
    role: Role = Role.MEMBER


class RoleUpdate(BaseModel):
    role: Role


class InvitationCreate(BaseModel):
    user_id: str


class MessageCreate(BaseModel):
    """Defines the structure for message creation requests"""

    content: str
    reply_to: Optional[UUID] = None


class TypingUpdate(BaseModel):
    is_typing: bool


class TypingUsers(BaseModel):
    chat_id: UUID
    user_ids: List[str]


class ClientFrame(BaseModel):
    """A frame sent by a realtime client."""

    action: Literal["subscribe", "unsubscribe", "typing", "ping"]
    chat_id: Optional[UUID] = None
    topics: List[Topic] = []
    inbox: bool = False
    is_typing: Optional[bool] = None

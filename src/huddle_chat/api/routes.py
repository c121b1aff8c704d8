"""REST endpoints."""

from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Header, Query, Request, Response
from structlog import get_logger

from ..core import ChatCore
from ..domain.errors import Unauthenticated
from ..domain.models import (
    Chat,
    Friendship,
    FriendRequest,
    FriendRequestOutcome,
    GroupInvitation,
    Membership,
    Message,
    Profile,
)
from .request_queue import ChatRequestQueue
from .schemas import (
    ChatUpdate,
    DirectChatCreate,
    DirectChatResponse,
    FriendRequestCreate,
    GroupCreate,
    GroupCreated,
    InvitationCreate,
    MemberAdd,
    MessageCreate,
    ProfileCreate,
    ProfileUpdate,
    RoleUpdate,
    TypingUpdate,
    TypingUsers,
)

logger = get_logger()

router = APIRouter()


def get_core(request: Request) -> ChatCore:
    """Returns the chat core bound to the app"""
    return request.app.state.core


def get_request_queue(request: Request) -> ChatRequestQueue:
    """Returns the per-chat write queue"""
    return request.app.state.request_queue


def get_current_user(x_user_id: Optional[str] = Header(default=None)) -> str:
    """Identity issued by the upstream identity provider, trusted as-is."""
    if not x_user_id:
        raise Unauthenticated("Missing X-User-Id header")
    return x_user_id


# Profiles


@router.put("/profiles/me", response_model=Profile)
async def create_profile(
    body: ProfileCreate,
    user: str = Depends(get_current_user),
    core: ChatCore = Depends(get_core),
) -> Profile:
    return await core.accounts.create(
        user, body.username, body.full_name, bio=body.bio, avatar_url=body.avatar_url
    )


@router.get("/profiles/me", response_model=Profile)
async def get_my_profile(user: str = Depends(get_current_user), core: ChatCore = Depends(get_core)) -> Profile:
    return await core.profiles.get(user)


@router.patch("/profiles/me", response_model=Profile)
async def update_profile(
    body: ProfileUpdate,
    user: str = Depends(get_current_user),
    core: ChatCore = Depends(get_core),
) -> Profile:
    return await core.profiles.update(user, user, **body.model_dump(exclude_none=True))


@router.delete("/profiles/me", response_model=Profile)
async def delete_profile(user: str = Depends(get_current_user), core: ChatCore = Depends(get_core)) -> Profile:
    return await core.accounts.delete(user, user)


@router.get("/profiles", response_model=List[Profile])
async def search_profiles(
    q: str = Query(default=""),
    user: str = Depends(get_current_user),
    core: ChatCore = Depends(get_core),
) -> List[Profile]:
    return await core.profiles.search(q, exclude=user)


@router.get("/profiles/{user_id}", response_model=Profile)
async def get_profile(
    user_id: str, user: str = Depends(get_current_user), core: ChatCore = Depends(get_core)
) -> Profile:
    return await core.profiles.get(user_id)


# Friends


@router.get("/friends", response_model=List[Friendship])
async def list_friends(user: str = Depends(get_current_user), core: ChatCore = Depends(get_core)) -> List[Friendship]:
    return await core.friends.list_friends(user)


@router.delete("/friends/{friend_id}", response_model=Friendship)
async def remove_friend(
    friend_id: str, user: str = Depends(get_current_user), core: ChatCore = Depends(get_core)
) -> Friendship:
    return await core.friends.remove_friend(user, friend_id)


@router.get("/friend-requests", response_model=List[FriendRequest])
async def list_friend_requests(
    user: str = Depends(get_current_user), core: ChatCore = Depends(get_core)
) -> List[FriendRequest]:
    return await core.friends.list_requests(user)


@router.post("/friend-requests", response_model=FriendRequest)
async def send_friend_request(
    body: FriendRequestCreate,
    user: str = Depends(get_current_user),
    core: ChatCore = Depends(get_core),
) -> FriendRequest:
    return await core.friends.send_request(user, body.receiver_id)


@router.post("/friend-requests/{request_id}/accept", response_model=FriendRequestOutcome)
async def accept_friend_request(
    request_id: UUID, user: str = Depends(get_current_user), core: ChatCore = Depends(get_core)
) -> FriendRequestOutcome:
    return await core.friends.respond(request_id, user, accept=True)


@router.post("/friend-requests/{request_id}/decline", response_model=FriendRequestOutcome)
async def decline_friend_request(
    request_id: UUID, user: str = Depends(get_current_user), core: ChatCore = Depends(get_core)
) -> FriendRequestOutcome:
    return await core.friends.respond(request_id, user, accept=False)


@router.delete("/friend-requests/{request_id}", response_model=FriendRequest)
async def cancel_friend_request(
    request_id: UUID, user: str = Depends(get_current_user), core: ChatCore = Depends(get_core)
) -> FriendRequest:
    return await core.friends.cancel_request(request_id, user)


# Chats


@router.get("/chats", response_model=List[Chat])
async def list_chats(user: str = Depends(get_current_user), core: ChatCore = Depends(get_core)) -> List[Chat]:
    return await core.chats.list_chats(user)


@router.post("/chats/direct", response_model=DirectChatResponse)
async def get_or_create_direct_chat(
    body: DirectChatCreate,
    user: str = Depends(get_current_user),
    core: ChatCore = Depends(get_core),
) -> DirectChatResponse:
    chat, created = await core.chats.get_or_create_direct_chat(user, body.user_id)
    return DirectChatResponse(chat=chat, created=created)


@router.post("/chats/groups", response_model=GroupCreated)
async def create_group(
    body: GroupCreate,
    user: str = Depends(get_current_user),
    core: ChatCore = Depends(get_core),
) -> GroupCreated:
    chat, invitations = await core.chats.create_group(
        user, body.name, description=body.description, avatar_url=body.avatar_url, invitees=body.invitees
    )
    return GroupCreated(chat=chat, invitations=invitations)


@router.get("/chats/{chat_id}", response_model=Chat)
async def get_chat(chat_id: UUID, user: str = Depends(get_current_user), core: ChatCore = Depends(get_core)) -> Chat:
    return await core.chats.get_chat(user, chat_id)


@router.patch("/chats/{chat_id}", response_model=Chat)
async def update_chat(
    chat_id: UUID,
    body: ChatUpdate,
    user: str = Depends(get_current_user),
    core: ChatCore = Depends(get_core),
) -> Chat:
    return await core.chats.update_chat(
        user, chat_id, name=body.name, description=body.description, avatar_url=body.avatar_url
    )


@router.get("/chats/{chat_id}/members", response_model=List[Membership])
async def list_members(
    chat_id: UUID, user: str = Depends(get_current_user), core: ChatCore = Depends(get_core)
) -> List[Membership]:
    return await core.chats.list_members(user, chat_id)


@router.post("/chats/{chat_id}/members", response_model=Membership)
async def add_member(
    chat_id: UUID,
    body: MemberAdd,
    user: str = Depends(get_current_user),
    core: ChatCore = Depends(get_core),
) -> Membership:
    return await core.chats.add_member(user, chat_id, body.user_id, body.role)


@router.delete("/chats/{chat_id}/members/{member_id}", response_model=Membership)
async def remove_member(
    chat_id: UUID,
    member_id: str,
    user: str = Depends(get_current_user),
    core: ChatCore = Depends(get_core),
) -> Membership:
    return await core.chats.remove_member(user, chat_id, member_id)


@router.put("/chats/{chat_id}/members/{member_id}/role", response_model=Membership)
async def set_member_role(
    chat_id: UUID,
    member_id: str,
    body: RoleUpdate,
    user: str = Depends(get_current_user),
    core: ChatCore = Depends(get_core),
) -> Membership:
    return await core.chats.set_role(user, chat_id, member_id, body.role)


@router.post("/chats/{chat_id}/leave", response_model=Membership)
async def leave_chat(
    chat_id: UUID, user: str = Depends(get_current_user), core: ChatCore = Depends(get_core)
) -> Membership:
    return await core.chats.leave_chat(user, chat_id)


# Invitations


@router.post("/chats/{chat_id}/invitations", response_model=GroupInvitation)
async def invite_to_group(
    chat_id: UUID,
    body: InvitationCreate,
    user: str = Depends(get_current_user),
    core: ChatCore = Depends(get_core),
) -> GroupInvitation:
    return await core.chats.invite(user, chat_id, body.user_id)


@router.get("/invitations", response_model=List[GroupInvitation])
async def list_invitations(
    user: str = Depends(get_current_user), core: ChatCore = Depends(get_core)
) -> List[GroupInvitation]:
    return await core.chats.list_invitations(user)


@router.post("/invitations/{invitation_id}/accept", response_model=GroupInvitation)
async def accept_invitation(
    invitation_id: UUID, user: str = Depends(get_current_user), core: ChatCore = Depends(get_core)
) -> GroupInvitation:
    return await core.chats.respond_to_invitation(invitation_id, user, accept=True)


@router.post("/invitations/{invitation_id}/decline", response_model=GroupInvitation)
async def decline_invitation(
    invitation_id: UUID, user: str = Depends(get_current_user), core: ChatCore = Depends(get_core)
) -> GroupInvitation:
    return await core.chats.respond_to_invitation(invitation_id, user, accept=False)


# Messages


@router.get("/chats/{chat_id}/messages", response_model=List[Message])
async def list_messages(
    chat_id: UUID,
    cursor: int = Query(default=0, ge=0),
    limit: Optional[int] = Query(default=None, ge=1, le=1000),
    user: str = Depends(get_current_user),
    core: ChatCore = Depends(get_core),
) -> List[Message]:
    """Messages after ``cursor`` in store order; used for first load and reconciliation."""
    return await core.chats.list_messages(user, chat_id, cursor, limit or core.settings.page_size)


@router.post("/chats/{chat_id}/messages", response_model=Message)
async def send_message(
    chat_id: UUID,
    body: MessageCreate,
    user: str = Depends(get_current_user),
    core: ChatCore = Depends(get_core),
    queue: ChatRequestQueue = Depends(get_request_queue),
) -> Message:
    return await queue.run(chat_id, core.chats.send_message, chat_id, user, body.content, reply_to=body.reply_to)


@router.post("/chats/{chat_id}/media", response_model=Message)
async def send_media(
    request: Request,
    chat_id: UUID,
    file_name: Optional[str] = Query(default=None),
    reply_to: Optional[UUID] = Query(default=None),
    user: str = Depends(get_current_user),
    core: ChatCore = Depends(get_core),
    queue: ChatRequestQueue = Depends(get_request_queue),
) -> Message:
    """Upload the raw request body and post it as a media message."""
    data = await request.body()
    content_type = request.headers.get("content-type", "application/octet-stream")
    return await queue.run(
        chat_id,
        core.chats.send_media,
        chat_id,
        user,
        data,
        content_type,
        file_name=file_name,
        reply_to=reply_to,
    )


@router.delete("/messages/{message_id}", response_model=Message)
async def delete_message(
    message_id: UUID,
    user: str = Depends(get_current_user),
    core: ChatCore = Depends(get_core),
    queue: ChatRequestQueue = Depends(get_request_queue),
) -> Message:
    message = await core.messages.get_message(message_id)
    return await queue.run(message.chat_id, core.chats.delete_message, user, message_id)


@router.delete("/chats/{chat_id}/messages/mine", response_model=List[Message])
async def delete_my_messages(
    chat_id: UUID,
    user: str = Depends(get_current_user),
    core: ChatCore = Depends(get_core),
    queue: ChatRequestQueue = Depends(get_request_queue),
) -> List[Message]:
    return await queue.run(chat_id, core.chats.delete_own_messages, user, chat_id)


# Typing


@router.put("/chats/{chat_id}/typing", response_model=TypingUsers)
async def set_typing(
    chat_id: UUID,
    body: TypingUpdate,
    user: str = Depends(get_current_user),
    core: ChatCore = Depends(get_core),
) -> TypingUsers:
    await core.typing.set_typing(chat_id, user, body.is_typing)
    return TypingUsers(chat_id=chat_id, user_ids=sorted(await core.typing.list_typing(chat_id, user)))


@router.get("/chats/{chat_id}/typing", response_model=TypingUsers)
async def list_typing(
    chat_id: UUID, user: str = Depends(get_current_user), core: ChatCore = Depends(get_core)
) -> TypingUsers:
    return TypingUsers(chat_id=chat_id, user_ids=sorted(await core.typing.list_typing(chat_id, user)))


# Blobs


@router.get("/media/{key}")
async def get_media(key: str, core: ChatCore = Depends(get_core)) -> Response:
    data, content_type = await core.blobs.get(key)
    return Response(content=data, media_type=content_type)

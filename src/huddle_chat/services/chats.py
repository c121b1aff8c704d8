"""Chat, group and message operations with authorization applied."""

from typing import List, Optional, Sequence, Tuple
from uuid import UUID

import structlog

from ..domain.errors import CapacityExceeded, Conflict, Forbidden, InvalidRequest, NotFound
from ..domain.models import (
    Chat,
    ChatKind,
    GroupInvitation,
    Membership,
    Message,
    MessageType,
    RequestStatus,
    Role,
)
from ..repositories.base import BlobStore, MembershipStore, MessageStore, ProfileStore, SocialStore
from .access import AccessControlGuard

logger = structlog.get_logger()


def message_type_for(content_type: str) -> MessageType:
    """Map an upload's MIME type to a message type."""
    major = content_type.split("/", 1)[0].strip().lower()
    if major == "image":
        return MessageType.IMAGE
    if major == "video":
        return MessageType.VIDEO
    return MessageType.FILE


class ChatService:
    """Entry point for everything a client does inside chats."""

    def __init__(
        self,
        memberships: MembershipStore,
        messages: MessageStore,
        social: SocialStore,
        blobs: BlobStore,
        profiles: ProfileStore,
        guard: AccessControlGuard,
        max_group_members: int = 20,
        max_upload_bytes: int = 10 * 1024 * 1024,
    ) -> None:
        self.memberships = memberships
        self.messages = messages
        self.social = social
        self.blobs = blobs
        self.profiles = profiles
        self.guard = guard
        self.max_group_members = max_group_members
        self.max_upload_bytes = max_upload_bytes

    async def _require_group(self, chat_id: UUID) -> Chat:
        chat = await self.memberships.get_chat(chat_id)
        if chat.kind != ChatKind.GROUP:
            raise InvalidRequest("This operation only applies to group chats")
        return chat

    async def _require_profile(self, user_id: str) -> None:
        """Invitations go to registered users only."""
        if not await self.profiles.exists(user_id):
            raise NotFound(f"User {user_id} not found", details={"user_id": user_id})

    # Chats

    async def get_or_create_direct_chat(self, requester: str, other_user: str) -> Tuple[Chat, bool]:
        """Return the pair's direct chat, creating it on first use."""
        return await self.memberships.get_or_create_direct_chat(requester, other_user)

    async def create_group(
        self,
        creator: str,
        name: str,
        description: str = "",
        avatar_url: Optional[str] = None,
        invitees: Sequence[str] = (),
    ) -> Tuple[Chat, List[GroupInvitation]]:
        """Create a group with the creator as admin and invite the rest."""
        name = name.strip()
        if not name:
            raise InvalidRequest("Group name must not be empty")
        invitees = [user_id for user_id in dict.fromkeys(invitees) if user_id != creator]
        if len(invitees) + 1 > self.max_group_members:
            raise CapacityExceeded(
                f"Groups hold at most {self.max_group_members} members",
                details={"capacity": self.max_group_members},
            )
        for user_id in invitees:
            await self._require_profile(user_id)

        chat = await self.memberships.create_chat(
            ChatKind.GROUP, creator, name=name, description=description, avatar_url=avatar_url
        )
        await self.memberships.add_member(chat.id, creator, Role.ADMIN)
        invitations = [await self.social.save_invitation(chat.id, creator, user_id) for user_id in invitees]
        logger.info("group_created", chat_id=str(chat.id), creator=creator, invited=len(invitations))
        return chat, invitations

    async def get_chat(self, requester: str, chat_id: UUID) -> Chat:
        """Get a chat the requester belongs to."""
        chat = await self.memberships.get_chat(chat_id)
        self.guard.require_read(requester, chat_id)
        return chat

    async def list_chats(self, user_id: str) -> List[Chat]:
        """Chats a user belongs to, most recently active first."""
        return await self.memberships.list_chats(user_id)

    async def update_chat(
        self,
        requester: str,
        chat_id: UUID,
        name: Optional[str] = None,
        description: Optional[str] = None,
        avatar_url: Optional[str] = None,
    ) -> Chat:
        """Edit a group's details. Admins only."""
        await self._require_group(chat_id)
        self.guard.require_manage(requester, chat_id)
        if name is not None and not name.strip():
            raise InvalidRequest("Group name must not be empty")
        return await self.memberships.update_chat(
            chat_id, name=name.strip() if name else None, description=description, avatar_url=avatar_url
        )

    # Members

    async def list_members(self, requester: str, chat_id: UUID) -> List[Membership]:
        """Members of a chat the requester belongs to."""
        await self.memberships.get_chat(chat_id)
        self.guard.require_read(requester, chat_id)
        return await self.memberships.list_members(chat_id)

    async def add_member(
        self, requester: str, chat_id: UUID, user_id: str, role: Role = Role.MEMBER
    ) -> Membership:
        """Add a user to a group. Admins only."""
        await self._require_group(chat_id)
        self.guard.require_manage(requester, chat_id)
        return await self.memberships.add_member(chat_id, user_id, role, capacity=self.max_group_members)

    async def remove_member(self, requester: str, chat_id: UUID, user_id: str) -> Membership:
        """Remove a member. Anyone may remove themselves; removing others needs admin."""
        await self.memberships.get_chat(chat_id)
        if requester != user_id:
            self.guard.require_manage(requester, chat_id)
        return await self.memberships.remove_member(chat_id, user_id)

    async def leave_chat(self, user_id: str, chat_id: UUID) -> Membership:
        """Remove yourself from a chat."""
        return await self.remove_member(user_id, chat_id, user_id)

    async def set_role(self, requester: str, chat_id: UUID, user_id: str, role: Role) -> Membership:
        """Change a member's role. Admins only."""
        await self._require_group(chat_id)
        self.guard.require_manage(requester, chat_id)
        return await self.memberships.set_role(chat_id, user_id, role)

    # Invitations

    async def invite(self, requester: str, chat_id: UUID, invitee: str) -> GroupInvitation:
        """Invite a registered user to a group. Any member may invite."""
        await self._require_group(chat_id)
        self.guard.require_read(requester, chat_id)
        if invitee == requester:
            raise InvalidRequest("You cannot invite yourself")
        if self.memberships.lookup_membership(chat_id, invitee) is not None:
            raise Conflict("User is already a member of this chat", error_code="ALREADY_MEMBER")
        await self._require_profile(invitee)
        return await self.social.save_invitation(chat_id, requester, invitee)

    async def respond_to_invitation(self, invitation_id: UUID, user_id: str, accept: bool) -> GroupInvitation:
        """Accept or decline an invitation.

        Repeating the same answer is a no-op; changing a settled answer is a
        Conflict. Accepting joins the group as a member.
        """
        invitation = await self.social.get_invitation(invitation_id)
        if invitation.invitee_id != user_id:
            raise Forbidden("Only the invitee can answer this invitation")

        target = RequestStatus.ACCEPTED if accept else RequestStatus.DECLINED
        if invitation.status == target:
            return invitation
        if invitation.status != RequestStatus.PENDING:
            raise Conflict(f"Invitation was already {invitation.status.value}")

        if accept:
            if self.memberships.lookup_membership(invitation.chat_id, user_id) is None:
                await self.memberships.add_member(
                    invitation.chat_id, user_id, Role.MEMBER, capacity=self.max_group_members
                )
        invitation = await self.social.set_invitation_status(invitation_id, target)
        logger.info("group_invitation_answered", invitation_id=str(invitation_id), status=target.value)
        return invitation

    async def list_invitations(self, user_id: str) -> List[GroupInvitation]:
        """Pending invitations addressed to a user."""
        return await self.social.list_invitations(user_id, RequestStatus.PENDING)

    # Messages

    async def send_message(
        self, chat_id: UUID, sender: str, content: str, reply_to: Optional[UUID] = None
    ) -> Message:
        """Post a text message."""
        return await self.messages.append(chat_id, sender, content, MessageType.TEXT, reply_to=reply_to)

    async def send_media(
        self,
        chat_id: UUID,
        sender: str,
        data: bytes,
        content_type: str,
        file_name: Optional[str] = None,
        reply_to: Optional[UUID] = None,
    ) -> Message:
        """Upload bytes to the blob store and post the URL as a message."""
        await self.memberships.get_chat(chat_id)
        self.guard.require_write(sender, chat_id)
        if not data:
            raise InvalidRequest("Upload is empty")
        if len(data) > self.max_upload_bytes:
            raise InvalidRequest(
                f"Upload exceeds {self.max_upload_bytes} bytes",
                details={"max_upload_bytes": self.max_upload_bytes},
            )

        url = await self.blobs.put(data, content_type)
        return await self.messages.append(
            chat_id,
            sender,
            url,
            message_type_for(content_type),
            reply_to=reply_to,
            file_name=file_name,
            file_size=len(data),
        )

    async def list_messages(
        self, requester: str, chat_id: UUID, cursor: int = 0, limit: Optional[int] = None
    ) -> List[Message]:
        """Messages after ``cursor`` in seq order."""
        return await self.messages.list_since(chat_id, cursor, requester, limit=limit)

    async def delete_message(self, requester: str, message_id: UUID) -> Message:
        """Delete one of the requester's messages."""
        return await self.messages.delete(message_id, requester)

    async def delete_own_messages(self, requester: str, chat_id: UUID) -> List[Message]:
        """Delete every message the requester sent to a chat."""
        return await self.messages.delete_all_by_sender(chat_id, requester, requester)

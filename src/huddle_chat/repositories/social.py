"""In-memory store for friend requests, friendships and group invitations."""

import asyncio
from typing import Dict, List, Optional, Tuple
from uuid import UUID

import structlog

from ..domain.errors import Conflict, NotFound
from ..domain.models import (
    ChangeEvent,
    EventKind,
    Friendship,
    FriendRequest,
    GroupInvitation,
    RequestStatus,
    Table,
    utcnow,
)
from .base import SocialStore
from .memory import pair_key

logger = structlog.get_logger()


class InMemorySocialStore(SocialStore):
    """Friend requests are unique per ordered pair, friendships per unordered
    pair, and invitations per (chat, invitee)."""

    def __init__(self) -> None:
        super().__init__()
        self._requests: Dict[UUID, FriendRequest] = {}
        self._request_by_pair: Dict[Tuple[str, str], UUID] = {}
        self._friendships: Dict[Tuple[str, str], Friendship] = {}
        self._invitations: Dict[UUID, GroupInvitation] = {}
        self._invitation_by_key: Dict[Tuple[UUID, str], UUID] = {}
        self._lock = asyncio.Lock()

    def _emit_request(self, kind: EventKind, request: FriendRequest) -> None:
        self._emit(
            ChangeEvent(
                table=Table.FRIEND_REQUESTS,
                kind=kind,
                audience=[request.sender_id, request.receiver_id],
                record=request.model_dump(mode="json"),
            )
        )

    def _emit_friendship(self, kind: EventKind, friendship: Friendship) -> None:
        self._emit(
            ChangeEvent(
                table=Table.FRIENDSHIPS,
                kind=kind,
                audience=[friendship.user1_id, friendship.user2_id],
                record=friendship.model_dump(mode="json"),
            )
        )

    def _emit_invitation(self, kind: EventKind, invitation: GroupInvitation) -> None:
        self._emit(
            ChangeEvent(
                table=Table.GROUP_INVITATIONS,
                kind=kind,
                audience=[invitation.inviter_id, invitation.invitee_id],
                record=invitation.model_dump(mode="json"),
            )
        )

    def _require_request(self, request_id: UUID) -> FriendRequest:
        request = self._requests.get(request_id)
        if request is None:
            raise NotFound(f"Friend request {request_id} not found", details={"request_id": str(request_id)})
        return request

    def _require_invitation(self, invitation_id: UUID) -> GroupInvitation:
        invitation = self._invitations.get(invitation_id)
        if invitation is None:
            raise NotFound(
                f"Invitation {invitation_id} not found", details={"invitation_id": str(invitation_id)}
            )
        return invitation

    # Friend requests

    async def get_request(self, request_id: UUID) -> FriendRequest:
        """Get a friend request or raise NotFound."""
        async with self._lock:
            return self._require_request(request_id)

    async def save_request(self, sender_id: str, receiver_id: str) -> FriendRequest:
        """Create a pending request.

        Raises Conflict when the users are already friends or a pending request
        exists in either direction. A declined request for the same ordered
        pair is reopened.
        """
        async with self._lock:
            if pair_key(sender_id, receiver_id) in self._friendships:
                raise Conflict("You are already friends with this user", error_code="ALREADY_FRIENDS")

            reverse_id = self._request_by_pair.get((receiver_id, sender_id))
            if reverse_id and self._requests[reverse_id].status == RequestStatus.PENDING:
                raise Conflict(
                    "This user has already sent you a friend request",
                    error_code="REQUEST_EXISTS",
                    details={"request_id": str(reverse_id)},
                )

            existing_id = self._request_by_pair.get((sender_id, receiver_id))
            if existing_id:
                request = self._requests[existing_id]
                if request.status != RequestStatus.DECLINED:
                    raise Conflict(
                        "Friend request already exists",
                        error_code="REQUEST_EXISTS",
                        details={"request_id": str(existing_id)},
                    )
                request.status = RequestStatus.PENDING
                request.updated_at = utcnow()
                self._emit_request(EventKind.UPDATE, request)
                logger.info("friend_request_reopened", request_id=str(request.id))
                return request

            request = FriendRequest(sender_id=sender_id, receiver_id=receiver_id)
            self._requests[request.id] = request
            self._request_by_pair[(sender_id, receiver_id)] = request.id
            self._emit_request(EventKind.INSERT, request)
            logger.info("friend_request_sent", request_id=str(request.id), sender_id=sender_id)
            return request

    async def set_request_status(self, request_id: UUID, status: RequestStatus) -> FriendRequest:
        """Move a request to a new status."""
        async with self._lock:
            request = self._require_request(request_id)
            if request.status != status:
                request.status = status
                request.updated_at = utcnow()
                self._emit_request(EventKind.UPDATE, request)
            return request

    async def delete_request(self, request_id: UUID) -> FriendRequest:
        """Remove a request."""
        async with self._lock:
            request = self._require_request(request_id)
            self._drop_request_locked(request)
            return request

    def _drop_request_locked(self, request: FriendRequest) -> None:
        del self._requests[request.id]
        self._request_by_pair.pop((request.sender_id, request.receiver_id), None)
        self._emit_request(EventKind.DELETE, request)

    async def list_requests(self, user_id: str, status: Optional[RequestStatus] = None) -> List[FriendRequest]:
        """Requests received by a user, oldest first."""
        async with self._lock:
            requests = [
                r
                for r in self._requests.values()
                if r.receiver_id == user_id and (status is None or r.status == status)
            ]
        return sorted(requests, key=lambda r: r.created_at)

    # Friendships

    async def ensure_friendship(self, user1_id: str, user2_id: str) -> Tuple[Friendship, bool]:
        """Create the pair's friendship exactly once."""
        key = pair_key(user1_id, user2_id)
        async with self._lock:
            friendship = self._friendships.get(key)
            if friendship is not None:
                return friendship, False
            friendship = Friendship(user1_id=user1_id, user2_id=user2_id)
            self._friendships[key] = friendship
            self._emit_friendship(EventKind.INSERT, friendship)
            logger.info("friendship_created", friendship_id=str(friendship.id))
            return friendship, True

    async def delete_friendship(self, user_a: str, user_b: str) -> Friendship:
        """Remove a friendship and forget the pair's settled requests."""
        async with self._lock:
            friendship = self._friendships.pop(pair_key(user_a, user_b), None)
            if friendship is None:
                raise NotFound("Friendship not found")
            # Forget the settled requests so the pair can befriend each other again.
            for ordered in ((user_a, user_b), (user_b, user_a)):
                request_id = self._request_by_pair.get(ordered)
                if request_id:
                    self._drop_request_locked(self._requests[request_id])
            self._emit_friendship(EventKind.DELETE, friendship)
            logger.info("friendship_removed", friendship_id=str(friendship.id))
            return friendship

    async def list_friendships(self, user_id: str) -> List[Friendship]:
        """Friendships involving a user, oldest first."""
        async with self._lock:
            friendships = [f for f in self._friendships.values() if user_id in (f.user1_id, f.user2_id)]
        return sorted(friendships, key=lambda f: f.created_at)

    # Group invitations

    async def save_invitation(self, chat_id: UUID, inviter_id: str, invitee_id: str) -> GroupInvitation:
        """Create a pending invitation, or reopen a declined one."""
        async with self._lock:
            existing_id = self._invitation_by_key.get((chat_id, invitee_id))
            if existing_id:
                invitation = self._invitations[existing_id]
                if invitation.status == RequestStatus.PENDING:
                    raise Conflict(
                        "User already has a pending invitation to this chat",
                        error_code="INVITATION_EXISTS",
                        details={"invitation_id": str(existing_id)},
                    )
                invitation.inviter_id = inviter_id
                invitation.status = RequestStatus.PENDING
                invitation.updated_at = utcnow()
                self._emit_invitation(EventKind.UPDATE, invitation)
                return invitation

            invitation = GroupInvitation(chat_id=chat_id, inviter_id=inviter_id, invitee_id=invitee_id)
            self._invitations[invitation.id] = invitation
            self._invitation_by_key[(chat_id, invitee_id)] = invitation.id
            self._emit_invitation(EventKind.INSERT, invitation)
            logger.info("group_invitation_sent", invitation_id=str(invitation.id), chat_id=str(chat_id))
            return invitation

    async def get_invitation(self, invitation_id: UUID) -> GroupInvitation:
        """Get an invitation or raise NotFound."""
        async with self._lock:
            return self._require_invitation(invitation_id)

    async def set_invitation_status(self, invitation_id: UUID, status: RequestStatus) -> GroupInvitation:
        """Move an invitation to a new status."""
        async with self._lock:
            invitation = self._require_invitation(invitation_id)
            if invitation.status != status:
                invitation.status = status
                invitation.updated_at = utcnow()
                self._emit_invitation(EventKind.UPDATE, invitation)
            return invitation

    async def list_invitations(self, user_id: str, status: Optional[RequestStatus] = None) -> List[GroupInvitation]:
        """Invitations addressed to a user, oldest first."""
        async with self._lock:
            invitations = [
                i
                for i in self._invitations.values()
                if i.invitee_id == user_id and (status is None or i.status == status)
            ]
        return sorted(invitations, key=lambda i: i.created_at)

    async def purge_user(self, user_id: str) -> None:
        """Remove every request, friendship and invitation of a user."""
        async with self._lock:
            for request in [r for r in self._requests.values() if user_id in (r.sender_id, r.receiver_id)]:
                self._drop_request_locked(request)
            for key in [k for k in self._friendships if user_id in k]:
                self._emit_friendship(EventKind.DELETE, self._friendships.pop(key))
            for invitation in [
                i for i in self._invitations.values() if user_id in (i.inviter_id, i.invitee_id)
            ]:
                del self._invitations[invitation.id]
                self._invitation_by_key.pop((invitation.chat_id, invitation.invitee_id), None)
                self._emit_invitation(EventKind.DELETE, invitation)
            logger.info("user_social_purged", user_id=user_id)

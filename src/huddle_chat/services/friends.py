"""Friend requests and friendships."""

from typing import List
from uuid import UUID

import structlog

from ..domain.errors import Conflict, Forbidden, InvalidRequest, NotFound
from ..domain.models import Friendship, FriendRequest, FriendRequestOutcome, RequestStatus
from ..repositories.base import MembershipStore, ProfileStore, SocialStore

logger = structlog.get_logger()


class FriendService:
    """Friend requests and the friendships they create."""
    def __init__(self, social: SocialStore, memberships: MembershipStore, profiles: ProfileStore) -> None:
        self.social = social
        self.memberships = memberships
        self.profiles = profiles

    async def send_request(self, sender: str, receiver: str) -> FriendRequest:
        """Send a friend request to a registered user."""
        if sender == receiver:
            raise InvalidRequest("You cannot befriend yourself")
        if not await self.profiles.exists(receiver):
            raise NotFound(f"User {receiver} not found", details={"user_id": receiver})
        return await self.social.save_request(sender, receiver)

    async def respond(self, request_id: UUID, responder: str, accept: bool) -> FriendRequestOutcome:
        """Accept or decline a friend request.

        Only the receiver may answer. Accepting is idempotent: the friendship
        row and the direct chat are created once no matter how many times
        the request is accepted.
        """
        request = await self.social.get_request(request_id)
        if request.receiver_id != responder:
            raise Forbidden("Only the receiver can answer a friend request")

        target = RequestStatus.ACCEPTED if accept else RequestStatus.DECLINED
        if request.status not in (RequestStatus.PENDING, target):
            raise Conflict(f"Friend request was already {request.status.value}")

        request = await self.social.set_request_status(request_id, target)
        if not accept:
            logger.info("friend_request_declined", request_id=str(request_id))
            return FriendRequestOutcome(request=request)

        friendship, created = await self.social.ensure_friendship(request.sender_id, request.receiver_id)
        chat, _ = await self.memberships.get_or_create_direct_chat(request.sender_id, request.receiver_id)
        logger.info(
            "friend_request_accepted",
            request_id=str(request_id),
            friendship_created=created,
            chat_id=str(chat.id),
        )
        return FriendRequestOutcome(request=request, friendship=friendship, chat_id=chat.id)

    async def cancel_request(self, request_id: UUID, requester: str) -> FriendRequest:
        """Withdraw a pending request. Sender only."""
        request = await self.social.get_request(request_id)
        if request.sender_id != requester:
            raise Forbidden("Only the sender can cancel a friend request")
        if request.status != RequestStatus.PENDING:
            raise Conflict(f"Friend request was already {request.status.value}")
        return await self.social.delete_request(request_id)

    async def remove_friend(self, user_id: str, friend_id: str) -> Friendship:
        """End a friendship."""
        return await self.social.delete_friendship(user_id, friend_id)

    async def list_friends(self, user_id: str) -> List[Friendship]:
        """Friendships of a user."""
        return await self.social.list_friendships(user_id)

    async def list_requests(self, user_id: str) -> List[FriendRequest]:
        """Pending requests a user has received."""
        return await self.social.list_requests(user_id, RequestStatus.PENDING)

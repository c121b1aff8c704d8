"""Profile lifecycle."""

from typing import Optional

import structlog

from ..domain.errors import Forbidden
from ..domain.models import Profile
from ..repositories.base import MembershipStore, ProfileStore, SocialStore

logger = structlog.get_logger()


class ProfileService:
    """Profile lifecycle and online state."""
    def __init__(self, profiles: ProfileStore, memberships: MembershipStore, social: SocialStore) -> None:
        self.profiles = profiles
        self.memberships = memberships
        self.social = social

    async def create(
        self,
        user_id: str,
        username: str,
        full_name: str,
        bio: str = "",
        avatar_url: Optional[str] = None,
    ) -> Profile:
        """Create the caller's profile."""
        return await self.profiles.create(user_id, username, full_name, bio=bio, avatar_url=avatar_url)

    async def delete(self, requester: str, user_id: str) -> Profile:
        """Delete a profile and everything that hangs off the user."""
        if requester != user_id:
            raise Forbidden("Profiles can only be deleted by their owner")
        profile = await self.profiles.delete(user_id)
        removed = await self.memberships.purge_user(user_id)
        await self.social.purge_user(user_id)
        logger.info("user_deleted", user_id=user_id, memberships_removed=removed)
        return profile

    async def session_started(self, user_id: str) -> None:
        """Mark a user online when their first connection opens."""
        await self.profiles.set_online(user_id, True)

    async def session_ended(self, user_id: str) -> None:
        """Mark a user offline when their last connection closes."""
        await self.profiles.set_online(user_id, False)

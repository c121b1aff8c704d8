"""Wiring of stores, guard, dispatcher and services into one object."""

import time
from typing import Callable, Optional

import structlog

from .config import Settings
from .repositories.blobs import InMemoryBlobStore
from .repositories.memory import InMemoryMembershipStore, InMemoryProfileStore
from .repositories.messages import InMemoryMessageStore
from .repositories.social import InMemorySocialStore
from .services.access import AccessControlGuard
from .services.chats import ChatService
from .services.dispatcher import RealtimeDispatcher
from .services.friends import FriendService
from .services.presence import TypingTracker
from .services.profiles import ProfileService

logger = structlog.get_logger()


class ChatCore:
    """Everything one process needs, built from a ``Settings``."""

    def __init__(self, settings: Optional[Settings] = None, clock: Callable[[], float] = time.monotonic) -> None:
        self.settings = settings or Settings()

        self.memberships = InMemoryMembershipStore()
        self.guard = AccessControlGuard(self.memberships)
        self.messages = InMemoryMessageStore(self.memberships, self.guard)
        self.profiles = InMemoryProfileStore()
        self.social = InMemorySocialStore()
        self.blobs = InMemoryBlobStore(self.settings.blob_base_url)

        self.dispatcher = RealtimeDispatcher(
            self.memberships, self.guard, queue_size=self.settings.subscriber_queue_size
        )
        self.typing = TypingTracker(
            self.guard,
            ttl=self.settings.typing_ttl,
            sweep_interval=self.settings.typing_sweep_interval,
            clock=clock,
        )

        self.memberships.add_listener(self.typing.on_membership_change)
        for source in (self.memberships, self.messages, self.social, self.typing):
            source.add_listener(self.dispatcher.publish)

        self.chats = ChatService(
            self.memberships,
            self.messages,
            self.social,
            self.blobs,
            self.profiles,
            self.guard,
            max_group_members=self.settings.max_group_members,
            max_upload_bytes=self.settings.max_upload_bytes,
        )
        self.friends = FriendService(self.social, self.memberships, self.profiles)
        self.accounts = ProfileService(self.profiles, self.memberships, self.social)

    async def start(self) -> None:
        """Start background tasks."""
        await self.typing.start()
        logger.info("chat_core_started")

    async def stop(self) -> None:
        """Stop background tasks and close every subscriber."""
        await self.typing.stop()
        self.dispatcher.shutdown()
        logger.info("chat_core_stopped")

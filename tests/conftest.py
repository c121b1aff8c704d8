"""Shared fixtures."""

from typing import List

import pytest

from huddle_chat.config import Settings
from huddle_chat.core import ChatCore
from huddle_chat.domain.models import ChangeEvent, Role


class FakeClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings() -> Settings:
    return Settings(log_json=False, log_level="WARNING")


@pytest.fixture
def core(settings, clock) -> ChatCore:
    return ChatCore(settings, clock=clock)


@pytest.fixture
def events(core) -> List[ChangeEvent]:
    """Every change event committed by the core, in commit order."""
    captured: List[ChangeEvent] = []
    for source in (core.memberships, core.messages, core.social, core.typing):
        source.add_listener(captured.append)
    return captured


@pytest.fixture
def make_group(core):
    """Build a group with ``admin`` as admin and ``members`` added directly."""

    async def _make(admin: str, *members: str, name: str = "team"):
        chat, _ = await core.chats.create_group(admin, name)
        for user_id in members:
            await core.memberships.add_member(chat.id, user_id, Role.MEMBER)
        return chat

    return _make

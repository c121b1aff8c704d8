"""Ephemeral per-chat typing indicators."""

import asyncio
import time
from typing import Callable, Dict, Optional, Set, Tuple
from uuid import UUID

import structlog

from ..domain.models import ChangeEvent, EventKind, Table, TypingState
from ..repositories.base import EventSource
from .access import AccessControlGuard

logger = structlog.get_logger()


class TypingTracker(EventSource):
    """Typing flags keyed by (chat, user) with a soft TTL.

    A flag that has not been refreshed within ``ttl`` seconds reads as not
    typing whether or not the sweeper has removed it yet.
    """

    def __init__(
        self,
        guard: AccessControlGuard,
        ttl: float = 3.0,
        sweep_interval: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__()
        self._guard = guard
        self.ttl = ttl
        self.sweep_interval = sweep_interval
        self._clock = clock
        self._states: Dict[Tuple[UUID, str], TypingState] = {}
        self._sweep_task: Optional[asyncio.Task] = None

    def _is_active(self, state: TypingState, now: float) -> bool:
        return state.is_typing and now - state.last_updated < self.ttl

    def _emit_state(self, kind: EventKind, state: TypingState) -> None:
        self._emit(
            ChangeEvent(
                table=Table.TYPING_STATUS,
                kind=kind,
                chat_id=state.chat_id,
                record=state.model_dump(mode="json"),
            )
        )

    async def set_typing(self, chat_id: UUID, user_id: str, is_typing: bool) -> TypingState:
        """Upsert a user's typing flag. Forbidden for non-members."""
        self._guard.require_write(user_id, chat_id)
        key = (chat_id, user_id)
        kind = EventKind.UPDATE if key in self._states else EventKind.INSERT
        state = TypingState(chat_id=chat_id, user_id=user_id, is_typing=is_typing, last_updated=self._clock())
        self._states[key] = state
        self._emit_state(kind, state)
        return state

    async def list_typing(self, chat_id: UUID, except_user: str) -> Set[str]:
        """Users currently typing in a chat, never including ``except_user``."""
        self._guard.require_read(except_user, chat_id)
        now = self._clock()
        return {
            user_id
            for (state_chat, user_id), state in self._states.items()
            if state_chat == chat_id
            and user_id != except_user
            and self._is_active(state, now)
            and self._guard.can_read(user_id, chat_id)
        }

    def forget(self, chat_id: UUID, user_id: str) -> None:
        """Drop a user's typing state without an event."""
        self._states.pop((chat_id, user_id), None)

    def on_membership_change(self, event: ChangeEvent) -> None:
        """Drop the typing flag of a member who left."""
        if event.table == Table.CHAT_MEMBERS and event.kind == EventKind.DELETE and event.chat_id is not None:
            self.forget(event.chat_id, str(event.record["user_id"]))

    def sweep(self) -> int:
        """Remove stale entries, announcing the ones that were still typing."""
        now = self._clock()
        stale = [key for key, state in self._states.items() if now - state.last_updated >= self.ttl]
        for key in stale:
            state = self._states.pop(key)
            if state.is_typing:
                self._emit_state(
                    EventKind.DELETE,
                    TypingState(chat_id=state.chat_id, user_id=state.user_id, is_typing=False, last_updated=now),
                )
        if stale:
            logger.debug("typing_states_expired", count=len(stale))
        return len(stale)

    async def start(self) -> None:
        """Start the periodic sweeper."""
        if self._sweep_task is None:
            self._sweep_task = asyncio.create_task(self._periodic_sweep())

    async def stop(self) -> None:
        """Stop the periodic sweeper."""
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None

    async def _periodic_sweep(self) -> None:
        while True:
            try:
                await asyncio.sleep(self.sweep_interval)
                self.sweep()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("typing_sweep_error", error=str(e))

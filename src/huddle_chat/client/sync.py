"""Client-side helpers: message log reconciliation and typing debounce."""

import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Union
from uuid import UUID

from structlog import get_logger

from ..domain.models import ChangeEvent, EventKind, Message, Table

logger = get_logger()

Fetch = Callable[[UUID, int], Awaitable[List[Message]]]


class MessageSync:
    """Local copy of one chat's message log.

    Realtime events and ``list_since`` pages are merged by message id, so a
    message seen through both paths is kept once. ``cursor`` is the highest seq
    with nothing missing below it. Fetched pages move it directly, since
    ``list_since`` returns every surviving message after the cursor. Pushed
    events and our own send responses move it only while their seqs continue
    the run without a gap, so messages committed while we were disconnected are
    still fetched by the next reconcile.
    """

    def __init__(self, chat_id: UUID) -> None:
        self.chat_id = chat_id
        self.cursor = 0
        self._messages: Dict[UUID, Message] = {}
        self._deleted: Set[UUID] = set()
        self._seen: Set[int] = set()

    @property
    def messages(self) -> List[Message]:
        return sorted(self._messages.values(), key=lambda m: m.seq)

    def _store(self, message: Message) -> bool:
        if message.chat_id != self.chat_id:
            return False
        self._seen.add(message.seq)
        if message.id in self._deleted or message.id in self._messages:
            return False
        self._messages[message.id] = message
        return True

    def _advance(self) -> None:
        while self.cursor + 1 in self._seen:
            self.cursor += 1
        self._seen = {seq for seq in self._seen if seq > self.cursor}

    def apply(self, message: Message) -> bool:
        """Merge a pushed message. True if it was new."""
        added = self._store(message)
        self._advance()
        return added

    def record_sent(self, message: Message) -> bool:
        """Merge the response to our own send."""
        return self.apply(message)

    def _apply_fetched(self, message: Message) -> bool:
        added = self._store(message)
        if message.chat_id == self.chat_id:
            self.cursor = max(self.cursor, message.seq)
        self._advance()
        return added

    def remove(self, message_id: UUID) -> bool:
        self._deleted.add(message_id)
        return self._messages.pop(message_id, None) is not None

    def apply_event(self, event: Union[ChangeEvent, Dict[str, Any]]) -> bool:
        """Apply a realtime ``messages`` event. Returns True if the log changed."""
        if not isinstance(event, ChangeEvent):
            event = ChangeEvent.model_validate(event)
        if event.table != Table.MESSAGES or event.chat_id != self.chat_id:
            return False
        if event.kind == EventKind.DELETE:
            removed = self.remove(UUID(str(event.record["id"])))
            # a deleted seq has nothing left to fetch
            if event.record.get("seq") is not None:
                self._seen.add(int(event.record["seq"]))
                self._advance()
            return removed
        return self.apply(Message.model_validate(event.record))

    async def reconcile(self, fetch: Fetch) -> int:
        """Pull everything after the cursor; returns how many messages were new."""
        added = 0
        while True:
            page = await fetch(self.chat_id, self.cursor)
            if not page:
                break
            for message in page:
                added += self._apply_fetched(message)
        if added:
            logger.info("messages_reconciled", chat_id=str(self.chat_id), added=added, cursor=self.cursor)
        return added

    async def reload(self, fetch: Fetch) -> int:
        """Start over from an empty log. Picks up deletions missed while offline."""
        self._messages.clear()
        self._seen.clear()
        self.cursor = 0
        return await self.reconcile(fetch)


class TypingDebouncer:
    """Turns keystrokes into typing updates.

    The first keystroke announces typing, later ones re-announce at most every
    ``refresh`` seconds to keep the server-side flag fresh, and ``idle`` seconds
    without a keystroke announce that typing stopped.
    """

    def __init__(
        self,
        send: Callable[[bool], Awaitable[Any]],
        idle: float = 2.0,
        refresh: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._send = send
        self.idle = idle
        self.refresh = refresh
        self._clock = clock
        self.typing = False
        self._last_sent: Optional[float] = None
        self._timer: Optional[asyncio.Task] = None

    async def keystroke(self) -> None:
        now = self._clock()
        if not self.typing or self._last_sent is None or now - self._last_sent >= self.refresh:
            self.typing = True
            self._last_sent = now
            await self._send(True)
        self._restart_timer()

    def _restart_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
        self._timer = asyncio.create_task(self._expire())

    async def _expire(self) -> None:
        await asyncio.sleep(self.idle)
        self._timer = None
        await self._announce_stop()

    async def _announce_stop(self) -> None:
        if self.typing:
            self.typing = False
            self._last_sent = None
            await self._send(False)

    async def stop(self) -> None:
        """Stop typing now, e.g. when the message is sent."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        await self._announce_stop()

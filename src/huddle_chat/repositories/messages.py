"""In-memory message store."""

import asyncio
from bisect import bisect_right
from datetime import datetime
from typing import AsyncIterator, Dict, List, Optional
from uuid import UUID

import structlog

from ..domain.errors import Forbidden, InvalidRequest, NotFound
from ..domain.models import ChangeEvent, EventKind, Message, MessageType, Table, utcnow
from ..services.access import AccessControlGuard
from .base import MembershipStore, MessageStore

logger = structlog.get_logger()

MAX_CONTENT_LENGTH = 10000


def _deletion_record(message: Message) -> Dict[str, object]:
    return {
        "id": str(message.id),
        "chat_id": str(message.chat_id),
        "sender_id": message.sender_id,
        "seq": message.seq,
    }


class InMemoryMessageStore(MessageStore):
    """Per-chat append-only logs ordered by a chat-scoped sequence number.

    ``created_at`` never decreases within a chat, so ordering by
    ``(created_at, seq)`` and ordering by ``seq`` agree even when the wall
    clock steps backwards.
    """

    def __init__(self, memberships: MembershipStore, guard: AccessControlGuard) -> None:
        super().__init__()
        self._memberships = memberships
        self._guard = guard
        self._logs: Dict[UUID, List[Message]] = {}
        self._seqs: Dict[UUID, List[int]] = {}
        self._by_id: Dict[UUID, Message] = {}
        self._next_seq: Dict[UUID, int] = {}
        self._last_created: Dict[UUID, datetime] = {}
        self._lock = asyncio.Lock()

    def _require_chat(self, chat_id: UUID) -> None:
        if self._memberships.lookup_chat(chat_id) is None:
            raise NotFound(f"Chat {chat_id} not found", details={"chat_id": str(chat_id)})

    def _remove_locked(self, message: Message) -> None:
        log = self._logs[message.chat_id]
        seqs = self._seqs[message.chat_id]
        index = bisect_right(seqs, message.seq) - 1
        del log[index]
        del seqs[index]
        del self._by_id[message.id]
        self._emit(
            ChangeEvent(
                table=Table.MESSAGES,
                kind=EventKind.DELETE,
                chat_id=message.chat_id,
                record=_deletion_record(message),
            )
        )

    async def append(
        self,
        chat_id: UUID,
        sender_id: str,
        content: str,
        message_type: MessageType = MessageType.TEXT,
        reply_to: Optional[UUID] = None,
        file_name: Optional[str] = None,
        file_size: Optional[int] = None,
    ) -> Message:
        """Append a message to a chat.

        The sender must currently be a member. Raises NotFound for an unknown
        chat or a ``reply_to`` outside the chat, Forbidden for non-members and
        InvalidRequest for empty or oversized content.
        """
        content = content.strip()
        if not content:
            raise InvalidRequest("Message content must not be empty")
        if len(content) > MAX_CONTENT_LENGTH:
            raise InvalidRequest(
                f"Message content exceeds {MAX_CONTENT_LENGTH} characters",
                details={"max_length": MAX_CONTENT_LENGTH},
            )

        async with self._lock:
            self._require_chat(chat_id)
            self._guard.require_write(sender_id, chat_id)
            if reply_to is not None:
                parent = self._by_id.get(reply_to)
                if parent is None or parent.chat_id != chat_id:
                    raise NotFound(
                        f"Message {reply_to} not found in chat {chat_id}",
                        details={"reply_to": str(reply_to)},
                    )

            seq = self._next_seq.get(chat_id, 0) + 1
            created_at = utcnow()
            last = self._last_created.get(chat_id)
            if last is not None and created_at < last:
                created_at = last

            message = Message(
                chat_id=chat_id,
                sender_id=sender_id,
                content=content,
                message_type=message_type,
                file_name=file_name,
                file_size=file_size,
                reply_to=reply_to,
                seq=seq,
                created_at=created_at,
            )
            self._next_seq[chat_id] = seq
            self._last_created[chat_id] = created_at
            self._logs.setdefault(chat_id, []).append(message)
            self._seqs.setdefault(chat_id, []).append(seq)
            self._by_id[message.id] = message
            self._memberships.record_activity(chat_id, created_at)

            self._emit(
                ChangeEvent(
                    table=Table.MESSAGES,
                    kind=EventKind.INSERT,
                    chat_id=chat_id,
                    record=message.model_dump(mode="json"),
                )
            )
            logger.info(
                "message_appended",
                chat_id=str(chat_id),
                message_id=str(message.id),
                seq=seq,
                message_type=message_type.value,
            )
            return message

    async def get_message(self, message_id: UUID) -> Message:
        """Get a message or raise NotFound."""
        async with self._lock:
            message = self._by_id.get(message_id)
            if message is None:
                raise NotFound(f"Message {message_id} not found", details={"message_id": str(message_id)})
            return message

    async def list_since(
        self, chat_id: UUID, cursor: int, requester: str, limit: Optional[int] = None
    ) -> List[Message]:
        """Messages after ``cursor`` ordered by ``(created_at, seq)``.

        The same cursor yields the same sequence on every call while the log is
        unchanged, and an advanced cursor never yields an earlier message.
        """
        if cursor < 0:
            raise InvalidRequest("Cursor must not be negative")
        async with self._lock:
            self._require_chat(chat_id)
            self._guard.require_read(requester, chat_id)
            seqs = self._seqs.get(chat_id, [])
            start = bisect_right(seqs, cursor)
            log = self._logs.get(chat_id, [])
            end = len(log) if limit is None else start + limit
            return log[start:end]

    async def iter_since(
        self, chat_id: UUID, cursor: int, requester: str, page_size: int = 100
    ) -> AsyncIterator[Message]:
        """Yield messages after ``cursor`` one page at a time.

        Each page re-checks read access, so a member removed mid-iteration
        stops receiving pages.
        """
        while True:
            page = await self.list_since(chat_id, cursor, requester, limit=page_size)
            for message in page:
                yield message
            if len(page) < page_size:
                return
            cursor = page[-1].seq

    async def delete(self, message_id: UUID, requester: str) -> Message:
        """Delete a message. Only its sender may."""
        async with self._lock:
            message = self._by_id.get(message_id)
            if message is None:
                raise NotFound(f"Message {message_id} not found", details={"message_id": str(message_id)})
            self._guard.require_delete_message(requester, message)
            self._remove_locked(message)
            logger.info("message_deleted", chat_id=str(message.chat_id), message_id=str(message_id))
            return message

    async def delete_all_by_sender(self, chat_id: UUID, sender_id: str, requester: str) -> List[Message]:
        """Delete every message a sender posted to a chat."""
        if requester != sender_id:
            raise Forbidden("Only the sender can delete their messages", error_code="NOT_SENDER")
        async with self._lock:
            self._require_chat(chat_id)
            doomed = [m for m in self._logs.get(chat_id, []) if m.sender_id == sender_id]
            for message in doomed:
                self._remove_locked(message)
            logger.info("messages_bulk_deleted", chat_id=str(chat_id), sender_id=sender_id, count=len(doomed))
            return doomed

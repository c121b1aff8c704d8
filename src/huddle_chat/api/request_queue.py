"""Per-chat request queue for message writes."""

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict
from uuid import UUID

import structlog

from ..domain.errors import TransientIO

logger = structlog.get_logger()


@dataclass
class QueuedRequest:
    """A write waiting for its turn in a chat's queue."""

    chat_id: UUID
    task: Callable[[], Awaitable[Any]]
    future: asyncio.Future
    sequence_number: int


class ChatRequestQueue:
    """Runs write requests for one chat strictly one after another.

    Each chat gets its own queue and worker task, created on first use and
    retired after ``idle_timeout`` seconds without work. A request that is not
    finished within ``timeout`` fails with TransientIO; if it had not started
    yet it is skipped.
    """

    def __init__(self, timeout: float = 10.0, idle_timeout: float = 30.0) -> None:
        self.timeout = timeout
        self.idle_timeout = idle_timeout
        self.queues: Dict[UUID, asyncio.Queue] = {}
        self._workers: Dict[UUID, asyncio.Task] = {}
        self._sequence_counters: Dict[UUID, int] = {}

    def _get_queue(self, chat_id: UUID) -> asyncio.Queue:
        queue = self.queues.get(chat_id)
        if queue is None:
            queue = self.queues[chat_id] = asyncio.Queue()
            self._sequence_counters[chat_id] = 0
            self._workers[chat_id] = asyncio.create_task(self._process_queue(chat_id))
        return queue

    async def _process_queue(self, chat_id: UUID) -> None:
        queue = self.queues[chat_id]
        try:
            while True:
                try:
                    request = await asyncio.wait_for(queue.get(), timeout=self.idle_timeout)
                except asyncio.TimeoutError:
                    if queue.empty():
                        break
                    continue

                if request.future.done():
                    # caller already gave up
                    continue
                try:
                    result = await asyncio.wait_for(request.task(), timeout=self.timeout)
                    if not request.future.done():
                        request.future.set_result(result)
                except Exception as e:
                    if not request.future.done():
                        request.future.set_exception(e)
        except asyncio.CancelledError:
            logger.info("chat_queue_cancelled", chat_id=str(chat_id))
        finally:
            if self.queues.get(chat_id) is queue:
                del self.queues[chat_id]
                del self._sequence_counters[chat_id]
                self._workers.pop(chat_id, None)

    async def run(self, chat_id: UUID, task: Callable[..., Awaitable[Any]], *args: Any, **kwargs: Any) -> Any:
        """Queue ``task(*args, **kwargs)`` behind earlier writes to the same chat."""
        queue = self._get_queue(chat_id)
        sequence_number = self._sequence_counters[chat_id]
        self._sequence_counters[chat_id] += 1

        future = asyncio.get_running_loop().create_future()
        queue.put_nowait(
            QueuedRequest(
                chat_id=chat_id,
                task=lambda: task(*args, **kwargs),
                future=future,
                sequence_number=sequence_number,
            )
        )
        try:
            return await asyncio.wait_for(future, timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.error("request_timeout", chat_id=str(chat_id), sequence=sequence_number)
            raise TransientIO("Request processing timed out", error_code="REQUEST_TIMEOUT")

    async def cleanup(self) -> None:
        """Cancel every worker."""
        workers = list(self._workers.values())
        for worker in workers:
            worker.cancel()
        if workers:
            await asyncio.gather(*workers, return_exceptions=True)
        self.queues.clear()
        self._workers.clear()
        self._sequence_counters.clear()
        logger.info("request_queue_cleaned_up")

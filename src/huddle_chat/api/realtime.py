"""
WebSocket change feed.

Client frames are JSON objects with an ``action`` of ``subscribe``,
``unsubscribe``, ``typing`` or ``ping``. The server answers with ``subscribed``,
``unsubscribed``, ``pong`` and ``error`` frames, pushes committed changes as
``event`` frames and sends a final ``closed`` frame before closing the socket
on its own initiative. A client that stays silent for longer than the
heartbeat timeout is disconnected.
"""

import asyncio
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect
from fastapi.websockets import WebSocketState
from pydantic import ValidationError
from structlog import get_logger

from ..core import ChatCore
from ..domain.errors import ChatError, InvalidRequest
from ..domain.models import Topic
from ..services.dispatcher import Subscriber, chat_topics, user_topics
from .schemas import ClientFrame

logger = get_logger()

router = APIRouter()

CLOSE_CODES = {
    "client_closed": 1000,
    "server_shutdown": 1001,
    "delivery_error": 1011,
    "heartbeat_timeout": 4000,
    "slow_consumer": 4008,
}


class Connection:
    """Serializes writes to one socket; event frames and replies interleave."""

    def __init__(self, websocket: WebSocket) -> None:
        self.websocket = websocket
        self._lock = asyncio.Lock()

    async def send(self, frame: Dict[str, Any]) -> None:
        async with self._lock:
            await self.websocket.send_json(frame)


def frame_topics(subscriber: Subscriber, frame: ClientFrame) -> List[Topic]:
    topics = list(frame.topics)
    if frame.chat_id is not None:
        topics.extend(chat_topics(frame.chat_id))
    if frame.inbox:
        topics.extend(user_topics(subscriber.user_id))
    if not topics:
        raise InvalidRequest("Frame names no topics")
    return topics


async def handle_frame(core: ChatCore, subscriber: Subscriber, connection: Connection, frame: ClientFrame) -> None:
    if frame.action == "ping":
        await connection.send({"type": "pong"})
    elif frame.action == "subscribe":
        topics = core.dispatcher.subscribe(subscriber, frame_topics(subscriber, frame))
        await connection.send({"type": "subscribed", "topics": [t.model_dump(mode="json") for t in topics]})
    elif frame.action == "unsubscribe":
        topics = frame_topics(subscriber, frame)
        core.dispatcher.unsubscribe(subscriber, topics)
        await connection.send({"type": "unsubscribed", "topics": [t.model_dump(mode="json") for t in topics]})
    elif frame.action == "typing":
        if frame.chat_id is None or frame.is_typing is None:
            raise InvalidRequest("Typing frames need chat_id and is_typing")
        await core.typing.set_typing(frame.chat_id, subscriber.user_id, frame.is_typing)


async def forward_events(subscriber: Subscriber, connection: Connection) -> None:
    """Push queued events until the subscriber is closed."""
    while True:
        event = await subscriber.next_event()
        if event is None:
            if subscriber.close_reason != "client_closed":
                await connection.send({"type": "closed", "reason": subscriber.close_reason})
            return
        await connection.send({"type": "event", "event": event.model_dump(mode="json")})


async def receive_frames(
    core: ChatCore, subscriber: Subscriber, connection: Connection, heartbeat_timeout: float
) -> str:
    """Handle client frames; returns why the connection should end."""
    websocket = connection.websocket
    while True:
        try:
            raw = await asyncio.wait_for(websocket.receive_text(), timeout=heartbeat_timeout)
        except asyncio.TimeoutError:
            return "heartbeat_timeout"
        except WebSocketDisconnect:
            return "client_closed"

        try:
            await handle_frame(core, subscriber, connection, ClientFrame.model_validate_json(raw))
        except ChatError as e:
            await connection.send({"type": "error", **e.to_dict()})
        except ValidationError as e:
            error = InvalidRequest("Malformed frame", details={"errors": [err["msg"] for err in e.errors()]})
            await connection.send({"type": "error", **error.to_dict()})


@router.websocket("/realtime")
async def realtime(websocket: WebSocket, user_id: Optional[str] = Query(default=None)):
    """Realtime change feed for one authenticated user."""
    if not user_id:
        await websocket.close(code=4001)
        return

    await websocket.accept()
    core: ChatCore = websocket.app.state.core
    connection = Connection(websocket)
    first_session = not core.dispatcher.connections_of(user_id)
    subscriber = core.dispatcher.connect(user_id)
    if first_session:
        await core.accounts.session_started(user_id)

    sender = asyncio.create_task(forward_events(subscriber, connection))
    receiver = asyncio.create_task(
        receive_frames(core, subscriber, connection, core.settings.heartbeat_timeout)
    )
    try:
        await asyncio.wait({sender, receiver}, return_when=asyncio.FIRST_COMPLETED)
        if receiver.done() and not receiver.cancelled():
            if receiver.exception() is not None:
                logger.error(
                    "realtime_receive_failed", subscriber_id=str(subscriber.id), error=str(receiver.exception())
                )
                core.dispatcher.evict(subscriber, "delivery_error")
            elif receiver.result() == "client_closed":
                core.dispatcher.disconnect(subscriber, "client_closed")
            else:
                core.dispatcher.evict(subscriber, receiver.result())
        receiver.cancel()
        try:
            # let the sender flush the closed frame
            await asyncio.wait_for(sender, timeout=1.0)
        except asyncio.TimeoutError:
            pass
        except Exception as e:
            logger.info("realtime_send_failed", subscriber_id=str(subscriber.id), error=str(e))
    finally:
        for task in (sender, receiver):
            task.cancel()
        await asyncio.gather(sender, receiver, return_exceptions=True)

        core.dispatcher.disconnect(subscriber, "client_closed")
        if not core.dispatcher.connections_of(user_id):
            await core.accounts.session_ended(user_id)
        if (
            websocket.client_state == WebSocketState.CONNECTED
            and websocket.application_state == WebSocketState.CONNECTED
        ):
            await websocket.close(code=CLOSE_CODES.get(subscriber.close_reason or "", 1000))

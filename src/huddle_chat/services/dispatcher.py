"""
Realtime fan-out of committed change events.

Stores emit events synchronously inside the critical section that committed
them; ``RealtimeDispatcher.publish`` runs right there and only enqueues onto
per-subscriber bounded queues. That gives FIFO delivery per chat topic for each
subscriber without the publisher ever awaiting a subscriber. A subscriber whose
queue overflows is evicted instead of slowing the fan-out down.

Delivery is at-least-once from the client's point of view: anything lost to an
eviction or a dropped connection is recovered by ``list_since`` on reconnect.
The dispatcher keeps no replay buffer.
"""

import asyncio
from enum import Enum
from typing import Dict, Iterable, List, Optional, Set
from uuid import UUID, uuid4

import structlog

from ..domain.errors import Forbidden, InvalidRequest
from ..domain.models import CHAT_TABLES, ChangeEvent, EventKind, Table, Topic
from ..metrics import EVENTS_DELIVERED, EVENTS_PUBLISHED, SUBSCRIBERS_CONNECTED, SUBSCRIBERS_EVICTED
from ..repositories.base import MembershipStore
from .access import AccessControlGuard

logger = structlog.get_logger()


def chat_topics(chat_id: UUID) -> List[Topic]:
    """The chat-scoped topics of one chat."""
    return [Topic(table=table, key=str(chat_id)) for table in sorted(CHAT_TABLES, key=lambda t: t.value)]


def user_topics(user_id: str) -> List[Topic]:
    """Every topic keyed by a user id."""
    return [Topic(table=table, key=user_id) for table in Table]


class SubscriberState(str, Enum):
    """Lifecycle of a subscriber connection."""
    CONNECTING = "connecting"
    SUBSCRIBED = "subscribed"
    DELIVERING = "delivering"
    IDLE = "idle"
    CLOSED = "closed"


class Subscriber:
    """One connected client and its outbound event queue."""

    def __init__(self, user_id: str, queue_size: int) -> None:
        self.id: UUID = uuid4()
        self.user_id = user_id
        self.state = SubscriberState.CONNECTING
        self.topics: Set[Topic] = set()
        self.close_reason: Optional[str] = None
        self._queue: "asyncio.Queue[Optional[ChangeEvent]]" = asyncio.Queue(maxsize=queue_size)

    @property
    def closed(self) -> bool:
        """True once the subscriber stopped receiving events."""
        return self.state == SubscriberState.CLOSED

    @property
    def pending(self) -> int:
        """Events queued but not yet taken."""
        return self._queue.qsize()

    def offer(self, event: ChangeEvent) -> bool:
        """Queue an event without waiting. False when the queue is full."""
        if self.closed:
            return False
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            return False
        return True

    def close(self, reason: str) -> None:
        """Stop delivery. Undelivered events are dropped; clients reconcile."""
        if self.closed:
            return
        self.state = SubscriberState.CLOSED
        self.close_reason = reason
        while not self._queue.empty():
            self._queue.get_nowait()
        self._queue.put_nowait(None)

    async def next_event(self) -> Optional[ChangeEvent]:
        """Wait for the next event; None once the subscriber is closed."""
        if not self.closed and self._queue.empty():
            self.state = SubscriberState.IDLE
        event = await self._queue.get()
        if event is None:
            return None
        if not self.closed:
            self.state = SubscriberState.DELIVERING
        return event

    def drain(self) -> List[ChangeEvent]:
        """Take everything queued right now without waiting."""
        events = []
        while not self._queue.empty():
            event = self._queue.get_nowait()
            if event is None:
                # keep the close sentinel for next_event
                self._queue.put_nowait(None)
                break
            events.append(event)
        return events


class RealtimeDispatcher:
    """Routes change events to subscribers of the affected topics.

    Chat topics are keyed by chat id and deliver to subscribers whose user is a
    member at dispatch time. Any table may also be subscribed under the
    subscriber's own user id, which delivers events naming that user in
    ``audience``.
    """

    def __init__(
        self,
        memberships: MembershipStore,
        guard: AccessControlGuard,
        queue_size: int = 256,
    ) -> None:
        self._memberships = memberships
        self._guard = guard
        self._queue_size = queue_size
        self._subscribers: Dict[UUID, Subscriber] = {}
        self._topics: Dict[Topic, Dict[UUID, Subscriber]] = {}
        self._sequence = 0

    @property
    def subscriber_count(self) -> int:
        """Number of open subscriber connections."""
        return len(self._subscribers)

    def connections_of(self, user_id: str) -> List[Subscriber]:
        """Open subscribers belonging to a user."""
        return [s for s in self._subscribers.values() if s.user_id == user_id]

    def connect(self, user_id: str) -> Subscriber:
        """Register a new subscriber for a user."""
        subscriber = Subscriber(user_id, self._queue_size)
        self._subscribers[subscriber.id] = subscriber
        SUBSCRIBERS_CONNECTED.inc()
        logger.info("subscriber_connected", subscriber_id=str(subscriber.id), user_id=user_id)
        return subscriber

    def _authorize(self, subscriber: Subscriber, topic: Topic) -> None:
        if topic.key == subscriber.user_id:
            return
        if not topic.table.chat_scoped:
            raise Forbidden("You can only subscribe to your own user topics")
        try:
            chat_id = UUID(topic.key)
        except ValueError:
            raise InvalidRequest(f"Invalid chat id {topic.key!r}")
        self._guard.require_read(subscriber.user_id, chat_id)

    def subscribe(self, subscriber: Subscriber, topics: Iterable[Topic]) -> List[Topic]:
        """Register interest in topics. All-or-nothing: one unauthorized topic
        rejects the whole request."""
        if subscriber.closed:
            raise InvalidRequest("Subscriber is closed")
        topics = list(topics)
        for topic in topics:
            self._authorize(subscriber, topic)
        for topic in topics:
            self._topics.setdefault(topic, {})[subscriber.id] = subscriber
            subscriber.topics.add(topic)
        if subscriber.state == SubscriberState.CONNECTING:
            subscriber.state = SubscriberState.SUBSCRIBED
        logger.info(
            "subscriber_subscribed",
            subscriber_id=str(subscriber.id),
            topics=[f"{t.table.value}:{t.key}" for t in topics],
        )
        return topics

    def subscribe_chat(self, subscriber: Subscriber, chat_id: UUID) -> List[Topic]:
        """Subscribe to every chat-scoped table of one chat."""
        return self.subscribe(subscriber, chat_topics(chat_id))

    def subscribe_inbox(self, subscriber: Subscriber) -> List[Topic]:
        """Subscribe to every table under the subscriber's own user id."""
        return self.subscribe(subscriber, user_topics(subscriber.user_id))

    def _drop_topic(self, subscriber: Subscriber, topic: Topic) -> None:
        listeners = self._topics.get(topic)
        if listeners is not None:
            listeners.pop(subscriber.id, None)
            if not listeners:
                del self._topics[topic]
        subscriber.topics.discard(topic)

    def unsubscribe(self, subscriber: Subscriber, topics: Iterable[Topic]) -> None:
        """Drop interest in topics; unknown topics are ignored."""
        for topic in list(topics):
            self._drop_topic(subscriber, topic)

    def disconnect(self, subscriber: Subscriber, reason: str = "client_closed") -> None:
        """Deregister every topic of a subscriber and close it."""
        if self._subscribers.pop(subscriber.id, None) is None:
            return
        for topic in list(subscriber.topics):
            self._drop_topic(subscriber, topic)
        subscriber.close(reason)
        SUBSCRIBERS_CONNECTED.dec()
        logger.info(
            "subscriber_disconnected",
            subscriber_id=str(subscriber.id),
            user_id=subscriber.user_id,
            reason=reason,
        )

    def evict(self, subscriber: Subscriber, reason: str) -> None:
        """Disconnect a subscriber the server gave up on."""
        SUBSCRIBERS_EVICTED.labels(reason=reason).inc()
        logger.warning(
            "subscriber_evicted",
            subscriber_id=str(subscriber.id),
            user_id=subscriber.user_id,
            reason=reason,
            pending=subscriber.pending,
        )
        self.disconnect(subscriber, reason)

    def _revoke_chat(self, chat_id: UUID, user_id: str) -> None:
        key = str(chat_id)
        for subscriber in self.connections_of(user_id):
            for topic in [t for t in subscriber.topics if t.key == key]:
                self._drop_topic(subscriber, topic)

    def publish(self, event: ChangeEvent) -> int:
        """Deliver an event to every authorized subscriber of its topics.

        Returns the number of subscribers it was queued for.
        """
        self._sequence += 1
        event.sequence = self._sequence
        EVENTS_PUBLISHED.labels(table=event.table.value).inc()

        targets: Dict[UUID, Subscriber] = {}
        if event.chat_id is not None:
            allowed = set(self._memberships.current_member_ids(event.chat_id))
            allowed.update(event.extra_recipients)
            topic = Topic(table=event.table, key=str(event.chat_id))
            for subscriber in self._topics.get(topic, {}).values():
                if subscriber.user_id in allowed:
                    targets[subscriber.id] = subscriber
        for user_id in event.audience:
            for subscriber in self._topics.get(Topic(table=event.table, key=user_id), {}).values():
                targets[subscriber.id] = subscriber

        delivered = 0
        for subscriber in list(targets.values()):
            try:
                if subscriber.offer(event):
                    delivered += 1
                else:
                    self.evict(subscriber, "slow_consumer")
            except Exception as e:
                logger.error("event_delivery_failed", subscriber_id=str(subscriber.id), error=str(e))
                self.evict(subscriber, "delivery_error")
        EVENTS_DELIVERED.inc(delivered)

        if event.table == Table.CHAT_MEMBERS and event.kind == EventKind.DELETE and event.chat_id is not None:
            self._revoke_chat(event.chat_id, str(event.record["user_id"]))
        return delivered

    def shutdown(self) -> None:
        """Close every subscriber."""
        for subscriber in list(self._subscribers.values()):
            self.disconnect(subscriber, "server_shutdown")

"""Topic-keyed fan-out of domain events to live sessions.

Delivery is best effort and at most once: each subscriber owns a bounded
queue, a full queue drops the event, and nothing is replayed. A session that
misses events reconciles by refetching its participant view.
"""

from __future__ import annotations

import asyncio
import threading
from typing import Dict, List, Optional, Set

import structlog

from ..core.events import DomainEvent

LOGGER = structlog.get_logger(__name__)

DEFAULT_QUEUE_SIZE = 256


class Subscriber:
    """One live session's mailbox."""

    def __init__(self, name: str, *, maxsize: int = DEFAULT_QUEUE_SIZE) -> None:
        self.name = name
        self.queue: asyncio.Queue[DomainEvent] = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0

    def deliver(self, event: DomainEvent) -> bool:
        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            return False
        return True

    async def receive(self, timeout: Optional[float] = None) -> DomainEvent:
        if timeout is None:
            return await self.queue.get()
        return await asyncio.wait_for(self.queue.get(), timeout=timeout)

    def drain(self) -> List[DomainEvent]:
        """Return everything queued right now without waiting."""
        events: List[DomainEvent] = []
        while not self.queue.empty():
            events.append(self.queue.get_nowait())
        return events

    def __repr__(self) -> str:
        return f"Subscriber({self.name!r})"


class BroadcastGateway:
    """Routes events by topic; never looks inside them."""

    def __init__(self) -> None:
        self._topics: Dict[str, Set[Subscriber]] = {}
        self._lock = threading.Lock()

    def subscribe(self, topic: str, subscriber: Subscriber) -> None:
        with self._lock:
            self._topics.setdefault(topic, set()).add(subscriber)
        LOGGER.debug("gateway.subscribed", topic=topic, subscriber=subscriber.name)

    def unsubscribe(self, topic: str, subscriber: Subscriber) -> None:
        with self._lock:
            members = self._topics.get(topic)
            if members is None:
                return
            members.discard(subscriber)
            if not members:
                del self._topics[topic]

    def unsubscribe_all(self, subscriber: Subscriber) -> None:
        with self._lock:
            for topic in [t for t, members in self._topics.items() if subscriber in members]:
                members = self._topics[topic]
                members.discard(subscriber)
                if not members:
                    del self._topics[topic]

    def subscribers(self, topic: str) -> List[Subscriber]:
        with self._lock:
            return list(self._topics.get(topic, ()))

    def publish(self, topic: str, event: DomainEvent) -> int:
        """Hand ``event`` to every current subscriber of ``topic``; return how many took it."""

        delivered = 0
        for subscriber in self.subscribers(topic):
            if subscriber.deliver(event):
                delivered += 1
            else:
                LOGGER.warning("gateway.dropped", topic=topic, subscriber=subscriber.name, event_type=event.type)
        LOGGER.debug("gateway.published", topic=topic, event_type=event.type, sequence=event.sequence, delivered=delivered)
        return delivered

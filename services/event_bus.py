"""
In-process Feed Event Bus.

This module provides the `FeedEventBus`, which fans committed post changes out
to live feed subscriptions. The post repository publishes `created` events and
the counter engine publishes `updated` events; each live subscription owns one
`Subscriber` with a bounded queue.

Key Components:
- `FeedEvent`: Immutable record of one committed post state. It carries a
  bus-wide sequence number, a detached copy of the post, and, for like events,
  the acting viewer and the resulting like state so subscriptions can keep
  their viewer-relative flags current.
- `Subscriber`: A bounded `asyncio.Queue` plus lifecycle flags. Closing a
  subscriber drops whatever it still had queued and wakes its reader.
- `FeedEventBus`: Registry of subscribers. `publish` never blocks: a
  subscriber whose queue is full is closed and dropped instead of slowing the
  writer down.

Ordering:
`publish` is synchronous, so an event is enqueued for every subscriber before
the publisher resumes. Publishers call it while still holding the per-post
lock, which keeps the events of one post in commit order.
"""

import asyncio
import itertools
import logging
import uuid
from dataclasses import dataclass
from typing import Dict, Optional

from core.models import AudioPost
from core.performance import get_metrics_collector

logger = logging.getLogger(__name__)

POST_CREATED = "created"
POST_UPDATED = "updated"

# Placed on a subscriber's queue when it is closed
CLOSED = object()


@dataclass(frozen=True)
class FeedEvent:
    sequence: int
    kind: str
    post: AudioPost
    actor_id: Optional[str] = None
    liked: Optional[bool] = None


class Subscriber:
    """Receiving end of the bus for one live subscription"""

    def __init__(self, queue_size: int):
        self.id = uuid.uuid4().hex
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self.closed = False
        self.overflowed = False

    def offer(self, event: FeedEvent) -> bool:
        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            return False
        return True

    def close(self):
        if self.closed:
            return
        self.closed = True
        while not self.queue.empty():
            self.queue.get_nowait()
        self.queue.put_nowait(CLOSED)


class FeedEventBus:
    """Fan-out of committed post changes to live subscriptions"""

    def __init__(self, queue_size: int = 256):
        self.queue_size = queue_size
        self.subscribers: Dict[str, Subscriber] = {}
        self._sequence = itertools.count(1)

    def subscribe(self) -> Subscriber:
        subscriber = Subscriber(self.queue_size)
        self.subscribers[subscriber.id] = subscriber
        logger.debug(f"Feed subscriber {subscriber.id} registered")
        return subscriber

    def unsubscribe(self, subscriber: Subscriber):
        if self.subscribers.pop(subscriber.id, None) is not None:
            logger.debug(f"Feed subscriber {subscriber.id} removed")
        subscriber.close()

    def publish(
        self,
        kind: str,
        post: AudioPost,
        actor_id: Optional[str] = None,
        liked: Optional[bool] = None,
    ) -> FeedEvent:
        """Enqueue a snapshot of `post` for every subscriber"""
        event = FeedEvent(
            sequence=next(self._sequence),
            kind=kind,
            post=AudioPost(**post.model_dump()),
            actor_id=actor_id,
            liked=liked,
        )

        for subscriber in list(self.subscribers.values()):
            if not subscriber.offer(event):
                logger.warning(
                    f"Feed subscriber {subscriber.id} overflowed, cancelling it",
                    extra={"subscriber_id": subscriber.id, "queue_size": self.queue_size},
                )
                get_metrics_collector().increment_counter("feed_subscriber_overflows")
                subscriber.overflowed = True
                self.unsubscribe(subscriber)

        return event

    def close_all(self):
        """Close every subscriber. Called on application shutdown."""
        for subscriber in list(self.subscribers.values()):
            self.unsubscribe(subscriber)
        logger.info("Feed event bus closed")

    def __len__(self) -> int:
        return len(self.subscribers)

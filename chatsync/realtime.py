"""
In-process event hub behind the WebSocket push channel.

Topics are plain strings ("conversation:<id>", "user:<id>"). Every
subscriber gets its own bounded queue; when a slow subscriber's queue is
full the event is dropped for that subscriber only. Dropping is safe
because clients keep polling as a safety net and merge by identity.
"""

import asyncio
import logging
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Iterable, Set

from chatsync.metrics import realtime_subscribers
from chatsync.schemas import MessageOut, RealtimeEnvelope

logger = logging.getLogger(__name__)

MESSAGE_CREATED = "message.created"
MESSAGE_UPDATED = "message.updated"


def conversation_topic(conversation_id: int) -> str:
    return f"conversation:{conversation_id}"


def user_topic(user_id: str) -> str:
    return f"user:{user_id}"


class EventHub:
    """Fan-out of realtime envelopes to topic subscribers."""

    def __init__(self, queue_size: int = 100):
        self.queue_size = queue_size
        self._subscribers: Dict[str, Set[asyncio.Queue]] = defaultdict(set)

    def subscriber_count(self, topic: str) -> int:
        return len(self._subscribers.get(topic, ()))

    @asynccontextmanager
    async def subscribe(self, topic: str) -> AsyncIterator[asyncio.Queue]:
        """Register a queue for the topic for the duration of the block."""
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.queue_size)
        self._subscribers[topic].add(queue)
        realtime_subscribers.inc()
        logger.info(f"Realtime subscriber added: topic={topic}")
        try:
            yield queue
        finally:
            subscribers = self._subscribers.get(topic)
            if subscribers is not None:
                subscribers.discard(queue)
                if not subscribers:
                    del self._subscribers[topic]
            realtime_subscribers.dec()
            logger.info(f"Realtime subscriber removed: topic={topic}")

    def publish(self, topics: Iterable[str], envelope: RealtimeEnvelope) -> int:
        """
        Deliver an envelope to every subscriber of the given topics.

        Returns:
            Number of queues the envelope was put on
        """
        frame = envelope.model_dump(mode="json")
        delivered = 0
        for topic in set(topics):
            for queue in list(self._subscribers.get(topic, ())):
                try:
                    queue.put_nowait(frame)
                    delivered += 1
                except asyncio.QueueFull:
                    logger.warning(f"Realtime queue full, dropping {envelope.type} for topic={topic}")
        logger.debug(f"Published {envelope.type} to {delivered} subscribers")
        return delivered

    def publish_message(self, event_type: str, message: MessageOut) -> int:
        """Publish a message event to its conversation and both participants."""
        envelope = RealtimeEnvelope(type=event_type, data=message.model_dump(mode="json", by_alias=True))
        topics = [
            conversation_topic(message.conversation_id),
            user_topic(message.sender_id),
            user_topic(message.recipient_id),
        ]
        return self.publish(topics, envelope)

"""
In-Memory Event Bus.

asyncio.Queue-based bus with two independent queues: one for ingestion
ticks and one for conversation events. The bus is constructed once at
startup and injected into producers and consumers.

Task-safe, not thread-safe.
"""
import asyncio
import logging
from typing import Dict

from orderdesk.app.events.schemas import BaseEvent

logger = logging.getLogger(__name__)

INGESTION_QUEUE = "ingestion"
CONVERSATION_QUEUE = "conversation"

_ROUTES = {
    "ingestion.tick": INGESTION_QUEUE,
    "order.upserted": CONVERSATION_QUEUE,
    "conversation.start": CONVERSATION_QUEUE,
    "conversation.user_message": CONVERSATION_QUEUE,
}


class EventBus:
    """Named asyncio queues with event-type routing."""

    def __init__(self, maxsize: int = 10000):
        self._queues: Dict[str, asyncio.Queue] = {
            INGESTION_QUEUE: asyncio.Queue(maxsize=maxsize),
            CONVERSATION_QUEUE: asyncio.Queue(maxsize=maxsize),
        }
        logger.info(f"Event bus initialized with maxsize={maxsize}")

    def queue(self, name: str) -> asyncio.Queue:
        return self._queues[name]

    def route(self, event: BaseEvent) -> str:
        try:
            return _ROUTES[event.event_type]
        except KeyError:
            raise ValueError(f"No queue route for event type {event.event_type}") from None

    async def publish(self, event: BaseEvent) -> None:
        """
        Publish an event to its queue.

        Raises:
            asyncio.QueueFull: If the queue is at capacity
        """
        q = self._queues[self.route(event)]
        try:
            q.put_nowait(event)
            logger.debug(
                f"Event published: {event.event_type} (store={event.store_id}, "
                f"id={event.event_id[:8]}..., queue_size={q.qsize()})"
            )
        except asyncio.QueueFull:
            logger.warning(
                f"Event bus full! Dropped event: {event.event_type} "
                f"(store={event.store_id}, id={event.event_id[:8]}...)"
            )
            raise

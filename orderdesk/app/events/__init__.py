"""
Event bus and schemas for OrderDesk.

Events decouple ingestion from conversation outreach. Every event carries a
store_id for strict tenant isolation.
"""

from orderdesk.app.events.schemas import (
    BaseEvent,
    IngestionTickEvent,
    OrderUpsertedEvent,
    ConversationStartEvent,
    ConversationUserMessageEvent,
    event_from_json,
)
from orderdesk.app.events.bus import EventBus, INGESTION_QUEUE, CONVERSATION_QUEUE

__all__ = [
    "BaseEvent",
    "IngestionTickEvent",
    "OrderUpsertedEvent",
    "ConversationStartEvent",
    "ConversationUserMessageEvent",
    "event_from_json",
    "EventBus",
    "INGESTION_QUEUE",
    "CONVERSATION_QUEUE",
]

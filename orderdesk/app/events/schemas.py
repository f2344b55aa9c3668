"""
Event Schema Definitions for the OrderDesk queues.

All events follow a canonical schema with a mandatory store_id so every
handler runs tenant-scoped, and all of them survive a JSON round trip so a
redelivered job can be replayed idempotently.
"""
import uuid
from datetime import datetime, timezone
from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class BaseEvent(BaseModel):
    """
    Base event schema with mandatory tenant isolation fields.

    - Unique event tracking (event_id)
    - Tenant isolation (store_id is REQUIRED, no default)
    - Temporal tracking (timestamp)
    - Event categorization (event_type)
    - Delivery bookkeeping (attempt, bumped on every redelivery)
    """

    model_config = ConfigDict(use_enum_values=True)

    event_id: str = Field(
        default_factory=lambda: str(uuid.uuid4()),
        description="Unique event identifier (UUID)"
    )

    store_id: str = Field(
        ...,  # Required, no default
        description="Store (tenant) identifier for isolation"
    )

    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="UTC timestamp when event was created"
    )

    event_type: str = Field(description="Event type discriminator")

    attempt: int = Field(default=1, description="Delivery attempt, 1 for the first delivery")


class IngestionTickEvent(BaseEvent):
    """One scheduled poll over every enabled source."""

    event_type: Literal["ingestion.tick"] = "ingestion.tick"
    store_id: str = "*"


class OrderUpsertedEvent(BaseEvent):
    """Emitted after the upsert engine commits an order."""

    event_type: Literal["order.upserted"] = "order.upserted"
    order_id: str
    external_key: str


class ConversationStartEvent(BaseEvent):
    """A new order or contact needs outreach."""

    event_type: Literal["conversation.start"] = "conversation.start"
    to: str = Field(description="Buyer phone in E.164")
    customer_id: Optional[str] = None
    order_id: Optional[str] = None
    buyer_text: Optional[str] = None
    locale: Optional[str] = None
    context: Dict[str, Any] = Field(default_factory=dict)


class ConversationUserMessageEvent(BaseEvent):
    """Inbound buyer message."""

    event_type: Literal["conversation.user_message"] = "conversation.user_message"
    conversation_id: Optional[str] = None
    to: str = Field(description="Buyer phone in E.164; replies go back to it")
    text: str
    locale: Optional[str] = None
    context: Dict[str, Any] = Field(default_factory=dict)


AnyEvent = Annotated[
    Union[IngestionTickEvent, OrderUpsertedEvent, ConversationStartEvent, ConversationUserMessageEvent],
    Field(discriminator="event_type"),
]

_event_adapter: TypeAdapter = TypeAdapter(AnyEvent)


def event_from_json(payload: Union[str, bytes, Dict[str, Any]]) -> BaseEvent:
    """Rebuild a typed event from its JSON form (queue payload or replay log)."""
    if isinstance(payload, dict):
        return _event_adapter.validate_python(payload)
    return _event_adapter.validate_json(payload)

"""Models package."""

from orderdesk.app.models.store_orm import StoreORM, MessagingChannelORM
from orderdesk.app.models.source_orm import (
    SourceConfigORM,
    RawRowORM,
    RowEmbeddingORM,
    IngestionAuditORM,
)
from orderdesk.app.models.order_orm import CustomerORM, OrderORM, OrderItemORM, OrderStatus
from orderdesk.app.models.conversation_orm import (
    ConversationORM,
    MessageORM,
    ConversationStatus,
    ConversationState,
    MessageRole,
    TERMINAL_STATES,
)
from orderdesk.app.models.schema_orm import SchemaVersionORM, SCHEMA_VERSION
from orderdesk.app.models.normalized_order import NormalizedOrder, NormalizedItem, NormalizedCustomer

__all__ = [
    "StoreORM",
    "MessagingChannelORM",
    "SourceConfigORM",
    "RawRowORM",
    "RowEmbeddingORM",
    "IngestionAuditORM",
    "CustomerORM",
    "OrderORM",
    "OrderItemORM",
    "OrderStatus",
    "ConversationORM",
    "MessageORM",
    "ConversationStatus",
    "ConversationState",
    "MessageRole",
    "TERMINAL_STATES",
    "SchemaVersionORM",
    "SCHEMA_VERSION",
    "NormalizedOrder",
    "NormalizedItem",
    "NormalizedCustomer",
]

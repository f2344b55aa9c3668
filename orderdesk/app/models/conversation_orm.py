"""
ORM Models for buyer conversations and their turns.
"""
import uuid
from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import Column, String, Integer, DateTime, JSON, ForeignKey, Index, Text

from orderdesk.app.core.database import Base


class ConversationStatus(str, Enum):
    OPEN = "open"
    ACTIVE = "active"
    CLOSED = "closed"


class ConversationState(str, Enum):
    INIT = "init"                      # nothing sent yet
    AWAIT_CHOICE = "await_choice"      # waiting for confirm / cancel / more info
    CLARIFY = "clarify"                # asked for one missing item
    ADDRESS_CHANGE = "address_change"  # collecting a new address or location
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    CLOSED = "closed"


TERMINAL_STATES = frozenset({
    ConversationState.CONFIRMED,
    ConversationState.CANCELLED,
    ConversationState.CLOSED,
})


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"
    AGENT = "agent"


class ConversationORM(Base):
    """
    Conversation with a buyer. `meta` carries the dialogue state
    (state, preferred_locale, address_ok, to, last_message_id).
    """
    __tablename__ = "conversations"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    store_id = Column(String(36), ForeignKey("stores.id"), nullable=False)
    customer_id = Column(String(36), ForeignKey("customers.id"), nullable=True)
    order_id = Column(String(36), ForeignKey("orders.id"), nullable=True, index=True)
    origin = Column(String(20), default="whatsapp", nullable=False)
    status = Column(String(20), default=ConversationStatus.OPEN.value, nullable=False)
    meta = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        Index("ix_conversations_lookup", "store_id", "customer_id", "origin", "status"),
    )


class MessageORM(Base):
    """One immutable turn. The integer id orders turns written in the same instant."""
    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    conversation_id = Column(String(36), ForeignKey("conversations.id"), nullable=False, index=True)
    role = Column(String(20), nullable=False)
    content = Column(Text, nullable=False)
    meta = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    def __repr__(self):
        return f"<Message {self.role} in {self.conversation_id}>"

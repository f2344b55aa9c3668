"""
ORM Models for stores (tenants) and their messaging channels.
"""
import uuid
from datetime import datetime, timezone
from sqlalchemy import Column, String, DateTime, Boolean, JSON, ForeignKey, Index
from orderdesk.app.core.database import Base


class StoreORM(Base):
    """
    A seller's store. Every tenant-scoped row carries its store_id.
    """
    __tablename__ = "stores"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    name = Column(String(255), nullable=False)
    locale = Column(String(20), nullable=True)  # en | fr | ar | ary
    status = Column(String(20), default="active", nullable=False)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    def __repr__(self):
        return f"<Store {self.name}>"


class MessagingChannelORM(Base):
    """
    Tenant-configured messaging channel. `credentials` holds the provider
    specific fields, validated into a typed config before use.
    """
    __tablename__ = "messaging_channels"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    store_id = Column(String(36), ForeignKey("stores.id"), nullable=False, index=True)
    kind = Column(String(20), default="whatsapp", nullable=False)
    provider = Column(String(50), nullable=False)  # meta | twilio | gupshup | console
    credentials = Column(JSON, nullable=False, default=dict)
    enabled = Column(Boolean, default=True, nullable=False)
    last_used_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        Index("ix_messaging_channels_store_kind", "store_id", "kind"),
    )

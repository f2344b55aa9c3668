"""
ORM Models for customers, orders and order items.
"""
import uuid
from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import Column, String, Integer, Float, DateTime, JSON, ForeignKey, Index, Text, UniqueConstraint
from sqlalchemy.orm import relationship

from orderdesk.app.core.database import Base


class OrderStatus(str, Enum):
    NEW = "new"
    PROCESSING = "processing"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class CustomerORM(Base):
    """Tenant-scoped buyer, matched by phone then email."""
    __tablename__ = "customers"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    store_id = Column(String(36), ForeignKey("stores.id"), nullable=False)
    name = Column(String(255), nullable=True)
    phone = Column(String(32), nullable=True)
    email = Column(String(255), nullable=True)
    meta = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        Index("ix_customers_store_phone", "store_id", "phone"),
        Index("ix_customers_store_email", "store_id", "email"),
    )


class OrderORM(Base):
    """Order keyed by (store_id, external_key); the id survives re-ingestion."""
    __tablename__ = "orders"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    store_id = Column(String(36), ForeignKey("stores.id"), nullable=False, index=True)
    external_key = Column(String(255), nullable=False)
    status = Column(String(20), default=OrderStatus.NEW.value, nullable=False)
    customer_id = Column(String(36), ForeignKey("customers.id"), nullable=True)
    raw_payload = Column(JSON, nullable=False, default=dict)
    total = Column(Float, nullable=True)
    currency = Column(String(10), nullable=True)
    notes = Column(Text, nullable=True)
    decision_by = Column(String(20), nullable=True)  # ai | agent
    decision_result = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    items = relationship("OrderItemORM", back_populates="order", lazy="selectin", order_by="OrderItemORM.position")

    __table_args__ = (
        UniqueConstraint("store_id", "external_key", name="uq_orders_store_external_key"),
    )

    def __repr__(self):
        return f"<Order {self.external_key} status={self.status}>"


class OrderItemORM(Base):
    __tablename__ = "order_items"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    order_id = Column(String(36), ForeignKey("orders.id"), nullable=False, index=True)
    position = Column(Integer, nullable=False, default=0)
    product_id = Column(String(36), nullable=True)
    sku = Column(String(100), nullable=True)
    title = Column(String(255), nullable=True)
    qty = Column(Integer, nullable=False, default=1)
    price = Column(Float, nullable=True)  # null means unknown, not free
    currency = Column(String(10), nullable=True)

    order = relationship("OrderORM", back_populates="items")

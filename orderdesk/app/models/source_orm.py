"""
ORM Models for spreadsheet ingestion: sources, raw row snapshots,
row embeddings and the idempotency audit ledger.
"""
import uuid
from datetime import datetime, timezone

from pgvector.sqlalchemy import Vector
from sqlalchemy import Column, String, Integer, DateTime, Boolean, JSON, ForeignKey, Index, Text

from orderdesk.app.core.config import get_settings
from orderdesk.app.core.database import Base

settings = get_settings()


class SourceConfigORM(Base):
    """One tenant-configured spreadsheet."""
    __tablename__ = "sources"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    store_id = Column(String(36), ForeignKey("stores.id"), nullable=False, index=True)
    uri = Column(Text, nullable=False)
    tab = Column(String(100), nullable=True)  # gid of the sheet tab
    enabled = Column(Boolean, default=True, nullable=False)
    last_processed_row = Column(Integer, nullable=True)  # advisory only
    last_polled_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )


class RawRowORM(Base):
    """Immutable snapshot of one (source, row number, signature) triple."""
    __tablename__ = "raw_rows"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    source_id = Column(String(36), ForeignKey("sources.id"), nullable=False, index=True)
    store_id = Column(String(36), nullable=False, index=True)
    row_number = Column(Integer, nullable=False)
    row_json = Column(JSON, nullable=False)
    signature = Column(String(64), nullable=False)
    idempotency_key = Column(String(200), nullable=False, unique=True)
    near_duplicate_of = Column(String(36), nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        Index("ix_raw_rows_source_row", "source_id", "row_number"),
    )


class RowEmbeddingORM(Base):
    """
    Vector for one raw row. The integer id preserves insertion order,
    which breaks distance ties in similarity queries.
    """
    __tablename__ = "row_embeddings"

    id = Column(Integer, primary_key=True, autoincrement=True)
    raw_row_id = Column(String(36), ForeignKey("raw_rows.id"), nullable=False, unique=True)
    store_id = Column(String(36), nullable=False, index=True)
    embedding = Column(Vector(settings.embedding_dimension), nullable=False)
    embedding_provider = Column(String(50), nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))


class IngestionAuditORM(Base):
    """
    One record per idempotency key. A success record means the row version
    must never be applied again; error records allow bounded retries.
    """
    __tablename__ = "ingestion_audit"

    id = Column(Integer, primary_key=True, autoincrement=True)
    source_id = Column(String(36), ForeignKey("sources.id"), nullable=False)
    row_number = Column(Integer, nullable=False)
    idempotency_key = Column(String(200), nullable=False, unique=True)
    run_id = Column(String(64), nullable=False)
    status = Column(String(20), nullable=False)  # success | error | retry
    attempts = Column(Integer, default=1, nullable=False)
    error = Column(Text, nullable=True)
    external_ref = Column(String(255), nullable=True)  # order id the row produced
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        Index("ix_ingestion_audit_source_row", "source_id", "row_number"),
    )

from datetime import datetime, timezone
from sqlalchemy import Column, Integer, DateTime
from orderdesk.app.core.database import Base

# Bump together with a migration whenever a table or column changes.
SCHEMA_VERSION = 1


class SchemaVersionORM(Base):
    """Single-row table recording which schema version the database holds."""
    __tablename__ = "schema_version"

    version = Column(Integer, primary_key=True)
    applied_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

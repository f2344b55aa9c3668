"""
Database initialization and schema verification.

Creates the schema (with the pgvector extension on PostgreSQL) and stamps
SCHEMA_VERSION. Workers call verify_schema() at startup and refuse to run
against a database holding any other version.
"""

import asyncio

from sqlalchemy import select, text

from orderdesk.app.core.config import get_settings
from orderdesk.app.core.database import Base, Database
from orderdesk.app.core.exceptions import ConfigurationError
from orderdesk.app.core.logging import get_logger
from orderdesk.app.models import SchemaVersionORM, SCHEMA_VERSION  # registers every table on Base

logger = get_logger(__name__)


async def init_schema(db: Database) -> None:
    """Create all tables and record the schema version."""
    async with db.engine.begin() as conn:
        if db.engine.dialect.name == "postgresql":
            await conn.execute(text("CREATE EXTENSION IF NOT EXISTS vector"))
        await conn.run_sync(Base.metadata.create_all)

    async with db.session() as session:
        existing = await session.get(SchemaVersionORM, SCHEMA_VERSION)
        if existing is None:
            session.add(SchemaVersionORM(version=SCHEMA_VERSION))
    logger.info(f"Schema initialized at version {SCHEMA_VERSION}")


async def verify_schema(db: Database) -> None:
    """Fail fast when the database was not initialized for this schema version."""
    try:
        async with db.session() as session:
            result = await session.execute(select(SchemaVersionORM.version))
            versions = set(result.scalars().all())
    except Exception as e:
        raise ConfigurationError(f"Schema version table unreadable: {e}") from e

    if SCHEMA_VERSION not in versions or max(versions) != SCHEMA_VERSION:
        raise ConfigurationError(
            f"Database schema version {sorted(versions) or 'missing'} does not match "
            f"expected version {SCHEMA_VERSION}; run the migration first"
        )


async def drop_all_tables(db: Database) -> None:
    """Drop all tables (use with caution!)."""
    async with db.engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


async def _main(drop: bool) -> None:
    settings = get_settings()
    db = Database.connect(settings)
    try:
        if drop:
            print("⚠️ Dropping all tables...")
            await drop_all_tables(db)
        print(f"📦 Initializing schema at {db.engine.url.render_as_string(hide_password=True)}...")
        await init_schema(db)
        print("✅ Schema initialized.")
    finally:
        await db.dispose()


if __name__ == "__main__":
    import sys

    if len(sys.argv) > 1 and sys.argv[1] == "--drop":
        print("⚠️ WARNING: This will drop all tables!")
        confirm = input("Type 'yes' to confirm: ")
        if confirm != "yes":
            print("Aborted.")
            sys.exit(1)
        asyncio.run(_main(drop=True))
    else:
        asyncio.run(_main(drop=False))

"""Database connection and session management."""

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from pgvector.sqlalchemy import Vector
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.orm import DeclarativeBase

from orderdesk.app.core.config import Settings
from orderdesk.app.core.logging import get_logger

logger = get_logger(__name__)


# SQLite has no vector type; pgvector's bind/result processors round-trip the
# value as its "[1.0,2.0,...]" text form.
@compiles(Vector, "sqlite")
def compile_vector_sqlite(type_, compiler, **kw):
    return "TEXT"


class Base(DeclarativeBase):
    """Base class for SQLAlchemy models."""
    pass


def build_engine(settings: Settings) -> AsyncEngine:
    """Create the async engine with pool and timeout options for the configured backend."""
    engine_kwargs = {"echo": settings.debug}

    connect_args = {}
    if "postgresql" in settings.database_url:
        connect_args["command_timeout"] = settings.db_command_timeout_seconds
        if settings.db_ssl_mode == "require":
            connect_args["ssl"] = "require"
        engine_kwargs.update({
            "pool_size": settings.database_pool_size,
            "max_overflow": settings.database_max_overflow,
            "pool_pre_ping": True,
            "pool_timeout": settings.db_command_timeout_seconds,
        })
    elif "sqlite" in settings.database_url:
        connect_args["timeout"] = settings.db_command_timeout_seconds

    if connect_args:
        engine_kwargs["connect_args"] = connect_args

    return create_async_engine(settings.database_url, **engine_kwargs)


class Database:
    """
    Process-wide database handle.

    Opened once at startup and disposed at shutdown; every component receives
    it through its constructor instead of importing a module-level engine.
    """

    def __init__(self, engine: AsyncEngine):
        self.engine = engine
        self.session_factory = async_sessionmaker(
            engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

    @classmethod
    def connect(cls, settings: Settings, engine: Optional[AsyncEngine] = None) -> "Database":
        db = cls(engine or build_engine(settings))
        logger.info(f"Database engine created for {db.engine.url.get_backend_name()}")
        return db

    async def dispose(self) -> None:
        await self.engine.dispose()
        logger.info("Database engine disposed")

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """Context manager for database sessions. Commits on success, rolls back on error."""
        async with self.session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise
            finally:
                await session.close()

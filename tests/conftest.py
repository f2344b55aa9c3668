"""
Pytest configuration and fixtures.

Every test gets its own in-memory SQLite database (aiosqlite, StaticPool so
all sessions share one connection) with the full schema created through
init_schema. External services are replaced by scripted fakes:

- FakeLLM: an LLMAdapter whose answers are queued by the test
- FakeEmbeddings: deterministic vectors, or None when marked unavailable
- Outbox: records what the console sender would have delivered
"""

import hashlib
from datetime import datetime, timezone
from typing import AsyncGenerator, Callable, Dict, List, Optional, Tuple

import httpx
import pytest
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from orderdesk.app.core.database import Database
from orderdesk.app.core.init_db import drop_all_tables, init_schema
from orderdesk.app.core.resilience import CircuitBreaker
from orderdesk.app.events.bus import EventBus
from orderdesk.app.models import MessagingChannelORM, SourceConfigORM, StoreORM
from orderdesk.app.services.llm_adapter import ChatMessage, LLMAdapter, LLMAdapterConfig, LLMResponse
from orderdesk.app.services.messaging import MessageSender, MessagingDispatcher, SendResult

# Use in-memory SQLite for testing
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"
EMBEDDING_DIMENSION = 768


@pytest.fixture(scope="function")
async def db() -> AsyncGenerator[Database, None]:
    """Fresh database per test, schema stamped at the current version."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    database = Database(engine)
    await init_schema(database)
    yield database
    await drop_all_tables(database)
    await database.dispose()


@pytest.fixture
def bus() -> EventBus:
    return EventBus(maxsize=100)


class FakeLLM(LLMAdapter):
    """Returns queued answers in order; an Exception in the queue is raised instead."""

    def __init__(self, responses: Optional[List] = None, default: str = ""):
        super().__init__(
            LLMAdapterConfig(provider="fake", model_name="scripted", timeout_seconds=5),
            breaker=CircuitBreaker(failure_threshold=100, recovery_timeout=60),
        )
        self.responses = list(responses or [])
        self.default = default
        self.calls: List[List[ChatMessage]] = []

    async def _chat(self, messages: List[ChatMessage], temperature: float, max_tokens: int) -> LLMResponse:
        self.calls.append(messages)
        answer = self.responses.pop(0) if self.responses else self.default
        if isinstance(answer, Exception):
            raise answer
        return LLMResponse(
            text=answer,
            model_version=self.model_version,
            prompt_hash=self.compute_prompt_hash(messages),
            timestamp=datetime.now(timezone.utc),
            provider="fake",
        )


class FakeEmbeddings:
    """Same text, same vector. `overrides` pins vectors for chosen texts."""

    provider = "fake"

    def __init__(self, dimension: int = EMBEDDING_DIMENSION, available: bool = True):
        self.dimension = dimension
        self.available = available
        self.overrides: Dict[str, List[float]] = {}
        self.calls = 0

    async def generate_embedding(self, text: str) -> Optional[List[float]]:
        self.calls += 1
        if not self.available:
            return None
        if text in self.overrides:
            return self.overrides[text]
        digest = hashlib.sha256(text.encode("utf-8")).digest()
        return [b / 255.0 for b in (digest * (self.dimension // len(digest) + 1))[: self.dimension]]


def basis(index: int, scale: float = 1.0, dimension: int = EMBEDDING_DIMENSION) -> List[float]:
    vector = [0.0] * dimension
    vector[index] = scale
    return vector


class Outbox:
    """What the console channel 'sent'. Set `fail` to make every send fail."""

    def __init__(self):
        self.sent: List[Tuple[str, str]] = []
        self.fail: Optional[str] = None

    def bodies(self) -> List[str]:
        return [body for _, body in self.sent]


@pytest.fixture
def outbox() -> Outbox:
    return Outbox()


@pytest.fixture
def dispatcher(db: Database, bus: EventBus, outbox: Outbox) -> MessagingDispatcher:
    class RecordingSender(MessageSender):
        provider = "console"

        async def send_text(self, to: str, body: str) -> SendResult:
            if outbox.fail:
                return SendResult(ok=False, error=outbox.fail)
            outbox.sent.append((to, body))
            return SendResult(ok=True, id=f"wamid.{len(outbox.sent)}")

    return MessagingDispatcher(db, bus, timeout_seconds=2, senders={"console": RecordingSender})


async def seed_store(
    db: Database,
    name: str = "Atlas Shop",
    locale: Optional[str] = "en",
    channel: Optional[str] = "console",
    credentials: Optional[dict] = None,
) -> str:
    """Store plus (optionally) one enabled WhatsApp channel; returns the store id."""
    async with db.session() as session:
        store = StoreORM(name=name, locale=locale)
        session.add(store)
        await session.flush()
        if channel:
            session.add(MessagingChannelORM(
                store_id=store.id,
                kind="whatsapp",
                provider=channel,
                credentials=credentials or {},
            ))
        return store.id


async def seed_source(db: Database, store_id: str, uri: str = "https://sheets.example.com/orders.csv") -> str:
    async with db.session() as session:
        source = SourceConfigORM(store_id=store_id, uri=uri)
        session.add(source)
        await session.flush()
        return source.id


def csv_transport(pages: Dict[str, str]) -> httpx.MockTransport:
    """Serve `pages[url]` as CSV; anything else is a 404. The dict may be edited between ticks."""

    def handler(request: httpx.Request) -> httpx.Response:
        body = pages.get(str(request.url))
        if body is None:
            return httpx.Response(404, text="not found")
        return httpx.Response(200, text=body, headers={"content-type": "text/csv"})

    return httpx.MockTransport(handler)


def failing_transport(exc_factory: Callable[[httpx.Request], Exception]) -> httpx.MockTransport:
    def handler(request: httpx.Request) -> httpx.Response:
        raise exc_factory(request)

    return httpx.MockTransport(handler)

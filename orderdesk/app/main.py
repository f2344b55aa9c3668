"""
OrderDesk - spreadsheet order ingestion and buyer confirmation.

FastAPI application entry point. The HTTP surface is limited to health
probes; the work happens in the ingestion and conversation consumers
started by the lifespan.
"""

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import List

from fastapi import FastAPI

from orderdesk.app.api import health
from orderdesk.app.core.config import Settings, get_settings
from orderdesk.app.core.database import Database
from orderdesk.app.core.init_db import verify_schema
from orderdesk.app.core.logging import setup_logging, get_logger
from orderdesk.app.events.bus import CONVERSATION_QUEUE, INGESTION_QUEUE, EventBus
from orderdesk.app.services.conversation_state import ConversationPlanner, ConversationStateMachine
from orderdesk.app.services.embedding_service import EmbeddingService
from orderdesk.app.services.idempotency_ledger import IdempotencyLedger
from orderdesk.app.services.ingestion_pipeline import IngestionPipeline
from orderdesk.app.services.llm_adapter import get_adapter
from orderdesk.app.services.messaging import MessagingDispatcher
from orderdesk.app.services.order_upsert import OrderUpsertEngine
from orderdesk.app.services.row_normalizer import RowNormalizer
from orderdesk.app.services.sheet_extractor import SheetExtractor
from orderdesk.app.services.similarity import SimilarityIndexer, get_vector_store
from orderdesk.app.workers.background import BackgroundTasks
from orderdesk.app.workers.consumer import EventConsumer
from orderdesk.app.workers.handlers import ConversationWorker, HandlerRegistry, build_ingestion_handler

settings = get_settings()

# Initialize logging
setup_logging(level=settings.log_level, service=settings.app_name)
logger = get_logger(__name__)


@dataclass
class Components:
    bus: EventBus
    background: BackgroundTasks
    pipeline: IngestionPipeline
    conversations: ConversationWorker
    consumers: List[EventConsumer]


def build_components(settings: Settings, db: Database) -> Components:
    """Wire every component from settings; nothing is started here."""
    bus = EventBus(maxsize=settings.queue_maxsize)
    background = BackgroundTasks()
    llm = get_adapter(settings)

    embeddings = EmbeddingService(settings)
    indexer = SimilarityIndexer(
        db,
        embeddings,
        get_vector_store(settings.vector_backend, db),
        duplicate_threshold=settings.duplicate_distance_threshold,
    )
    pipeline = IngestionPipeline(
        db,
        extractor=SheetExtractor(timeout_seconds=settings.sheet_fetch_timeout_seconds),
        ledger=IdempotencyLedger(db, max_attempts=settings.ingest_max_row_attempts),
        normalizer=RowNormalizer(
            llm,
            temperature=settings.llm_normalize_temperature,
            default_country_code=settings.default_country_code,
        ),
        indexer=indexer,
        upserter=OrderUpsertEngine(db, bus),
        background=background,
    )
    dispatcher = MessagingDispatcher(
        db, bus, timeout_seconds=settings.messaging_timeout_seconds, background=background
    )
    conversations = ConversationWorker(
        db,
        bus,
        dispatcher,
        ConversationPlanner(llm, temperature=settings.llm_plan_temperature, max_tokens=settings.llm_plan_max_tokens),
        ConversationStateMachine(),
        indexer=indexer,
        history_limit=settings.conversation_history_limit,
        default_locale=settings.default_locale,
        auto_start=settings.auto_start_conversations,
    )

    ingestion_registry = HandlerRegistry()
    ingestion_registry.register_handler("ingestion.tick", build_ingestion_handler(pipeline))
    conversation_registry = HandlerRegistry()
    conversations.register(conversation_registry)

    consumers = [
        # Single active poller per deployment
        EventConsumer(
            bus, INGESTION_QUEUE, ingestion_registry,
            concurrency=1,
            max_redeliveries=settings.max_redeliveries,
            redelivery_delay_seconds=settings.redelivery_delay_seconds,
        ),
        EventConsumer(
            bus, CONVERSATION_QUEUE, conversation_registry,
            concurrency=settings.conversation_concurrency,
            max_redeliveries=settings.max_redeliveries,
            redelivery_delay_seconds=settings.redelivery_delay_seconds,
        ),
    ]
    return Components(bus, background, pipeline, conversations, consumers)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    # Startup
    logger.info(f"🚀 Starting {settings.app_name} v{settings.app_version}")

    db = Database.connect(settings)
    await verify_schema(db)
    components = build_components(settings, db)

    from orderdesk.app.workers.scheduled import start_ingestion_ticks

    worker_tasks = [consumer.start() for consumer in components.consumers]
    tick_task = start_ingestion_ticks(components.bus, settings.ingest_poll_interval_seconds)
    worker_tasks.append(tick_task)

    app.state.db = db
    app.state.bus = components.bus
    app.state.worker_tasks = worker_tasks

    yield
    # Shutdown
    logger.info(f"👋 Shutting down {settings.app_name}")

    tick_task.cancel()
    await asyncio.gather(tick_task, return_exceptions=True)
    for consumer in components.consumers:
        await consumer.stop()
    await components.background.drain()
    await db.dispose()


app = FastAPI(
    title=settings.app_name,
    description="Spreadsheet order ingestion and conversational order confirmation",
    version=settings.app_version,
    lifespan=lifespan,
)

app.include_router(health.router, tags=["Health"])


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("orderdesk.app.main:app", host="0.0.0.0", port=8000, reload=settings.debug)

"""Services package."""

from orderdesk.app.services.conversation_repository import ConversationRepository
from orderdesk.app.services.embedding_service import EmbeddingService
from orderdesk.app.services.idempotency_ledger import IdempotencyLedger
from orderdesk.app.services.ingestion_pipeline import IngestionPipeline
from orderdesk.app.services.messaging import MessagingDispatcher
from orderdesk.app.services.order_upsert import OrderUpsertEngine
from orderdesk.app.services.row_normalizer import RowNormalizer
from orderdesk.app.services.similarity import SimilarityIndexer

__all__ = [
    "ConversationRepository",
    "EmbeddingService",
    "IdempotencyLedger",
    "IngestionPipeline",
    "MessagingDispatcher",
    "OrderUpsertEngine",
    "RowNormalizer",
    "SimilarityIndexer",
]

"""
Similarity Indexer - nearest-neighbour search over raw spreadsheet rows.

Each raw row is embedded from its `key: value` projection and stored in
row_embeddings. Queries return (raw_row_id, distance) pairs, lowest
distance first, ties broken by insertion order.

Two vector stores share the same table:
- PgVectorStore: distance computed by PostgreSQL (pgvector l2_distance).
- LocalVectorStore: brute force in numpy, for SQLite and small tenants.

Indexing is best effort. An embedding or store failure is logged and the
row simply has no vector; ingestion of the row carries on.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Tuple

import numpy as np
from sqlalchemy import select, update

from orderdesk.app.core.database import Database
from orderdesk.app.core.logging import get_logger
from orderdesk.app.models import RawRowORM, RowEmbeddingORM
from orderdesk.app.services.embedding_service import EmbeddingService

logger = get_logger(__name__)

Neighbour = Tuple[str, float]


class VectorStore(ABC):
    """upsert (row id, vector); query (vector, k) -> ranked row ids."""

    def __init__(self, db: Database):
        self.db = db

    async def upsert(self, raw_row_id: str, store_id: str, vector: List[float], provider: Optional[str] = None) -> None:
        async with self.db.session() as session:
            result = await session.execute(
                select(RowEmbeddingORM).where(RowEmbeddingORM.raw_row_id == raw_row_id)
            )
            existing = result.scalars().first()
            if existing is None:
                session.add(RowEmbeddingORM(
                    raw_row_id=raw_row_id,
                    store_id=store_id,
                    embedding=vector,
                    embedding_provider=provider,
                ))
            else:
                existing.embedding = vector
                existing.embedding_provider = provider

    @abstractmethod
    async def query(self, vector: List[float], k: int, store_id: Optional[str] = None) -> List[Neighbour]:
        ...


class PgVectorStore(VectorStore):
    """Vector search executed by pgvector."""

    async def query(self, vector: List[float], k: int, store_id: Optional[str] = None) -> List[Neighbour]:
        distance = RowEmbeddingORM.embedding.l2_distance(vector).label("distance")
        stmt = select(RowEmbeddingORM.raw_row_id, distance)
        if store_id is not None:
            stmt = stmt.where(RowEmbeddingORM.store_id == store_id)
        stmt = stmt.order_by(distance, RowEmbeddingORM.id).limit(k)

        async with self.db.session() as session:
            result = await session.execute(stmt)
            return [(row.raw_row_id, float(row.distance)) for row in result.all()]


class LocalVectorStore(VectorStore):
    """Brute-force L2 search over the stored vectors."""

    async def query(self, vector: List[float], k: int, store_id: Optional[str] = None) -> List[Neighbour]:
        stmt = select(RowEmbeddingORM.raw_row_id, RowEmbeddingORM.embedding).order_by(RowEmbeddingORM.id)
        if store_id is not None:
            stmt = stmt.where(RowEmbeddingORM.store_id == store_id)

        async with self.db.session() as session:
            result = await session.execute(stmt)
            rows = result.all()
        if not rows or k <= 0:
            return []

        ids = [r.raw_row_id for r in rows]
        matrix = np.array([np.asarray(r.embedding, dtype=float) for r in rows])
        distances = np.linalg.norm(matrix - np.asarray(vector, dtype=float), axis=1)
        # Stable sort keeps insertion order among equal distances
        order = np.argsort(distances, kind="stable")[:k]
        return [(ids[i], float(distances[i])) for i in order]


def get_vector_store(backend: str, db: Database) -> VectorStore:
    if backend == "pgvector" and db.engine.dialect.name == "postgresql":
        return PgVectorStore(db)
    if backend == "pgvector":
        logger.warning("pgvector backend needs PostgreSQL; using the local vector store")
    return LocalVectorStore(db)


class SimilarityIndexer:
    """Embeds rows, flags near-duplicates and answers similarity queries."""

    def __init__(
        self,
        db: Database,
        embeddings: EmbeddingService,
        store: VectorStore,
        duplicate_threshold: float = 0.05,
        duplicate_candidates: int = 5,
    ):
        self.db = db
        self.embeddings = embeddings
        self.store = store
        self.duplicate_threshold = duplicate_threshold
        self.duplicate_candidates = duplicate_candidates

    async def index(self, raw_row_id: str, store_id: str, text: str) -> bool:
        """
        Embed `text` and store it for `raw_row_id`.

        A close row from another spreadsheet position marks this one as its
        near-duplicate; earlier versions of the same row never do.

        Returns False when the row could not be indexed; never raises.
        """
        try:
            vector = await self.embeddings.generate_embedding(text)
            if vector is None:
                logger.warning(f"No embedding for raw row {raw_row_id}; skipping index")
                return False

            nearest = await self.store.query(vector, self.duplicate_candidates, store_id=store_id)
            candidates = [
                row_id for row_id, distance in nearest
                if row_id != raw_row_id and distance <= self.duplicate_threshold
            ]
            duplicate_of = await self._first_other_row(raw_row_id, candidates)
            if duplicate_of is not None:
                await self._flag_duplicate(raw_row_id, duplicate_of)

            await self.store.upsert(raw_row_id, store_id, vector, provider=self.embeddings.provider)
            return True
        except Exception as e:
            logger.error(f"Indexing raw row {raw_row_id} failed: {e}", exc_info=True)
            return False

    async def _first_other_row(self, raw_row_id: str, candidates: List[str]) -> Optional[str]:
        """First candidate that is not an earlier version of the same spreadsheet row."""
        if not candidates:
            return None
        async with self.db.session() as session:
            result = await session.execute(
                select(RawRowORM.id, RawRowORM.source_id, RawRowORM.row_number).where(
                    RawRowORM.id.in_([raw_row_id, *candidates])
                )
            )
            position = {r.id: (r.source_id, r.row_number) for r in result.all()}
        own = position.get(raw_row_id)
        for candidate in candidates:
            if own is None or position.get(candidate) != own:
                return candidate
        return None

    async def _flag_duplicate(self, raw_row_id: str, duplicate_of: str) -> None:
        async with self.db.session() as session:
            await session.execute(
                update(RawRowORM).where(RawRowORM.id == raw_row_id).values(near_duplicate_of=duplicate_of)
            )
        logger.info(f"Raw row {raw_row_id} is a near-duplicate of {duplicate_of}")

    async def query(self, text: str, k: int = 5, store_id: Optional[str] = None) -> List[Neighbour]:
        """Nearest rows to `text`; empty when the embedding service is unavailable."""
        vector = await self.embeddings.generate_embedding(text)
        if vector is None:
            return []
        return await self.store.query(vector, k, store_id=store_id)

    async def find_similar_rows(self, store_id: str, text: str, k: int = 3) -> List[Dict[str, Any]]:
        """Field maps of the `k` closest historical rows of a store, for conversation context."""
        try:
            neighbours = await self.query(text, k, store_id=store_id)
        except Exception as e:
            logger.warning(f"Similarity lookup failed: {e}")
            return []
        if not neighbours:
            return []

        ids = [row_id for row_id, _ in neighbours]
        async with self.db.session() as session:
            result = await session.execute(select(RawRowORM).where(RawRowORM.id.in_(ids)))
            by_id = {r.id: r.row_json for r in result.scalars().all()}
        return [by_id[i] for i in ids if i in by_id]

"""
Ingestion Pipeline - one poll over every enabled spreadsheet source.

Per source: fetch rows, then for each row in sheet order:
ledger check -> raw row snapshot -> normalize + index (concurrently) ->
order upsert -> ledger record.

A source that cannot be fetched is logged and skipped. A row that fails is
recorded with outcome `error`, or `retry` when it hit a model outage, and
the remaining rows carry on. Nothing in
here holds a database transaction across a model or embedding call.
"""

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from orderdesk.app.core.database import Database
from orderdesk.app.core.exceptions import SourceFetchError
from orderdesk.app.core.logging import get_logger, job_id_ctx, store_id_ctx
from orderdesk.app.core.resilience import is_transient
from orderdesk.app.models import RawRowORM, SourceConfigORM, StoreORM
from orderdesk.app.services.embedding_service import EmbeddingService
from orderdesk.app.services.idempotency_ledger import (
    OUTCOME_ERROR,
    OUTCOME_RETRY,
    OUTCOME_SUCCESS,
    IdempotencyLedger,
    compute_row_signature,
    generate_idempotency_key,
)
from orderdesk.app.services.order_upsert import OrderUpsertEngine
from orderdesk.app.services.row_normalizer import RowNormalizer
from orderdesk.app.services.sheet_extractor import SheetExtractor, SheetRow
from orderdesk.app.services.similarity import SimilarityIndexer
from orderdesk.app.workers.background import BackgroundTasks

logger = get_logger(__name__)


@dataclass
class SourceReport:
    source_id: str
    rows_seen: int = 0
    processed: int = 0
    skipped: int = 0
    failed: int = 0
    deferred: int = 0
    fetch_error: Optional[str] = None


@dataclass
class TickReport:
    run_id: str
    sources: List[SourceReport] = field(default_factory=list)

    @property
    def processed(self) -> int:
        return sum(s.processed for s in self.sources)

    @property
    def skipped(self) -> int:
        return sum(s.skipped for s in self.sources)

    @property
    def failed(self) -> int:
        return sum(s.failed for s in self.sources)

    @property
    def deferred(self) -> int:
        return sum(s.deferred for s in self.sources)


class IngestionPipeline:
    """Composes extractor, ledger, normalizer, indexer and upsert engine."""

    def __init__(
        self,
        db: Database,
        extractor: SheetExtractor,
        ledger: IdempotencyLedger,
        normalizer: RowNormalizer,
        indexer: SimilarityIndexer,
        upserter: OrderUpsertEngine,
        background: Optional[BackgroundTasks] = None,
    ):
        self.db = db
        self.extractor = extractor
        self.ledger = ledger
        self.normalizer = normalizer
        self.indexer = indexer
        self.upserter = upserter
        self.background = background

    async def _enabled_sources(self) -> List[SourceConfigORM]:
        async with self.db.session() as session:
            result = await session.execute(
                select(SourceConfigORM)
                .where(SourceConfigORM.enabled.is_(True))
                .order_by(SourceConfigORM.created_at, SourceConfigORM.id)
            )
            return list(result.scalars().all())

    async def poll_once(self) -> TickReport:
        """Run one ingestion tick over all enabled sources, sequentially."""
        report = TickReport(run_id=str(uuid.uuid4()))
        token = job_id_ctx.set(report.run_id)
        try:
            sources = await self._enabled_sources()
            logger.info(f"Ingestion tick started for {len(sources)} sources")
            for source in sources:
                report.sources.append(await self.process_source(source, report.run_id))
        finally:
            job_id_ctx.reset(token)

        logger.info(
            f"Ingestion tick finished: processed={report.processed} "
            f"skipped={report.skipped} failed={report.failed} deferred={report.deferred}"
        )
        return report

    async def process_source(self, source: SourceConfigORM, run_id: str) -> SourceReport:
        report = SourceReport(source_id=source.id)
        token = store_id_ctx.set(source.store_id)
        try:
            try:
                rows = await self.extractor.fetch_rows(source.uri, source.tab)
            except SourceFetchError as e:
                report.fetch_error = e.code
                logger.error(f"Source {source.id} could not be fetched ({e.code}): {e}")
                return report

            store_name = await self._store_name(source.store_id)
            last_row = None
            for row in rows:
                report.rows_seen += 1
                outcome = await self.process_row(source, row, run_id, store_name)
                if outcome == OUTCOME_SUCCESS:
                    report.processed += 1
                elif outcome == OUTCOME_ERROR:
                    report.failed += 1
                elif outcome == OUTCOME_RETRY:
                    report.deferred += 1
                else:
                    report.skipped += 1
                last_row = row.row_number

            self._advance_cursor(source.id, last_row)
            return report
        finally:
            store_id_ctx.reset(token)

    async def process_row(
        self, source: SourceConfigORM, row: SheetRow, run_id: str, store_name: Optional[str] = None
    ) -> Optional[str]:
        """
        Apply one row. Returns the recorded outcome, or None when the row was
        skipped as already processed.
        """
        signature = compute_row_signature(row.fields)
        if not await self.ledger.should_process(source.id, row.row_number, signature):
            return None

        try:
            raw_row = await self._snapshot(source, row, signature)
            # Both complete before the row moves on; index() never raises
            normalized, _ = await asyncio.gather(
                self.normalizer.normalize(row.fields, store_name),
                self.indexer.index(raw_row.id, source.store_id, EmbeddingService.create_row_text(row.fields)),
                return_exceptions=True,
            )
            if isinstance(normalized, BaseException):
                raise normalized
            order = await self.upserter.upsert(
                source.store_id,
                normalized,
                raw_payload=row.fields,
                default_external_key=f"{source.id}:{row.row_number}",
            )
        except Exception as e:
            if is_transient(e):
                logger.warning(f"Row {row.row_number} of source {source.id} deferred to the next tick: {e}")
                outcome = OUTCOME_RETRY
            else:
                logger.error(f"Row {row.row_number} of source {source.id} failed: {e}", exc_info=True)
                outcome = OUTCOME_ERROR
            await self._record(source.id, row.row_number, signature, outcome, run_id, error=str(e)[:1000])
            return outcome

        await self._record(source.id, row.row_number, signature, OUTCOME_SUCCESS, run_id, external_ref=order.id)
        return OUTCOME_SUCCESS

    async def _record(self, source_id: str, row_number: int, signature: str, outcome: str, run_id: str, **kwargs) -> None:
        # A lost ledger write means the row is applied again next tick, which the upsert absorbs
        try:
            await self.ledger.record_processed(source_id, row_number, signature, outcome, run_id, **kwargs)
        except Exception as e:
            logger.error(f"Ledger write failed for row {row_number} of source {source_id}: {e}", exc_info=True)

    async def _snapshot(self, source: SourceConfigORM, row: SheetRow, signature: str) -> RawRowORM:
        """Get-or-create the immutable raw row for this row version."""
        key = generate_idempotency_key(source.id, row.row_number, signature)
        existing = await self._raw_row_by_key(key)
        if existing is not None:
            return existing
        try:
            async with self.db.session() as session:
                raw_row = RawRowORM(
                    source_id=source.id,
                    store_id=source.store_id,
                    row_number=row.row_number,
                    row_json=row.fields,
                    signature=signature,
                    idempotency_key=key,
                )
                session.add(raw_row)
            return raw_row
        except IntegrityError:
            # Another worker wrote the same row version first
            existing = await self._raw_row_by_key(key)
            if existing is None:
                raise
            return existing

    async def _raw_row_by_key(self, key: str) -> Optional[RawRowORM]:
        async with self.db.session() as session:
            result = await session.execute(select(RawRowORM).where(RawRowORM.idempotency_key == key))
            return result.scalars().first()

    async def _store_name(self, store_id: str) -> Optional[str]:
        async with self.db.session() as session:
            store = await session.get(StoreORM, store_id)
            return store.name if store else None

    def _advance_cursor(self, source_id: str, last_row: Optional[int]) -> None:
        if self.background is None:
            return
        values: Dict[str, Any] = {"last_polled_at": datetime.now(timezone.utc)}
        if last_row is not None:
            values["last_processed_row"] = last_row

        async def _update():
            async with self.db.session() as session:
                await session.execute(update(SourceConfigORM).where(SourceConfigORM.id == source_id).values(**values))

        self.background.spawn(_update(), name=f"source-cursor:{source_id}")

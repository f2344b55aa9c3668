"""
Idempotency Ledger for spreadsheet rows.

A row version is identified by `{source_id}:{row_number}:{signature}`, where
the signature is a SHA-256 over the row's field map with keys sorted and
values trimmed. Editing any cell changes the signature and therefore the
key, so edited rows are applied again while unedited rows never are.

The ledger is the ingestion_audit table. A success record for the latest
key of a (source, row) pair blocks reprocessing. An error record allows a
bounded number of further attempts on later ticks. A retry record (the row
hit an outage) is retried on every tick and does not use up attempts.
"""

import hashlib
import json
from typing import Dict, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from orderdesk.app.core.database import Database
from orderdesk.app.core.logging import get_logger
from orderdesk.app.models import IngestionAuditORM

logger = get_logger(__name__)

OUTCOME_SUCCESS = "success"
OUTCOME_ERROR = "error"
# Outage while applying the row (model throttled or down); always retried
OUTCOME_RETRY = "retry"


def compute_row_signature(fields: Dict[str, object]) -> str:
    """Deterministic hash of a row's field map; key order and padding do not matter."""
    normalized = {str(k).strip(): ("" if v is None else str(v).strip()) for k, v in fields.items()}
    payload = json.dumps(normalized, sort_keys=True, ensure_ascii=False, separators=(",", ":"))
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def generate_idempotency_key(source_id: str, row_number: int, signature: str) -> str:
    """Idempotency key string: '{source_id}:{row_number}:{signature}'."""
    return f"{source_id}:{row_number}:{signature}"


class IdempotencyLedger:
    """Decides whether a row version must be applied and records the outcome."""

    def __init__(self, db: Database, max_attempts: int = 3):
        self.db = db
        self.max_attempts = max_attempts

    async def _latest(self, session: AsyncSession, source_id: str, row_number: int) -> Optional[IngestionAuditORM]:
        stmt = (
            select(IngestionAuditORM)
            .where(
                IngestionAuditORM.source_id == source_id,
                IngestionAuditORM.row_number == row_number,
            )
            .order_by(IngestionAuditORM.updated_at.desc(), IngestionAuditORM.id.desc())
            .limit(1)
        )
        result = await session.execute(stmt)
        return result.scalars().first()

    async def should_process(self, source_id: str, row_number: int, signature: str) -> bool:
        """
        True when the row has never been recorded, its signature changed since
        the last recorded key, the last attempt hit an outage, or it failed and
        attempts remain.
        """
        key = generate_idempotency_key(source_id, row_number, signature)
        async with self.db.session() as session:
            latest = await self._latest(session, source_id, row_number)

        if latest is None or latest.idempotency_key != key:
            return True
        if latest.status == OUTCOME_RETRY:
            return True
        if latest.status == OUTCOME_ERROR and latest.attempts < self.max_attempts:
            return True
        return False

    async def record_processed(
        self,
        source_id: str,
        row_number: int,
        signature: str,
        outcome: str,
        run_id: str,
        external_ref: Optional[str] = None,
        error: Optional[str] = None,
    ) -> IngestionAuditORM:
        """
        Upsert the audit record for this row version.

        A key seen before (a retried error, or a row edited back to an earlier
        version) reuses its record and bumps the attempt counter. Retry
        outcomes never count as attempts.
        """
        key = generate_idempotency_key(source_id, row_number, signature)
        async with self.db.session() as session:
            result = await session.execute(
                select(IngestionAuditORM).where(IngestionAuditORM.idempotency_key == key)
            )
            record = result.scalars().first()
            if record is None:
                record = IngestionAuditORM(
                    source_id=source_id,
                    row_number=row_number,
                    idempotency_key=key,
                    run_id=run_id,
                    status=outcome,
                    attempts=0 if outcome == OUTCOME_RETRY else 1,
                    error=error,
                    external_ref=external_ref,
                )
                session.add(record)
            else:
                record.run_id = run_id
                record.status = outcome
                if outcome != OUTCOME_RETRY:
                    record.attempts = (record.attempts or 0) + 1
                record.error = error
                record.external_ref = external_ref or record.external_ref
            await session.flush()

        logger.debug(f"Ledger {outcome} for row {row_number} of source {source_id}")
        return record

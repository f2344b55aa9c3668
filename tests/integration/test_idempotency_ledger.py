"""
Integration tests for the idempotency ledger against the audit table.
"""
import pytest
from sqlalchemy import select

from conftest import seed_source, seed_store
from orderdesk.app.models import IngestionAuditORM
from orderdesk.app.services.idempotency_ledger import (
    OUTCOME_ERROR,
    OUTCOME_RETRY,
    OUTCOME_SUCCESS,
    IdempotencyLedger,
    compute_row_signature,
)

SIG_V1 = compute_row_signature({"order_id": "A1", "qty": "2"})
SIG_V2 = compute_row_signature({"order_id": "A1", "qty": "3"})


@pytest.mark.asyncio
async def test_success_blocks_the_same_row_version(db):
    source_id = await seed_source(db, await seed_store(db))
    ledger = IdempotencyLedger(db, max_attempts=3)

    assert await ledger.should_process(source_id, 2, SIG_V1)
    await ledger.record_processed(source_id, 2, SIG_V1, OUTCOME_SUCCESS, "run-1", external_ref="order-1")

    assert not await ledger.should_process(source_id, 2, SIG_V1)
    # Other rows and edited versions are unaffected
    assert await ledger.should_process(source_id, 3, SIG_V1)
    assert await ledger.should_process(source_id, 2, SIG_V2)


@pytest.mark.asyncio
async def test_errors_are_retried_a_bounded_number_of_times(db):
    source_id = await seed_source(db, await seed_store(db))
    ledger = IdempotencyLedger(db, max_attempts=2)

    await ledger.record_processed(source_id, 2, SIG_V1, OUTCOME_ERROR, "run-1", error="invalid row")
    assert await ledger.should_process(source_id, 2, SIG_V1)

    record = await ledger.record_processed(source_id, 2, SIG_V1, OUTCOME_ERROR, "run-2", error="invalid row")
    assert record.attempts == 2
    assert not await ledger.should_process(source_id, 2, SIG_V1)


@pytest.mark.asyncio
async def test_one_record_per_key(db):
    source_id = await seed_source(db, await seed_store(db))
    ledger = IdempotencyLedger(db)

    await ledger.record_processed(source_id, 2, SIG_V1, OUTCOME_ERROR, "run-1", error="boom")
    await ledger.record_processed(source_id, 2, SIG_V1, OUTCOME_SUCCESS, "run-2", external_ref="order-1")

    async with db.session() as session:
        records = (await session.execute(select(IngestionAuditORM))).scalars().all()
    assert len(records) == 1
    assert records[0].status == OUTCOME_SUCCESS
    assert records[0].error is None
    assert records[0].external_ref == "order-1"
    assert records[0].run_id == "run-2"


@pytest.mark.asyncio
async def test_outages_do_not_use_up_attempts(db):
    source_id = await seed_source(db, await seed_store(db))
    ledger = IdempotencyLedger(db, max_attempts=1)

    for run in range(5):
        record = await ledger.record_processed(source_id, 2, SIG_V1, OUTCOME_RETRY, f"run-{run}", error="circuit open")
        assert await ledger.should_process(source_id, 2, SIG_V1)
    assert record.attempts == 0

    # One real failure still exhausts the budget
    record = await ledger.record_processed(source_id, 2, SIG_V1, OUTCOME_ERROR, "run-5", error="invalid row")
    assert record.attempts == 1
    assert not await ledger.should_process(source_id, 2, SIG_V1)

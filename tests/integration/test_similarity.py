"""
Integration tests for the similarity indexer on the local vector store.
"""
import pytest
from sqlalchemy import select

from conftest import FakeEmbeddings, basis, seed_source, seed_store
from orderdesk.app.models import RawRowORM, RowEmbeddingORM
from orderdesk.app.services.similarity import LocalVectorStore, SimilarityIndexer, get_vector_store


async def _raw_row(db, source_id: str, store_id: str, row_number: int, fields: dict) -> str:
    async with db.session() as session:
        row = RawRowORM(
            source_id=source_id,
            store_id=store_id,
            row_number=row_number,
            row_json=fields,
            signature=f"sig-{row_number}",
            idempotency_key=f"{source_id}:{row_number}:sig-{row_number}",
        )
        session.add(row)
        await session.flush()
        return row.id


@pytest.mark.asyncio
async def test_sqlite_uses_local_store(db):
    assert isinstance(get_vector_store("pgvector", db), LocalVectorStore)


@pytest.mark.asyncio
async def test_query_orders_by_distance_then_insertion(db):
    store = LocalVectorStore(db)
    await store.upsert("r1", "s1", basis(0))
    await store.upsert("r2", "s1", basis(0))
    await store.upsert("r3", "s1", basis(1))
    await store.upsert("r4", "s2", basis(0))

    results = await store.query(basis(0), k=3, store_id="s1")
    assert [row_id for row_id, _ in results] == ["r1", "r2", "r3"]
    assert results[0][1] == pytest.approx(0.0)
    assert results[2][1] == pytest.approx(2 ** 0.5, rel=1e-5)

    assert [row_id for row_id, _ in await store.query(basis(0), k=10)] == ["r1", "r2", "r4", "r3"]


@pytest.mark.asyncio
async def test_upsert_replaces_vector(db):
    store = LocalVectorStore(db)
    await store.upsert("r1", "s1", basis(0))
    await store.upsert("r1", "s1", basis(5))

    results = await store.query(basis(5), k=5)
    assert results == [("r1", pytest.approx(0.0))]


@pytest.mark.asyncio
async def test_index_flags_near_duplicates_within_a_store(db):
    store_id = await seed_store(db)
    other_store = await seed_store(db, name="Other Shop")
    source_id = await seed_source(db, store_id)
    other_source = await seed_source(db, other_store)

    fields = {"order_id": "A1", "phone": "0612345678"}
    first = await _raw_row(db, source_id, store_id, 2, fields)
    second = await _raw_row(db, source_id, store_id, 3, fields)
    foreign = await _raw_row(db, other_source, other_store, 2, fields)

    indexer = SimilarityIndexer(db, FakeEmbeddings(), LocalVectorStore(db), duplicate_threshold=0.05)
    text = "order_id: A1\nphone: 0612345678"
    assert await indexer.index(first, store_id, text)
    assert await indexer.index(second, store_id, text)
    assert await indexer.index(foreign, other_store, text)

    async with db.session() as session:
        rows = {r.id: r for r in (await session.execute(select(RawRowORM))).scalars().all()}
    assert rows[first].near_duplicate_of is None
    assert rows[second].near_duplicate_of == first
    assert rows[foreign].near_duplicate_of is None


@pytest.mark.asyncio
async def test_index_without_embedding_is_a_soft_failure(db):
    indexer = SimilarityIndexer(db, FakeEmbeddings(available=False), LocalVectorStore(db))
    assert await indexer.index("r1", "s1", "order_id: A1") is False
    assert await indexer.query("order_id: A1", k=3) == []

    async with db.session() as session:
        assert (await session.execute(select(RowEmbeddingORM))).scalars().all() == []


@pytest.mark.asyncio
async def test_find_similar_rows_returns_field_maps(db):
    store_id = await seed_store(db)
    source_id = await seed_source(db, store_id)
    embeddings = FakeEmbeddings()
    indexer = SimilarityIndexer(db, embeddings, LocalVectorStore(db))

    near = await _raw_row(db, source_id, store_id, 2, {"order_id": "A1"})
    far = await _raw_row(db, source_id, store_id, 3, {"order_id": "B7"})
    embeddings.overrides = {"near": basis(0), "far": basis(1, 10.0), "query": basis(0, 0.9)}
    await indexer.index(near, store_id, "near")
    await indexer.index(far, store_id, "far")

    assert await indexer.find_similar_rows(store_id, "query", k=2) == [{"order_id": "A1"}, {"order_id": "B7"}]
    assert await indexer.find_similar_rows("another-store", "query") == []


@pytest.mark.asyncio
async def test_edited_row_is_not_a_duplicate_of_its_earlier_version(db):
    store_id = await seed_store(db)
    source_id = await seed_source(db, store_id)
    embeddings = FakeEmbeddings()
    indexer = SimilarityIndexer(db, embeddings, LocalVectorStore(db), duplicate_threshold=0.05)

    before = await _raw_row(db, source_id, store_id, 2, {"order_id": "A1", "qty": "2"})
    other = await _raw_row(db, source_id, store_id, 7, {"order_id": "A1", "qty": "3"})
    async with db.session() as session:
        edited_row = RawRowORM(
            source_id=source_id,
            store_id=store_id,
            row_number=2,
            row_json={"order_id": "A1", "qty": "3"},
            signature="sig-2-edited",
            idempotency_key=f"{source_id}:2:sig-2-edited",
        )
        session.add(edited_row)
        await session.flush()
        edited = edited_row.id

    embeddings.overrides = {"before": basis(0), "other": basis(0, 1.01), "edited": basis(0, 1.0)}
    assert await indexer.index(before, store_id, "before")
    assert await indexer.index(other, store_id, "other")
    assert await indexer.index(edited, store_id, "edited")

    async with db.session() as session:
        rows = {r.id: r for r in (await session.execute(select(RawRowORM))).scalars().all()}
    # The earlier version of row 2 is the closest match but is skipped
    assert rows[edited].near_duplicate_of == other
    assert rows[other].near_duplicate_of == before


@pytest.mark.asyncio
async def test_earlier_versions_alone_never_flag_a_row(db):
    store_id = await seed_store(db)
    source_id = await seed_source(db, store_id)
    indexer = SimilarityIndexer(db, FakeEmbeddings(), LocalVectorStore(db))

    first = await _raw_row(db, source_id, store_id, 4, {"order_id": "B2"})
    async with db.session() as session:
        again = RawRowORM(
            source_id=source_id,
            store_id=store_id,
            row_number=4,
            row_json={"order_id": "B2", "city": "Rabat"},
            signature="sig-4-edited",
            idempotency_key=f"{source_id}:4:sig-4-edited",
        )
        session.add(again)
        await session.flush()
        second = again.id

    text = "order_id: B2"
    assert await indexer.index(first, store_id, text)
    assert await indexer.index(second, store_id, text)

    async with db.session() as session:
        assert (await session.get(RawRowORM, second)).near_duplicate_of is None

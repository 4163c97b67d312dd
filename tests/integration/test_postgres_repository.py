"""PostgreSQL-backed tests for the repository, schema and pgvector index."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime, timedelta

import pytest

from memoria.memory.embedding import PgVectorEmbeddingIndex
from memoria.memory.repository import PostgresMemoryRepository
from memoria.memory.schema import apply_schema
from memoria.models import Memory, MemoryConnection, MemoryFeedback, MemoryFilters
from memoria.testing import HashingEmbeddingEngine

pytestmark = pytest.mark.integration

_BASE = datetime(2024, 6, 12, 12, 0, tzinfo=UTC)


def _memories(count: int, **fields) -> list[Memory]:
    return [
        Memory(content=f"memory {i} about tea", timestamp=_BASE + timedelta(minutes=i), **fields)
        for i in range(count)
    ]


class TestSchema:
    async def test_apply_twice_is_noop(self, provisioned_postgres_pool):
        async with provisioned_postgres_pool() as pool:
            assert await apply_schema(pool, embedding_dimension=64) == []
            assert await apply_schema(pool, embedding_dimension=64) == []

    async def test_old_table_gets_missing_columns(self, provisioned_postgres_pool):
        async with provisioned_postgres_pool() as pool:
            await pool.execute(
                "CREATE TABLE episodic_memories ("
                " id UUID PRIMARY KEY, content TEXT NOT NULL,"
                " timestamp TIMESTAMPTZ NOT NULL DEFAULT now())"
            )
            added = await apply_schema(pool, embedding_dimension=None)
            assert "episodic_memories.context" in added
            assert "episodic_memories.embedding_ref" in added


class TestRepository:
    async def test_round_trip_and_update(self, provisioned_postgres_pool):
        async with provisioned_postgres_pool() as pool:
            repo = PostgresMemoryRepository(pool, embedding_dimension=None)
            memory = Memory(content="tea", timestamp=_BASE, context="drinks", metadata={"k": 1})
            await repo.insert(memory)

            assert await repo.get(memory.id) == memory
            assert await repo.update(memory.id, {"importance": 9, "metadata": {"k": 2}})
            updated = await repo.get(memory.id)
            assert (updated.importance, updated.metadata) == (9, {"k": 2})
            assert updated.timestamp == memory.timestamp

    async def test_keyset_pages_do_not_overlap(self, provisioned_postgres_pool):
        async with provisioned_postgres_pool() as pool:
            repo = PostgresMemoryRepository(pool, embedding_dimension=None)
            await repo.insert_many(_memories(7, context="work"), chunk_size=3)

            first = await repo.query(MemoryFilters(context="work"), limit=4)
            last = first[-1]
            second = await repo.query(
                MemoryFilters(context="work"), limit=4, after=(last.timestamp, last.id)
            )
            assert len(first) == 4
            assert len(second) == 3
            assert {m.id for m in first}.isdisjoint(m.id for m in second)
            assert await repo.count(MemoryFilters(context="work")) == 7

    async def test_keyword_search_escapes_wildcards(self, provisioned_postgres_pool):
        async with provisioned_postgres_pool() as pool:
            repo = PostgresMemoryRepository(pool, embedding_dimension=None)
            await repo.insert(Memory(content="100% sure", timestamp=_BASE))
            await repo.insert(Memory(content="1000 things", timestamp=_BASE))
            found = await repo.keyword_search(["100%"], limit=10)
            assert [m.content for m in found] == ["100% sure"]

    async def test_delete_cascades_and_feedback_trimmed(self, provisioned_postgres_pool):
        async with provisioned_postgres_pool() as pool:
            repo = PostgresMemoryRepository(pool, embedding_dimension=None)
            a, b = _memories(2)
            await repo.insert_many([a, b], chunk_size=10)
            await repo.insert_connection(
                MemoryConnection(source_id=a.id, target_id=b.id, relationship="follows")
            )
            for i in range(3):
                await repo.add_feedback(
                    MemoryFeedback(
                        query_id=f"q{i}",
                        memory_id=a.id,
                        relevance_rating=4,
                        accuracy_rating=4,
                        created_at=_BASE + timedelta(seconds=i),
                    ),
                    keep=2,
                )
            assert [f.query_id for f in await repo.load_feedback()] == ["q1", "q2"]

            assert await repo.delete_many([a.id, uuid.uuid4()], chunk_size=10) == [True, False]
            assert await repo.get_connections(b.id) == []
            assert await repo.load_feedback() == []


class TestPgVectorIndex:
    async def test_similarity_search(self, provisioned_postgres_pool):
        async with provisioned_postgres_pool() as pool:
            await apply_schema(pool, embedding_dimension=64)
            index = PgVectorEmbeddingIndex(pool, HashingEmbeddingEngine(64))
            tea = await index.embed("green tea leaves", metadata={"context": "drinks"})
            await index.embed("quarterly revenue report")
            await index.embed("...")

            hits = await index.find_similar("green tea leaves", min_score=0.9)
            assert [h.id for h in hits] == [tea.id]
            assert hits[0].score == pytest.approx(1.0, abs=1e-6)

            filtered = await index.find_similar(
                "green tea leaves", min_score=0.0, metadata_filter={"context": "other"}
            )
            assert filtered == []

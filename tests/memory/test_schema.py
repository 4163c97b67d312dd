"""Tests for idempotent schema provisioning."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from memoria.memory.schema import ADDITIVE_COLUMNS, INDEXES, SchemaManager, apply_schema

pytestmark = pytest.mark.unit


class _AsyncCM:
    """Simple async context manager wrapper returning a fixed value."""

    def __init__(self, value):
        self._value = value

    async def __aenter__(self):
        return self._value

    async def __aexit__(self, *args):
        return False


def _mock_pool(present: dict[str, set[str]] | None = None):
    """Pool whose information_schema lookup reports *present* columns per table."""
    present = present if present is not None else {
        table: set(columns) for table, columns in ADDITIVE_COLUMNS.items()
    }

    async def _fetch(sql, table):
        return [{"column_name": name} for name in present.get(table, set())]

    conn = AsyncMock()
    conn.fetch = AsyncMock(side_effect=_fetch)
    conn.execute = AsyncMock()
    conn.transaction = MagicMock(return_value=_AsyncCM(None))
    pool = MagicMock()
    pool.acquire = MagicMock(return_value=_AsyncCM(conn))
    return pool, conn


def _executed(conn) -> list[str]:
    return [c[0][0] for c in conn.execute.call_args_list]


class TestApplySchema:
    async def test_current_schema_adds_nothing(self):
        pool, conn = _mock_pool()
        assert await apply_schema(pool) == []
        executed = _executed(conn)
        assert executed[0] == "CREATE EXTENSION IF NOT EXISTS vector"
        assert any("vector(384)" in sql for sql in executed)
        assert not any(sql.startswith("ALTER TABLE") for sql in executed)
        for ddl in INDEXES:
            assert ddl in executed

    async def test_missing_columns_added_before_indexes(self):
        present = {table: set(columns) for table, columns in ADDITIVE_COLUMNS.items()}
        present["episodic_memories"] -= {"importance", "context"}
        pool, conn = _mock_pool(present)

        added = await apply_schema(pool)

        assert added == ["episodic_memories.importance", "episodic_memories.context"]
        executed = _executed(conn)
        alter = executed.index(
            "ALTER TABLE episodic_memories ADD COLUMN IF NOT EXISTS importance "
            "INTEGER NOT NULL DEFAULT 5"
        )
        first_index = next(i for i, sql in enumerate(executed) if "CREATE INDEX" in sql)
        assert alter < first_index

    async def test_without_embeddings(self):
        pool, conn = _mock_pool()
        await apply_schema(pool, embedding_dimension=None)
        executed = _executed(conn)
        assert "CREATE EXTENSION IF NOT EXISTS vector" not in executed
        assert not any("memory_embeddings" in sql for sql in executed)

    async def test_custom_dimension(self):
        pool, conn = _mock_pool()
        await apply_schema(pool, embedding_dimension=64)
        assert any("vector(64)" in sql for sql in _executed(conn))


class TestSchemaManager:
    async def test_runs_once(self):
        pool, conn = _mock_pool()
        manager = SchemaManager(pool)
        assert manager.ready is False
        await manager.ensure()
        await manager.ensure()
        assert manager.ready is True
        assert conn.transaction.call_count == 1

    async def test_concurrent_callers_share_one_run(self):
        pool, conn = _mock_pool()
        manager = SchemaManager(pool)
        await asyncio.gather(*(manager.ensure() for _ in range(5)))
        assert conn.transaction.call_count == 1

    async def test_failure_leaves_manager_unready(self):
        pool, conn = _mock_pool()
        conn.execute.side_effect = RuntimeError("boom")
        manager = SchemaManager(pool)
        with pytest.raises(RuntimeError):
            await manager.ensure()
        assert manager.ready is False

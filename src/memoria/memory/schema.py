"""Idempotent schema provisioning for the memory tables.

All DDL uses ``IF NOT EXISTS`` so re-running provisioning is a no-op.  Tables
created by older releases are brought forward with additive column
migrations: the live column set is read from ``information_schema`` and every
missing column is added before any index that depends on it is created.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from asyncpg import Pool

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Table DDL
# ---------------------------------------------------------------------------

_EPISODIC_DDL = """
CREATE TABLE IF NOT EXISTS episodic_memories (
    id UUID PRIMARY KEY,
    content TEXT NOT NULL,
    timestamp TIMESTAMPTZ NOT NULL DEFAULT now(),
    importance INTEGER NOT NULL DEFAULT 5 CHECK (importance BETWEEN 1 AND 10),
    context TEXT,
    source TEXT,
    metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
    embedding_ref UUID
)
"""

_SEMANTIC_DDL = """
CREATE TABLE IF NOT EXISTS semantic_memories (
    id UUID PRIMARY KEY,
    fact TEXT NOT NULL,
    confidence DOUBLE PRECISION NOT NULL DEFAULT 1.0
        CHECK (confidence >= 0 AND confidence <= 1),
    first_observed TIMESTAMPTZ NOT NULL DEFAULT now(),
    last_confirmed TIMESTAMPTZ,
    metadata JSONB NOT NULL DEFAULT '{}'::jsonb
)
"""

_CONNECTIONS_DDL = """
CREATE TABLE IF NOT EXISTS memory_connections (
    id UUID PRIMARY KEY,
    source_id UUID NOT NULL REFERENCES episodic_memories(id) ON DELETE CASCADE,
    target_id UUID NOT NULL REFERENCES episodic_memories(id) ON DELETE CASCADE,
    relationship TEXT NOT NULL,
    strength DOUBLE PRECISION NOT NULL DEFAULT 0.5
        CHECK (strength >= 0 AND strength <= 1),
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    metadata JSONB NOT NULL DEFAULT '{}'::jsonb
)
"""

_FEEDBACK_DDL = """
CREATE TABLE IF NOT EXISTS memory_feedback (
    id BIGSERIAL PRIMARY KEY,
    query_id TEXT NOT NULL,
    memory_id UUID NOT NULL REFERENCES episodic_memories(id) ON DELETE CASCADE,
    relevance_rating SMALLINT NOT NULL CHECK (relevance_rating BETWEEN 1 AND 5),
    accuracy_rating SMALLINT NOT NULL CHECK (accuracy_rating BETWEEN 1 AND 5),
    comment TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
)
"""


def _embeddings_ddl(dimension: int) -> str:
    return f"""
CREATE TABLE IF NOT EXISTS memory_embeddings (
    id UUID PRIMARY KEY,
    embedding vector({int(dimension)}) NOT NULL,
    text TEXT NOT NULL,
    type TEXT NOT NULL DEFAULT 'memory',
    metadata JSONB NOT NULL DEFAULT '{{}}'::jsonb,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
)
"""


# Columns added after the first release, keyed by table.  Each entry is the
# column definition used by ``ALTER TABLE ... ADD COLUMN IF NOT EXISTS``.
ADDITIVE_COLUMNS: dict[str, dict[str, str]] = {
    "episodic_memories": {
        "importance": "INTEGER NOT NULL DEFAULT 5",
        "context": "TEXT",
        "source": "TEXT",
        "metadata": "JSONB NOT NULL DEFAULT '{}'::jsonb",
        "embedding_ref": "UUID",
    },
    "semantic_memories": {
        "last_confirmed": "TIMESTAMPTZ",
        "metadata": "JSONB NOT NULL DEFAULT '{}'::jsonb",
    },
    "memory_connections": {
        "strength": "DOUBLE PRECISION NOT NULL DEFAULT 0.5",
        "metadata": "JSONB NOT NULL DEFAULT '{}'::jsonb",
    },
}

INDEXES: tuple[str, ...] = (
    "CREATE INDEX IF NOT EXISTS idx_episodic_timestamp ON episodic_memories (timestamp DESC)",
    "CREATE INDEX IF NOT EXISTS idx_episodic_context ON episodic_memories (context)",
    "CREATE INDEX IF NOT EXISTS idx_episodic_source ON episodic_memories (source)",
    "CREATE INDEX IF NOT EXISTS idx_episodic_importance ON episodic_memories (importance DESC)",
    "CREATE INDEX IF NOT EXISTS idx_episodic_ts_ctx_imp "
    "ON episodic_memories (timestamp DESC, context, importance)",
    "CREATE INDEX IF NOT EXISTS idx_episodic_ctx_imp ON episodic_memories (context, importance)",
    "CREATE INDEX IF NOT EXISTS idx_episodic_src_imp ON episodic_memories (source, importance)",
    "CREATE INDEX IF NOT EXISTS idx_connections_source ON memory_connections (source_id)",
    "CREATE INDEX IF NOT EXISTS idx_connections_target ON memory_connections (target_id)",
    "CREATE INDEX IF NOT EXISTS idx_feedback_memory "
    "ON memory_feedback (memory_id, created_at DESC)",
)

_EMBEDDING_INDEXES: tuple[str, ...] = (
    "CREATE INDEX IF NOT EXISTS idx_embeddings_type ON memory_embeddings (type)",
)


# ---------------------------------------------------------------------------
# Provisioning
# ---------------------------------------------------------------------------


async def missing_columns(conn, table: str) -> dict[str, str]:  # noqa: ANN001
    """Return the additive columns for *table* that the live table lacks."""
    rows = await conn.fetch(
        "SELECT column_name FROM information_schema.columns "
        "WHERE table_name = $1 AND table_schema = current_schema()",
        table,
    )
    present = {row["column_name"] for row in rows}
    return {
        name: definition
        for name, definition in ADDITIVE_COLUMNS.get(table, {}).items()
        if name not in present
    }


async def apply_schema(pool: Pool, *, embedding_dimension: int | None = 384) -> list[str]:
    """Create tables and indexes, and apply additive column migrations.

    Args:
        pool: asyncpg connection pool for the memory database.
        embedding_dimension: Vector dimension for ``memory_embeddings``.  ``None``
            skips the pgvector extension and the embeddings table entirely.

    Returns:
        The ``table.column`` names that were added by this call.  Empty when
        the schema was already current.
    """
    added: list[str] = []
    async with pool.acquire() as conn:
        async with conn.transaction():
            if embedding_dimension is not None:
                await conn.execute("CREATE EXTENSION IF NOT EXISTS vector")
            for ddl in (_EPISODIC_DDL, _SEMANTIC_DDL, _CONNECTIONS_DDL, _FEEDBACK_DDL):
                await conn.execute(ddl)
            if embedding_dimension is not None:
                await conn.execute(_embeddings_ddl(embedding_dimension))

            for table in ADDITIVE_COLUMNS:
                for column, definition in (await missing_columns(conn, table)).items():
                    await conn.execute(
                        f"ALTER TABLE {table} ADD COLUMN IF NOT EXISTS {column} {definition}"
                    )
                    logger.info("Added missing column %s.%s", table, column)
                    added.append(f"{table}.{column}")

            for ddl in INDEXES:
                await conn.execute(ddl)
            if embedding_dimension is not None:
                for ddl in _EMBEDDING_INDEXES:
                    await conn.execute(ddl)
    return added


class SchemaManager:
    """Provisions the schema lazily, once per process, before first use.

    Concurrent first callers wait on a lock; later callers return immediately.
    """

    def __init__(self, pool: Pool, *, embedding_dimension: int | None = 384) -> None:
        self._pool = pool
        self._embedding_dimension = embedding_dimension
        self._lock = asyncio.Lock()
        self._ready = False

    @property
    def ready(self) -> bool:
        return self._ready

    async def ensure(self) -> None:
        if self._ready:
            return
        async with self._lock:
            if self._ready:
                return
            added = await apply_schema(self._pool, embedding_dimension=self._embedding_dimension)
            if added:
                logger.info("Schema migrated: %s", ", ".join(added))
            self._ready = True

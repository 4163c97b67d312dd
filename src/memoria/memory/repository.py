"""PostgreSQL implementation of the memory storage port.

All functions take their parameters positionally (``$n``) and serialise
JSONB values with ``json.dumps``.  The schema is provisioned lazily before the
first statement runs.  Driver failures surface as :class:`MemoryStorageError`.
"""

from __future__ import annotations

import functools
import json
import logging
import uuid
from collections.abc import Sequence
from datetime import datetime
from typing import TYPE_CHECKING, Any

import asyncpg

from memoria.errors import MemoryStorageError
from memoria.memory.ports import UPDATABLE_FIELDS, SortKey
from memoria.memory.schema import SchemaManager
from memoria.models import Memory, MemoryConnection, MemoryFeedback, MemoryFilters, SemanticFact

if TYPE_CHECKING:
    from asyncpg import Pool

logger = logging.getLogger(__name__)

_MEMORY_COLUMNS = "id, content, timestamp, importance, context, source, metadata, embedding_ref"

_INSERT_MEMORY_SQL = f"""
    INSERT INTO episodic_memories ({_MEMORY_COLUMNS})
    VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
"""


def _chunks(items: Sequence[Any], size: int) -> list[Sequence[Any]]:
    return [items[i : i + size] for i in range(0, len(items), size)]


def _memory_params(memory: Memory) -> tuple[Any, ...]:
    return (
        memory.id,
        memory.content,
        memory.timestamp,
        memory.importance,
        memory.context,
        memory.source,
        json.dumps(memory.metadata),
        memory.embedding_ref,
    )


def _escape_like(term: str) -> str:
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def build_where(
    filters: MemoryFilters | None, params: list[Any], after: SortKey | None = None
) -> str:
    """Translate *filters* (and an optional keyset position) into a WHERE clause.

    Appends bind values to *params* and returns the clause, or ``""`` when
    nothing constrains the query.
    """
    conditions: list[str] = []

    def bind(value: Any) -> str:
        params.append(value)
        return f"${len(params)}"

    if filters is not None:
        if filters.context is not None:
            conditions.append(f"context = {bind(filters.context)}")
        if filters.source is not None:
            conditions.append(f"source = {bind(filters.source)}")
        if filters.start_time is not None:
            conditions.append(f"timestamp >= {bind(filters.start_time)}")
        if filters.end_time is not None:
            conditions.append(f"timestamp < {bind(filters.end_time)}")
        if filters.min_importance is not None:
            conditions.append(f"importance >= {bind(filters.min_importance)}")
        if filters.max_importance is not None:
            conditions.append(f"importance <= {bind(filters.max_importance)}")
        if filters.content_search:
            conditions.append(
                f"content ILIKE {bind('%' + _escape_like(filters.content_search) + '%')}"
            )

    if after is not None:
        if filters is not None and filters.sort_by_importance:
            conditions.append(
                f"(importance, timestamp, id) < ({bind(after[0])}, {bind(after[1])}, "
                f"{bind(after[2])})"
            )
        else:
            conditions.append(f"(timestamp, id) < ({bind(after[0])}, {bind(after[1])})")

    if not conditions:
        return ""
    return "WHERE " + " AND ".join(conditions)


def order_by(filters: MemoryFilters | None) -> str:
    if filters is not None and filters.sort_by_importance:
        return "ORDER BY importance DESC, timestamp DESC, id DESC"
    return "ORDER BY timestamp DESC, id DESC"


def _storage_errors(func):  # noqa: ANN001, ANN202
    """Ensure the schema exists, then translate driver failures into MemoryStorageError."""

    @functools.wraps(func)
    async def _wrapper(self, *args, **kwargs):  # noqa: ANN001, ANN002, ANN003, ANN202
        try:
            await self._schema.ensure()
            return await func(self, *args, **kwargs)
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as exc:
            raise MemoryStorageError(f"{func.__name__} failed: {exc}") from exc

    return _wrapper


class PostgresMemoryRepository:
    """asyncpg-backed :class:`~memoria.memory.ports.MemoryRepository`."""

    def __init__(self, pool: Pool, *, embedding_dimension: int | None = 384) -> None:
        self._pool = pool
        self._schema = SchemaManager(pool, embedding_dimension=embedding_dimension)

    async def ensure_schema(self) -> None:
        try:
            await self._schema.ensure()
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as exc:
            raise MemoryStorageError(f"Schema provisioning failed: {exc}") from exc

    # ------------------------------------------------------------------
    # Episodic memories
    # ------------------------------------------------------------------

    @_storage_errors
    async def insert(self, memory: Memory) -> None:
        await self._pool.execute(_INSERT_MEMORY_SQL, *_memory_params(memory))

    @_storage_errors
    async def get(self, memory_id: uuid.UUID) -> Memory | None:
        row = await self._pool.fetchrow(
            f"SELECT {_MEMORY_COLUMNS} FROM episodic_memories WHERE id = $1", memory_id
        )
        return Memory.from_row(row) if row is not None else None

    @_storage_errors
    async def update(self, memory_id: uuid.UUID, fields: dict[str, Any]) -> bool:
        sql, params = self._update_statement(memory_id, fields)
        if sql is None:
            return await self._exists(memory_id)
        result = await self._pool.execute(sql, *params)
        return result == "UPDATE 1"

    @staticmethod
    def _update_statement(
        memory_id: uuid.UUID, fields: dict[str, Any]
    ) -> tuple[str | None, list[Any]]:
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(
                f"Cannot update field(s) {sorted(unknown)}. "
                f"Must be one of {sorted(UPDATABLE_FIELDS)}"
            )
        params: list[Any] = [memory_id]
        assignments: list[str] = []
        for name, value in fields.items():
            params.append(json.dumps(value) if name == "metadata" else value)
            assignments.append(f"{name} = ${len(params)}")
        if not assignments:
            return None, params
        return f"UPDATE episodic_memories SET {', '.join(assignments)} WHERE id = $1", params

    async def _exists(self, memory_id: uuid.UUID) -> bool:
        return bool(
            await self._pool.fetchval("SELECT 1 FROM episodic_memories WHERE id = $1", memory_id)
        )

    @_storage_errors
    async def delete(self, memory_id: uuid.UUID) -> bool:
        result = await self._pool.execute("DELETE FROM episodic_memories WHERE id = $1", memory_id)
        return result == "DELETE 1"

    @_storage_errors
    async def query(
        self,
        filters: MemoryFilters | None = None,
        *,
        limit: int = 20,
        offset: int = 0,
        after: SortKey | None = None,
    ) -> list[Memory]:
        params: list[Any] = []
        where = build_where(filters, params, after)
        params.extend([limit, offset])
        sql = (
            f"SELECT {_MEMORY_COLUMNS} FROM episodic_memories {where} {order_by(filters)} "
            f"LIMIT ${len(params) - 1} OFFSET ${len(params)}"
        )
        rows = await self._pool.fetch(sql, *params)
        return [Memory.from_row(row) for row in rows]

    @_storage_errors
    async def count(self, filters: MemoryFilters | None = None) -> int:
        params: list[Any] = []
        where = build_where(filters, params)
        return int(
            await self._pool.fetchval(f"SELECT count(*) FROM episodic_memories {where}", *params)
        )

    @_storage_errors
    async def keyword_search(
        self, terms: Sequence[str], *, limit: int, since: datetime | None = None
    ) -> list[Memory]:
        patterns = [f"%{_escape_like(t)}%" for t in terms if t]
        if not patterns:
            return []
        params: list[Any] = [patterns]
        conditions = ["content ILIKE ANY($1::text[])"]
        if since is not None:
            params.append(since)
            conditions.append(f"timestamp >= ${len(params)}")
        params.append(limit)
        rows = await self._pool.fetch(
            f"SELECT {_MEMORY_COLUMNS} FROM episodic_memories "
            f"WHERE {' AND '.join(conditions)} "
            f"ORDER BY timestamp DESC, id DESC LIMIT ${len(params)}",
            *params,
        )
        return [Memory.from_row(row) for row in rows]

    @_storage_errors
    async def recent(self, limit: int) -> list[Memory]:
        rows = await self._pool.fetch(
            f"SELECT {_MEMORY_COLUMNS} FROM episodic_memories "
            "ORDER BY timestamp DESC, id DESC LIMIT $1",
            limit,
        )
        return [Memory.from_row(row) for row in rows]

    # ------------------------------------------------------------------
    # Bulk
    # ------------------------------------------------------------------

    @_storage_errors
    async def get_many(self, memory_ids: Sequence[uuid.UUID]) -> list[Memory]:
        found: dict[uuid.UUID, Memory] = {}
        for chunk in _chunks(list(memory_ids), 50):
            rows = await self._pool.fetch(
                f"SELECT {_MEMORY_COLUMNS} FROM episodic_memories WHERE id = ANY($1::uuid[])",
                list(chunk),
            )
            for row in rows:
                memory = Memory.from_row(row)
                found[memory.id] = memory
        return [found[i] for i in memory_ids if i in found]

    @_storage_errors
    async def insert_many(self, memories: Sequence[Memory], *, chunk_size: int) -> None:
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                for chunk in _chunks(list(memories), chunk_size):
                    await conn.executemany(_INSERT_MEMORY_SQL, [_memory_params(m) for m in chunk])

    @_storage_errors
    async def update_many(
        self, updates: Sequence[tuple[uuid.UUID, dict[str, Any]]], *, chunk_size: int
    ) -> list[bool]:
        outcomes: list[bool] = []
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                for chunk in _chunks(list(updates), chunk_size):
                    for memory_id, fields in chunk:
                        sql, params = self._update_statement(memory_id, fields)
                        if sql is None:
                            outcomes.append(
                                bool(
                                    await conn.fetchval(
                                        "SELECT 1 FROM episodic_memories WHERE id = $1",
                                        memory_id,
                                    )
                                )
                            )
                            continue
                        outcomes.append(await conn.execute(sql, *params) == "UPDATE 1")
        return outcomes

    @_storage_errors
    async def delete_many(self, memory_ids: Sequence[uuid.UUID], *, chunk_size: int) -> list[bool]:
        deleted: set[uuid.UUID] = set()
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                for chunk in _chunks(list(memory_ids), chunk_size):
                    rows = await conn.fetch(
                        "DELETE FROM episodic_memories WHERE id = ANY($1::uuid[]) RETURNING id",
                        list(chunk),
                    )
                    deleted.update(row["id"] for row in rows)
        return [i in deleted for i in memory_ids]

    # ------------------------------------------------------------------
    # Feedback
    # ------------------------------------------------------------------

    @_storage_errors
    async def add_feedback(self, feedback: MemoryFeedback, *, keep: int) -> None:
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute(
                    """
                    INSERT INTO memory_feedback
                        (query_id, memory_id, relevance_rating, accuracy_rating,
                         comment, created_at)
                    VALUES ($1, $2, $3, $4, $5, $6)
                    """,
                    feedback.query_id,
                    feedback.memory_id,
                    feedback.relevance_rating,
                    feedback.accuracy_rating,
                    feedback.comment,
                    feedback.created_at,
                )
                # Retain only the newest ``keep`` rows for this memory
                await conn.execute(
                    """
                    DELETE FROM memory_feedback
                    WHERE memory_id = $1
                      AND id NOT IN (
                          SELECT id FROM memory_feedback
                          WHERE memory_id = $1
                          ORDER BY created_at DESC, id DESC
                          LIMIT $2
                      )
                    """,
                    feedback.memory_id,
                    keep,
                )

    @_storage_errors
    async def load_feedback(self) -> list[MemoryFeedback]:
        rows = await self._pool.fetch(
            "SELECT query_id, memory_id, relevance_rating, accuracy_rating, comment, created_at "
            "FROM memory_feedback ORDER BY created_at"
        )
        return [MemoryFeedback.from_row(row) for row in rows]

    # ------------------------------------------------------------------
    # Semantic facts
    # ------------------------------------------------------------------

    @_storage_errors
    async def insert_fact(self, fact: SemanticFact) -> None:
        await self._pool.execute(
            """
            INSERT INTO semantic_memories
                (id, fact, confidence, first_observed, last_confirmed, metadata)
            VALUES ($1, $2, $3, $4, $5, $6)
            """,
            fact.id,
            fact.fact,
            fact.confidence,
            fact.first_observed,
            fact.last_confirmed,
            json.dumps(fact.metadata),
        )

    @_storage_errors
    async def get_fact(self, fact_id: uuid.UUID) -> SemanticFact | None:
        row = await self._pool.fetchrow("SELECT * FROM semantic_memories WHERE id = $1", fact_id)
        return SemanticFact.from_row(row) if row is not None else None

    @_storage_errors
    async def confirm_fact(
        self, fact_id: uuid.UUID, confidence: float | None, at: datetime
    ) -> bool:
        result = await self._pool.execute(
            "UPDATE semantic_memories "
            "SET last_confirmed = $2, confidence = COALESCE($3, confidence) WHERE id = $1",
            fact_id,
            at,
            confidence,
        )
        return result == "UPDATE 1"

    @_storage_errors
    async def list_facts(self, *, min_confidence: float, limit: int) -> list[SemanticFact]:
        rows = await self._pool.fetch(
            "SELECT * FROM semantic_memories WHERE confidence >= $1 "
            "ORDER BY confidence DESC, first_observed DESC LIMIT $2",
            min_confidence,
            limit,
        )
        return [SemanticFact.from_row(row) for row in rows]

    @_storage_errors
    async def delete_fact(self, fact_id: uuid.UUID) -> bool:
        result = await self._pool.execute("DELETE FROM semantic_memories WHERE id = $1", fact_id)
        return result == "DELETE 1"

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    @_storage_errors
    async def insert_connection(self, connection: MemoryConnection) -> None:
        await self._pool.execute(
            """
            INSERT INTO memory_connections
                (id, source_id, target_id, relationship, strength, created_at, metadata)
            VALUES ($1, $2, $3, $4, $5, $6, $7)
            """,
            connection.id,
            connection.source_id,
            connection.target_id,
            connection.relationship,
            connection.strength,
            connection.created_at,
            json.dumps(connection.metadata),
        )

    @_storage_errors
    async def get_connections(self, memory_id: uuid.UUID) -> list[MemoryConnection]:
        rows = await self._pool.fetch(
            "SELECT * FROM memory_connections WHERE source_id = $1 OR target_id = $1 "
            "ORDER BY strength DESC, created_at DESC",
            memory_id,
        )
        return [MemoryConnection.from_row(row) for row in rows]

    @_storage_errors
    async def delete_connection(self, connection_id: uuid.UUID) -> bool:
        result = await self._pool.execute(
            "DELETE FROM memory_connections WHERE id = $1", connection_id
        )
        return result == "DELETE 1"

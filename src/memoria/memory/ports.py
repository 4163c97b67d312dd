"""Storage port consumed by every memory component.

Components talk to persistence only through :class:`MemoryRepository`, so the
PostgreSQL implementation can be swapped for the in-process fake in
:mod:`memoria.testing`.

Ordering contract for ``query``: rows are ordered by ``(timestamp, id)``
descending, or by ``(importance, timestamp, id)`` descending when
``filters.sort_by_importance`` is set.  ``after`` is a keyset position in that
same order; only rows strictly after it are returned.
"""

from __future__ import annotations

import uuid
from collections.abc import Sequence
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

from memoria.models import Memory, MemoryConnection, MemoryFeedback, MemoryFilters, SemanticFact

SortKey = tuple[Any, ...]

UPDATABLE_FIELDS = frozenset(
    {"content", "importance", "context", "source", "metadata", "embedding_ref"}
)


def sort_key(memory: Memory, filters: MemoryFilters | None) -> SortKey:
    """Return *memory*'s position in the ``query`` order for *filters*."""
    if filters is not None and filters.sort_by_importance:
        return (memory.importance, memory.timestamp, memory.id)
    return (memory.timestamp, memory.id)


@runtime_checkable
class MemoryRepository(Protocol):
    async def ensure_schema(self) -> None: ...

    # -- episodic memories ---------------------------------------------------

    async def insert(self, memory: Memory) -> None: ...

    async def get(self, memory_id: uuid.UUID) -> Memory | None: ...

    async def update(self, memory_id: uuid.UUID, fields: dict[str, Any]) -> bool: ...

    async def delete(self, memory_id: uuid.UUID) -> bool: ...

    async def query(
        self,
        filters: MemoryFilters | None = None,
        *,
        limit: int = 20,
        offset: int = 0,
        after: SortKey | None = None,
    ) -> list[Memory]: ...

    async def count(self, filters: MemoryFilters | None = None) -> int: ...

    async def keyword_search(
        self, terms: Sequence[str], *, limit: int, since: datetime | None = None
    ) -> list[Memory]: ...

    async def recent(self, limit: int) -> list[Memory]: ...

    # -- bulk (each call is one all-or-nothing transaction) -------------------

    async def get_many(self, memory_ids: Sequence[uuid.UUID]) -> list[Memory]: ...

    async def insert_many(self, memories: Sequence[Memory], *, chunk_size: int) -> None: ...

    async def update_many(
        self, updates: Sequence[tuple[uuid.UUID, dict[str, Any]]], *, chunk_size: int
    ) -> list[bool]: ...

    async def delete_many(
        self, memory_ids: Sequence[uuid.UUID], *, chunk_size: int
    ) -> list[bool]: ...

    # -- feedback --------------------------------------------------------------

    async def add_feedback(self, feedback: MemoryFeedback, *, keep: int) -> None: ...

    async def load_feedback(self) -> list[MemoryFeedback]: ...

    # -- semantic facts and connections ---------------------------------------

    async def insert_fact(self, fact: SemanticFact) -> None: ...

    async def get_fact(self, fact_id: uuid.UUID) -> SemanticFact | None: ...

    async def confirm_fact(
        self, fact_id: uuid.UUID, confidence: float | None, at: datetime
    ) -> bool: ...

    async def list_facts(self, *, min_confidence: float, limit: int) -> list[SemanticFact]: ...

    async def delete_fact(self, fact_id: uuid.UUID) -> bool: ...

    async def insert_connection(self, connection: MemoryConnection) -> None: ...

    async def get_connections(self, memory_id: uuid.UUID) -> list[MemoryConnection]: ...

    async def delete_connection(self, connection_id: uuid.UUID) -> bool: ...

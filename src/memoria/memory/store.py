"""Durable record of episodic memories, semantic facts and their connections.

:class:`MemoryStore` owns the write path: it validates input, attaches an
embedding when the index is available, and keeps the embedding in step with
content changes and deletes.  Embedding failures never fail a memory write;
the memory persists without a vector (or with its stale one) and the failure
is logged.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Any

from memoria.errors import EmbeddingError, MemoryValidationError
from memoria.memory.embedding import EmbeddingIndex
from memoria.memory.ports import UPDATABLE_FIELDS, MemoryRepository
from memoria.memory.text import preprocess_text, query_terms
from memoria.memory.validation import (
    validate_content,
    validate_filters,
    validate_importance,
    validate_limit,
    validate_metadata,
)
from memoria.models import (
    DEFAULT_IMPORTANCE,
    Memory,
    MemoryConnection,
    MemoryFilters,
    SemanticFact,
    StoredMemory,
    utcnow,
)

logger = logging.getLogger(__name__)

_DEFAULT_SIMILARITY = 0.5


def embedding_metadata(memory: Memory) -> dict[str, Any]:
    """Metadata stored alongside a memory's vector."""
    return {
        "memory_id": str(memory.id),
        "context": memory.context,
        "source": memory.source,
        "importance": memory.importance,
    }


class MemoryStore:
    """CRUD over episodic memories with embedding bookkeeping.

    Args:
        repository: Storage port (PostgreSQL or in-memory).
        index: Embedding index.  ``None`` disables vectors entirely and
            similarity lookups fall back to keyword search.
    """

    def __init__(self, repository: MemoryRepository, index: EmbeddingIndex | None = None) -> None:
        self._repo = repository
        self._index = index

    @property
    def repository(self) -> MemoryRepository:
        return self._repo

    @property
    def index(self) -> EmbeddingIndex | None:
        return self._index

    # ------------------------------------------------------------------
    # Episodic memories
    # ------------------------------------------------------------------

    async def store(
        self,
        content: str,
        *,
        importance: int = DEFAULT_IMPORTANCE,
        context: str | None = None,
        source: str | None = None,
        metadata: dict[str, Any] | None = None,
        timestamp: datetime | None = None,
        generate_embedding: bool = True,
    ) -> StoredMemory:
        """Persist a new memory and, when possible, its embedding.

        Raises:
            MemoryValidationError: If *content* is empty or *importance* is
                outside 1-10.
        """
        content = preprocess_text(validate_content(content))
        memory = Memory(
            content=content,
            importance=validate_importance(importance),
            context=context,
            source=source,
            metadata=dict(validate_metadata(metadata)),
        )
        if timestamp is not None:
            memory.timestamp = timestamp

        if generate_embedding:
            memory.embedding_ref = await self._try_embed(memory)

        try:
            await self._repo.insert(memory)
        except Exception:
            if memory.embedding_ref is not None and self._index is not None:
                try:
                    await self._index.delete(memory.embedding_ref)
                except Exception:
                    logger.warning(
                        "Failed to drop embedding %s after insert of memory %s failed",
                        memory.embedding_ref,
                        memory.id,
                        exc_info=True,
                    )
            raise

        logger.debug("Stored memory %s (importance=%d)", memory.id, memory.importance)
        return StoredMemory(
            id=memory.id, timestamp=memory.timestamp, embedding_ref=memory.embedding_ref
        )

    async def _try_embed(self, memory: Memory) -> uuid.UUID | None:
        """Embed *memory* under its own id; return the reference or ``None`` on failure."""
        if self._index is None:
            return None
        try:
            embedding = await self._index.embed(
                memory.content, memory.id, metadata=embedding_metadata(memory)
            )
        except EmbeddingError as exc:
            logger.warning(
                "Embedding failed for memory %s, storing without vector: %s", memory.id, exc
            )
            return None
        return embedding.id

    async def get(self, memory_id: uuid.UUID) -> Memory | None:
        return await self._repo.get(memory_id)

    async def update(self, memory_id: uuid.UUID, **fields: Any) -> bool:
        """Apply *fields* to an existing memory.

        Changing ``content`` regenerates the attached embedding (or creates
        one if the memory has none).  If regeneration fails the update still
        succeeds and the previous embedding is kept.

        Returns:
            ``False`` when no memory with *memory_id* exists.

        Raises:
            MemoryValidationError: If a field is unknown, immutable, or invalid.
        """
        fields = self.validate_update(fields)
        existing = await self._repo.get(memory_id)
        if existing is None:
            return False

        content_changed = "content" in fields and fields["content"] != existing.content
        if content_changed and self._index is not None:
            new_ref = await self._refresh_embedding(self._index, existing, fields["content"])
            if new_ref is not None and new_ref != existing.embedding_ref:
                fields["embedding_ref"] = new_ref

        updated = await self._repo.update(memory_id, fields)
        if updated and self._index is not None and existing.embedding_ref is not None:
            patch = {k: fields[k] for k in ("context", "source", "importance") if k in fields}
            if patch:
                try:
                    await self._index.update_metadata(existing.embedding_ref, patch)
                except Exception:
                    logger.warning(
                        "Embedding metadata for memory %s left stale", memory_id, exc_info=True
                    )
        return updated

    @staticmethod
    def validate_update(fields: dict[str, Any]) -> dict[str, Any]:
        """Check an update mapping and return a normalised copy."""
        immutable = {"id", "timestamp"} & set(fields)
        if immutable:
            raise MemoryValidationError(f"Field(s) {sorted(immutable)} cannot be changed")
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise MemoryValidationError(
                f"Unknown field(s) {sorted(unknown)}. Must be one of {sorted(UPDATABLE_FIELDS)}"
            )
        fields = dict(fields)
        if "content" in fields:
            fields["content"] = preprocess_text(validate_content(fields["content"]))
        if "importance" in fields:
            validate_importance(fields["importance"])
        if "metadata" in fields:
            fields["metadata"] = dict(validate_metadata(fields["metadata"]))
        return fields

    async def _refresh_embedding(
        self, index: EmbeddingIndex, memory: Memory, new_content: str
    ) -> uuid.UUID | None:
        try:
            if memory.embedding_ref is not None:
                refreshed = await index.update_embedding(memory.embedding_ref, new_content)
                if refreshed is not None:
                    return refreshed.id
            draft = Memory(
                id=memory.id,
                content=new_content,
                importance=memory.importance,
                context=memory.context,
                source=memory.source,
            )
            embedding = await index.embed(
                new_content, memory.id, metadata=embedding_metadata(draft)
            )
            return embedding.id
        except EmbeddingError as exc:
            logger.warning(
                "Embedding regeneration failed for memory %s, keeping previous vector: %s",
                memory.id,
                exc,
            )
            return None

    async def delete(self, memory_id: uuid.UUID) -> bool:
        """Delete a memory, its connections (by cascade) and its embedding."""
        existing = await self._repo.get(memory_id)
        if existing is None:
            return False
        deleted = await self._repo.delete(memory_id)
        if deleted and existing.embedding_ref is not None and self._index is not None:
            try:
                await self._index.delete(existing.embedding_ref)
            except Exception:
                logger.warning(
                    "Failed to delete embedding %s for memory %s",
                    existing.embedding_ref,
                    memory_id,
                    exc_info=True,
                )
        return deleted

    async def query(self, filters: MemoryFilters | None = None, limit: int = 20) -> list[Memory]:
        """Return memories matching *filters*, newest first (or importance first)."""
        validate_filters(filters)
        return await self._repo.query(filters, limit=validate_limit(limit))

    async def recent(self, limit: int = 10) -> list[Memory]:
        return await self._repo.recent(validate_limit(limit))

    # ------------------------------------------------------------------
    # Retrieval primitives
    # ------------------------------------------------------------------

    async def keyword_search(
        self, query: str, *, limit: int = 10, since: datetime | None = None
    ) -> list[Memory]:
        """Memories containing any term of *query*, newest first."""
        terms = query_terms(query)
        if not terms:
            return []
        return await self._repo.keyword_search(terms, limit=limit, since=since)

    async def similarity_search(
        self,
        query: str,
        *,
        limit: int = 10,
        min_score: float = _DEFAULT_SIMILARITY,
        since: datetime | None = None,
    ) -> list[Memory]:
        """Memories whose embedding is close to *query*, most similar first.

        Raises:
            EmbeddingError: If the index cannot embed *query*.
        """
        if self._index is None:
            return []
        hits = await self._index.find_similar(
            query, min_score=min_score, limit=limit * 2, type_filter="memory"
        )
        if not hits:
            return []
        memories = await self._repo.get_many([hit.id for hit in hits])
        if since is not None:
            memories = [m for m in memories if m.timestamp >= since]
        return memories[:limit]

    async def retrieve_by_similarity(
        self,
        query: str,
        *,
        limit: int = 10,
        min_score: float = _DEFAULT_SIMILARITY,
        since: datetime | None = None,
    ) -> list[Memory]:
        """Similarity lookup that falls back to keyword search when vectors are unavailable."""
        if self._index is None:
            return await self.keyword_search(query, limit=limit, since=since)
        try:
            return await self.similarity_search(
                query, limit=limit, min_score=min_score, since=since
            )
        except EmbeddingError as exc:
            logger.warning("Similarity search unavailable, using keyword search: %s", exc)
            return await self.keyword_search(query, limit=limit, since=since)

    async def retrieve_relevant(
        self,
        query: str,
        *,
        limit: int = 10,
        min_score: float = _DEFAULT_SIMILARITY,
        since: datetime | None = None,
    ) -> list[Memory]:
        """Keyword and similarity candidates merged, de-duplicated, newest first.

        A failing similarity lookup degrades to keyword results only.
        """
        keyword = await self.keyword_search(query, limit=limit, since=since)
        similar: list[Memory] = []
        if self._index is not None:
            try:
                similar = await self.similarity_search(
                    query, limit=limit, min_score=min_score, since=since
                )
            except EmbeddingError as exc:
                logger.warning("Similarity candidates skipped for %r: %s", query[:80], exc)
        merged: dict[uuid.UUID, Memory] = {}
        for memory in [*keyword, *similar]:
            merged.setdefault(memory.id, memory)
        ordered = sorted(merged.values(), key=lambda m: (m.timestamp, m.id), reverse=True)
        return ordered[:limit]

    # ------------------------------------------------------------------
    # Semantic facts
    # ------------------------------------------------------------------

    async def store_fact(
        self, fact: str, *, confidence: float = 1.0, metadata: dict[str, Any] | None = None
    ) -> SemanticFact:
        fact = preprocess_text(validate_content(fact))
        if not 0.0 <= confidence <= 1.0:
            raise MemoryValidationError(f"Confidence {confidence} out of range [0, 1]")
        record = SemanticFact(
            fact=fact, confidence=confidence, metadata=validate_metadata(metadata)
        )
        await self._repo.insert_fact(record)
        return record

    async def get_fact(self, fact_id: uuid.UUID) -> SemanticFact | None:
        return await self._repo.get_fact(fact_id)

    async def confirm_fact(self, fact_id: uuid.UUID, confidence: float | None = None) -> bool:
        """Mark a fact as re-observed now, optionally revising its confidence."""
        if confidence is not None and not 0.0 <= confidence <= 1.0:
            raise MemoryValidationError(f"Confidence {confidence} out of range [0, 1]")
        return await self._repo.confirm_fact(fact_id, confidence, utcnow())

    async def list_facts(
        self, *, min_confidence: float = 0.0, limit: int = 50
    ) -> list[SemanticFact]:
        return await self._repo.list_facts(
            min_confidence=min_confidence, limit=validate_limit(limit)
        )

    async def delete_fact(self, fact_id: uuid.UUID) -> bool:
        return await self._repo.delete_fact(fact_id)

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    async def connect(
        self,
        source_id: uuid.UUID,
        target_id: uuid.UUID,
        relationship: str,
        *,
        strength: float = 0.5,
        metadata: dict[str, Any] | None = None,
    ) -> MemoryConnection:
        """Link two existing memories.

        Raises:
            MemoryValidationError: If either endpoint is missing, the
                relationship is empty, or *strength* is outside 0-1.
        """
        if not relationship or not relationship.strip():
            raise MemoryValidationError("Relationship must be a non-empty string")
        if not 0.0 <= strength <= 1.0:
            raise MemoryValidationError(f"Strength {strength} out of range [0, 1]")
        found = {m.id for m in await self._repo.get_many([source_id, target_id])}
        missing = [str(i) for i in (source_id, target_id) if i not in found]
        if missing:
            raise MemoryValidationError(
                f"Cannot connect missing memory id(s): {', '.join(missing)}"
            )
        connection = MemoryConnection(
            source_id=source_id,
            target_id=target_id,
            relationship=relationship.strip(),
            strength=strength,
            metadata=validate_metadata(metadata),
        )
        await self._repo.insert_connection(connection)
        return connection

    async def get_connections(self, memory_id: uuid.UUID) -> list[MemoryConnection]:
        return await self._repo.get_connections(memory_id)

    async def disconnect(self, connection_id: uuid.UUID) -> bool:
        return await self._repo.delete_connection(connection_id)

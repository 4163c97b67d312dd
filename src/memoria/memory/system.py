"""Boundary facade wiring every memory component together.

The conversation loop and the tool surface talk to :class:`MemorySystem`
only.  It owns one store, one embedding index, one cache and one of each
ranking, learning and temporal component for a single agent instance.
"""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable, Mapping, Sequence
from datetime import datetime
from typing import Any

from memoria.config import MemoriaConfig
from memoria.core.metrics import MemoryMetrics
from memoria.db import Database
from memoria.errors import MemoryValidationError
from memoria.memory.batch import BatchMemoryManager
from memoria.memory.cache import MemoryCache
from memoria.memory.embedding import EmbeddingEngine, EmbeddingIndex, PgVectorEmbeddingIndex
from memoria.memory.learning import LearningSystem
from memoria.memory.pagination import PaginatedMemoryRetrieval
from memoria.memory.ports import MemoryRepository
from memoria.memory.ranking import RelevanceRanking
from memoria.memory.repository import PostgresMemoryRepository
from memoria.memory.retrieval import (
    BasicStrategy,
    LearningEnhancedStrategy,
    RecentFallbackStrategy,
    RelevanceOnlyStrategy,
    RetrievalOrchestrator,
)
from memoria.memory.store import MemoryStore
from memoria.memory.temporal import TemporalContextManager
from memoria.models import (
    BatchOperationResult,
    Interaction,
    InteractionType,
    Memory,
    MemoryFeedback,
    MemoryFilters,
    PaginatedResult,
    Pagination,
    RetrievalResult,
    StoredMemory,
    TemporalContext,
    Timeframe,
    utcnow,
)

logger = logging.getLogger(__name__)

_MIN_RATING = 1
_MAX_RATING = 5


def _validate_rating(name: str, value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise MemoryValidationError(f"{name} must be an integer, got {value!r}")
    if not _MIN_RATING <= value <= _MAX_RATING:
        raise MemoryValidationError(
            f"{name} {value} out of range [{_MIN_RATING}, {_MAX_RATING}]"
        )
    return value


class MemorySystem:
    """One agent's memory engine.

    Args:
        repository: Storage port.
        index: Embedding index, or ``None`` to run keyword-only.
        config: Engine configuration; defaults apply when omitted.
        metrics: Instrument sink shared by cache, batch and retrieval.
        clock: UTC clock for ranking, learning and temporal context.
        cache_clock: Monotonic clock for cache expiry.
    """

    def __init__(
        self,
        repository: MemoryRepository,
        index: EmbeddingIndex | None = None,
        config: MemoriaConfig | None = None,
        *,
        metrics: MemoryMetrics | None = None,
        clock: Callable[[], datetime] = utcnow,
        cache_clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config or MemoriaConfig()
        cfg = self._config
        self._metrics = metrics or MemoryMetrics(agent_name=cfg.agent_name)
        self._repo = repository
        self._database: Database | None = None

        self.store = MemoryStore(repository, index)
        self.cache = MemoryCache.create(cfg.cache, clock=cache_clock, metrics=self._metrics)
        self.batch = BatchMemoryManager(repository, index, cfg.batch, self._metrics)
        self.pagination = PaginatedMemoryRetrieval(repository)
        self.temporal = TemporalContextManager(
            cfg.temporal.timezone, cfg.temporal.update_interval_ms, clock=clock
        )
        self.ranking = RelevanceRanking(
            max_feedback_per_memory=cfg.feedback.max_per_memory, clock=clock
        )
        self.learning = LearningSystem(
            confidence_threshold=cfg.learning.confidence_threshold,
            reinforcement_step=cfg.learning.reinforcement_step,
            max_interactions=cfg.learning.max_interactions,
            clock=clock,
        )
        self.retrieval = RetrievalOrchestrator(
            [
                LearningEnhancedStrategy(
                    self.store,
                    self.ranking,
                    self.learning,
                    self.temporal,
                    ranking_config=cfg.ranking,
                    retrieval_config=cfg.retrieval,
                ),
                RelevanceOnlyStrategy(
                    self.store,
                    self.ranking,
                    ranking_config=cfg.ranking,
                    retrieval_config=cfg.retrieval,
                ),
                BasicStrategy(self.store, retrieval_config=cfg.retrieval),
                RecentFallbackStrategy(self.store),
            ],
            learning=self.learning,
            config=cfg.retrieval,
            metrics=self._metrics,
        )
        self._initialized = False

    @property
    def config(self) -> MemoriaConfig:
        return self._config

    @property
    def initialized(self) -> bool:
        return self._initialized

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """Provision the schema, replay persisted feedback and start cache cleanup."""
        if self._initialized:
            return
        await self._repo.ensure_schema()
        loaded = self.ranking.load_feedback(await self._repo.load_feedback())
        if self._config.cache.enable_cleanup:
            self.cache.start_cleanup(self._config.cache.cleanup_interval_ms)
        self._initialized = True
        logger.info(
            "Memory system initialized for agent %s (%d feedback record(s) loaded)",
            self._config.agent_name,
            loaded,
        )

    async def close(self) -> None:
        await self.cache.destroy()
        if self._database is not None:
            await self._database.close()
            self._database = None
        self._initialized = False

    # ------------------------------------------------------------------
    # Single-memory operations
    # ------------------------------------------------------------------

    async def store_memory(
        self,
        content: str,
        *,
        importance: int | None = None,
        context: str | None = None,
        source: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> StoredMemory:
        """Persist one memory (embedding attached when the index is available)."""
        stored = await self.store.store(
            content,
            importance=self._config.batch.default_importance if importance is None else importance,
            context=context,
            source=source,
            metadata=metadata,
            generate_embedding=self._config.batch.generate_embeddings,
        )
        logger.info("Stored memory %s", stored.id)
        return stored

    async def get_memory(self, memory_id: uuid.UUID) -> Memory | None:
        """Read through the cache."""
        cached = self.cache.get(memory_id)
        if cached is not None:
            return cached
        memory = await self.store.get(memory_id)
        if memory is not None:
            self.cache.set(memory)
        return memory

    async def update_memory(self, memory_id: uuid.UUID, **fields: Any) -> bool:
        updated = await self.store.update(memory_id, **fields)
        self.cache.delete(memory_id)
        return updated

    async def delete_memory(self, memory_id: uuid.UUID) -> bool:
        deleted = await self.store.delete(memory_id)
        self.cache.delete(memory_id)
        self.ranking.forget(memory_id)
        return deleted

    # ------------------------------------------------------------------
    # Retrieval and feedback
    # ------------------------------------------------------------------

    async def retrieve_memories(
        self,
        query: str,
        *,
        limit: int | None = None,
        context_timeframe: Timeframe | str = Timeframe.ALL,
        enhance_query: bool = True,
    ) -> list[Memory]:
        """Run the retrieval cascade and return its memories.

        Raises:
            MemoryValidationError: For an empty query or bad limit/timeframe.
            MemoryUnavailableError: When even the recency fallback failed.
        """
        result = await self.retrieve_with_details(
            query, limit=limit, context_timeframe=context_timeframe, enhance_query=enhance_query
        )
        return result.memories

    async def retrieve_with_details(
        self,
        query: str,
        *,
        limit: int | None = None,
        context_timeframe: Timeframe | str = Timeframe.ALL,
        enhance_query: bool = True,
    ) -> RetrievalResult:
        """Like :meth:`retrieve_memories` but returns the full result record.

        The ``query_id`` of the result is what :meth:`record_feedback` expects.
        """
        return await self.retrieval.retrieve(
            query, limit=limit, context_timeframe=context_timeframe, enhance_query=enhance_query
        )

    async def record_feedback(
        self,
        query_id: str,
        memory_id: uuid.UUID,
        relevance_rating: int,
        accuracy_rating: int,
        comment: str | None = None,
    ) -> MemoryFeedback:
        """Record how useful *memory_id* was for the retrieval *query_id*.

        Feedback for a query no longer in the history is still persisted and
        used for ranking; it just cannot teach the learning system.

        Raises:
            MemoryValidationError: If a rating is outside 1-5 or the memory
                does not exist.
        """
        feedback = MemoryFeedback(
            query_id=str(query_id),
            memory_id=memory_id,
            relevance_rating=_validate_rating("relevance_rating", relevance_rating),
            accuracy_rating=_validate_rating("accuracy_rating", accuracy_rating),
            comment=comment,
        )
        memory = await self.get_memory(memory_id)
        if memory is None:
            raise MemoryValidationError(f"Memory not found: {memory_id}")

        await self._repo.add_feedback(feedback, keep=self._config.feedback.max_per_memory)
        self.ranking.record_feedback(feedback)

        result = self.retrieval.get_result(feedback.query_id)
        if result is None:
            logger.debug("Feedback for unknown query %s; skipping learning", query_id)
        else:
            result.feedback_collected = True
        self.temporal.record_interaction(InteractionType.MEMORY_FEEDBACK)
        self.learning.learn(
            Interaction(
                type=InteractionType.MEMORY_FEEDBACK,
                data={
                    "query_id": feedback.query_id,
                    "memory_id": str(memory_id),
                    "relevance_rating": feedback.relevance_rating,
                    "accuracy_rating": feedback.accuracy_rating,
                    "query": result.original_query if result is not None else None,
                    "memory_context": memory.context,
                },
            )
        )
        logger.info(
            "Recorded feedback for memory %s in query %s (relevance=%d)",
            memory_id,
            query_id,
            feedback.relevance_rating,
        )
        return feedback

    def record_interaction(self, interaction_type: str, data: dict[str, Any] | None = None) -> bool:
        """Feed a conversation-loop event to the learning and temporal components.

        Returns ``False`` (and records nothing) for an unknown interaction type.
        """
        accepted = self.learning.learn(Interaction(type=interaction_type, data=data or {}))
        if accepted:
            self.temporal.record_interaction(interaction_type)
        return accepted

    def get_temporal_context(self, *, force: bool = False) -> TemporalContext:
        return self.temporal.get_current_context(force=force)

    # ------------------------------------------------------------------
    # Listing and bulk operations
    # ------------------------------------------------------------------

    async def list_memories_paginated(
        self, filters: MemoryFilters | None = None, pagination: Pagination | None = None
    ) -> PaginatedResult:
        return await self.pagination.list(filters, pagination)

    async def store_memories_batch(
        self,
        items: Sequence[Mapping[str, Any]],
        *,
        source: str | None = None,
        context: str | None = None,
        importance: int | None = None,
        metadata: Mapping[str, Any] | None = None,
        generate_embeddings: bool | None = None,
    ) -> BatchOperationResult:
        return await self.batch.store_many(
            items,
            source=source,
            context=context,
            importance=importance,
            metadata=metadata,
            generate_embeddings=generate_embeddings,
        )

    async def update_memories_batch(
        self, updates: Sequence[tuple[uuid.UUID, Mapping[str, Any]]]
    ) -> BatchOperationResult:
        result = await self.batch.update_many(updates)
        self.cache.delete_many(memory_id for memory_id, _ in updates)
        return result

    async def delete_memories_batch(self, memory_ids: Sequence[uuid.UUID]) -> BatchOperationResult:
        result = await self.batch.delete_many(memory_ids)
        self.cache.delete_many(memory_ids)
        for memory_id in result.successful_ids:
            self.ranking.forget(memory_id)
        return result

    async def get_memories_batch(self, memory_ids: Sequence[uuid.UUID]) -> list[Memory]:
        memories = await self.batch.get_many(memory_ids)
        self.cache.set_many(memories)
        return memories

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    async def stats(self) -> dict[str, Any]:
        """Counts and component statistics for dashboards and the CLI."""
        return {
            "agent": self._config.agent_name,
            "total_memories": await self._repo.count(None),
            "embeddings_enabled": self.store.index is not None,
            "cache": self.cache.stats().to_dict(),
            "cache_size": self.cache.size,
            "learning": self.learning.stats(),
            "query_history": len(self.retrieval.history()),
        }


async def create_memory_system(
    config: MemoriaConfig | None = None,
    *,
    database: Database | None = None,
    embedder: Any = None,
) -> MemorySystem:
    """Connect to PostgreSQL and return an initialized :class:`MemorySystem`.

    Args:
        config: Engine configuration; defaults apply when omitted.
        database: An already configured :class:`Database`.  When omitted one
            is built from ``config.database`` and the environment, and the
            system closes it on :meth:`MemorySystem.close`.
        embedder: Replacement for the sentence-transformers engine.
    """
    config = config or MemoriaConfig()
    owned = database is None
    db = database or Database.from_config(config.database)
    if owned:
        await db.provision()
    pool = await db.connect()

    index: EmbeddingIndex | None = None
    if config.embedding.enabled:
        engine = embedder or EmbeddingEngine(config.embedding.model, config.embedding.dimension)
        index = PgVectorEmbeddingIndex(pool, engine)
    repository = PostgresMemoryRepository(
        pool, embedding_dimension=config.embedding.dimension if index is not None else None
    )

    system = MemorySystem(repository, index, config)
    if owned:
        system._database = db
    try:
        await system.initialize()
    except Exception:
        await system.close()
        raise
    return system

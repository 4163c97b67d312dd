"""Learning-enhanced retrieval cascade.

:class:`RetrievalOrchestrator` runs an ordered list of strategies and returns
the first non-empty result:

1. ``learning_enhanced``: the query is enhanced with learned context hints,
   the interaction is recorded in the temporal context, keyword and
   similarity candidates (plus memories in any hinted context) are gathered
   and ranked with recency and feedback boosts.
2. ``relevance_only``: the raw query, a keyword pool of twice the limit, the
   same ranking.
3. ``basic``: raw store/index candidates, unranked.
4. ``recent_fallback``: the most recent memories, regardless of the query.

A strategy that raises counts as empty.  Only a failure of the terminal
strategy reaches the caller, as :class:`~memoria.errors.MemoryUnavailableError`.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Protocol

from memoria.config import RankingConfig, RetrievalConfig
from memoria.core.telemetry import memory_span
from memoria.errors import MemoryUnavailableError, MemoryValidationError
from memoria.memory.text import split_context_hints
from memoria.models import (
    Interaction,
    InteractionType,
    Memory,
    MemoryFilters,
    RetrievalResult,
    TemporalContext,
    Timeframe,
    utcnow,
)

if TYPE_CHECKING:
    from memoria.core.metrics import MemoryMetrics
    from memoria.memory.learning import LearningSystem
    from memoria.memory.ranking import RelevanceRanking
    from memoria.memory.store import MemoryStore
    from memoria.memory.temporal import TemporalContextManager

logger = logging.getLogger(__name__)


@dataclass
class RetrievalRequest:
    """Input shared by every strategy of one retrieval call.

    Strategies may fill in ``enhanced_query``, ``insights`` and
    ``temporal_context``; the orchestrator copies them into the result.
    """

    query: str
    limit: int
    since: datetime | None = None
    enhance: bool = True
    enhanced_query: str = ""
    insights: list[str] = field(default_factory=list)
    temporal_context: TemporalContext | None = None

    def __post_init__(self) -> None:
        if not self.enhanced_query:
            self.enhanced_query = self.query


class RetrievalStrategy(Protocol):
    """One stage of the cascade."""

    name: str

    async def run(self, request: RetrievalRequest) -> list[Memory]: ...


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------


class LearningEnhancedStrategy:
    name = "learning_enhanced"

    def __init__(
        self,
        store: MemoryStore,
        ranking: RelevanceRanking,
        learning: LearningSystem,
        temporal: TemporalContextManager,
        *,
        ranking_config: RankingConfig | None = None,
        retrieval_config: RetrievalConfig | None = None,
    ) -> None:
        self._store = store
        self._ranking = ranking
        self._learning = learning
        self._temporal = temporal
        self._ranking_config = ranking_config or RankingConfig()
        self._config = retrieval_config or RetrievalConfig()

    def _enhance(self, request: RetrievalRequest) -> None:
        if not request.enhance:
            return
        enhanced = self._learning.enhance_query(request.query)
        if enhanced == request.query:
            return
        request.enhanced_query = enhanced
        request.insights.append("Applied learning to enhance query")
        _, before = split_context_hints(request.query)
        _, after = split_context_hints(enhanced)
        for label in after:
            if label not in before:
                request.insights.append(f"Added {label} context to improve relevance")

    async def run(self, request: RetrievalRequest) -> list[Memory]:
        self._enhance(request)
        self._temporal.record_interaction(InteractionType.MEMORY_RETRIEVAL)
        request.temporal_context = self._temporal.get_current_context()

        clean, labels = split_context_hints(request.enhanced_query)
        pool_size = request.limit * self._config.candidate_multiplier
        candidates = await self._store.retrieve_relevant(
            clean,
            limit=pool_size,
            min_score=self._config.min_similarity,
            since=request.since,
        )
        for label in labels:
            candidates.extend(
                await self._store.query(
                    MemoryFilters(context=label, start_time=request.since), limit=pool_size
                )
            )
        logger.debug(
            "Learning-enhanced stage gathered %d candidate(s) (hints=%s)", len(candidates), labels
        )
        cfg = self._ranking_config
        return self._ranking.rank(
            candidates,
            clean,
            min_score=cfg.min_relevance_score,
            max_results=min(request.limit, cfg.max_results),
            include_reasons=cfg.include_reasons,
            recency_boost=cfg.recency_boost,
            feedback_boost=cfg.feedback_boost,
        )


class RelevanceOnlyStrategy:
    name = "relevance_only"

    def __init__(
        self,
        store: MemoryStore,
        ranking: RelevanceRanking,
        *,
        ranking_config: RankingConfig | None = None,
        retrieval_config: RetrievalConfig | None = None,
    ) -> None:
        self._store = store
        self._ranking = ranking
        self._ranking_config = ranking_config or RankingConfig()
        self._config = retrieval_config or RetrievalConfig()

    async def run(self, request: RetrievalRequest) -> list[Memory]:
        candidates = await self._store.keyword_search(
            request.query,
            limit=request.limit * self._config.candidate_multiplier,
            since=request.since,
        )
        cfg = self._ranking_config
        return self._ranking.rank(
            candidates,
            request.query,
            min_score=cfg.min_relevance_score,
            max_results=min(request.limit, cfg.max_results),
            include_reasons=cfg.include_reasons,
            recency_boost=cfg.recency_boost,
            feedback_boost=cfg.feedback_boost,
        )


class BasicStrategy:
    name = "basic"

    def __init__(
        self, store: MemoryStore, *, retrieval_config: RetrievalConfig | None = None
    ) -> None:
        self._store = store
        self._config = retrieval_config or RetrievalConfig()

    async def run(self, request: RetrievalRequest) -> list[Memory]:
        return await self._store.retrieve_relevant(
            request.query,
            limit=request.limit,
            min_score=self._config.min_similarity,
            since=request.since,
        )


class RecentFallbackStrategy:
    name = "recent_fallback"

    def __init__(self, store: MemoryStore) -> None:
        self._store = store

    async def run(self, request: RetrievalRequest) -> list[Memory]:
        return await self._store.recent(request.limit)


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class RetrievalOrchestrator:
    """Runs the strategy cascade and keeps a bounded history of results.

    Args:
        strategies: Stages in order.  The last one is terminal: its failure
            is the only one that propagates.
        learning: Receives a ``memory_retrieval`` interaction per call.
        config: Limits, history size and the optional overall timeout.
        metrics: Counts which stage answered and which stages failed.
    """

    def __init__(
        self,
        strategies: list[RetrievalStrategy],
        *,
        learning: LearningSystem | None = None,
        config: RetrievalConfig | None = None,
        metrics: MemoryMetrics | None = None,
    ) -> None:
        if not strategies:
            raise ValueError("At least one retrieval strategy is required")
        self._strategies = list(strategies)
        self._learning = learning
        self._config = config or RetrievalConfig()
        self._metrics = metrics
        self._history: OrderedDict[str, RetrievalResult] = OrderedDict()

    @property
    def strategies(self) -> list[RetrievalStrategy]:
        return list(self._strategies)

    async def retrieve(
        self,
        query: str,
        *,
        limit: int | None = None,
        context_timeframe: Timeframe | str = Timeframe.ALL,
        enhance_query: bool = True,
    ) -> RetrievalResult:
        """Run the cascade for *query*.

        Raises:
            MemoryValidationError: For an empty query, a non-positive limit
                or an unknown timeframe.
            MemoryUnavailableError: If the terminal strategy fails.
        """
        if not isinstance(query, str) or not query.strip():
            raise MemoryValidationError("Query must be a non-empty string")
        limit = self._config.default_limit if limit is None else limit
        if isinstance(limit, bool) or not isinstance(limit, int) or limit < 1:
            raise MemoryValidationError(f"limit must be a positive integer, got {limit!r}")
        try:
            window = Timeframe(context_timeframe).window
        except ValueError as exc:
            raise MemoryValidationError(f"Unknown timeframe: {context_timeframe!r}") from exc

        now = utcnow()
        request = RetrievalRequest(
            query=query.strip(),
            limit=limit,
            since=now - window if window is not None else None,
            enhance=enhance_query,
        )

        stage, memories = await self._run_cascade(request)

        result = RetrievalResult(
            query_id=str(uuid.uuid4()),
            original_query=request.query,
            enhanced_query=request.enhanced_query,
            memories=memories,
            stage=stage,
            timestamp=now,
            learning_insights=list(request.insights),
            temporal_context=request.temporal_context,
        )
        self._remember(result)
        if self._metrics is not None:
            self._metrics.retrieval_stage(stage)
        if self._learning is not None:
            self._learning.learn(
                Interaction(
                    type=InteractionType.MEMORY_RETRIEVAL,
                    data={
                        "query_id": result.query_id,
                        "query": result.original_query,
                        "enhanced_query": result.enhanced_query,
                        "stage": stage,
                        "result_count": len(memories),
                    },
                )
            )
        return result

    async def _run_cascade(self, request: RetrievalRequest) -> tuple[str, list[Memory]]:
        *stages, terminal = self._strategies
        timeout = self._config.timeout_seconds
        try:
            async with asyncio.timeout(timeout):
                for strategy in stages:
                    memories = await self._attempt(strategy, request)
                    if memories:
                        return strategy.name, memories
        except TimeoutError:
            logger.warning(
                "Retrieval for %r exceeded %ss; using %s",
                request.query[:80],
                timeout,
                terminal.name,
            )

        with memory_span("retrieval.stage", stage=terminal.name):
            try:
                memories = await terminal.run(request)
            except Exception as exc:
                logger.error(
                    "Terminal retrieval stage %s failed for %r",
                    terminal.name,
                    request.query[:80],
                    exc_info=True,
                )
                if self._metrics is not None:
                    self._metrics.retrieval_stage_failed(terminal.name)
                raise MemoryUnavailableError() from exc
        logger.info("Retrieval for %r answered by %s", request.query[:80], terminal.name)
        return terminal.name, memories

    async def _attempt(
        self, strategy: RetrievalStrategy, request: RetrievalRequest
    ) -> list[Memory]:
        with memory_span("retrieval.stage", stage=strategy.name):
            try:
                memories = await strategy.run(request)
            except Exception:
                logger.warning(
                    "Retrieval stage %s failed for %r; falling through",
                    strategy.name,
                    request.query[:80],
                    exc_info=True,
                )
                if self._metrics is not None:
                    self._metrics.retrieval_stage_failed(strategy.name)
                return []
        if memories:
            logger.info(
                "Retrieval for %r answered by %s (%d result(s))",
                request.query[:80],
                strategy.name,
                len(memories),
            )
        else:
            logger.info(
                "Retrieval stage %s found nothing for %r", strategy.name, request.query[:80]
            )
        return memories

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    def _remember(self, result: RetrievalResult) -> None:
        self._history[result.query_id] = result
        while len(self._history) > self._config.history_size:
            self._history.popitem(last=False)

    def get_result(self, query_id: str) -> RetrievalResult | None:
        return self._history.get(query_id)

    def history(self) -> list[RetrievalResult]:
        """Remembered results, oldest first."""
        return list(self._history.values())

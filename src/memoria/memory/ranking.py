"""Relevance scoring of candidate memories against a query.

Scoring
-------
``base = 0.7 * term_overlap + 0.3 * exact_phrase``

* ``term_overlap``: fraction of the query's terms (3+ characters) found in
  the content, case-insensitive.
* ``exact_phrase``: 1 when the whole normalised query occurs in the content.

Boosts are multiplicative and each result is clamped to 1:

* recency: ``1 + r`` with ``r`` falling linearly from 0.3 at age 0 to 0 at
  30 days or older;
* feedback: ``1 + f`` with ``f = 0.5 * mean((rating - 1) / 4)`` over the
  memory's recorded relevance ratings (0 without feedback).
"""

from __future__ import annotations

import logging
import uuid
from collections import defaultdict, deque
from collections.abc import Callable, Iterable, Sequence
from datetime import datetime, timedelta

from memoria.memory.text import preprocess_text, query_terms
from memoria.models import Memory, MemoryFeedback, RankedMemory, RankingFactor, utcnow

logger = logging.getLogger(__name__)

TERM_WEIGHT = 0.7
EXACT_WEIGHT = 0.3
MAX_RECENCY_BOOST = 0.3
RECENCY_WINDOW = timedelta(days=30)
FEEDBACK_WEIGHT = 0.5
_REASON_THRESHOLD = 0.1
_DEFAULT_MAX_FEEDBACK = 50


class RelevanceRanking:
    """Scores and orders memories, remembering per-memory feedback.

    Args:
        max_feedback_per_memory: Most recent feedback records kept per memory.
        clock: Returns the current UTC instant; injectable for tests.
    """

    def __init__(
        self,
        *,
        max_feedback_per_memory: int = _DEFAULT_MAX_FEEDBACK,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._max_feedback = max_feedback_per_memory
        self._clock = clock
        self._feedback: defaultdict[uuid.UUID, deque[MemoryFeedback]] = defaultdict(
            lambda: deque(maxlen=self._max_feedback)
        )
        self._boost_cache: dict[uuid.UUID, float] = {}

    # ------------------------------------------------------------------
    # Feedback
    # ------------------------------------------------------------------

    def record_feedback(self, feedback: MemoryFeedback) -> None:
        self._feedback[feedback.memory_id].append(feedback)
        self._boost_cache.pop(feedback.memory_id, None)

    def load_feedback(self, feedback: Iterable[MemoryFeedback]) -> int:
        """Replay persisted feedback (oldest first).  Returns how many records were loaded."""
        count = 0
        for record in feedback:
            self.record_feedback(record)
            count += 1
        return count

    def feedback_for(self, memory_id: uuid.UUID) -> list[MemoryFeedback]:
        return list(self._feedback.get(memory_id, ()))

    def forget(self, memory_id: uuid.UUID) -> None:
        self._feedback.pop(memory_id, None)
        self._boost_cache.pop(memory_id, None)

    def feedback_boost(self, memory_id: uuid.UUID) -> float:
        cached = self._boost_cache.get(memory_id)
        if cached is not None:
            return cached
        records = self._feedback.get(memory_id)
        if not records:
            boost = 0.0
        else:
            mean = sum((r.relevance_rating - 1) / 4 for r in records) / len(records)
            boost = FEEDBACK_WEIGHT * mean
        self._boost_cache[memory_id] = boost
        return boost

    # ------------------------------------------------------------------
    # Scoring
    # ------------------------------------------------------------------

    @staticmethod
    def content_score(memory: Memory, query: str) -> tuple[float, int, int, bool]:
        """Return ``(base, matched_terms, total_terms, exact_phrase)`` for *memory*."""
        content = memory.content.lower()
        terms = query_terms(query)
        matched = sum(1 for term in terms if term in content)
        overlap = matched / len(terms) if terms else 0.0
        phrase = preprocess_text(query).lower()
        exact = bool(phrase) and phrase in content
        base = TERM_WEIGHT * overlap + (EXACT_WEIGHT if exact else 0.0)
        return min(base, 1.0), matched, len(terms), exact

    def recency_boost(self, memory: Memory, now: datetime | None = None) -> float:
        age = (now or self._clock()) - memory.timestamp
        if age <= timedelta(0):
            return MAX_RECENCY_BOOST
        if age >= RECENCY_WINDOW:
            return 0.0
        return MAX_RECENCY_BOOST * (1 - age / RECENCY_WINDOW)

    def score(
        self,
        memory: Memory,
        query: str,
        *,
        recency_boost: bool = True,
        feedback_boost: bool = True,
        include_reasons: bool = False,
        now: datetime | None = None,
    ) -> RankedMemory:
        base, matched, total, exact = self.content_score(memory, query)
        r = self.recency_boost(memory, now) if recency_boost else 0.0
        f = self.feedback_boost(memory.id) if feedback_boost else 0.0

        score = min(1.0, base * (1 + r))
        score = min(1.0, score * (1 + f))

        ranked = RankedMemory.from_memory(memory, score)
        if include_reasons:
            reasons: list[str] = []
            if total:
                reasons.append(f"Matched {matched} of {total} query terms")
            if exact:
                reasons.append("Contains the exact query phrase")
            if r > _REASON_THRESHOLD:
                reasons.append("Boosted due to recency")
            if f > _REASON_THRESHOLD:
                reasons.append("Boosted based on previous feedback")
            ranked.relevance_reasons = reasons
            ranked.factors = [
                RankingFactor(name="Content Match", score=base, weight=1.0),
                RankingFactor(name="Recency", score=r, weight=1.0 if recency_boost else 0.0),
                RankingFactor(name="Feedback", score=f, weight=1.0 if feedback_boost else 0.0),
            ]
        return ranked

    def rank(
        self,
        candidates: Sequence[Memory],
        query: str,
        *,
        min_score: float = 0.3,
        max_results: int = 10,
        include_reasons: bool = False,
        recency_boost: bool = True,
        feedback_boost: bool = True,
    ) -> list[RankedMemory]:
        """Score *candidates*, keep those at or above *min_score*, best first.

        Duplicate candidates (same id) are scored once.
        """
        now = self._clock()
        seen: set[uuid.UUID] = set()
        ranked: list[RankedMemory] = []
        for memory in candidates:
            if memory.id in seen:
                continue
            seen.add(memory.id)
            scored = self.score(
                memory,
                query,
                recency_boost=recency_boost,
                feedback_boost=feedback_boost,
                include_reasons=include_reasons,
                now=now,
            )
            if scored.relevance_score >= min_score:
                ranked.append(scored)
        ranked.sort(key=lambda m: (m.relevance_score, m.timestamp), reverse=True)
        logger.debug(
            "Ranked %d candidate(s) for %r: %d kept", len(seen), query[:80], len(ranked)
        )
        return ranked[:max_results]

"""Interaction-driven learning and query enhancement.

The learning system keeps a set of keyword patterns, each mapping query
keywords onto a memory context label.  ``enhance_query`` appends a
``context:<label>`` hint for every pattern that matches the query and is
confident enough.  Three patterns are seeded; more are learned from feedback:
a highly rated memory (relevance 4 or 5) with a context reinforces a pattern
from each query term to that context, and a poorly rated one (1 or 2) weakens
any existing pattern for the same pair.
"""

from __future__ import annotations

import logging
from collections import Counter, deque
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

from memoria.memory.text import query_terms, split_context_hints
from memoria.models import Interaction, InteractionType, LearnedPattern, utcnow

logger = logging.getLogger(__name__)

_DEFAULT_CONFIDENCE_THRESHOLD = 0.7
_DEFAULT_REINFORCEMENT_STEP = 0.1
_DEFAULT_MAX_INTERACTIONS = 1000
_INITIAL_LEARNED_CONFIDENCE = 0.5
_MAX_LEARNED_CONFIDENCE = 0.95

_STOPWORDS = frozenset(
    {
        "about", "and", "are", "did", "does", "for", "have", "how", "know", "tell",
        "that", "the", "this", "was", "what", "when", "where", "which", "who", "why",
        "with", "you", "your",
    }
)  # fmt: skip


def _seed_patterns(now: datetime) -> list[LearnedPattern]:
    return [
        LearnedPattern(
            id="pattern-1",
            pattern="When user asks about preferences, check context:preferences memories",
            confidence=0.85,
            source="system",
            keywords=("prefer", "like", "favorite", "favourite"),
            context="preferences",
            examples=[
                "What are my preferences?",
                "What do I like?",
                "What are my favorite settings?",
            ],
            timestamp=now - timedelta(days=30),
        ),
        LearnedPattern(
            id="pattern-2",
            pattern="When user mentions work or job, tag as context:professional",
            confidence=0.9,
            source="learning",
            keywords=("work", "job", "professional", "career"),
            context="professional",
            examples=[
                "Tell me about my work history",
                "What's my job title?",
                "Where do I work?",
            ],
            timestamp=now - timedelta(days=15),
        ),
        LearnedPattern(
            id="pattern-3",
            pattern="When user asks about personal information, check context:personal memories",
            confidence=0.8,
            source="learning",
            keywords=("birthday", "personal"),
            context="personal",
            examples=[
                "When is my birthday?",
                "What personal information do you have about me?",
            ],
            timestamp=now - timedelta(days=7),
        ),
    ]


class LearningSystem:
    """Accumulates interactions and rewrites queries with learned context hints.

    Args:
        confidence_threshold: Minimum pattern confidence for ``enhance_query``.
        reinforcement_step: Confidence change applied per rated feedback.
        max_interactions: Interactions retained in memory (oldest dropped).
        clock: Returns the current UTC instant.
    """

    def __init__(
        self,
        *,
        confidence_threshold: float = _DEFAULT_CONFIDENCE_THRESHOLD,
        reinforcement_step: float = _DEFAULT_REINFORCEMENT_STEP,
        max_interactions: int = _DEFAULT_MAX_INTERACTIONS,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._threshold = confidence_threshold
        self._step = reinforcement_step
        self._clock = clock
        self._interactions: deque[Interaction] = deque(maxlen=max_interactions)
        self._patterns: dict[str, LearnedPattern] = {
            p.id: p for p in _seed_patterns(clock())
        }
        self._stage_counts: Counter[str] = Counter()
        self._tool_outcomes: Counter[tuple[str, bool]] = Counter()

    # ------------------------------------------------------------------
    # Learning
    # ------------------------------------------------------------------

    def learn(self, interaction: Interaction) -> bool:
        """Record *interaction* and update patterns.

        Returns:
            ``False`` for an unrecognised interaction type (nothing recorded),
            ``True`` otherwise.
        """
        try:
            kind = InteractionType(interaction.type)
        except ValueError:
            logger.info("Ignoring unknown interaction type: %r", interaction.type)
            return False

        self._interactions.append(interaction)
        data = interaction.data or {}
        if kind is InteractionType.MEMORY_RETRIEVAL:
            stage = data.get("stage")
            if stage:
                self._stage_counts[str(stage)] += 1
        elif kind is InteractionType.MEMORY_FEEDBACK:
            self._learn_from_feedback(data)
        elif kind is InteractionType.TOOL_USAGE:
            tool = data.get("tool_name")
            if tool:
                self._tool_outcomes[(str(tool), bool(data.get("success", True)))] += 1
        return True

    def _learn_from_feedback(self, data: dict[str, Any]) -> None:
        query = data.get("query")
        context = data.get("memory_context")
        rating = data.get("relevance_rating")
        if not query or not context or rating is None:
            return
        clean, _ = split_context_hints(str(query))
        terms = [t for t in query_terms(clean) if t not in _STOPWORDS]
        if rating >= 4:
            for term in terms:
                self._reinforce(term, str(context).lower(), str(query))
        elif rating <= 2:
            for term in terms:
                self._weaken(term, str(context).lower())

    def _reinforce(self, term: str, context: str, example: str) -> None:
        if any(p.context == context and term in p.keywords for p in self._seeded()):
            return
        pattern_id = f"learned-{context}-{term}"
        pattern = self._patterns.get(pattern_id)
        if pattern is None:
            pattern = LearnedPattern(
                id=pattern_id,
                pattern=f"When user mentions {term!r}, check context:{context} memories",
                confidence=_INITIAL_LEARNED_CONFIDENCE,
                source="feedback",
                keywords=(term,),
                context=context,
                timestamp=self._clock(),
            )
            self._patterns[pattern_id] = pattern
            logger.debug("Learned new pattern %s", pattern_id)
        else:
            pattern.confidence = min(_MAX_LEARNED_CONFIDENCE, pattern.confidence + self._step)
            pattern.timestamp = self._clock()
        if example not in pattern.examples:
            pattern.examples.append(example)

    def _weaken(self, term: str, context: str) -> None:
        pattern = self._patterns.get(f"learned-{context}-{term}")
        if pattern is not None:
            pattern.confidence = max(0.0, pattern.confidence - self._step)

    def _seeded(self) -> list[LearnedPattern]:
        return [p for p in self._patterns.values() if p.source != "feedback"]

    # ------------------------------------------------------------------
    # Application
    # ------------------------------------------------------------------

    def matching_patterns(self, text: str) -> list[LearnedPattern]:
        """Confident patterns whose keywords prefix any term of *text*."""
        terms = query_terms(text)
        if not terms:
            return []
        return [
            pattern
            for pattern in self._patterns.values()
            if pattern.context
            and pattern.confidence >= self._threshold
            and any(term.startswith(k) for term in terms for k in pattern.keywords)
        ]

    def enhance_query(self, text: str) -> str:
        """Append a ``context:<label>`` hint for every confidently matching pattern.

        Hints already present in *text* are not repeated.
        """
        _, present = split_context_hints(text)
        additions: list[str] = []
        for pattern in self.matching_patterns(text):
            label = pattern.context
            if label and label not in present and label not in additions:
                additions.append(label)
        if not additions:
            return text
        return " ".join([text, *(f"context:{label}" for label in additions)])

    def get_patterns(self) -> list[LearnedPattern]:
        return sorted(self._patterns.values(), key=lambda p: p.confidence, reverse=True)

    def get_interactions(self) -> list[Interaction]:
        return list(self._interactions)

    def stats(self) -> dict[str, Any]:
        return {
            "interactions": len(self._interactions),
            "patterns": len(self._patterns),
            "retrieval_stages": dict(self._stage_counts),
            "tool_usage": {
                f"{tool}:{'ok' if ok else 'failed'}": n
                for (tool, ok), n in self._tool_outcomes.items()
            },
        }

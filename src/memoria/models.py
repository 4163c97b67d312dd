"""Data models for the memory engine.

Defines the Memory, SemanticFact and MemoryConnection dataclasses that map
1:1 to their database tables, plus the derived records (ranked memories,
feedback, learned patterns, temporal context, batch and pagination results)
that flow between components.  Includes JSON serialisation helpers for tool
responses and database round-tripping.
"""

from __future__ import annotations

import enum
import json
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

MIN_IMPORTANCE = 1
MAX_IMPORTANCE = 10
DEFAULT_IMPORTANCE = 5


def utcnow() -> datetime:
    """Return the current instant as a timezone-aware UTC datetime."""
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Parsing helpers
# ---------------------------------------------------------------------------


def _parse_uuid(value: Any) -> uuid.UUID:
    """Parse a UUID from a string or UUID object."""
    if isinstance(value, uuid.UUID):
        return value
    return uuid.UUID(str(value))


def _parse_optional_uuid(value: Any) -> uuid.UUID | None:
    if value is None:
        return None
    return _parse_uuid(value)


def parse_datetime(value: Any) -> datetime:
    """Parse a datetime, assuming UTC for naive values."""
    if not isinstance(value, datetime):
        value = datetime.fromisoformat(str(value))
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value


def _parse_optional_datetime(value: Any) -> datetime | None:
    if value is None:
        return None
    return parse_datetime(value)


def parse_jsonb(value: Any) -> dict[str, Any]:
    """Parse a JSONB value (may be a string, None, or already a dict)."""
    if value is None:
        return {}
    if isinstance(value, str):
        return json.loads(value)
    if isinstance(value, dict):
        return value
    return dict(value)


def _row_get(row: Any, key: str, default: Any = None) -> Any:
    """Read *key* from an asyncpg Record or mapping, tolerating absent columns."""
    try:
        return row[key]
    except (KeyError, IndexError):
        return default


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


# ---------------------------------------------------------------------------
# Persisted records
# ---------------------------------------------------------------------------


@dataclass
class Memory:
    """A single episodic memory.

    Maps 1:1 to the ``episodic_memories`` table.  ``id`` and ``timestamp`` are
    assigned once at creation and never changed by updates.
    """

    content: str
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    timestamp: datetime = field(default_factory=utcnow)
    importance: int = DEFAULT_IMPORTANCE
    context: str | None = None
    source: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    embedding_ref: uuid.UUID | None = None

    def to_dict(self) -> dict[str, Any]:
        """Serialise to a JSON-safe dictionary."""
        return {
            "id": str(self.id),
            "content": self.content,
            "timestamp": self.timestamp.isoformat(),
            "importance": self.importance,
            "context": self.context,
            "source": self.source,
            "metadata": self.metadata,
            "embedding_ref": str(self.embedding_ref) if self.embedding_ref else None,
        }

    @classmethod
    def from_row(cls, row: Any) -> Memory:
        """Reconstruct a Memory from a database row (asyncpg Record or mapping)."""
        return cls(
            id=_parse_uuid(row["id"]),
            content=row["content"],
            timestamp=parse_datetime(row["timestamp"]),
            importance=int(_row_get(row, "importance", DEFAULT_IMPORTANCE)),
            context=_row_get(row, "context"),
            source=_row_get(row, "source"),
            metadata=parse_jsonb(_row_get(row, "metadata")),
            embedding_ref=_parse_optional_uuid(_row_get(row, "embedding_ref")),
        )


@dataclass
class StoredMemory:
    """Identity of a freshly stored memory."""

    id: uuid.UUID
    timestamp: datetime
    embedding_ref: uuid.UUID | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "timestamp": self.timestamp.isoformat(),
            "embedding_ref": str(self.embedding_ref) if self.embedding_ref else None,
        }


@dataclass
class SemanticFact:
    """A distilled fact with a confidence level.

    Maps 1:1 to the ``semantic_memories`` table.  Links to the memories it
    was derived from live only in ``metadata``.
    """

    fact: str
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    confidence: float = 1.0
    first_observed: datetime = field(default_factory=utcnow)
    last_confirmed: datetime | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "fact": self.fact,
            "confidence": self.confidence,
            "first_observed": self.first_observed.isoformat(),
            "last_confirmed": _iso(self.last_confirmed),
            "metadata": self.metadata,
        }

    @classmethod
    def from_row(cls, row: Any) -> SemanticFact:
        return cls(
            id=_parse_uuid(row["id"]),
            fact=row["fact"],
            confidence=float(row["confidence"]),
            first_observed=parse_datetime(row["first_observed"]),
            last_confirmed=_parse_optional_datetime(_row_get(row, "last_confirmed")),
            metadata=parse_jsonb(_row_get(row, "metadata")),
        )


@dataclass
class MemoryConnection:
    """A directed, typed edge between two episodic memories.

    Maps 1:1 to the ``memory_connections`` table; rows vanish when either
    endpoint memory is deleted.
    """

    source_id: uuid.UUID
    target_id: uuid.UUID
    relationship: str
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    strength: float = 0.5
    created_at: datetime = field(default_factory=utcnow)
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "source_id": str(self.source_id),
            "target_id": str(self.target_id),
            "relationship": self.relationship,
            "strength": self.strength,
            "created_at": self.created_at.isoformat(),
            "metadata": self.metadata,
        }

    @classmethod
    def from_row(cls, row: Any) -> MemoryConnection:
        return cls(
            id=_parse_uuid(row["id"]),
            source_id=_parse_uuid(row["source_id"]),
            target_id=_parse_uuid(row["target_id"]),
            relationship=row["relationship"],
            strength=float(row["strength"]),
            created_at=parse_datetime(row["created_at"]),
            metadata=parse_jsonb(_row_get(row, "metadata")),
        )


@dataclass
class Embedding:
    """A stored vector keyed by the id of the content it was computed from."""

    id: uuid.UUID
    vector: list[float]
    text: str
    timestamp: datetime = field(default_factory=utcnow)
    type: str = "memory"
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class SimilarityResult:
    """One nearest-neighbour hit from the embedding index."""

    id: uuid.UUID
    score: float
    text: str
    type: str = "memory"
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class MemoryFeedback:
    """A user's rating of how useful a retrieved memory was for a query."""

    query_id: str
    memory_id: uuid.UUID
    relevance_rating: int
    accuracy_rating: int
    comment: str | None = None
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "query_id": self.query_id,
            "memory_id": str(self.memory_id),
            "relevance_rating": self.relevance_rating,
            "accuracy_rating": self.accuracy_rating,
            "comment": self.comment,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_row(cls, row: Any) -> MemoryFeedback:
        return cls(
            query_id=row["query_id"],
            memory_id=_parse_uuid(row["memory_id"]),
            relevance_rating=int(row["relevance_rating"]),
            accuracy_rating=int(row["accuracy_rating"]),
            comment=_row_get(row, "comment"),
            created_at=parse_datetime(row["created_at"]),
        )


# ---------------------------------------------------------------------------
# Derived records
# ---------------------------------------------------------------------------


@dataclass
class RankingFactor:
    """One named contribution to a relevance score."""

    name: str
    score: float
    weight: float

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "score": self.score, "weight": self.weight}


@dataclass
class RankedMemory(Memory):
    """A memory annotated with a query-specific relevance score.  Never persisted."""

    relevance_score: float = 0.0
    relevance_reasons: list[str] | None = None
    factors: list[RankingFactor] | None = None

    @classmethod
    def from_memory(cls, memory: Memory, score: float) -> RankedMemory:
        return cls(
            id=memory.id,
            content=memory.content,
            timestamp=memory.timestamp,
            importance=memory.importance,
            context=memory.context,
            source=memory.source,
            metadata=memory.metadata,
            embedding_ref=memory.embedding_ref,
            relevance_score=score,
        )

    def to_dict(self) -> dict[str, Any]:
        d = super().to_dict()
        d["relevance_score"] = self.relevance_score
        if self.relevance_reasons is not None:
            d["relevance_reasons"] = self.relevance_reasons
        if self.factors is not None:
            d["factors"] = [f.to_dict() for f in self.factors]
        return d


@dataclass
class LearnedPattern:
    """A keyword pattern that maps queries onto a context label."""

    id: str
    pattern: str
    confidence: float
    source: str
    keywords: tuple[str, ...] = ()
    context: str | None = None
    examples: list[str] = field(default_factory=list)
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "pattern": self.pattern,
            "confidence": self.confidence,
            "source": self.source,
            "keywords": list(self.keywords),
            "context": self.context,
            "examples": self.examples,
            "timestamp": self.timestamp.isoformat(),
        }


class InteractionType(enum.StrEnum):
    """Interaction kinds the learning system understands."""

    CONVERSATION = "conversation"
    MEMORY_RETRIEVAL = "memory_retrieval"
    MEMORY_FEEDBACK = "memory_feedback"
    TOOL_USAGE = "tool_usage"


@dataclass
class Interaction:
    """A single event fed to the learning system."""

    type: str
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)


class TimeOfDay(enum.StrEnum):
    MORNING = "morning"
    AFTERNOON = "afternoon"
    EVENING = "evening"
    NIGHT = "night"


class Season(enum.StrEnum):
    SPRING = "spring"
    SUMMER = "summer"
    FALL = "fall"
    WINTER = "winter"


@dataclass
class RecentActivity:
    """Session bookkeeping maintained by the temporal context manager."""

    last_interaction_type: str | None = None
    last_interaction_timestamp: datetime | None = None
    active_session: bool = False
    session_start: datetime | None = None
    session_duration: timedelta = timedelta(0)

    def to_dict(self) -> dict[str, Any]:
        return {
            "last_interaction_type": self.last_interaction_type,
            "last_interaction_timestamp": _iso(self.last_interaction_timestamp),
            "active_session": self.active_session,
            "session_duration_seconds": self.session_duration.total_seconds(),
        }


@dataclass
class TemporalContext:
    """Calendar and session features for the current moment."""

    current_time: datetime
    year: int
    month: int
    day: int
    day_of_week: int
    hour: int
    minute: int
    is_weekend: bool
    is_work_hours: bool
    time_of_day: TimeOfDay
    season: Season
    timezone: str
    recent_activity: RecentActivity = field(default_factory=RecentActivity)

    def to_dict(self) -> dict[str, Any]:
        return {
            "current_time": self.current_time.isoformat(),
            "year": self.year,
            "month": self.month,
            "day": self.day,
            "day_of_week": self.day_of_week,
            "hour": self.hour,
            "minute": self.minute,
            "is_weekend": self.is_weekend,
            "is_work_hours": self.is_work_hours,
            "time_of_day": self.time_of_day.value,
            "season": self.season.value,
            "timezone": self.timezone,
            "recent_activity": self.recent_activity.to_dict(),
        }


# ---------------------------------------------------------------------------
# Filters, pagination and bulk results
# ---------------------------------------------------------------------------


@dataclass
class MemoryFilters:
    """Filter vocabulary shared by ``query`` and paginated listing.

    ``start_time``/``end_time`` form a half-open ``[start, end)`` interval.
    """

    context: str | None = None
    source: str | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None
    min_importance: int | None = None
    max_importance: int | None = None
    content_search: str | None = None
    sort_by_importance: bool = False


@dataclass
class Pagination:
    """Page request: either a 1-based ``page`` or an opaque ``cursor``."""

    page: int = 1
    page_size: int = 20
    cursor: str | None = None
    include_total: bool = True


@dataclass
class PaginationInfo:
    page: int
    page_size: int
    total_items: int | None
    total_pages: int | None
    has_prev_page: bool
    has_next_page: bool
    prev_page: int | None
    next_page: int | None
    next_cursor: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "page": self.page,
            "page_size": self.page_size,
            "total_items": self.total_items,
            "total_pages": self.total_pages,
            "has_prev_page": self.has_prev_page,
            "has_next_page": self.has_next_page,
            "prev_page": self.prev_page,
            "next_page": self.next_page,
            "next_cursor": self.next_cursor,
        }


@dataclass
class PaginatedResult:
    items: list[Memory]
    pagination: PaginationInfo

    def to_dict(self) -> dict[str, Any]:
        return {
            "items": [m.to_dict() for m in self.items],
            "pagination": self.pagination.to_dict(),
        }


@dataclass
class BatchOperationResult:
    """Outcome of a bulk operation.  ``errors`` maps input index to reason."""

    successful: int = 0
    failed: int = 0
    successful_ids: list[uuid.UUID] = field(default_factory=list)
    errors: dict[int, str] = field(default_factory=dict)
    time_taken_ms: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "successful": self.successful,
            "failed": self.failed,
            "successful_ids": [str(i) for i in self.successful_ids],
            "errors": {str(k): v for k, v in sorted(self.errors.items())},
            "time_taken_ms": self.time_taken_ms,
        }


# ---------------------------------------------------------------------------
# Retrieval
# ---------------------------------------------------------------------------


class Timeframe(enum.StrEnum):
    """How far back retrieval looks for candidates."""

    IMMEDIATE = "immediate"
    RECENT = "recent"
    MEDIUM = "medium"
    LONG_TERM = "long_term"
    ALL = "all"

    @property
    def window(self) -> timedelta | None:
        return _TIMEFRAME_WINDOWS[self]


_TIMEFRAME_WINDOWS: dict[Timeframe, timedelta | None] = {
    Timeframe.IMMEDIATE: timedelta(minutes=15),
    Timeframe.RECENT: timedelta(hours=6),
    Timeframe.MEDIUM: timedelta(days=7),
    Timeframe.LONG_TERM: timedelta(days=90),
    Timeframe.ALL: None,
}


@dataclass
class RetrievalResult:
    """Everything the cascade knows about one retrieval call."""

    query_id: str
    original_query: str
    enhanced_query: str
    memories: list[Memory]
    stage: str
    timestamp: datetime = field(default_factory=utcnow)
    learning_insights: list[str] = field(default_factory=list)
    temporal_context: TemporalContext | None = None
    feedback_collected: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "query_id": self.query_id,
            "original_query": self.original_query,
            "enhanced_query": self.enhanced_query,
            "memories": [m.to_dict() for m in self.memories],
            "stage": self.stage,
            "timestamp": self.timestamp.isoformat(),
            "learning_insights": self.learning_insights,
            "temporal_context": (
                self.temporal_context.to_dict() if self.temporal_context else None
            ),
            "feedback_collected": self.feedback_collected,
        }

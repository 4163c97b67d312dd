"""Memory writing tools: store one, store many, rate a retrieval."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from memoria.tools._helpers import _parse_id

if TYPE_CHECKING:
    from memoria.memory.system import MemorySystem

logger = logging.getLogger(__name__)


async def memory_store(
    system: MemorySystem,
    content: str,
    *,
    importance: int | None = None,
    context: str | None = None,
    source: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Store one memory.

    Returns ``{"id", "timestamp", "embedding_ref"}``; ``embedding_ref`` is
    ``None`` when the vector could not be generated.
    """
    stored = await system.store_memory(
        content, importance=importance, context=context, source=source, metadata=metadata
    )
    return stored.to_dict()


async def memory_store_batch(
    system: MemorySystem,
    items: list[dict[str, Any]],
    *,
    source: str | None = None,
    context: str | None = None,
    importance: int | None = None,
    metadata: dict[str, Any] | None = None,
    generate_embeddings: bool | None = None,
) -> dict[str, Any]:
    """Store many memories; per-item failures are reported under ``errors``, not raised."""
    result = await system.store_memories_batch(
        items,
        source=source,
        context=context,
        importance=importance,
        metadata=metadata,
        generate_embeddings=generate_embeddings,
    )
    return result.to_dict()


async def memory_feedback(
    system: MemorySystem,
    query_id: str,
    memory_id: str,
    relevance_rating: int,
    accuracy_rating: int,
    *,
    comment: str | None = None,
) -> dict[str, Any]:
    feedback = await system.record_feedback(
        query_id, _parse_id(memory_id), relevance_rating, accuracy_rating, comment
    )
    return {"recorded": True, "feedback": feedback.to_dict()}

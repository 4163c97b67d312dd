"""Memory reading tools: the retrieval cascade, paged listing and lookup by id."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from memoria.models import MemoryFilters, Pagination, Timeframe
from memoria.tools._helpers import _parse_id, _parse_time

if TYPE_CHECKING:
    from memoria.memory.system import MemorySystem

logger = logging.getLogger(__name__)


async def memory_retrieve(
    system: MemorySystem,
    query: str,
    *,
    limit: int | None = None,
    context_timeframe: str = Timeframe.ALL,
    enhance_query: bool = True,
) -> dict[str, Any]:
    """Run the retrieval cascade and serialize the full result.

    The returned ``query_id`` is what ``memory_feedback`` expects.
    """
    result = await system.retrieve_with_details(
        query, limit=limit, context_timeframe=context_timeframe, enhance_query=enhance_query
    )
    return result.to_dict()


async def memory_list(
    system: MemorySystem,
    *,
    context: str | None = None,
    source: str | None = None,
    start_time: str | None = None,
    end_time: str | None = None,
    min_importance: int | None = None,
    max_importance: int | None = None,
    search: str | None = None,
    sort_by_importance: bool = False,
    page: int = 1,
    page_size: int = 20,
    cursor: str | None = None,
    include_total: bool = True,
) -> dict[str, Any]:
    filters = MemoryFilters(
        context=context,
        source=source,
        start_time=_parse_time(start_time, "start_time"),
        end_time=_parse_time(end_time, "end_time"),
        min_importance=min_importance,
        max_importance=max_importance,
        content_search=search,
        sort_by_importance=sort_by_importance,
    )
    pagination = Pagination(
        page=page, page_size=page_size, cursor=cursor, include_total=include_total
    )
    result = await system.list_memories_paginated(filters, pagination)
    return result.to_dict()


async def memory_get(system: MemorySystem, memory_id: str) -> dict[str, Any] | None:
    memory = await system.get_memory(_parse_id(memory_id))
    if memory is None:
        return None
    return memory.to_dict()

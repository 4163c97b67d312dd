"""Memory tools and their MCP registration.

The tool functions take the :class:`~memoria.memory.system.MemorySystem`
first and return JSON-serialisable data.  :func:`register_tools` wraps them
as closures on an MCP server, stripping ``system`` from the MCP-visible
signature and injecting it at call time.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Annotated, Any, Literal

from pydantic import Field

from memoria.tools.management import memory_forget, memory_stats
from memoria.tools.reading import memory_get, memory_list, memory_retrieve
from memoria.tools.writing import memory_feedback, memory_store, memory_store_batch

if TYPE_CHECKING:
    from memoria.memory.system import MemorySystem

logger = logging.getLogger(__name__)

TOOL_NAMES = (
    "memory_store",
    "memory_retrieve",
    "memory_feedback",
    "memory_list",
    "memory_store_batch",
    "memory_get",
    "memory_forget",
    "memory_stats",
)


def register_tools(mcp: Any, system: MemorySystem) -> None:
    """Register every memory tool on *mcp* (anything with a ``tool()`` decorator)."""
    # Sub-modules rather than functions, so the closure names below can match
    # the tool names without shadowing what they delegate to.
    from memoria.tools import management as _management
    from memoria.tools import reading as _reading
    from memoria.tools import writing as _writing

    # --- Writing tools ---

    @mcp.tool()
    async def memory_store(
        content: Annotated[str, Field(description="Text of the memory to store.")],
        importance: Annotated[
            int | None, Field(description="Importance 1-10 (default 5).", ge=1, le=10)
        ] = None,
        context: Annotated[
            str | None, Field(description="Context label, e.g. `preferences`.")
        ] = None,
        source: Annotated[str | None, Field(description="Where the memory came from.")] = None,
        metadata: Annotated[
            dict[str, Any] | None, Field(description="Arbitrary JSON object.")
        ] = None,
    ) -> dict[str, Any]:
        """Store a single memory."""
        return await _writing.memory_store(
            system,
            content,
            importance=importance,
            context=context,
            source=source,
            metadata=metadata,
        )

    @mcp.tool()
    async def memory_store_batch(
        items: Annotated[
            list[dict[str, Any]],
            Field(description="Objects with `content` and optional importance/context/source."),
        ],
        source: str | None = None,
        context: str | None = None,
        importance: int | None = None,
        metadata: dict[str, Any] | None = None,
        generate_embeddings: bool | None = None,
    ) -> dict[str, Any]:
        """Store many memories at once; failed items are listed under `errors`."""
        return await _writing.memory_store_batch(
            system,
            items,
            source=source,
            context=context,
            importance=importance,
            metadata=metadata,
            generate_embeddings=generate_embeddings,
        )

    @mcp.tool()
    async def memory_feedback(
        query_id: Annotated[str, Field(description="`query_id` from memory_retrieve.")],
        memory_id: Annotated[str, Field(description="UUID of the rated memory.")],
        relevance_rating: Annotated[int, Field(description="Relevance 1-5.", ge=1, le=5)],
        accuracy_rating: Annotated[int, Field(description="Accuracy 1-5.", ge=1, le=5)],
        comment: Annotated[str | None, Field(description="Optional free text.")] = None,
    ) -> dict[str, Any]:
        """Rate how useful a retrieved memory was."""
        return await _writing.memory_feedback(
            system, query_id, memory_id, relevance_rating, accuracy_rating, comment=comment
        )

    # --- Reading tools ---

    @mcp.tool()
    async def memory_retrieve(
        query: Annotated[str, Field(description="Natural-language query.")],
        limit: Annotated[int | None, Field(description="Maximum results.", ge=1)] = None,
        context_timeframe: Annotated[
            Literal["immediate", "recent", "medium", "long_term", "all"],
            Field(description="How far back to look for candidates."),
        ] = "all",
        enhance_query: Annotated[
            bool, Field(description="Apply learned context hints to the query.")
        ] = True,
    ) -> dict[str, Any]:
        """Retrieve the memories most relevant to a query."""
        return await _reading.memory_retrieve(
            system,
            query,
            limit=limit,
            context_timeframe=context_timeframe,
            enhance_query=enhance_query,
        )

    @mcp.tool()
    async def memory_list(
        context: str | None = None,
        source: str | None = None,
        start_time: Annotated[
            str | None, Field(description="Inclusive ISO-8601 lower bound.")
        ] = None,
        end_time: Annotated[
            str | None, Field(description="Exclusive ISO-8601 upper bound.")
        ] = None,
        min_importance: int | None = None,
        max_importance: int | None = None,
        search: Annotated[str | None, Field(description="Substring of content.")] = None,
        sort_by_importance: bool = False,
        page: int = 1,
        page_size: int = 20,
        cursor: Annotated[
            str | None, Field(description="`next_cursor` from a previous page.")
        ] = None,
        include_total: bool = True,
    ) -> dict[str, Any]:
        """List memories page by page."""
        return await _reading.memory_list(
            system,
            context=context,
            source=source,
            start_time=start_time,
            end_time=end_time,
            min_importance=min_importance,
            max_importance=max_importance,
            search=search,
            sort_by_importance=sort_by_importance,
            page=page,
            page_size=page_size,
            cursor=cursor,
            include_total=include_total,
        )

    @mcp.tool()
    async def memory_get(memory_id: str) -> dict[str, Any] | None:
        """Fetch one memory by id."""
        return await _reading.memory_get(system, memory_id)

    # --- Management tools ---

    @mcp.tool()
    async def memory_forget(memory_id: str) -> dict[str, Any]:
        """Delete one memory by id."""
        return await _management.memory_forget(system, memory_id)

    @mcp.tool()
    async def memory_stats() -> dict[str, Any]:
        """Counts and cache/learning statistics."""
        return await _management.memory_stats(system)

    logger.info("Registered %d memory tools", len(TOOL_NAMES))


__all__ = [
    "TOOL_NAMES",
    "memory_feedback",
    "memory_forget",
    "memory_get",
    "memory_list",
    "memory_retrieve",
    "memory_stats",
    "memory_store",
    "memory_store_batch",
    "register_tools",
]

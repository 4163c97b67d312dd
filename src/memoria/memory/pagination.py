"""Offset- and cursor-paginated listing of memories.

Offset pages are addressed by 1-based page number.  Cursor pages continue
from an opaque token that encodes the last row's sort key, so rows inserted
while a client is paging never shift later pages.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import math
import uuid
from dataclasses import replace
from datetime import datetime
from typing import TYPE_CHECKING, Any

from memoria.errors import MemoryValidationError
from memoria.memory.ports import SortKey, sort_key
from memoria.memory.validation import validate_filters, validate_pagination
from memoria.models import (
    MAX_IMPORTANCE,
    MemoryFilters,
    PaginatedResult,
    Pagination,
    PaginationInfo,
    parse_datetime,
)

if TYPE_CHECKING:
    from memoria.memory.ports import MemoryRepository

logger = logging.getLogger(__name__)

_DEFAULT_PAGE_SIZE = 20


# ---------------------------------------------------------------------------
# Cursor encoding
# ---------------------------------------------------------------------------


def encode_cursor(key: SortKey, page: int) -> str:
    """Encode a keyset position (and the page it starts) as a URL-safe token."""
    if len(key) == 3:
        payload: dict[str, Any] = {"i": key[0], "t": key[1].isoformat(), "id": str(key[2])}
    else:
        payload = {"t": key[0].isoformat(), "id": str(key[1])}
    payload["p"] = page
    raw = json.dumps(payload, separators=(",", ":")).encode()
    return base64.urlsafe_b64encode(raw).decode().rstrip("=")


def decode_cursor(cursor: str, *, by_importance: bool) -> tuple[SortKey, int]:
    """Decode a token produced by :func:`encode_cursor`.

    Raises:
        MemoryValidationError: If the token is malformed or was issued for
            the other sort order.
    """
    try:
        padded = cursor + "=" * (-len(cursor) % 4)
        payload = json.loads(base64.urlsafe_b64decode(padded.encode()))
        timestamp: datetime = parse_datetime(payload["t"])
        memory_id = uuid.UUID(payload["id"])
        page = int(payload.get("p", 2))
    except (ValueError, KeyError, TypeError, binascii.Error) as exc:
        raise MemoryValidationError(f"Invalid pagination cursor: {cursor!r}") from exc

    if by_importance != ("i" in payload):
        raise MemoryValidationError("Cursor was issued for a different sort order")
    if by_importance:
        return (int(payload["i"]), timestamp, memory_id), page
    return (timestamp, memory_id), page


# ---------------------------------------------------------------------------
# Listing
# ---------------------------------------------------------------------------


class PaginatedMemoryRetrieval:
    """Paged listing over the memory repository with composable filters."""

    def __init__(self, repository: MemoryRepository) -> None:
        self._repo = repository

    async def list(
        self, filters: MemoryFilters | None = None, pagination: Pagination | None = None
    ) -> PaginatedResult:
        """Return one page of memories matching *filters*.

        When ``pagination.cursor`` is set it takes precedence over
        ``pagination.page``.  ``has_next_page`` is exact when the total is
        counted and otherwise means "this page came back full".

        Raises:
            MemoryValidationError: For a bad filter, page, page size or cursor.
        """
        pagination = pagination or Pagination()
        validate_filters(filters)
        validate_pagination(pagination)
        size = pagination.page_size
        by_importance = filters is not None and filters.sort_by_importance

        if pagination.cursor:
            after, page = decode_cursor(pagination.cursor, by_importance=by_importance)
            items = await self._repo.query(filters, limit=size, after=after)
        else:
            page = pagination.page
            items = await self._repo.query(filters, limit=size, offset=(page - 1) * size)

        total_items: int | None = None
        total_pages: int | None = None
        if pagination.include_total:
            total_items = await self._repo.count(filters)
            total_pages = math.ceil(total_items / size)
            has_next = page < total_pages
        else:
            has_next = len(items) == size

        next_cursor = None
        if has_next and items:
            next_cursor = encode_cursor(sort_key(items[-1], filters), page + 1)
        info = PaginationInfo(
            page=page,
            page_size=size,
            total_items=total_items,
            total_pages=total_pages,
            has_prev_page=page > 1,
            has_next_page=has_next,
            prev_page=page - 1 if page > 1 else None,
            next_page=page + 1 if has_next else None,
            next_cursor=next_cursor,
        )
        logger.debug("Listed page %d (%d items, total=%s)", page, len(items), total_items)
        return PaginatedResult(items=items, pagination=info)

    # ------------------------------------------------------------------
    # Shortcuts
    # ------------------------------------------------------------------

    async def list_by_context(
        self, context: str, page: int = 1, page_size: int = _DEFAULT_PAGE_SIZE
    ) -> PaginatedResult:
        return await self.list(MemoryFilters(context=context), Pagination(page, page_size))

    async def list_by_source(
        self, source: str, page: int = 1, page_size: int = _DEFAULT_PAGE_SIZE
    ) -> PaginatedResult:
        return await self.list(MemoryFilters(source=source), Pagination(page, page_size))

    async def list_by_importance(
        self,
        min_importance: int,
        max_importance: int = MAX_IMPORTANCE,
        page: int = 1,
        page_size: int = _DEFAULT_PAGE_SIZE,
    ) -> PaginatedResult:
        """Memories in an importance band, most important first."""
        filters = MemoryFilters(
            min_importance=min_importance, max_importance=max_importance, sort_by_importance=True
        )
        return await self.list(filters, Pagination(page, page_size))

    async def list_by_time_range(
        self,
        start_time: datetime,
        end_time: datetime,
        page: int = 1,
        page_size: int = _DEFAULT_PAGE_SIZE,
    ) -> PaginatedResult:
        filters = MemoryFilters(start_time=start_time, end_time=end_time)
        return await self.list(filters, Pagination(page, page_size))

    async def search(
        self,
        text: str,
        filters: MemoryFilters | None = None,
        page: int = 1,
        page_size: int = _DEFAULT_PAGE_SIZE,
    ) -> PaginatedResult:
        """Substring search on content, optionally combined with other filters."""
        if not text or not text.strip():
            raise MemoryValidationError("Search text must be a non-empty string")
        combined = replace(filters or MemoryFilters(), content_search=text.strip())
        return await self.list(combined, Pagination(page, page_size))

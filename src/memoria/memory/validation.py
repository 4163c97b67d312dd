"""Input validation shared by the store, batch and listing components.

Every check runs before any I/O and raises :class:`MemoryValidationError`.
"""

from __future__ import annotations

from typing import Any

from memoria.errors import MemoryValidationError
from memoria.models import MAX_IMPORTANCE, MIN_IMPORTANCE, MemoryFilters, Pagination

MAX_PAGE_SIZE = 100


def validate_content(content: Any) -> str:
    if not isinstance(content, str) or not content.strip():
        raise MemoryValidationError("Memory content must be a non-empty string")
    return content


def validate_importance(importance: Any) -> int:
    if isinstance(importance, bool) or not isinstance(importance, int):
        raise MemoryValidationError(f"Importance must be an integer, got {importance!r}")
    if not MIN_IMPORTANCE <= importance <= MAX_IMPORTANCE:
        raise MemoryValidationError(
            f"Importance {importance} out of range [{MIN_IMPORTANCE}, {MAX_IMPORTANCE}]"
        )
    return importance


def validate_metadata(metadata: Any) -> dict[str, Any]:
    if metadata is None:
        return {}
    if not isinstance(metadata, dict):
        raise MemoryValidationError(f"Metadata must be a mapping, got {type(metadata).__name__}")
    return metadata


def validate_filters(filters: MemoryFilters | None) -> None:
    if filters is None:
        return
    for bound in (filters.min_importance, filters.max_importance):
        if bound is not None:
            validate_importance(bound)
    if (
        filters.min_importance is not None
        and filters.max_importance is not None
        and filters.min_importance > filters.max_importance
    ):
        raise MemoryValidationError(
            f"min_importance ({filters.min_importance}) exceeds "
            f"max_importance ({filters.max_importance})"
        )
    if filters.start_time is not None and filters.end_time is not None:
        if filters.start_time > filters.end_time:
            raise MemoryValidationError("start_time must not be after end_time")


def validate_pagination(pagination: Pagination) -> None:
    if isinstance(pagination.page, bool) or not isinstance(pagination.page, int):
        raise MemoryValidationError(f"Page must be an integer, got {pagination.page!r}")
    if pagination.page < 1:
        raise MemoryValidationError(f"Page must be >= 1, got {pagination.page}")
    if not 1 <= pagination.page_size <= MAX_PAGE_SIZE:
        raise MemoryValidationError(
            f"Page size must be between 1 and {MAX_PAGE_SIZE}, got {pagination.page_size}"
        )


def validate_limit(limit: Any) -> int:
    if isinstance(limit, bool) or not isinstance(limit, int) or limit < 1:
        raise MemoryValidationError(f"Limit must be a positive integer, got {limit!r}")
    return limit

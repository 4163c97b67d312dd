"""Argument parsing shared by the tool modules."""

from __future__ import annotations

import uuid
from datetime import datetime

from memoria.errors import MemoryValidationError


def _parse_id(value: str, name: str = "memory_id") -> uuid.UUID:
    try:
        return uuid.UUID(str(value))
    except ValueError as exc:
        raise MemoryValidationError(f"{name} is not a valid UUID: {value!r}") from exc


def _parse_time(value: str | None, name: str) -> datetime | None:
    if value is None:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError as exc:
        raise MemoryValidationError(f"{name} is not an ISO-8601 timestamp: {value!r}") from exc

"""Error taxonomy for the memory engine.

Only :class:`MemoryUnavailableError` ever reaches the conversation loop from
the retrieval path; everything else is either raised before any I/O
(validation) or absorbed by the component that owns the fallback.
"""

from __future__ import annotations


class MemoriaError(Exception):
    """Base class for all memory engine errors."""


class MemoryValidationError(MemoriaError, ValueError):
    """Raised when a filter, pagination request, or item is malformed."""


class MemoryStorageError(MemoriaError):
    """Raised when persistence is unreachable or the schema does not match."""


class EmbeddingError(MemoriaError):
    """Raised when the embedding model call fails."""


class MemoryUnavailableError(MemoriaError):
    """Raised when every retrieval stage, including the terminal fallback, failed."""

    def __init__(self, message: str = "Memory is temporarily unavailable") -> None:
        super().__init__(message)

"""Test support utilities for the memoria package.

In-process fakes for the storage port and the embedding model.  They have no
dependency on pytest so they can be imported from any test context, and they
are small enough to back demos or local experiments without PostgreSQL.
"""

from __future__ import annotations

from memoria.testing.fakes import (
    FailingEmbedder,
    HashingEmbeddingEngine,
    InMemoryMemoryRepository,
    RejectingEmbeddingIndex,
)

__all__ = [
    "FailingEmbedder",
    "HashingEmbeddingEngine",
    "InMemoryMemoryRepository",
    "RejectingEmbeddingIndex",
]

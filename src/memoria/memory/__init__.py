"""Memory engine components.

Re-exports the public classes so that ``from memoria.memory import X`` works
as expected.
"""

from memoria.memory.batch import BatchMemoryManager
from memoria.memory.cache import CacheStats, MemoryCache
from memoria.memory.embedding import (
    EmbeddingEngine,
    EmbeddingIndex,
    InMemoryEmbeddingIndex,
    PgVectorEmbeddingIndex,
)
from memoria.memory.learning import LearningSystem
from memoria.memory.pagination import PaginatedMemoryRetrieval
from memoria.memory.ports import MemoryRepository
from memoria.memory.ranking import RelevanceRanking
from memoria.memory.repository import PostgresMemoryRepository
from memoria.memory.retrieval import RetrievalOrchestrator, RetrievalRequest, RetrievalStrategy
from memoria.memory.store import MemoryStore
from memoria.memory.system import MemorySystem, create_memory_system
from memoria.memory.temporal import TemporalContextManager

__all__ = [
    "BatchMemoryManager",
    "CacheStats",
    "EmbeddingEngine",
    "EmbeddingIndex",
    "InMemoryEmbeddingIndex",
    "LearningSystem",
    "MemoryCache",
    "MemoryRepository",
    "MemoryStore",
    "MemorySystem",
    "PaginatedMemoryRetrieval",
    "PgVectorEmbeddingIndex",
    "PostgresMemoryRepository",
    "RelevanceRanking",
    "RetrievalOrchestrator",
    "RetrievalRequest",
    "RetrievalStrategy",
    "TemporalContextManager",
    "create_memory_system",
]

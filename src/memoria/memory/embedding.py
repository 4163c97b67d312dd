"""Embedding generation and nearest-neighbour lookup.

:class:`EmbeddingEngine` wraps sentence-transformers to provide
384-dimensional embeddings using the all-MiniLM-L6-v2 model.

:class:`EmbeddingIndex` persists vectors keyed by the id of the content they
were computed from and answers cosine-similarity queries.  Two backends are
provided: :class:`PgVectorEmbeddingIndex` (pgvector, the production store)
and :class:`InMemoryEmbeddingIndex` (numpy, for tests and embedded use).

A zero-norm vector has similarity 0 against everything.
"""

from __future__ import annotations

import abc
import json
import logging
import uuid
from collections.abc import Sequence
from typing import TYPE_CHECKING, Any, Protocol

import numpy as np

from memoria.errors import EmbeddingError
from memoria.models import Embedding, SimilarityResult, parse_jsonb, utcnow

if TYPE_CHECKING:
    from asyncpg import Pool

logger = logging.getLogger(__name__)

_MODEL_NAME = "all-MiniLM-L6-v2"
_EMBEDDING_DIM = 384

DEFAULT_MIN_SCORE = 0.7
DEFAULT_LIMIT = 10


class Embedder(Protocol):
    """Anything that turns text into a fixed-length vector."""

    @property
    def dimension(self) -> int: ...

    def embed(self, text: str) -> list[float]: ...


class EmbeddingEngine:
    """Loads a sentence-transformers model at init and holds it for the process lifetime.

    Provides ``embed`` (single text) and ``embed_batch`` (multiple texts)
    methods that return fixed-length float vectors.
    """

    def __init__(self, model_name: str = _MODEL_NAME, dimension: int = _EMBEDDING_DIM) -> None:
        from sentence_transformers import SentenceTransformer

        self._model = SentenceTransformer(model_name)
        self._dim = dimension

    @property
    def dimension(self) -> int:
        """Return the embedding dimensionality."""
        return self._dim

    def embed(self, text: str) -> list[float]:
        """Embed a single text string.

        Args:
            text: The text to embed.  ``None`` and empty strings are
                  normalised to a single space before encoding so that
                  the model always returns a valid fixed-length vector.

        Returns:
            A list of ``dimension`` floats.
        """
        vec = self._model.encode(self._normalise(text), show_progress_bar=False)
        return vec.tolist()

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Embed multiple texts in one call for better throughput."""
        if not texts:
            return []
        vecs = self._model.encode([self._normalise(t) for t in texts], show_progress_bar=False)
        return [v.tolist() for v in vecs]

    @staticmethod
    def _normalise(text: str | None) -> str:
        """Ensure *text* is a non-empty string the model can encode."""
        if text is None or not isinstance(text, str) or text.strip() == "":
            return " "
        return text


# ---------------------------------------------------------------------------
# Index interface
# ---------------------------------------------------------------------------


class EmbeddingIndex(abc.ABC):
    """Generates, persists and searches embeddings.

    Subclasses implement storage; vector generation, dimension checking and
    query-text handling live here.
    """

    def __init__(self, engine: Embedder) -> None:
        self._engine = engine

    @property
    def dimension(self) -> int:
        return self._engine.dimension

    def vectorize(self, text: str) -> list[float]:
        """Run the model on *text*.

        Raises:
            EmbeddingError: If the model call fails or returns the wrong shape.
        """
        try:
            vector = [float(x) for x in self._engine.embed(text)]
        except Exception as exc:
            raise EmbeddingError(f"Embedding model failed: {exc}") from exc
        if len(vector) != self.dimension:
            raise EmbeddingError(
                f"Embedding model returned {len(vector)} dimensions, expected {self.dimension}"
            )
        return vector

    async def embed(
        self,
        text: str,
        id: uuid.UUID | None = None,
        *,
        type: str = "memory",
        metadata: dict[str, Any] | None = None,
    ) -> Embedding:
        """Generate and store the embedding for *text* under *id*.

        An existing embedding with the same id is replaced.

        Raises:
            EmbeddingError: If the model call or the vector write fails.
        """
        embedding = Embedding(
            id=id or uuid.uuid4(),
            vector=self.vectorize(text),
            text=text,
            timestamp=utcnow(),
            type=type,
            metadata=dict(metadata or {}),
        )
        try:
            await self._put(embedding)
        except Exception as exc:
            raise EmbeddingError(f"Storing embedding {embedding.id} failed: {exc}") from exc
        return embedding

    async def create_embedding(
        self, text: str, *, type: str = "memory", metadata: dict[str, Any] | None = None
    ) -> uuid.UUID:
        """Embed *text* under a fresh id and return that id."""
        return (await self.embed(text, type=type, metadata=metadata)).id

    async def get_vector(self, id: uuid.UUID) -> list[float] | None:
        embedding = await self.get(id)
        return embedding.vector if embedding else None

    async def update_embedding(self, id: uuid.UUID, text: str) -> Embedding | None:
        """Regenerate the vector for *id* from *text*, keeping its type and metadata.

        Returns ``None`` when no embedding exists for *id*.

        Raises:
            EmbeddingError: If reading the stored embedding, the model call or
                the vector write fails.
        """
        try:
            existing = await self.get(id)
        except Exception as exc:
            raise EmbeddingError(f"Reading embedding {id} failed: {exc}") from exc
        if existing is None:
            return None
        return await self.embed(text, id, type=existing.type, metadata=existing.metadata)

    async def find_similar(
        self,
        query: str | Sequence[float],
        *,
        min_score: float = DEFAULT_MIN_SCORE,
        limit: int = DEFAULT_LIMIT,
        type_filter: str | None = None,
        metadata_filter: dict[str, Any] | None = None,
    ) -> list[SimilarityResult]:
        """Return stored embeddings whose cosine similarity to *query* is at least *min_score*.

        *query* may be raw text (embedded on the fly) or a precomputed vector.
        Results are ordered by score descending and truncated to *limit*.

        Raises:
            EmbeddingError: If the model call for a text *query* or the index lookup fails.
        """
        vector = self.vectorize(query) if isinstance(query, str) else [float(x) for x in query]
        if limit <= 0 or not np.any(np.asarray(vector)):
            return []
        try:
            return await self._search(
                vector,
                min_score=min_score,
                limit=limit,
                type_filter=type_filter,
                metadata_filter=metadata_filter,
            )
        except Exception as exc:
            raise EmbeddingError(f"Similarity search failed: {exc}") from exc

    @abc.abstractmethod
    async def _put(self, embedding: Embedding) -> None: ...

    @abc.abstractmethod
    async def _search(
        self,
        vector: list[float],
        *,
        min_score: float,
        limit: int,
        type_filter: str | None,
        metadata_filter: dict[str, Any] | None,
    ) -> list[SimilarityResult]: ...

    @abc.abstractmethod
    async def get(self, id: uuid.UUID) -> Embedding | None: ...

    @abc.abstractmethod
    async def delete(self, id: uuid.UUID) -> bool: ...

    @abc.abstractmethod
    async def update_metadata(self, id: uuid.UUID, patch: dict[str, Any]) -> bool:
        """Merge *patch* into the stored metadata.  Returns False when *id* is unknown."""


# ---------------------------------------------------------------------------
# pgvector backend
# ---------------------------------------------------------------------------


class PgVectorEmbeddingIndex(EmbeddingIndex):
    """Embeddings stored in the ``memory_embeddings`` table, searched with ``<=>``."""

    def __init__(self, pool: Pool, engine: Embedder) -> None:
        super().__init__(engine)
        self._pool = pool

    async def _put(self, embedding: Embedding) -> None:
        await self._pool.execute(
            """
            INSERT INTO memory_embeddings (id, embedding, text, type, metadata, created_at)
            VALUES ($1, $2::vector, $3, $4, $5, $6)
            ON CONFLICT (id) DO UPDATE
               SET embedding = EXCLUDED.embedding,
                   text = EXCLUDED.text,
                   type = EXCLUDED.type,
                   metadata = EXCLUDED.metadata,
                   created_at = EXCLUDED.created_at
            """,
            embedding.id,
            str(embedding.vector),  # pgvector accepts string format '[1.0, 2.0, ...]'
            embedding.text,
            embedding.type,
            json.dumps(embedding.metadata),
            embedding.timestamp,
        )

    async def get(self, id: uuid.UUID) -> Embedding | None:
        row = await self._pool.fetchrow(
            "SELECT id, embedding::text AS embedding, text, type, metadata, created_at "
            "FROM memory_embeddings WHERE id = $1",
            id,
        )
        if row is None:
            return None
        return Embedding(
            id=row["id"],
            vector=json.loads(row["embedding"]),
            text=row["text"],
            timestamp=row["created_at"],
            type=row["type"],
            metadata=parse_jsonb(row["metadata"]),
        )

    async def _search(
        self,
        vector: list[float],
        *,
        min_score: float,
        limit: int,
        type_filter: str | None,
        metadata_filter: dict[str, Any] | None,
    ) -> list[SimilarityResult]:
        conditions = ["vector_norm(embedding) > 0", "1 - (embedding <=> $1::vector) >= $2"]
        params: list[Any] = [str(vector), min_score]
        if type_filter is not None:
            params.append(type_filter)
            conditions.append(f"type = ${len(params)}")
        if metadata_filter:
            params.append(json.dumps(metadata_filter))
            conditions.append(f"metadata @> ${len(params)}::jsonb")
        params.append(limit)

        sql = (
            "SELECT id, text, type, metadata, 1 - (embedding <=> $1::vector) AS score "
            f"FROM memory_embeddings WHERE {' AND '.join(conditions)} "
            f"ORDER BY embedding <=> $1::vector LIMIT ${len(params)}"
        )
        rows = await self._pool.fetch(sql, *params)
        return [
            SimilarityResult(
                id=row["id"],
                score=float(row["score"]),
                text=row["text"],
                type=row["type"],
                metadata=parse_jsonb(row["metadata"]),
            )
            for row in rows
        ]

    async def delete(self, id: uuid.UUID) -> bool:
        result = await self._pool.execute("DELETE FROM memory_embeddings WHERE id = $1", id)
        return result == "DELETE 1"

    async def update_metadata(self, id: uuid.UUID, patch: dict[str, Any]) -> bool:
        result = await self._pool.execute(
            "UPDATE memory_embeddings SET metadata = metadata || $2::jsonb WHERE id = $1",
            id,
            json.dumps(patch),
        )
        return result == "UPDATE 1"


# ---------------------------------------------------------------------------
# In-process backend
# ---------------------------------------------------------------------------


class InMemoryEmbeddingIndex(EmbeddingIndex):
    """Embeddings held in process memory and compared with numpy dot products."""

    def __init__(self, engine: Embedder) -> None:
        super().__init__(engine)
        self._entries: dict[uuid.UUID, Embedding] = {}
        self._unit: dict[uuid.UUID, np.ndarray] = {}

    def __len__(self) -> int:
        return len(self._entries)

    @staticmethod
    def _unit_vector(vector: Sequence[float]) -> np.ndarray:
        arr = np.asarray(vector, dtype=np.float64)
        norm = np.linalg.norm(arr)
        if norm == 0:
            return np.zeros_like(arr)
        return arr / norm

    async def _put(self, embedding: Embedding) -> None:
        self._entries[embedding.id] = embedding
        self._unit[embedding.id] = self._unit_vector(embedding.vector)

    async def get(self, id: uuid.UUID) -> Embedding | None:
        return self._entries.get(id)

    async def _search(
        self,
        vector: list[float],
        *,
        min_score: float,
        limit: int,
        type_filter: str | None,
        metadata_filter: dict[str, Any] | None,
    ) -> list[SimilarityResult]:
        query = self._unit_vector(vector)
        results: list[SimilarityResult] = []
        for emb_id, unit in self._unit.items():
            entry = self._entries[emb_id]
            if type_filter is not None and entry.type != type_filter:
                continue
            if metadata_filter and any(
                entry.metadata.get(k) != v for k, v in metadata_filter.items()
            ):
                continue
            score = float(np.dot(query, unit))
            if score >= min_score:
                results.append(
                    SimilarityResult(
                        id=emb_id,
                        score=score,
                        text=entry.text,
                        type=entry.type,
                        metadata=entry.metadata,
                    )
                )
        results.sort(key=lambda r: r.score, reverse=True)
        return results[:limit]

    async def delete(self, id: uuid.UUID) -> bool:
        self._unit.pop(id, None)
        return self._entries.pop(id, None) is not None

    async def update_metadata(self, id: uuid.UUID, patch: dict[str, Any]) -> bool:
        entry = self._entries.get(id)
        if entry is None:
            return False
        entry.metadata = {**entry.metadata, **patch}
        return True

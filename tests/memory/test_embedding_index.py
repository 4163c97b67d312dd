"""Tests for the embedding engine wrapper and both index backends."""

from __future__ import annotations

import json
import sys
import types
import uuid
from unittest.mock import AsyncMock, MagicMock, patch

import numpy as np
import pytest

from memoria.errors import EmbeddingError
from memoria.memory.embedding import EmbeddingEngine, InMemoryEmbeddingIndex, PgVectorEmbeddingIndex
from memoria.testing import FailingEmbedder, HashingEmbeddingEngine

pytestmark = pytest.mark.unit


# ---------------------------------------------------------------------------
# EmbeddingEngine -- the model is replaced so nothing is downloaded
# ---------------------------------------------------------------------------


def _fake_encode(texts, **_kwargs):
    if isinstance(texts, str):
        return np.zeros(384, dtype=np.float32)
    return np.zeros((len(texts), 384), dtype=np.float32)


@pytest.fixture
def model_engine():
    model = MagicMock()
    model.encode = MagicMock(side_effect=_fake_encode)
    fake_module = types.ModuleType("sentence_transformers")
    fake_module.SentenceTransformer = MagicMock(return_value=model)
    with patch.dict(sys.modules, {"sentence_transformers": fake_module}):
        yield EmbeddingEngine()


class TestEmbeddingEngine:
    def test_embed_returns_floats(self, model_engine):
        result = model_engine.embed("hello world")
        assert len(result) == 384
        assert all(isinstance(v, float) for v in result)

    @pytest.mark.parametrize("text", ["", "   ", None])
    def test_blank_text_normalised(self, model_engine, text):
        model_engine.embed(text)
        model_engine._model.encode.assert_called_once_with(" ", show_progress_bar=False)

    def test_batch(self, model_engine):
        assert len(model_engine.embed_batch(["a", None, "c"])) == 3
        assert model_engine.embed_batch([]) == []

    def test_dimension(self, model_engine):
        assert model_engine.dimension == 384


# ---------------------------------------------------------------------------
# In-memory index
# ---------------------------------------------------------------------------


class TestInMemoryIndex:
    async def test_identical_text_scores_one(self, index):
        stored = await index.embed("green tea leaves")
        (hit,) = await index.find_similar("green tea leaves", min_score=0.99)
        assert hit.id == stored.id
        assert hit.score == pytest.approx(1.0)

    async def test_results_ordered_and_limited(self, index):
        await index.embed("green tea")
        await index.embed("green tea leaves")
        await index.embed("green tea leaves brewed")
        hits = await index.find_similar("green tea leaves", min_score=-1.0, limit=2)
        assert len(hits) == 2
        assert hits[0].score >= hits[1].score
        assert hits[0].text == "green tea leaves"

    async def test_zero_vector_matches_nothing(self, index):
        await index.embed("green tea")
        assert await index.find_similar("...", min_score=0.0) == []

    async def test_stored_zero_vector_scores_zero(self, index):
        await index.embed("!!!")
        hits = await index.find_similar("green tea", min_score=0.0)
        assert [h.score for h in hits] == [0.0]

    async def test_precomputed_vector_query(self, index, engine):
        stored = await index.embed("green tea")
        (hit,) = await index.find_similar(engine.embed("green tea"), min_score=0.99)
        assert hit.id == stored.id

    async def test_type_and_metadata_filters(self, index):
        await index.embed("green tea", type="memory", metadata={"context": "drinks"})
        await index.embed("green tea", type="fact", metadata={"context": "drinks"})
        await index.embed("green tea", type="memory", metadata={"context": "other"})
        hits = await index.find_similar(
            "green tea", type_filter="memory", metadata_filter={"context": "drinks"}
        )
        assert len(hits) == 1
        assert hits[0].type == "memory"

    async def test_embed_under_existing_id_replaces(self, index):
        ref = uuid.uuid4()
        await index.embed("old", ref)
        await index.embed("new", ref)
        assert len(index) == 1
        assert (await index.get(ref)).text == "new"

    async def test_update_embedding_keeps_type_and_metadata(self, index):
        ref = await index.create_embedding("old", type="fact", metadata={"k": 1})
        updated = await index.update_embedding(ref, "new text")
        assert (updated.type, updated.metadata, updated.text) == ("fact", {"k": 1}, "new text")
        assert await index.update_embedding(uuid.uuid4(), "x") is None

    async def test_get_vector_and_delete(self, index):
        ref = await index.create_embedding("green tea")
        assert len(await index.get_vector(ref)) == 64
        assert await index.delete(ref) is True
        assert await index.get_vector(ref) is None
        assert await index.delete(ref) is False

    async def test_update_metadata(self, index):
        ref = await index.create_embedding("x", metadata={"a": 1})
        assert await index.update_metadata(ref, {"b": 2}) is True
        assert (await index.get(ref)).metadata == {"a": 1, "b": 2}
        assert await index.update_metadata(uuid.uuid4(), {}) is False

    async def test_model_failure_raises_embedding_error(self):
        index = InMemoryEmbeddingIndex(FailingEmbedder())
        with pytest.raises(EmbeddingError, match="model offline"):
            await index.embed("x")
        assert len(index) == 0

    async def test_wrong_dimension_rejected(self):
        engine = MagicMock()
        engine.dimension = 8
        engine.embed.return_value = [0.1] * 4
        with pytest.raises(EmbeddingError, match="expected 8"):
            await InMemoryEmbeddingIndex(engine).embed("x")


# ---------------------------------------------------------------------------
# pgvector index -- SQL shape against a mocked pool
# ---------------------------------------------------------------------------


@pytest.fixture
def mock_pool() -> MagicMock:
    pool = MagicMock()
    pool.execute = AsyncMock(return_value="INSERT 0 1")
    pool.fetch = AsyncMock(return_value=[])
    pool.fetchrow = AsyncMock(return_value=None)
    return pool


class TestPgVectorIndex:
    async def test_embed_upserts_text_vector(self, mock_pool):
        index = PgVectorEmbeddingIndex(mock_pool, HashingEmbeddingEngine(4))
        ref = uuid.uuid4()
        await index.embed("tea", ref, metadata={"memory_id": str(ref)})
        sql, *params = mock_pool.execute.call_args.args
        assert "INSERT INTO memory_embeddings" in sql
        assert "ON CONFLICT (id) DO UPDATE" in sql
        assert params[0] == ref
        assert json.loads(params[1]) == pytest.approx(HashingEmbeddingEngine(4).embed("tea"))
        assert json.loads(params[4]) == {"memory_id": str(ref)}

    async def test_search_sql_and_filters(self, mock_pool):
        ref = uuid.uuid4()
        mock_pool.fetch.return_value = [
            {"id": ref, "text": "tea", "type": "memory", "metadata": "{}", "score": 0.93}
        ]
        index = PgVectorEmbeddingIndex(mock_pool, HashingEmbeddingEngine(4))

        hits = await index.find_similar(
            "tea", min_score=0.8, limit=3, type_filter="memory", metadata_filter={"c": "x"}
        )

        sql, *params = mock_pool.fetch.call_args.args
        assert "vector_norm(embedding) > 0" in sql
        assert "type = $3" in sql
        assert "metadata @> $4::jsonb" in sql
        assert sql.rstrip().endswith("LIMIT $5")
        assert params[1:] == [0.8, "memory", '{"c": "x"}', 3]
        assert hits[0].id == ref
        assert hits[0].score == 0.93

    async def test_zero_query_skips_database(self, mock_pool):
        index = PgVectorEmbeddingIndex(mock_pool, HashingEmbeddingEngine(4))
        assert await index.find_similar("...") == []
        mock_pool.fetch.assert_not_awaited()

    async def test_get_parses_text_vector(self, mock_pool):
        ref = uuid.uuid4()
        mock_pool.fetchrow.return_value = {
            "id": ref,
            "embedding": "[0.5,0,0,1]",
            "text": "tea",
            "type": "memory",
            "metadata": '{"a": 1}',
            "created_at": None,
        }
        index = PgVectorEmbeddingIndex(mock_pool, HashingEmbeddingEngine(4))
        embedding = await index.get(ref)
        assert embedding.vector == [0.5, 0, 0, 1]
        assert embedding.metadata == {"a": 1}

    async def test_delete_and_update_metadata_status(self, mock_pool):
        index = PgVectorEmbeddingIndex(mock_pool, HashingEmbeddingEngine(4))
        mock_pool.execute.return_value = "DELETE 1"
        assert await index.delete(uuid.uuid4()) is True
        mock_pool.execute.return_value = "UPDATE 0"
        assert await index.update_metadata(uuid.uuid4(), {"a": 1}) is False

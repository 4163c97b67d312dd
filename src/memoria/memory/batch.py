"""Bulk store/update/delete with transactional batching and per-item fallback.

Every bulk write follows the same shape:

1. validate and prepare every item up front (ids and timestamps assigned);
   an invalid item fails only its own index;
2. compute embeddings concurrently in groups of ``embedding_batch_size``;
   a failed embedding leaves that one item without a vector;
3. write everything in one all-or-nothing transaction, in sub-batches of
   ``write_batch_size``;
4. if the transaction fails, retry item by item and record each failure
   against its input index.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Awaitable, Callable, Mapping, Sequence
from typing import TYPE_CHECKING, Any

from memoria.config import BatchConfig
from memoria.core.telemetry import memory_span
from memoria.errors import EmbeddingError, MemoryValidationError
from memoria.memory.store import MemoryStore, embedding_metadata
from memoria.memory.text import preprocess_text
from memoria.memory.validation import validate_content, validate_importance, validate_metadata
from memoria.models import BatchOperationResult, Memory

if TYPE_CHECKING:
    from memoria.core.metrics import MemoryMetrics
    from memoria.memory.embedding import EmbeddingIndex
    from memoria.memory.ports import MemoryRepository

logger = logging.getLogger(__name__)

_READ_CHUNK_SIZE = 50


def _chunks(items: Sequence[Any], size: int) -> list[Sequence[Any]]:
    return [items[i : i + size] for i in range(0, len(items), size)]


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 3)


class BatchMemoryManager:
    """Bulk operations over the memory repository and embedding index.

    Args:
        repository: Storage port.
        index: Embedding index, or ``None`` to never embed.
        config: Defaults merged into stored items and sub-batch sizes.
        metrics: Optional instrument sink.
    """

    def __init__(
        self,
        repository: MemoryRepository,
        index: EmbeddingIndex | None = None,
        config: BatchConfig | None = None,
        metrics: MemoryMetrics | None = None,
    ) -> None:
        self._repo = repository
        self._index = index
        self._config = config or BatchConfig()
        self._metrics = metrics

    # ------------------------------------------------------------------
    # Store
    # ------------------------------------------------------------------

    def _prepare(
        self,
        item: Mapping[str, Any],
        *,
        source: str | None,
        context: str | None,
        importance: int | None,
        metadata: Mapping[str, Any] | None,
    ) -> Memory:
        if not isinstance(item, Mapping):
            raise MemoryValidationError(f"Batch item must be a mapping, got {type(item).__name__}")
        cfg = self._config
        merged_metadata = {
            **cfg.default_metadata,
            **(metadata or {}),
            **validate_metadata(item.get("metadata")),
        }
        item_importance = item.get("importance")
        if item_importance is None:
            item_importance = importance if importance is not None else cfg.default_importance
        return Memory(
            content=preprocess_text(validate_content(item.get("content"))),
            importance=validate_importance(item_importance),
            context=item.get("context") or context or cfg.default_context,
            source=item.get("source") or source or cfg.default_source,
            metadata=merged_metadata,
        )

    async def _embed_one(self, index: EmbeddingIndex, memory: Memory) -> uuid.UUID | None:
        try:
            embedding = await index.embed(
                memory.content, memory.id, metadata=embedding_metadata(memory)
            )
        except EmbeddingError as exc:
            logger.warning("Batch embedding failed for memory %s: %s", memory.id, exc)
            return None
        return embedding.id

    async def _embed_all(self, index: EmbeddingIndex, memories: Sequence[Memory]) -> None:
        """Attach embedding refs in concurrent groups; failures leave ``None``."""
        for group in _chunks(list(memories), self._config.embedding_batch_size):
            refs = await asyncio.gather(*(self._embed_one(index, m) for m in group))
            for memory, ref in zip(group, refs, strict=True):
                memory.embedding_ref = ref

    async def _drop_embeddings(self, refs: Sequence[uuid.UUID]) -> None:
        if self._index is None or not refs:
            return
        for group in _chunks(list(refs), self._config.embedding_batch_size):
            outcomes = await asyncio.gather(
                *(self._index.delete(ref) for ref in group), return_exceptions=True
            )
            for ref, outcome in zip(group, outcomes, strict=True):
                if isinstance(outcome, Exception):
                    logger.warning("Failed to delete embedding %s: %s", ref, outcome)

    async def store_many(
        self,
        items: Sequence[Mapping[str, Any]],
        *,
        source: str | None = None,
        context: str | None = None,
        importance: int | None = None,
        metadata: Mapping[str, Any] | None = None,
        generate_embeddings: bool | None = None,
    ) -> BatchOperationResult:
        """Store many memories.

        Per-call ``source``/``context``/``importance``/``metadata`` override the
        configured defaults; values on an individual item override both.

        Returns:
            A result whose ``errors`` maps each failed input index to its reason.
        """
        started = time.perf_counter()
        result = BatchOperationResult()
        prepared: list[tuple[int, Memory]] = []

        with memory_span("batch.store_many", items=len(items)):
            for index, item in enumerate(items):
                try:
                    memory = self._prepare(
                        item,
                        source=source,
                        context=context,
                        importance=importance,
                        metadata=metadata,
                    )
                except MemoryValidationError as exc:
                    result.errors[index] = str(exc)
                    continue
                prepared.append((index, memory))

            if generate_embeddings is None:
                generate_embeddings = self._config.generate_embeddings
            if generate_embeddings and self._index is not None and prepared:
                await self._embed_all(self._index, [m for _, m in prepared])

            chunk_size = self._config.write_batch_size
            stored = await self._write(
                prepared,
                bulk=lambda ms: self._repo.insert_many(ms, chunk_size=chunk_size),
                single=self._repo.insert,
                errors=result.errors,
            )
            await self._drop_embeddings(
                [m.embedding_ref for i, m in prepared if i not in stored and m.embedding_ref]
            )

        stored_ids = [m.id for i, m in prepared if i in stored]
        return self._finish("store", result, len(items), stored_ids, started)

    async def _write(
        self,
        prepared: Sequence[tuple[int, Memory]],
        *,
        bulk: Callable[[Sequence[Memory]], Awaitable[None]],
        single: Callable[[Memory], Awaitable[None]],
        errors: dict[int, str],
    ) -> set[int]:
        """Write *prepared* in one transaction, falling back to item-by-item inserts.

        Returns the input indexes that were persisted.
        """
        if not prepared:
            return set()
        try:
            await bulk([m for _, m in prepared])
            return {i for i, _ in prepared}
        except Exception as exc:
            logger.warning(
                "Batch transaction failed, retrying %d item(s) individually: %s",
                len(prepared),
                exc,
            )
        stored: set[int] = set()
        for index, memory in prepared:
            try:
                await single(memory)
            except Exception as exc:
                logger.warning("Batch item %d (%s) failed: %s", index, memory.id, exc)
                errors[index] = str(exc) or type(exc).__name__
            else:
                stored.add(index)
        return stored

    # ------------------------------------------------------------------
    # Update
    # ------------------------------------------------------------------

    async def update_many(
        self, updates: Sequence[tuple[uuid.UUID, Mapping[str, Any]]]
    ) -> BatchOperationResult:
        """Apply per-memory field updates.

        Content changes regenerate embeddings (failures keep the old vector).
        Unknown ids are reported as errors at their index.
        """
        started = time.perf_counter()
        result = BatchOperationResult()
        valid: list[tuple[int, uuid.UUID, dict[str, Any]]] = []

        with memory_span("batch.update_many", items=len(updates)):
            for index, (memory_id, fields) in enumerate(updates):
                try:
                    valid.append((index, memory_id, MemoryStore.validate_update(dict(fields))))
                except MemoryValidationError as exc:
                    result.errors[index] = str(exc)

            if self._index is not None:
                await self._reembed(self._index, valid)

            ok = await self._apply_updates(valid, result.errors)

        return self._finish(
            "update", result, len(updates), [mid for i, mid, _ in valid if i in ok], started
        )

    async def _reembed(
        self, index: EmbeddingIndex, valid: Sequence[tuple[int, uuid.UUID, dict[str, Any]]]
    ) -> None:
        changing = [(mid, f) for _, mid, f in valid if "content" in f]
        if not changing:
            return
        existing = {m.id: m for m in await self.get_many([mid for mid, _ in changing])}
        targets: list[tuple[dict[str, Any], Memory]] = []
        for memory_id, fields in changing:
            current = existing.get(memory_id)
            if current is None or current.content == fields["content"]:
                continue
            draft = Memory(
                id=current.id,
                content=fields["content"],
                importance=fields.get("importance", current.importance),
                context=fields.get("context", current.context),
                source=fields.get("source", current.source),
            )
            targets.append((fields, draft))
        await self._embed_all(index, [draft for _, draft in targets])
        for fields, draft in targets:
            if draft.embedding_ref is not None:
                fields["embedding_ref"] = draft.embedding_ref

    async def _apply_updates(
        self, valid: Sequence[tuple[int, uuid.UUID, dict[str, Any]]], errors: dict[int, str]
    ) -> set[int]:
        if not valid:
            return set()
        try:
            outcomes = await self._repo.update_many(
                [(mid, f) for _, mid, f in valid], chunk_size=self._config.write_batch_size
            )
        except Exception as exc:
            logger.warning(
                "Batch update transaction failed, retrying %d item(s) individually: %s",
                len(valid),
                exc,
            )
            outcomes = []
            for index, memory_id, fields in valid:
                try:
                    outcomes.append(await self._repo.update(memory_id, fields))
                except Exception as item_exc:
                    logger.warning("Batch update %d (%s) failed: %s", index, memory_id, item_exc)
                    errors[index] = str(item_exc) or type(item_exc).__name__
                    outcomes.append(False)

        ok: set[int] = set()
        for (index, memory_id, _), updated in zip(valid, outcomes, strict=True):
            if updated:
                ok.add(index)
            elif index not in errors:
                errors[index] = f"Memory not found: {memory_id}"
        return ok

    # ------------------------------------------------------------------
    # Delete
    # ------------------------------------------------------------------

    async def delete_many(self, memory_ids: Sequence[uuid.UUID]) -> BatchOperationResult:
        """Delete memories and their embeddings.  Unknown ids fail their index."""
        started = time.perf_counter()
        result = BatchOperationResult()
        ids = list(memory_ids)

        with memory_span("batch.delete_many", items=len(ids)):
            existing = {m.id: m for m in await self.get_many(ids)} if ids else {}
            try:
                outcomes = await self._repo.delete_many(
                    ids, chunk_size=self._config.write_batch_size
                )
            except Exception as exc:
                logger.warning(
                    "Batch delete transaction failed, retrying %d item(s) individually: %s",
                    len(ids),
                    exc,
                )
                outcomes = []
                for index, memory_id in enumerate(ids):
                    try:
                        outcomes.append(await self._repo.delete(memory_id))
                    except Exception as item_exc:
                        logger.warning(
                            "Batch delete %d (%s) failed: %s", index, memory_id, item_exc
                        )
                        result.errors[index] = str(item_exc) or type(item_exc).__name__
                        outcomes.append(False)

            deleted: list[uuid.UUID] = []
            for index, (memory_id, removed) in enumerate(zip(ids, outcomes, strict=True)):
                if removed:
                    deleted.append(memory_id)
                elif index not in result.errors:
                    result.errors[index] = f"Memory not found: {memory_id}"

            await self._drop_embeddings(
                [
                    existing[mid].embedding_ref
                    for mid in deleted
                    if mid in existing and existing[mid].embedding_ref is not None
                ]
            )

        return self._finish("delete", result, len(ids), deleted, started)

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    async def get_many(self, memory_ids: Sequence[uuid.UUID]) -> list[Memory]:
        """Fetch memories in input order, skipping ids that do not exist.

        Reads go in chunks of 50; a failing chunk falls back to one read per id.
        """
        found: dict[uuid.UUID, Memory] = {}
        for chunk in _chunks(list(memory_ids), _READ_CHUNK_SIZE):
            try:
                rows = await self._repo.get_many(chunk)
            except Exception as exc:
                logger.warning("Bulk read failed, falling back to single reads: %s", exc)
                rows = []
                for memory_id in chunk:
                    try:
                        memory = await self._repo.get(memory_id)
                    except Exception:
                        logger.warning("Read of memory %s failed", memory_id, exc_info=True)
                        continue
                    if memory is not None:
                        rows.append(memory)
            for memory in rows:
                found[memory.id] = memory
        return [found[i] for i in memory_ids if i in found]

    # ------------------------------------------------------------------

    def _finish(
        self,
        operation: str,
        result: BatchOperationResult,
        total: int,
        successful_ids: list[uuid.UUID],
        started: float,
    ) -> BatchOperationResult:
        result.successful_ids = successful_ids
        result.successful = len(successful_ids)
        result.failed = total - result.successful
        result.time_taken_ms = _elapsed_ms(started)
        logger.info(
            "Batch %s: %d succeeded, %d failed in %.1f ms",
            operation,
            result.successful,
            result.failed,
            result.time_taken_ms,
        )
        if self._metrics is not None:
            self._metrics.batch_items(operation, result.successful, result.failed)
            self._metrics.record_batch_duration(operation, result.time_taken_ms)
        return result

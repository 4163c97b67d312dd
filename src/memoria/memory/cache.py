"""Two-tier, TTL-bounded, LRU-evicted in-process cache of memories.

The *recent* tier holds every cached memory; the *important* tier holds
memories at or above the importance threshold as well, so they survive
churn in the recent tier.  Expired entries are misses and are removed lazily
on read, by :meth:`MemoryCache.cleanup`, or by the optional periodic cleanup
task.  LRU eviction only happens when a tier is full and a new key arrives.

The cache is explicitly constructed and owned; there is no module-level
instance.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
import uuid
from collections import OrderedDict
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import TYPE_CHECKING

from memoria.models import Memory

if TYPE_CHECKING:
    from memoria.config import CacheConfig
    from memoria.core.metrics import MemoryMetrics

logger = logging.getLogger(__name__)

_DEFAULT_MAX_SIZE = 100
_DEFAULT_IMPORTANT_MAX_SIZE = 50
_DEFAULT_IMPORTANT_THRESHOLD = 8
_DEFAULT_TTL_MS = 5 * 60 * 1000


@dataclass
class CacheStats:
    size: int
    recent_size: int
    important_size: int
    hits: int
    misses: int
    evictions: int
    expirations: int

    @property
    def hit_ratio(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0

    def to_dict(self) -> dict[str, float | int]:
        return {
            "size": self.size,
            "recent_size": self.recent_size,
            "important_size": self.important_size,
            "hits": self.hits,
            "misses": self.misses,
            "evictions": self.evictions,
            "expirations": self.expirations,
            "hit_ratio": self.hit_ratio,
        }


@dataclass
class _Entry:
    memory: Memory
    expires_at: float


class _LruTier:
    """An OrderedDict kept in least-recently-used-first order."""

    def __init__(self, capacity: int) -> None:
        self.capacity = capacity
        self.entries: OrderedDict[uuid.UUID, _Entry] = OrderedDict()

    def __len__(self) -> int:
        return len(self.entries)

    def put(self, key: uuid.UUID, entry: _Entry) -> bool:
        """Insert or refresh *key*; return True if an older key was evicted."""
        if key in self.entries:
            self.entries[key] = entry
            self.entries.move_to_end(key)
            return False
        evicted = False
        if len(self.entries) >= self.capacity:
            self.entries.popitem(last=False)
            evicted = True
        self.entries[key] = entry
        return evicted


class MemoryCache:
    """Tiered LRU cache with per-entry expiry.

    Args:
        max_size: Capacity of the recent tier.
        important_max_size: Capacity of the important tier.
        important_threshold: Minimum importance for the important tier.
        default_ttl_ms: Expiry applied when ``set`` is given no TTL.
        clock: Monotonic time source in seconds; injectable for tests.
        metrics: Optional instrument sink for hit/miss/eviction/expiration events.
    """

    def __init__(
        self,
        *,
        max_size: int = _DEFAULT_MAX_SIZE,
        important_max_size: int = _DEFAULT_IMPORTANT_MAX_SIZE,
        important_threshold: int = _DEFAULT_IMPORTANT_THRESHOLD,
        default_ttl_ms: int = _DEFAULT_TTL_MS,
        clock: Callable[[], float] = time.monotonic,
        metrics: MemoryMetrics | None = None,
    ) -> None:
        self._recent = _LruTier(max_size)
        self._important = _LruTier(important_max_size)
        self._threshold = important_threshold
        self._default_ttl_ms = default_ttl_ms
        self._clock = clock
        self._metrics = metrics
        self._cleanup_task: asyncio.Task | None = None
        self.reset_stats()

    @classmethod
    def create(
        cls,
        config: CacheConfig,
        *,
        clock: Callable[[], float] = time.monotonic,
        metrics: MemoryMetrics | None = None,
    ) -> MemoryCache:
        """Build a cache from *config*, starting periodic cleanup when enabled.

        The cleanup task is only started when called with a running event loop.
        """
        cache = cls(
            max_size=config.max_size,
            important_max_size=config.important_max_size,
            important_threshold=config.important_threshold,
            default_ttl_ms=config.default_ttl_ms,
            clock=clock,
            metrics=metrics,
        )
        if config.enable_cleanup:
            try:
                asyncio.get_running_loop()
            except RuntimeError:
                logger.debug("No running event loop; periodic cache cleanup not started")
            else:
                cache.start_cleanup(config.cleanup_interval_ms)
        return cache

    # ------------------------------------------------------------------
    # Reads and writes
    # ------------------------------------------------------------------

    def get(self, memory_id: uuid.UUID) -> Memory | None:
        """Return the cached memory, checking the recent tier before the important one."""
        now = self._clock()
        for tier in (self._recent, self._important):
            entry = tier.entries.get(memory_id)
            if entry is None:
                continue
            if entry.expires_at <= now:
                del tier.entries[memory_id]
                self._record("expiration")
                continue
            tier.entries.move_to_end(memory_id)
            self._record("hit")
            return entry.memory
        self._record("miss")
        return None

    def set(self, memory: Memory, ttl_ms: int | None = None) -> None:
        """Cache *memory* in the recent tier, and in the important tier when it qualifies."""
        ttl = self._default_ttl_ms if ttl_ms is None else ttl_ms
        entry = _Entry(memory=memory, expires_at=self._clock() + ttl / 1000.0)
        if self._recent.put(memory.id, entry):
            self._record("eviction")
        if memory.importance >= self._threshold:
            if self._important.put(memory.id, entry):
                self._record("eviction")
        else:
            self._important.entries.pop(memory.id, None)

    def set_many(self, memories: Iterable[Memory], ttl_ms: int | None = None) -> None:
        for memory in memories:
            self.set(memory, ttl_ms)

    def has(self, memory_id: uuid.UUID) -> bool:
        """True if an unexpired entry exists.  Does not touch statistics or LRU order."""
        now = self._clock()
        return any(
            (entry := tier.entries.get(memory_id)) is not None and entry.expires_at > now
            for tier in (self._recent, self._important)
        )

    def delete(self, memory_id: uuid.UUID) -> bool:
        removed_recent = self._recent.entries.pop(memory_id, None) is not None
        removed_important = self._important.entries.pop(memory_id, None) is not None
        return removed_recent or removed_important

    def delete_many(self, memory_ids: Iterable[uuid.UUID]) -> int:
        return sum(1 for memory_id in memory_ids if self.delete(memory_id))

    def clear(self) -> None:
        self._recent.entries.clear()
        self._important.entries.clear()

    @property
    def size(self) -> int:
        """Number of distinct memories held across both tiers."""
        return len(self._recent.entries.keys() | self._important.entries.keys())

    def __len__(self) -> int:
        return self.size

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def cleanup(self) -> int:
        """Remove every expired entry and return how many were removed."""
        now = self._clock()
        removed = 0
        for tier in (self._recent, self._important):
            expired = [k for k, e in tier.entries.items() if e.expires_at <= now]
            for key in expired:
                del tier.entries[key]
                self._record("expiration")
            removed += len(expired)
        if removed:
            logger.debug("Cache cleanup removed %d expired entries", removed)
        return removed

    def stats(self) -> CacheStats:
        return CacheStats(
            size=self.size,
            recent_size=len(self._recent),
            important_size=len(self._important),
            hits=self._hits,
            misses=self._misses,
            evictions=self._evictions,
            expirations=self._expirations,
        )

    def reset_stats(self) -> None:
        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self._expirations = 0

    def _record(self, event: str) -> None:
        if event == "hit":
            self._hits += 1
        elif event == "miss":
            self._misses += 1
        elif event == "eviction":
            self._evictions += 1
        elif event == "expiration":
            self._expirations += 1
        if self._metrics is not None:
            self._metrics.cache_event(event)

    def start_cleanup(self, interval_ms: int) -> None:
        """Run :meth:`cleanup` every *interval_ms* on the current event loop."""
        if self._cleanup_task is not None and not self._cleanup_task.done():
            return
        self._cleanup_task = asyncio.get_running_loop().create_task(
            self._cleanup_loop(interval_ms / 1000.0), name="memoria-cache-cleanup"
        )

    async def _cleanup_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            self.cleanup()

    async def stop_cleanup(self) -> None:
        task, self._cleanup_task = self._cleanup_task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def destroy(self) -> None:
        """Stop periodic cleanup and drop every entry."""
        await self.stop_cleanup()
        self.clear()

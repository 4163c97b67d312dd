"""Tests for the two-tier memory cache."""

from __future__ import annotations

import asyncio
from unittest.mock import MagicMock

import pytest

from memoria.config import CacheConfig
from memoria.memory.cache import CacheStats, MemoryCache
from memoria.models import Memory

pytestmark = pytest.mark.unit


@pytest.fixture
def cache(monotonic) -> MemoryCache:
    return MemoryCache(
        max_size=3,
        important_max_size=2,
        important_threshold=8,
        default_ttl_ms=1000,
        clock=monotonic,
    )


def _memory(content: str = "note", importance: int = 5) -> Memory:
    return Memory(content=content, importance=importance)


class TestGetAndSet:
    def test_hit_after_set(self, cache):
        memory = _memory()
        cache.set(memory)
        assert cache.get(memory.id) is memory
        stats = cache.stats()
        assert stats.hits == 1
        assert stats.misses == 0

    def test_miss_for_unknown_id(self, cache):
        assert cache.get(_memory().id) is None
        assert cache.stats().misses == 1

    def test_expired_entry_is_a_miss_and_removed(self, cache, monotonic):
        memory = _memory()
        cache.set(memory)
        monotonic.advance(1.0)
        assert cache.get(memory.id) is None
        stats = cache.stats()
        assert stats.expirations == 1
        assert stats.misses == 1
        assert cache.size == 0

    def test_custom_ttl_overrides_default(self, cache, monotonic):
        memory = _memory()
        cache.set(memory, ttl_ms=5000)
        monotonic.advance(2.0)
        assert cache.get(memory.id) is memory

    def test_has_does_not_touch_stats(self, cache, monotonic):
        memory = _memory()
        cache.set(memory)
        assert cache.has(memory.id)
        monotonic.advance(1.5)
        assert not cache.has(memory.id)
        stats = cache.stats()
        assert (stats.hits, stats.misses, stats.expirations) == (0, 0, 0)

    def test_set_many(self, cache):
        memories = [_memory(f"m{i}") for i in range(3)]
        cache.set_many(memories)
        assert cache.size == 3


class TestTiers:
    def test_lru_eviction_in_recent_tier(self, cache):
        first, second, third, fourth = (_memory(f"m{i}") for i in range(4))
        for memory in (first, second, third):
            cache.set(memory)
        # Touch the oldest so the second becomes least recently used
        cache.get(first.id)
        cache.set(fourth)
        assert cache.has(first.id)
        assert not cache.has(second.id)
        assert cache.stats().evictions == 1

    def test_important_memory_survives_recent_churn(self, cache):
        important = _memory("keep me", importance=9)
        cache.set(important)
        for i in range(5):
            cache.set(_memory(f"filler {i}"))
        assert cache.get(important.id) is important
        stats = cache.stats()
        assert stats.recent_size == 3
        assert stats.important_size == 1

    def test_size_counts_distinct_memories(self, cache):
        cache.set(_memory(importance=9))
        cache.set(_memory(importance=2))
        assert cache.size == 2
        assert len(cache) == 2

    def test_lowering_importance_leaves_important_tier(self, cache):
        memory = _memory(importance=9)
        cache.set(memory)
        memory.importance = 3
        cache.set(memory)
        assert cache.stats().important_size == 0

    def test_delete_removes_from_both_tiers(self, cache):
        memory = _memory(importance=10)
        cache.set(memory)
        assert cache.delete(memory.id) is True
        assert cache.delete(memory.id) is False
        assert cache.size == 0


class TestMaintenance:
    def test_cleanup_removes_expired_only(self, cache, monotonic):
        old = _memory("old")
        cache.set(old)
        monotonic.advance(0.5)
        fresh = _memory("fresh")
        cache.set(fresh)
        monotonic.advance(0.6)
        assert cache.cleanup() == 1
        assert cache.has(fresh.id)
        assert not cache.has(old.id)

    def test_clear_and_reset_stats(self, cache):
        memory = _memory()
        cache.set(memory)
        cache.get(memory.id)
        cache.clear()
        cache.reset_stats()
        assert cache.stats() == CacheStats(0, 0, 0, 0, 0, 0, 0)

    def test_hit_ratio(self):
        stats = CacheStats(
            size=1, recent_size=1, important_size=0, hits=3, misses=1, evictions=0, expirations=0
        )
        assert stats.hit_ratio == 0.75
        assert stats.to_dict()["hit_ratio"] == 0.75

    def test_hit_ratio_without_lookups(self):
        assert CacheStats(0, 0, 0, 0, 0, 0, 0).hit_ratio == 0.0

    def test_metrics_receive_events(self, monotonic):
        metrics = MagicMock()
        cache = MemoryCache(clock=monotonic, metrics=metrics)
        memory = _memory()
        cache.set(memory)
        cache.get(memory.id)
        cache.get(_memory().id)
        events = [c.args[0] for c in metrics.cache_event.call_args_list]
        assert events == ["hit", "miss"]


class TestPeriodicCleanup:
    async def test_create_starts_cleanup_on_running_loop(self, monotonic):
        cache = MemoryCache.create(
            CacheConfig(default_ttl_ms=10, cleanup_interval_ms=5), clock=monotonic
        )
        memory = _memory()
        cache.set(memory)
        monotonic.advance(1.0)
        await asyncio.sleep(0.05)
        assert cache.size == 0
        await cache.destroy()

    def test_create_without_loop_skips_cleanup(self):
        cache = MemoryCache.create(CacheConfig())
        assert cache._cleanup_task is None

    async def test_destroy_is_safe_when_never_started(self):
        cache = MemoryCache.create(CacheConfig(enable_cleanup=False))
        cache.set(_memory())
        await cache.destroy()
        assert cache.size == 0

"""Tests for the in-memory TTL cache."""

import asyncio

import pytest

from indicator_engine.cache.memory_cache import TTLCache
from indicator_engine.cache.ttl_config import TTL, ttl_for
from indicator_engine.models.indicator import Category


class TestExpiry:

    def test_entry_lives_until_ttl(self, cache, clock):
        cache.set("k", "v", 60)
        clock.advance(59.9)
        assert cache.get("k") == "v"

    def test_entry_is_a_miss_once_ttl_elapses(self, cache, clock):
        cache.set("k", "v", 60)
        clock.advance(60)
        assert cache.get("k") is None

    def test_expired_get_evicts_and_counts(self, cache, clock):
        cache.set("k", "v", 10)
        clock.advance(11)
        cache.get("k")
        stats = cache.stats()
        assert stats["size"] == 0
        assert stats["evictions"] == 1
        assert stats["misses"] == 1

    def test_sweep_removes_only_expired(self, cache, clock):
        cache.set("short", 1, 10)
        cache.set("long", 2, 100)
        clock.advance(20)
        assert cache.sweep() == 1
        assert cache.get("long") == 2
        assert cache.stats()["size"] == 1


class TestStats:

    def test_hits_and_misses(self, cache):
        cache.set("a", 1, 60)
        cache.get("a")
        cache.get("a")
        cache.get("missing")
        assert cache.stats() == {"hits": 2, "misses": 1, "size": 1, "evictions": 0}

    def test_default_returned_on_miss(self, cache):
        sentinel = object()
        assert cache.get("nope", sentinel) is sentinel


class TestInvalidate:

    def test_exact_key(self, cache):
        cache.set("news:all:20", [], 60)
        cache.set("news:agro:20", [], 60)
        assert cache.invalidate("news:all:20") == 1
        assert cache.get("news:agro:20") == []

    def test_prefix(self, cache):
        cache.set("news:all:20", [], 60)
        cache.set("news:agro:20", [], 60)
        cache.set("get_ticker:all", [], 60)
        assert cache.invalidate(prefix="news:") == 2
        assert cache.stats()["size"] == 1

    def test_missing_key_removes_nothing(self, cache):
        assert cache.invalidate("ghost") == 0


class TestCapacity:

    def test_full_cache_evicts_soonest_expiring(self, clock):
        small = TTLCache(max_entries=2, clock=clock)
        small.set("soon", 1, 10)
        small.set("later", 2, 100)
        small.set("new", 3, 50)
        assert small.get("soon") is None
        assert small.get("later") == 2
        assert small.get("new") == 3
        assert small.stats()["evictions"] == 1

    def test_overwrite_does_not_evict(self, clock):
        small = TTLCache(max_entries=1, clock=clock)
        small.set("k", 1, 10)
        small.set("k", 2, 10)
        assert small.get("k") == 2
        assert small.stats()["evictions"] == 0


class TestGetOrLoad:

    @pytest.mark.asyncio
    async def test_concurrent_misses_share_one_load(self, cache):
        calls = 0

        async def loader():
            nonlocal calls
            calls += 1
            await asyncio.sleep(0.01)
            return ["snapshot"]

        results = await asyncio.gather(*[cache.get_or_load("k", 60, loader) for _ in range(5)])
        assert calls == 1
        assert all(r == ["snapshot"] for r in results)
        assert cache.get("k") == ["snapshot"]

    @pytest.mark.asyncio
    async def test_failed_load_is_not_cached(self, cache):
        attempts = 0

        async def loader():
            nonlocal attempts
            attempts += 1
            await asyncio.sleep(0)
            if attempts == 1:
                raise RuntimeError("upstream down")
            return "ok"

        with pytest.raises(RuntimeError):
            await cache.get_or_load("k", 60, loader)
        assert await cache.get_or_load("k", 60, loader) == "ok"
        assert attempts == 2

    @pytest.mark.asyncio
    async def test_ttl_for_result_overrides_ttl(self, cache, clock):
        async def loader():
            return "unavailable"

        await cache.get_or_load("k", 300, loader, ttl_for_result=lambda r: 30)
        clock.advance(31)
        assert cache.get("k") is None


class TestTTLConfig:

    def test_category_ttls(self):
        assert ttl_for(Category.EXCHANGE_RATE) == 60
        assert ttl_for("crypto") == 120
        assert ttl_for(Category.INFLATION) == 6 * 3600

    def test_every_category_has_a_ttl(self):
        assert all(c.value in TTL for c in Category)

    def test_unknown_key_uses_default(self):
        assert ttl_for("something-else") > 0

"""
Tests for the Response Cache

Tests for coherence/cache.py
"""

import time

import pytest

from coherence.cache import CachedAnalyzer, CacheEntry, CacheStats
from coherence.capability import AnalysisRequest, AnalysisResponse
from coherence.errors import InvalidKeyError

from conftest import FakeAnalyzer, make_scene


def _request(scene_id="s1", prompt="p"):
    return AnalysisRequest(scene=make_scene(scene_id), options={"prompt": prompt})


class TestCacheStats:
    """Tests for CacheStats."""

    def test_hit_rate(self):
        assert CacheStats().hit_rate == 0.0
        assert CacheStats(hits=3, misses=1).hit_rate == 0.75

    def test_to_dict(self):
        assert CacheStats(hits=1, misses=1, size=2).to_dict() == {
            "hits": 1, "misses": 1, "evictions": 0, "size": 2, "hit_rate": "50.00%",
        }

    def test_entry_expiry(self):
        entry = CacheEntry(AnalysisResponse(), timestamp=time.time() - 10)
        assert entry.is_expired(5) is True
        assert entry.is_expired(60) is False


class TestCachedAnalyzer:
    """Tests for CachedAnalyzer."""

    def test_key_depends_on_request_content(self):
        assert CachedAnalyzer.cache_key(_request()) == CachedAnalyzer.cache_key(_request())
        assert CachedAnalyzer.cache_key(_request()) != CachedAnalyzer.cache_key(_request(prompt="q"))
        assert CachedAnalyzer.cache_key(_request()) != CachedAnalyzer.cache_key(_request("s2"))

    @pytest.mark.asyncio
    async def test_hit_returns_marked_copy(self):
        fake = FakeAnalyzer(lambda request: {"summary": "x"})
        cache = CachedAnalyzer(fake)

        first = await cache.analyze(_request())
        second = await cache.analyze(_request())

        assert len(fake.requests) == 1
        assert first.metadata.cached is False
        assert second.metadata.cached is True
        assert second.payload == {"summary": "x"}
        second.payload["summary"] = "changed"
        third = await cache.analyze(_request())
        assert third.payload == {"summary": "x"}
        assert cache.get_stats().hits == 2

    @pytest.mark.asyncio
    async def test_failures_not_cached(self, fake_analyzer):
        cache = CachedAnalyzer(fake_analyzer)

        for _ in range(2):
            with pytest.raises(Exception):
                await cache.analyze(_request())

        assert len(fake_analyzer.requests) == 2
        assert cache.get_stats().size == 0

    @pytest.mark.asyncio
    async def test_lru_eviction(self):
        fake = FakeAnalyzer(lambda request: {})
        cache = CachedAnalyzer(fake, max_size=2)

        await cache.analyze(_request("a"))
        await cache.analyze(_request("b"))
        await cache.analyze(_request("a"))
        await cache.analyze(_request("c"))
        await cache.analyze(_request("a"))

        stats = cache.get_stats()
        assert stats.size == 2
        assert stats.evictions == 1
        assert stats.hits == 2
        assert [r.scene.id for r in fake.requests] == ["a", "b", "c"]

    @pytest.mark.asyncio
    async def test_init_purges_expired(self):
        fake = FakeAnalyzer(lambda request: {})
        cache = CachedAnalyzer(fake, ttl=0.0)
        await cache.analyze(_request())
        time.sleep(0.01)

        await cache.init()

        assert cache.get_stats().size == 0
        assert cache.get_stats().evictions == 1

    @pytest.mark.asyncio
    async def test_warm_cache(self):
        def handler(request):
            if request.scene.id == "bad":
                return RuntimeError("nope")
            return {}
        fake = FakeAnalyzer(handler)
        cache = CachedAnalyzer(fake)

        stored = await cache.warm_cache([_request("a"), _request("bad"), _request("a")])

        assert stored == 1
        await cache.analyze(_request("a"))
        assert cache.get_stats().hits == 1

    @pytest.mark.asyncio
    async def test_warm_cache_fatal_propagates(self):
        cache = CachedAnalyzer(FakeAnalyzer(lambda request: InvalidKeyError("ollama", "HTTP 401")))

        with pytest.raises(InvalidKeyError):
            await cache.warm_cache([_request()])

    @pytest.mark.asyncio
    async def test_clear(self):
        cache = CachedAnalyzer(FakeAnalyzer(lambda request: {}))
        await cache.analyze(_request())

        cache.clear()

        assert cache.get_stats().to_dict()["size"] == 0
        assert cache.get_stats().misses == 0

"""
Tests for the MedEvidence literature cache
"""

import pytest

from medevidence.literature.cache import (
    LiteratureCache,
    MemoryCacheBackend,
    RedisCacheBackend,
    article_key,
    search_key,
)
from medevidence.observability.metrics import get_metric


class TestCacheKeys:
    @pytest.mark.unit
    def test_search_key_layout(self):
        assert search_key("diabetes treatment", 1, 3) == "search:diabetes treatment:1:3"

    @pytest.mark.unit
    def test_article_key_layout(self):
        assert article_key("123") == "article:123"


class TestMemoryCacheBackend:
    """Tests for the in-process backend."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_set_then_get(self):
        backend = MemoryCacheBackend()
        await backend.set("k", ["1", "2"], ttl=60)
        assert await backend.get("k") == ["1", "2"]
        assert len(backend) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_expired_entry_is_a_miss(self, mocker):
        clock = mocker.Mock(return_value=100.0)
        backend = MemoryCacheBackend(timer=clock)
        await backend.set("k", "v", ttl=10)

        clock.return_value = 109.9
        assert await backend.get("k") == "v"

        clock.return_value = 110.0
        assert await backend.get("k") is None
        assert len(backend) == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_entry_count_is_bounded(self):
        backend = MemoryCacheBackend(maxsize=100)
        for i in range(5000):
            await backend.set(f"search:q{i}:1:3", [str(i)], ttl=60)

        assert len(backend) == 100
        assert await backend.get("search:q4999:1:3") == ["4999"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_expired_entries_are_purged_without_reads(self, mocker):
        clock = mocker.Mock(return_value=0.0)
        backend = MemoryCacheBackend(maxsize=10_000, timer=clock)
        for i in range(5000):
            await backend.set(f"search:q{i}:1:3", [str(i)], ttl=1)

        clock.return_value = 2.0
        await backend.set("search:fresh:1:3", ["1"], ttl=60)

        assert len(backend) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_clear(self):
        backend = MemoryCacheBackend()
        await backend.set("a", 1, ttl=60)
        await backend.clear()
        assert await backend.get("a") is None


class TestRedisCacheBackend:
    """Redis errors degrade to cache misses."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_read_error_is_a_miss(self, mocker):
        backend = RedisCacheBackend(redis_url="redis://unused:6379/0")
        fake_redis = mocker.AsyncMock()
        fake_redis.get.side_effect = ConnectionError("down")
        mocker.patch.object(backend, "_get_redis", new=mocker.AsyncMock(return_value=fake_redis))

        assert await backend.get("search:x:1:3") is None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_values_round_trip_as_json(self, mocker):
        backend = RedisCacheBackend(redis_url="redis://unused:6379/0")
        stored: dict[str, str] = {}
        fake_redis = mocker.AsyncMock()
        fake_redis.set.side_effect = lambda key, value, ex: stored.__setitem__(key, value)
        fake_redis.get.side_effect = lambda key: stored.get(key)
        mocker.patch.object(backend, "_get_redis", new=mocker.AsyncMock(return_value=fake_redis))

        assert await backend.set("search:糖尿病:1:3", ["1"], ttl=60) is True
        assert stored["search:糖尿病:1:3"] == '["1"]'
        assert await backend.get("search:糖尿病:1:3") == ["1"]


class TestLiteratureCache:
    """Tests for the typed cache facade."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_search_miss_then_hit(self, literature_cache):
        assert await literature_cache.get_search("q", 1, 3) is None
        await literature_cache.set_search("q", 1, 3, ["10", "11"])
        assert await literature_cache.get_search("q", 1, 3) == ["10", "11"]

        assert literature_cache.misses == 1
        assert literature_cache.hits == 1
        assert get_metric("cache_hits") == 1
        assert get_metric("cache_misses") == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_page_and_size_are_part_of_the_key(self, literature_cache):
        await literature_cache.set_search("q", 1, 3, ["10"])
        assert await literature_cache.get_search("q", 2, 3) is None
        assert await literature_cache.get_search("q", 1, 2) is None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_article_round_trip(self, literature_cache, sample_pubmed_record):
        await literature_cache.set_article(sample_pubmed_record)
        cached = await literature_cache.get_article(sample_pubmed_record.pmid)
        assert cached == sample_pubmed_record

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_get_articles_splits_found_and_missing(self, literature_cache, sample_pubmed_record):
        await literature_cache.set_article(sample_pubmed_record)
        found, missing = await literature_cache.get_articles([sample_pubmed_record.pmid, "999"])
        assert list(found) == [sample_pubmed_record.pmid]
        assert missing == ["999"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_expired_entries_force_refetch(self, mocker):
        clock = mocker.Mock(return_value=0.0)
        cache = LiteratureCache(backend=MemoryCacheBackend(timer=clock), ttl_seconds=5)
        await cache.set_search("q", 1, 3, ["1"])

        clock.return_value = 6.0
        assert await cache.get_search("q", 1, 3) is None

    @pytest.mark.unit
    def test_injected_empty_backend_is_kept(self):
        backend = MemoryCacheBackend()
        assert len(backend) == 0

        cache = LiteratureCache(backend=backend)

        assert cache.backend is backend

    @pytest.mark.unit
    def test_default_backend_is_bounded_memory(self):
        cache = LiteratureCache()
        assert isinstance(cache.backend, MemoryCacheBackend)
        assert cache.backend.maxsize > 0

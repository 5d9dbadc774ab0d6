"""
MedEvidence Literature Cache

Time-bounded cache for PubMed lookups, shared across pipeline runs.
Two key spaces:
- search:{query}:{page}:{page_size}  -> ordered PMID list
- article:{pmid}                     -> parsed PubMedRecord

Backed by a bounded in-process cachetools TLRUCache (default) or Redis.
"""

import json
import logging
import os
import threading
import time
from collections.abc import Callable
from typing import Any

from cachetools import TLRUCache

from medevidence.models import PubMedRecord
from medevidence.observability.metrics import record_cache_lookup

logger = logging.getLogger(__name__)


# ============================================
# Constants
# ============================================

DEFAULT_TTL_SECONDS = int(os.environ.get("PUBMED_API_CACHE_TTL", "3600"))
CACHE_BACKEND = os.environ.get("LITERATURE_CACHE_BACKEND", "memory")
MEMORY_CACHE_MAXSIZE = int(os.environ.get("LITERATURE_CACHE_MAXSIZE", "2048"))

SEARCH_KEY_PREFIX = "search:"
ARTICLE_KEY_PREFIX = "article:"


def search_key(query: str, page: int, page_size: int) -> str:
    return f"{SEARCH_KEY_PREFIX}{query}:{page}:{page_size}"


def article_key(pmid: str) -> str:
    return f"{ARTICLE_KEY_PREFIX}{pmid}"


def _expires_at(_key: str, entry: tuple[int, Any], now: float) -> float:
    return now + entry[0]


# ============================================
# Backends
# ============================================


class MemoryCacheBackend:
    """Process-local key/value store with per-entry expiry and a size bound.

    Expired entries are purged on every write and the entry count never
    exceeds ``maxsize``.
    """

    def __init__(
        self,
        maxsize: int = MEMORY_CACHE_MAXSIZE,
        timer: Callable[[], float] = time.monotonic,
    ) -> None:
        self._entries: TLRUCache = TLRUCache(maxsize=maxsize, ttu=_expires_at, timer=timer)
        self._lock = threading.Lock()

    @property
    def maxsize(self) -> int:
        return int(self._entries.maxsize)

    async def get(self, key: str) -> Any | None:
        with self._lock:
            entry = self._entries.get(key)
        if entry is None:
            return None
        return entry[1]

    async def set(self, key: str, value: Any, ttl: int) -> bool:
        with self._lock:
            self._entries[key] = (ttl, value)
        return True

    async def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    async def close(self) -> None:
        return None

    def __len__(self) -> int:
        with self._lock:
            self._entries.expire()
            return len(self._entries)


class RedisCacheBackend:
    """Redis-backed store. Values are JSON; errors are treated as misses."""

    def __init__(self, redis_url: str | None = None) -> None:
        self._redis_url = redis_url or os.getenv("REDIS_URL", "redis://localhost:6379/0")
        self._redis: Any | None = None

    async def _get_redis(self) -> Any:
        if self._redis is None:
            import redis.asyncio as redis

            self._redis = redis.from_url(self._redis_url, decode_responses=True)
        return self._redis

    async def get(self, key: str) -> Any | None:
        try:
            redis = await self._get_redis()
            cached = await redis.get(key)
            if cached:
                return json.loads(cached)
            return None
        except Exception as e:
            logger.warning("Redis cache read failed for %s: %s", key, e)
            return None

    async def set(self, key: str, value: Any, ttl: int) -> bool:
        try:
            redis = await self._get_redis()
            await redis.set(key, json.dumps(value, ensure_ascii=False), ex=ttl)
            return True
        except Exception as e:
            logger.warning("Redis cache write failed for %s: %s", key, e)
            return False

    async def clear(self) -> None:
        redis = await self._get_redis()
        async for key in redis.scan_iter(match=f"{SEARCH_KEY_PREFIX}*"):
            await redis.delete(key)
        async for key in redis.scan_iter(match=f"{ARTICLE_KEY_PREFIX}*"):
            await redis.delete(key)

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.close()
            self._redis = None


# ============================================
# Literature Cache
# ============================================


class LiteratureCache:
    """Typed facade over a cache backend.

    An entry that expires while a request is already past the cache check
    does not affect that request; it only forces the next caller to refetch.
    """

    def __init__(
        self,
        backend: MemoryCacheBackend | RedisCacheBackend | None = None,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
    ) -> None:
        self.backend = backend if backend is not None else MemoryCacheBackend()
        self.ttl_seconds = ttl_seconds
        self.hits = 0
        self.misses = 0

    def _record(self, hit: bool) -> None:
        if hit:
            self.hits += 1
        else:
            self.misses += 1
        record_cache_lookup(hit)

    async def get_search(self, query: str, page: int, page_size: int) -> list[str] | None:
        """Return the cached PMID list for a discovery call, if present."""
        cached = await self.backend.get(search_key(query, page, page_size))
        self._record(cached is not None)
        if cached is None:
            return None
        return [str(pmid) for pmid in cached]

    async def set_search(self, query: str, page: int, page_size: int, pmids: list[str]) -> None:
        await self.backend.set(search_key(query, page, page_size), list(pmids), self.ttl_seconds)

    async def get_article(self, pmid: str) -> PubMedRecord | None:
        cached = await self.backend.get(article_key(pmid))
        self._record(cached is not None)
        if cached is None:
            return None
        if isinstance(cached, PubMedRecord):
            return cached
        return PubMedRecord.from_dict(cached)

    async def set_article(self, record: PubMedRecord) -> None:
        await self.backend.set(article_key(record.pmid), record.to_dict(), self.ttl_seconds)

    async def get_articles(self, pmids: list[str]) -> tuple[dict[str, PubMedRecord], list[str]]:
        """Split ``pmids`` into cached records and the ids still to fetch."""
        found: dict[str, PubMedRecord] = {}
        missing: list[str] = []
        for pmid in pmids:
            record = await self.get_article(pmid)
            if record is None:
                missing.append(pmid)
            else:
                found[pmid] = record
        return found, missing

    async def clear(self) -> None:
        await self.backend.clear()

    async def close(self) -> None:
        await self.backend.close()


# Process-wide cache (lazy initialization)
_literature_cache: LiteratureCache | None = None


def get_literature_cache() -> LiteratureCache:
    """Get or create the shared literature cache."""
    global _literature_cache
    if _literature_cache is None:
        if CACHE_BACKEND == "redis":
            backend: MemoryCacheBackend | RedisCacheBackend = RedisCacheBackend()
        else:
            backend = MemoryCacheBackend()
        _literature_cache = LiteratureCache(backend=backend)
        logger.info("Literature cache initialized (%s backend)", CACHE_BACKEND)
    return _literature_cache

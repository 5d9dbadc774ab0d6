"""
Upstream Rate Limiter for MedEvidence

Serializes calls to a single upstream API and spaces them at least
1 / requests_per_second apart. NCBI E-utilities allow 3 requests/second
without an API key (10 with one).
"""

import asyncio
import logging
import os
import time
from collections.abc import Awaitable, Callable
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

RATE_LIMIT = int(os.environ.get("PUBMED_API_RATE_LIMIT", "3"))  # requests per second


class RateLimitedFetcher:
    """Single-flight FIFO scheduler for one upstream endpoint.

    Operations run strictly in submission order, one at a time. Before each
    dispatch the scheduler sleeps off whatever remains of the minimum
    interval since the previous dispatch. A failing operation only affects
    its own caller.
    """

    def __init__(self, requests_per_second: float = RATE_LIMIT, name: str = "upstream") -> None:
        if requests_per_second <= 0:
            raise ValueError("requests_per_second must be positive")
        self.name = name
        self.min_interval = 1.0 / requests_per_second
        self._last_dispatch = 0.0
        self._lock: asyncio.Lock | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._pending = 0

    def _get_lock(self) -> asyncio.Lock:
        # asyncio.Lock is bound to the loop it first waits on; worker
        # processes may run successive event loops.
        loop = asyncio.get_running_loop()
        if self._lock is None or self._loop is not loop:
            self._lock = asyncio.Lock()
            self._loop = loop
        return self._lock

    @property
    def pending(self) -> int:
        """Number of operations queued or in flight."""
        return self._pending

    async def schedule(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Queue an operation and return its result once dispatched."""
        lock = self._get_lock()
        self._pending += 1
        try:
            # asyncio.Lock wakes waiters in FIFO order
            async with lock:
                elapsed = time.monotonic() - self._last_dispatch
                if elapsed < self.min_interval:
                    wait = self.min_interval - elapsed
                    logger.debug("Rate limiter %s sleeping %.3fs", self.name, wait)
                    await asyncio.sleep(wait)
                self._last_dispatch = time.monotonic()
                return await operation()
        finally:
            self._pending -= 1


# Process-wide limiter for the PubMed endpoints (lazy initialization)
_pubmed_fetcher: RateLimitedFetcher | None = None


def get_pubmed_fetcher() -> RateLimitedFetcher:
    """Get or create the shared PubMed rate limiter."""
    global _pubmed_fetcher
    if _pubmed_fetcher is None:
        _pubmed_fetcher = RateLimitedFetcher(RATE_LIMIT, name="pubmed")
    return _pubmed_fetcher

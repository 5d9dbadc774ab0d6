"""
Retrying HTTP Client for MedEvidence

Shared retry policy for every upstream client (PubMed, web search, LLM):
- Bounded attempts with linear-in-attempt backoff (attempt * base_delay)
- Hard per-attempt timeout
- Retryable-error predicate
- Typed UpstreamUnavailable error carrying the last diagnostic
"""

import asyncio
import logging
import os
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, TypeVar

import httpx

from medevidence.literature.rate_limiter import RateLimitedFetcher

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_RETRIES = int(os.environ.get("PUBMED_MAX_RETRIES", "3"))
RETRY_BASE_DELAY = float(os.environ.get("PUBMED_RETRY_BASE_DELAY", "1.0"))  # seconds
USER_AGENT = os.environ.get("HTTP_USER_AGENT", "MedEvidence/1.0")

ACCEPTED_CONTENT_TYPES = ("json", "xml")


# ============================================
# Errors
# ============================================


class UpstreamResponseError(Exception):
    """A single attempt got an unusable response (bad status or content type)."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class UpstreamUnavailable(Exception):
    """An upstream call failed on every attempt."""

    def __init__(self, operation: str, attempts: int, last_error: BaseException | None) -> None:
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error
        detail = f"{type(last_error).__name__}: {last_error}" if last_error else "unknown error"
        super().__init__(f"{operation} failed after {attempts} attempt(s): {detail}")


# ============================================
# Retry Policy
# ============================================


def _default_retryable(exc: BaseException) -> bool:
    return isinstance(
        exc,
        (httpx.TransportError, UpstreamResponseError, asyncio.TimeoutError, TimeoutError),
    )


@dataclass
class RetryPolicy:
    """Max attempts, backoff function, per-attempt timeout and retry predicate."""

    max_attempts: int = MAX_RETRIES
    base_delay: float = RETRY_BASE_DELAY
    timeout: float | None = None
    is_retryable: Callable[[BaseException], bool] = field(default=_default_retryable)

    def backoff(self, attempt: int) -> float:
        """Delay before the attempt that follows ``attempt`` (1-based)."""
        return attempt * self.base_delay

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        description: str = "upstream call",
    ) -> T:
        """Run ``operation`` until it succeeds or attempts are exhausted.

        Non-retryable errors propagate immediately. Exhaustion raises
        UpstreamUnavailable.
        """
        last_error: BaseException | None = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                if self.timeout is not None:
                    return await asyncio.wait_for(operation(), timeout=self.timeout)
                return await operation()
            except Exception as e:
                if not self.is_retryable(e):
                    raise
                last_error = e
                logger.warning(
                    "%s failed (attempt %d/%d): %s: %s",
                    description,
                    attempt,
                    self.max_attempts,
                    type(e).__name__,
                    e,
                )

            if attempt < self.max_attempts:
                wait = self.backoff(attempt)
                if wait > 0:
                    logger.info("Retrying %s in %.1fs...", description, wait)
                    await asyncio.sleep(wait)

        logger.error("%s failed after %d attempts", description, self.max_attempts)
        raise UpstreamUnavailable(description, self.max_attempts, last_error)


# ============================================
# HTTP Client
# ============================================


def _decode_json(response: httpx.Response) -> Any:
    return response.json()


class RetryingHttpClient:
    """GET requests with retries, timeouts and optional rate limiting.

    Each attempt is scheduled through the rate limiter (when one is given),
    so retries also respect the upstream rate limit.
    """

    def __init__(
        self,
        fetcher: RateLimitedFetcher | None = None,
        user_agent: str = USER_AGENT,
        transport: httpx.AsyncBaseTransport | None = None,
        base_delay: float = RETRY_BASE_DELAY,
    ) -> None:
        self.fetcher = fetcher
        self.user_agent = user_agent
        self.base_delay = base_delay
        self._transport = transport

    async def get(
        self,
        url: str,
        params: dict[str, Any] | None = None,
        *,
        max_retries: int = MAX_RETRIES,
        timeout_seconds: float = 10.0,
        description: str | None = None,
        decode: Callable[[httpx.Response], T] | None = None,
    ) -> Any:
        """GET ``url`` and return a successful JSON/XML response.

        When ``decode`` is given it runs inside each attempt and its result
        is returned instead of the response; a ValueError from it counts as
        a failed attempt. The timeout covers the request itself, not the
        wait for a rate-limiter slot.

        Raises UpstreamUnavailable when every attempt fails.
        """
        policy = RetryPolicy(max_attempts=max_retries, base_delay=self.base_delay)

        async def send() -> Any:
            response = await asyncio.wait_for(
                self._send(url, params, timeout_seconds), timeout=timeout_seconds
            )
            if decode is None:
                return response
            try:
                return decode(response)
            except ValueError as e:
                raise UpstreamResponseError(
                    f"Malformed body from {url}: {e}",
                    status_code=response.status_code,
                ) from e

        async def attempt() -> Any:
            if self.fetcher is not None:
                return await self.fetcher.schedule(send)
            return await send()

        return await policy.run(attempt, description=description or f"GET {url}")

    async def get_json(self, url: str, params: dict[str, Any] | None = None, **kwargs: Any) -> Any:
        """GET ``url`` and return the decoded JSON body."""
        return await self.get(url, params, decode=_decode_json, **kwargs)

    async def _send(
        self,
        url: str,
        params: dict[str, Any] | None,
        timeout_seconds: float,
    ) -> httpx.Response:
        async with httpx.AsyncClient(
            timeout=httpx.Timeout(timeout_seconds),
            headers={"User-Agent": self.user_agent},
            transport=self._transport,
        ) as client:
            response = await client.get(url, params=params)

        if response.status_code >= 400:
            raise UpstreamResponseError(
                f"HTTP {response.status_code} from {url}",
                status_code=response.status_code,
            )
        content_type = response.headers.get("content-type", "").lower()
        if not any(kind in content_type for kind in ACCEPTED_CONTENT_TYPES):
            raise UpstreamResponseError(
                f"Unexpected content type '{content_type}' from {url}",
                status_code=response.status_code,
            )
        return response

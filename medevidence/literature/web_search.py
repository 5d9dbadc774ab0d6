"""
Web Search for MedEvidence

Supplements PubMed literature with DuckDuckGo web results. Results are
labelled as web-sourced and numbered separately from literature in
prompts and citations.

Uses the duckduckgo-search library (MIT license, zero API cost).
"""

import asyncio
import logging
import os

from duckduckgo_search import DDGS

from medevidence.literature.http import RetryPolicy, UpstreamUnavailable
from medevidence.models import WebRecord

logger = logging.getLogger(__name__)

WEB_SEARCH_ENABLED = os.environ.get("WEB_SEARCH_ENABLED", "1") == "1"
WEB_SEARCH_TIMEOUT = float(os.environ.get("WEB_SEARCH_TIMEOUT_SECONDS", "10"))
MAX_WEB_RESULTS = 5


def _ddgs_text(query: str, max_results: int) -> list[dict]:
    with DDGS() as ddgs:
        return list(ddgs.text(query, max_results=max_results) or [])


class WebSearchClient:
    """Web search provider: ``search(query, max_results) -> list[WebRecord]``."""

    def __init__(
        self,
        enabled: bool = WEB_SEARCH_ENABLED,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self.enabled = enabled
        self.retry_policy = retry_policy or RetryPolicy(
            max_attempts=2,
            timeout=WEB_SEARCH_TIMEOUT,
            is_retryable=lambda exc: not isinstance(exc, asyncio.CancelledError),
        )

    async def search(self, query: str, max_results: int = MAX_WEB_RESULTS) -> list[WebRecord]:
        """Search DuckDuckGo for medical information.

        Falls back to an empty list when disabled or when every attempt fails.
        """
        if not self.enabled or max_results <= 0 or not query.strip():
            return []

        # "medical" context improves result quality
        medical_query = f"{query} medical clinical"
        max_results = min(max_results, MAX_WEB_RESULTS)

        try:
            raw = await self.retry_policy.run(
                lambda: asyncio.to_thread(_ddgs_text, medical_query, max_results),
                description="Web search",
            )
        except UpstreamUnavailable as e:
            logger.warning("Web search unavailable: %s", e)
            return []

        results = [
            WebRecord(
                title=r.get("title", ""),
                snippet=r.get("body", ""),
                url=r.get("href", ""),
            )
            for r in raw[:max_results]
        ]
        logger.info("Web search returned %d results for: %s", len(results), query)
        return results

"""
PubMed E-utilities Client for MedEvidence

Two-phase literature search:
1. Discover: esearch (JSON) returns an ordered PMID list
2. Fetch details: one batched efetch (XML) for every uncached PMID

All calls go through the shared rate limiter and retry policy. Results are
cached per (query, page, page size) and per PMID. Upstream failures yield
an empty, ``failed`` result instead of an exception.
"""

import logging
import os
from dataclasses import dataclass, field

from medevidence.literature.cache import LiteratureCache, get_literature_cache
from medevidence.literature.http import (
    RetryingHttpClient,
    UpstreamUnavailable,
)
from medevidence.literature.pubmed_parser import (
    ElementTreeRecordParser,
    PubMedParseError,
    RecordParser,
)
from medevidence.literature.rate_limiter import get_pubmed_fetcher
from medevidence.models import PubMedRecord

logger = logging.getLogger(__name__)


# ============================================
# Configuration
# ============================================

PUBMED_API_BASE_URL = os.environ.get(
    "PUBMED_API_BASE_URL", "https://eutils.ncbi.nlm.nih.gov/entrez/eutils"
)
PUBMED_API_KEY = os.environ.get("PUBMED_API_KEY", "")
DISCOVERY_TIMEOUT = float(os.environ.get("PUBMED_DISCOVERY_TIMEOUT_SECONDS", "10"))
FETCH_TIMEOUT = float(os.environ.get("PUBMED_FETCH_TIMEOUT_SECONDS", "20"))
MAX_RETRIES = int(os.environ.get("PUBMED_MAX_RETRIES", "3"))

# Hard ceiling on records per search, whatever the caller asks for
PAGE_SIZE = 3

BROADENED_TIMEOUT = 8.0
MIN_BROADENED_WORD_LENGTH = 3


@dataclass
class LiteratureSearchResult:
    """Outcome of one literature search."""

    records: list[PubMedRecord] = field(default_factory=list)
    total_results: int = 0
    failed: bool = False
    error: str | None = None
    broadened: bool = False

    @property
    def is_empty(self) -> bool:
        return not self.records


def broaden_query(query: str) -> str:
    """Loosen a query for the fallback discovery call.

    Quotes are removed, words of two characters or fewer are dropped and
    the rest are OR-ed together.
    """
    words = [w for w in query.replace('"', "").split() if len(w) >= MIN_BROADENED_WORD_LENGTH]
    return " OR ".join(words)


class LiteratureClient:
    """PubMed search with caching, rate limiting and retries."""

    def __init__(
        self,
        http_client: RetryingHttpClient | None = None,
        cache: LiteratureCache | None = None,
        parser: RecordParser | None = None,
        base_url: str = PUBMED_API_BASE_URL,
        api_key: str = PUBMED_API_KEY,
        max_retries: int = MAX_RETRIES,
        discovery_timeout: float = DISCOVERY_TIMEOUT,
        fetch_timeout: float = FETCH_TIMEOUT,
    ) -> None:
        self.http = http_client or RetryingHttpClient(fetcher=get_pubmed_fetcher())
        self.cache = cache if cache is not None else get_literature_cache()
        self.parser = parser or ElementTreeRecordParser()
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.max_retries = max_retries
        self.discovery_timeout = discovery_timeout
        self.fetch_timeout = fetch_timeout

    def _params(self, **params: object) -> dict[str, object]:
        params = {"db": "pubmed", **params}
        if self.api_key:
            params["api_key"] = self.api_key
        return params

    # ============================================
    # Public API
    # ============================================

    async def search(
        self,
        query: str,
        page: int = 1,
        max_results: int = PAGE_SIZE,
    ) -> LiteratureSearchResult:
        """Search PubMed for ``query`` and return parsed records.

        At most PAGE_SIZE records are returned regardless of ``max_results``.
        """
        query = query.strip()
        if not query:
            return LiteratureSearchResult()
        page = max(1, page)
        page_size = max(1, min(max_results, PAGE_SIZE))

        broadened = False
        pmids = await self.cache.get_search(query, page, page_size)
        if pmids is None:
            try:
                pmids = await self.discover(query, page, page_size)
            except UpstreamUnavailable as e:
                logger.warning("PubMed discovery unavailable for '%s': %s", query, e)
                try:
                    pmids = await self.discover_broadened(query, page_size)
                    broadened = True
                except UpstreamUnavailable as broad_error:
                    logger.error(
                        "PubMed discovery failed, returning no literature: %s", broad_error
                    )
                    return LiteratureSearchResult(failed=True, error=str(e))
            else:
                await self.cache.set_search(query, page, page_size, pmids)

        pmids = pmids[:page_size]
        if not pmids:
            logger.info("PubMed returned 0 results for: %s", query)
            return LiteratureSearchResult(broadened=broadened)

        try:
            records = await self.fetch_details(pmids)
        except (UpstreamUnavailable, PubMedParseError) as e:
            logger.error("PubMed detail fetch failed for %s: %s", pmids, e)
            return LiteratureSearchResult(failed=True, error=str(e), broadened=broadened)

        logger.info("PubMed search '%s' returned %d records", query, len(records))
        return LiteratureSearchResult(
            records=records, total_results=len(records), broadened=broadened
        )

    async def discover(self, query: str, page: int, page_size: int) -> list[str]:
        """Run esearch and return the ordered PMID list."""
        payload = await self.http.get_json(
            f"{self.base_url}/esearch.fcgi",
            params=self._params(
                term=query,
                retmode="json",
                retstart=(page - 1) * page_size,
                retmax=page_size,
                sort="relevance",
            ),
            max_retries=self.max_retries,
            timeout_seconds=self.discovery_timeout,
            description="PubMed esearch",
        )
        return _extract_id_list(payload)

    async def discover_broadened(self, query: str, page_size: int) -> list[str]:
        """Single short attempt with the broadened form of ``query``."""
        broad_query = broaden_query(query)
        if not broad_query:
            raise UpstreamUnavailable("PubMed broadened esearch", 0, None)
        logger.info("Trying broadened PubMed query: %s", broad_query)
        payload = await self.http.get_json(
            f"{self.base_url}/esearch.fcgi",
            params=self._params(
                term=broad_query,
                retmode="json",
                retmax=page_size,
                sort="relevance",
            ),
            max_retries=1,
            timeout_seconds=BROADENED_TIMEOUT,
            description="PubMed broadened esearch",
        )
        return _extract_id_list(payload)

    async def fetch_details(self, pmids: list[str]) -> list[PubMedRecord]:
        """Return records for ``pmids`` in order, fetching uncached ones in one batch."""
        found, missing = await self.cache.get_articles(pmids)

        if missing:
            response = await self.http.get(
                f"{self.base_url}/efetch.fcgi",
                params=self._params(id=",".join(missing), retmode="xml", rettype="abstract"),
                max_retries=self.max_retries,
                timeout_seconds=self.fetch_timeout,
                description="PubMed efetch",
            )
            for record in self.parser.parse(response.text):
                found[record.pmid] = record
                await self.cache.set_article(record)

        return [found[pmid] for pmid in pmids if pmid in found]


def _extract_id_list(payload: object) -> list[str]:
    if not isinstance(payload, dict):
        return []
    result = payload.get("esearchresult")
    if not isinstance(result, dict):
        return []
    return [str(pmid) for pmid in result.get("idlist") or []]

"""
MedEvidence Literature Module

Upstream evidence sources:
- RateLimitedFetcher: FIFO request pacing per upstream service
- RetryingHttpClient: Bounded retries with linear backoff
- LiteratureCache: TTL cache for discovery results and article records
- LiteratureClient: PubMed discovery + detail fetch
- WebSearchClient: Supplementary web search
"""

from medevidence.literature.cache import LiteratureCache, get_literature_cache
from medevidence.literature.http import (
    RetryingHttpClient,
    RetryPolicy,
    UpstreamResponseError,
    UpstreamUnavailable,
)
from medevidence.literature.pubmed_client import LiteratureClient, LiteratureSearchResult
from medevidence.literature.pubmed_parser import (
    ElementTreeRecordParser,
    PubMedParseError,
    parse_pubmed_xml,
)
from medevidence.literature.rate_limiter import RateLimitedFetcher, get_pubmed_fetcher
from medevidence.literature.web_search import WebSearchClient

__all__ = [
    # Transport
    "RateLimitedFetcher",
    "get_pubmed_fetcher",
    "RetryingHttpClient",
    "RetryPolicy",
    "UpstreamResponseError",
    "UpstreamUnavailable",
    # Cache
    "LiteratureCache",
    "get_literature_cache",
    # PubMed
    "LiteratureClient",
    "LiteratureSearchResult",
    "ElementTreeRecordParser",
    "PubMedParseError",
    "parse_pubmed_xml",
    # Web
    "WebSearchClient",
]

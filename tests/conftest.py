"""
MedEvidence Test Configuration

Pytest fixtures and configuration for the test suite.
"""

from collections.abc import Generator

import httpx
import pytest
from fastapi.testclient import TestClient

from medevidence.db.store import InMemoryResultStore
from medevidence.literature.cache import LiteratureCache, MemoryCacheBackend
from medevidence.literature.http import RetryingHttpClient
from medevidence.literature.pubmed_client import LiteratureClient
from medevidence.main import app
from medevidence.models import AnswerOutcome, PubMedRecord, SynthesizedAnswer, UserRecord, WebRecord

# ============================================
# Global State
# ============================================


@pytest.fixture(autouse=True)
def reset_global_state() -> Generator[None, None, None]:
    """Clear metrics counters and the local job map around each test."""
    from medevidence.observability.metrics import reset_metrics
    from medevidence.worker import _job_store

    reset_metrics()
    _job_store.clear()
    yield
    _job_store.clear()


# ============================================
# Client Fixtures
# ============================================


@pytest.fixture
def client() -> Generator[TestClient, None, None]:
    """Create a synchronous test client."""
    with TestClient(app) as c:
        yield c


# ============================================
# Store & Cache Fixtures
# ============================================


@pytest.fixture
def memory_store() -> InMemoryResultStore:
    return InMemoryResultStore()


@pytest.fixture
def literature_cache() -> LiteratureCache:
    """Fresh in-memory literature cache."""
    return LiteratureCache(backend=MemoryCacheBackend(), ttl_seconds=60)


# ============================================
# PubMed Fixtures
# ============================================


def make_esearch_payload(*pmids: str) -> dict:
    return {"esearchresult": {"count": str(len(pmids)), "idlist": list(pmids)}}


def make_article_xml(pmid: str, title: str, abstract: str = "Background text.", year: str = "2023") -> str:
    return f"""
    <PubmedArticle>
      <MedlineCitation>
        <PMID>{pmid}</PMID>
        <Article>
          <Journal>
            <JournalIssue><PubDate><Year>{year}</Year><Month>Mar</Month><Day>5</Day></PubDate></JournalIssue>
            <Title>Diabetes Care</Title>
          </Journal>
          <ArticleTitle>{title}</ArticleTitle>
          <Abstract><AbstractText>{abstract}</AbstractText></Abstract>
          <AuthorList>
            <Author><LastName>Tanaka</LastName><ForeName>Hiroshi</ForeName></Author>
            <Author><LastName>Smith</LastName><Initials>J</Initials></Author>
          </AuthorList>
          <ELocationID EIdType="doi">10.1000/{pmid}</ELocationID>
        </Article>
      </MedlineCitation>
    </PubmedArticle>
    """


def make_efetch_xml(*articles: tuple[str, str]) -> str:
    body = "".join(make_article_xml(pmid, title) for pmid, title in articles)
    return f"<?xml version='1.0'?><PubmedArticleSet>{body}</PubmedArticleSet>"


class PubMedStub:
    """httpx.MockTransport handler that serves esearch/efetch responses."""

    def __init__(
        self,
        pmids: list[str] | None = None,
        articles: dict[str, str] | None = None,
        fail_esearch: int = 0,
        fail_efetch: int = 0,
        malformed_esearch: int = 0,
    ) -> None:
        self.pmids = pmids or []
        self.articles = articles or {}
        self.fail_esearch = fail_esearch
        self.fail_efetch = fail_efetch
        self.malformed_esearch = malformed_esearch
        self.requests: list[httpx.Request] = []

    def count(self, endpoint: str) -> int:
        return sum(1 for r in self.requests if r.url.path.endswith(endpoint))

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path.endswith("esearch.fcgi"):
            if self.fail_esearch > 0:
                self.fail_esearch -= 1
                raise httpx.ReadTimeout("esearch timed out", request=request)
            if self.malformed_esearch > 0:
                self.malformed_esearch -= 1
                return httpx.Response(200, text="{not json", headers={"content-type": "application/json"})
            return httpx.Response(200, json=make_esearch_payload(*self.pmids))
        if request.url.path.endswith("efetch.fcgi"):
            if self.fail_efetch > 0:
                self.fail_efetch -= 1
                return httpx.Response(503, text="busy", headers={"content-type": "text/plain"})
            ids = request.url.params["id"].split(",")
            xml = make_efetch_xml(*[(pmid, self.articles[pmid]) for pmid in ids if pmid in self.articles])
            return httpx.Response(200, text=xml, headers={"content-type": "text/xml"})
        return httpx.Response(404, text="not found")


@pytest.fixture
def pubmed_stub() -> PubMedStub:
    return PubMedStub(
        pmids=["101", "102"],
        articles={
            "101": "Metformin therapy for type 2 diabetes",
            "102": "Insulin treatment outcomes in diabetes",
        },
    )


@pytest.fixture
def make_literature_client(literature_cache: LiteratureCache):
    """Build a LiteratureClient on a stub transport, without rate limiting or backoff."""

    def _make(stub: PubMedStub, **kwargs) -> LiteratureClient:
        http_client = RetryingHttpClient(
            transport=httpx.MockTransport(stub),
            base_delay=0,
        )
        kwargs.setdefault("cache", literature_cache)
        return LiteratureClient(
            http_client=http_client,
            base_url="https://pubmed.test/eutils",
            api_key="",
            **kwargs,
        )

    return _make


@pytest.fixture
def make_pubmed_stub():
    return PubMedStub


@pytest.fixture
def literature_client(pubmed_stub: PubMedStub, make_literature_client) -> LiteratureClient:
    return make_literature_client(pubmed_stub)


# ============================================
# Sample Data Fixtures
# ============================================


@pytest.fixture
def sample_pubmed_record() -> PubMedRecord:
    return PubMedRecord(
        pmid="12345678",
        title="SGLT2 inhibitors in heart failure",
        authors=("Tanaka H", "Smith J", "Lee K"),
        journal="N Engl J Med",
        year="2022",
        publication_date="2022-03-05",
        abstract="SGLT2 inhibitors reduced hospitalization. Mortality also fell.",
        doi="10.1056/example",
    )


@pytest.fixture
def sample_web_records() -> list[WebRecord]:
    return [
        WebRecord(title="Diabetes treatment overview", url="https://example.org/diabetes", snippet="Overview."),
        WebRecord(title="Guideline summary", url="https://example.org/guideline", snippet="Summary."),
    ]


@pytest.fixture
def sample_user_records() -> list[UserRecord]:
    return [
        UserRecord(content="Start metformin at 500 mg.", source="ward_protocol.pdf", title="Ward protocol", kind="document"),
    ]


@pytest.fixture
def sample_answer(sample_pubmed_record: PubMedRecord, sample_web_records: list[WebRecord]) -> SynthesizedAnswer:
    return SynthesizedAnswer(
        task_id="task-original",
        query="心不全の治療",
        translated_query="heart failure treatment",
        text="SGLT2 inhibitors reduce hospitalization [PMID: 12345678] [Web Source 1].",
        outcome=AnswerOutcome.ANSWERED,
        literature_records=[sample_pubmed_record],
        web_records=sample_web_records,
    )


# ============================================
# Marker Configuration
# ============================================


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "unit: mark test as unit test")
    config.addinivalue_line("markers", "integration: mark test as integration test")
    config.addinivalue_line("markers", "requires_db: test requires database connection")

"""
MedEvidence Domain Models

Evidence records, search queries, conversation turns, synthesized answers
and task states shared across the retrieval and synthesis pipeline.
"""

import math
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

# ============================================
# Constants
# ============================================

PUBMED_ARTICLE_URL = "https://pubmed.ncbi.nlm.nih.gov/{pmid}/"
DOI_URL = "https://doi.org/{doi}"

MAX_RESULTS_CEILING = 5
MAX_QUERY_LENGTH = 500
SUPPORTED_LANGUAGES = ("ja", "en")


# ============================================
# Evidence Records
# ============================================


@dataclass(frozen=True)
class PubMedRecord:
    """A bibliographic record fetched from PubMed. Cached by PMID."""

    pmid: str
    title: str
    authors: tuple[str, ...] = ()
    journal: str = ""
    year: str = ""
    publication_date: str = ""
    abstract: str = ""
    doi: str = ""

    @property
    def url(self) -> str:
        return PUBMED_ARTICLE_URL.format(pmid=self.pmid)

    @property
    def doi_url(self) -> str | None:
        return DOI_URL.format(doi=self.doi) if self.doi else None

    def citation_text(self) -> str:
        """Plain citation string: Authors (Year). Title. Journal. PMID: n"""
        authors = ", ".join(self.authors)
        return f"{authors} ({self.year}). {self.title}. {self.journal}. PMID: {self.pmid}"

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["authors"] = list(self.authors)
        data["url"] = self.url
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PubMedRecord":
        return cls(
            pmid=str(data["pmid"]),
            title=data.get("title", ""),
            authors=tuple(data.get("authors") or ()),
            journal=data.get("journal", ""),
            year=str(data.get("year", "")),
            publication_date=data.get("publication_date", ""),
            abstract=data.get("abstract", ""),
            doi=data.get("doi", "") or "",
        )


@dataclass(frozen=True)
class WebRecord:
    """A single web search result. Never cached across runs."""

    title: str
    snippet: str
    url: str
    source: str = "web"

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "WebRecord":
        return cls(
            title=data.get("title", ""),
            snippet=data.get("snippet", ""),
            url=data.get("url", ""),
            source=data.get("source", "web"),
        )


@dataclass(frozen=True)
class UserRecord:
    """Evidence supplied by the user (uploaded document or pasted link)."""

    content: str
    source: str
    title: str | None = None
    url: str | None = None
    kind: Literal["document", "link"] = "document"

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "UserRecord":
        return cls(
            content=data.get("content", ""),
            source=data.get("source", "user"),
            title=data.get("title"),
            url=data.get("url"),
            kind=data.get("kind", "document"),
        )


EvidenceRecord = PubMedRecord | WebRecord | UserRecord


# ============================================
# Search Query
# ============================================


class UserEvidence(BaseModel):
    """Request-side shape of a user-supplied evidence item."""

    content: str
    source: str = "user"
    title: str | None = None
    url: str | None = None
    kind: Literal["document", "link"] = "document"

    def to_record(self) -> UserRecord:
        return UserRecord(
            content=self.content,
            source=self.source,
            title=self.title,
            url=self.url,
            kind=self.kind,
        )


class SearchQuery(BaseModel):
    """Validated search request.

    ``max_results`` is clamped into ``[1, MAX_RESULTS_CEILING]`` on
    construction so downstream quota arithmetic never sees raw input.
    """

    query: str
    max_results: int = MAX_RESULTS_CEILING
    literature_only: bool = False
    use_only_user_evidence: bool = False
    response_language: str = "ja"
    previous_query_id: str | None = None
    user_evidence: list[UserEvidence] = Field(default_factory=list)

    @field_validator("query")
    @classmethod
    def validate_query(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Query must not be empty")
        if len(v) > MAX_QUERY_LENGTH:
            raise ValueError(f"Query must be at most {MAX_QUERY_LENGTH} characters")
        return v

    @field_validator("max_results", mode="before")
    @classmethod
    def clamp_max_results(cls, v: Any) -> int:
        try:
            value = int(v)
        except (TypeError, ValueError):
            return MAX_RESULTS_CEILING
        return max(1, min(MAX_RESULTS_CEILING, value))

    @field_validator("response_language")
    @classmethod
    def validate_language(cls, v: str) -> str:
        v = (v or "ja").lower()
        return v if v in SUPPORTED_LANGUAGES else "ja"

    @property
    def literature_quota(self) -> int:
        """Literature gets the ceiling half of max_results (all of it when literature-only)."""
        if self.literature_only:
            return self.max_results
        return math.ceil(self.max_results / 2)

    @property
    def web_quota(self) -> int:
        if self.literature_only or self.use_only_user_evidence:
            return 0
        return self.max_results - self.literature_quota

    def user_records(self) -> list[UserRecord]:
        return [item.to_record() for item in self.user_evidence]


# ============================================
# Conversation
# ============================================


@dataclass(frozen=True)
class ConversationTurn:
    """One prior (query, answer) exchange in a thread. Read-only context."""

    query: str
    answer: str


# ============================================
# Answers & Tasks
# ============================================


class AnswerOutcome(str, Enum):
    ANSWERED = "answered"
    NO_EVIDENCE_FOUND = "no_evidence_found"
    NO_RELEVANT_EVIDENCE = "no_relevant_evidence"
    SYNTHESIS_DEGRADED = "synthesis_degraded"


class TaskStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not TaskStatus.RUNNING


@dataclass
class SynthesizedAnswer:
    """Narrative answer plus the evidence arrays its markers index into."""

    task_id: str
    query: str
    translated_query: str
    text: str
    outcome: AnswerOutcome
    literature_records: list[PubMedRecord] = field(default_factory=list)
    web_records: list[WebRecord] = field(default_factory=list)
    user_records: list[UserRecord] = field(default_factory=list)
    translation_degraded: bool = False
    upstream_unavailable: bool = False
    response_language: str = "ja"

    def evidence_dict(self) -> dict[str, list[dict[str, Any]]]:
        return {
            "literature": [r.to_dict() for r in self.literature_records],
            "web": [r.to_dict() for r in self.web_records],
            "user": [r.to_dict() for r in self.user_records],
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "query": self.query,
            "translated_query": self.translated_query,
            "text": self.text,
            "outcome": self.outcome.value,
            "translation_degraded": self.translation_degraded,
            "upstream_unavailable": self.upstream_unavailable,
            "response_language": self.response_language,
            "evidence": self.evidence_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SynthesizedAnswer":
        evidence = data.get("evidence") or {}
        return cls(
            task_id=data["task_id"],
            query=data.get("query", ""),
            translated_query=data.get("translated_query", ""),
            text=data.get("text", ""),
            outcome=AnswerOutcome(data.get("outcome", AnswerOutcome.ANSWERED.value)),
            literature_records=[
                PubMedRecord.from_dict(r) for r in evidence.get("literature", [])
            ],
            web_records=[WebRecord.from_dict(r) for r in evidence.get("web", [])],
            user_records=[UserRecord.from_dict(r) for r in evidence.get("user", [])],
            translation_degraded=bool(data.get("translation_degraded", False)),
            upstream_unavailable=bool(data.get("upstream_unavailable", False)),
            response_language=data.get("response_language", "ja"),
        )


@dataclass
class PipelineTask:
    """Read-only view of a task's lifecycle state."""

    task_id: str
    status: TaskStatus
    error: str | None = None
    result_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"task_id": self.task_id, "status": self.status.value}
        if self.error:
            data["error"] = self.error
        return data

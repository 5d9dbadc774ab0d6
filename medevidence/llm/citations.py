"""
Citation Resolver for MedEvidence

Splits synthesized answer text into renderable segments:
- [PMID: n]          -> PubMed link (always; PMIDs are opaque upstream ids)
- [Web Source i]     -> i-th web record, if 1 <= i <= len(web records)
- [User Source i]    -> i-th user record, if 1 <= i <= len(user records)

Out-of-range Web/User markers stay visible as inert text without a link.
Segmentation is total: joining every segment's ``source_text`` gives back
the input unchanged.
"""

import logging
import re
from dataclasses import dataclass
from typing import Any, Literal

from medevidence.models import PUBMED_ARTICLE_URL, PubMedRecord, UserRecord, WebRecord

logger = logging.getLogger(__name__)

MARKER_PATTERN = re.compile(
    r"\[(?:PMID:\s*(?P<pmid>\d+)|Web Source\s+(?P<web>\d+)|User Source\s+(?P<user>\d+))\]"
)

SegmentKind = Literal["text", "pmid", "web", "user"]


@dataclass(frozen=True)
class CitationSegment:
    """One piece of resolved answer text."""

    kind: SegmentKind
    source_text: str
    number: int | None = None
    url: str | None = None
    label: str | None = None
    resolved: bool = False
    emphasized: bool = False

    @property
    def is_link(self) -> bool:
        return self.url is not None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"kind": self.kind, "text": self.source_text}
        if self.kind != "text":
            data.update(
                number=self.number,
                url=self.url,
                label=self.label,
                resolved=self.resolved,
                emphasized=self.emphasized,
            )
        return data


class CitationResolver:
    """Resolves inline citation markers against the evidence captured at generation time."""

    def resolve(
        self,
        text: str,
        literature_records: list[PubMedRecord] | None = None,
        web_records: list[WebRecord] | None = None,
        user_records: list[UserRecord] | None = None,
    ) -> list[CitationSegment]:
        literature_by_pmid = {r.pmid: r for r in literature_records or []}
        web_records = web_records or []
        user_records = user_records or []

        segments: list[CitationSegment] = []
        position = 0
        for match in MARKER_PATTERN.finditer(text):
            if match.start() > position:
                segments.append(CitationSegment("text", text[position : match.start()]))

            marker = match.group(0)
            if match.group("pmid") is not None:
                segments.append(self._resolve_pmid(marker, match.group("pmid"), literature_by_pmid))
            elif match.group("web") is not None:
                segments.append(
                    self._resolve_indexed("web", marker, int(match.group("web")), web_records)
                )
            else:
                segments.append(
                    self._resolve_indexed("user", marker, int(match.group("user")), user_records)
                )
            position = match.end()

        if position < len(text):
            segments.append(CitationSegment("text", text[position:]))
        return segments

    def _resolve_pmid(
        self,
        marker: str,
        pmid: str,
        literature_by_pmid: dict[str, PubMedRecord],
    ) -> CitationSegment:
        record = literature_by_pmid.get(pmid)
        return CitationSegment(
            kind="pmid",
            source_text=marker,
            number=int(pmid),
            url=PUBMED_ARTICLE_URL.format(pmid=pmid),
            label=record.title if record else f"PMID: {pmid}",
            resolved=True,
        )

    def _resolve_indexed(
        self,
        kind: Literal["web", "user"],
        marker: str,
        number: int,
        records: list[WebRecord] | list[UserRecord],
    ) -> CitationSegment:
        if not 0 < number <= len(records):
            logger.debug("Citation %s out of range (%d records)", marker, len(records))
            return CitationSegment(kind=kind, source_text=marker, number=number)

        record = records[number - 1]
        url = record.url or None
        label = record.title or (record.source if isinstance(record, UserRecord) else None)
        return CitationSegment(
            kind=kind,
            source_text=marker,
            number=number,
            url=url,
            label=label or marker,
            resolved=True,
            emphasized=url is None,
        )


def invalid_markers(
    text: str,
    web_count: int,
    user_count: int,
) -> list[str]:
    """Web/User markers in ``text`` whose index is outside the evidence arrays."""
    bad = []
    for match in MARKER_PATTERN.finditer(text):
        if match.group("web") is not None and not 0 < int(match.group("web")) <= web_count:
            bad.append(match.group(0))
        elif match.group("user") is not None and not 0 < int(match.group("user")) <= user_count:
            bad.append(match.group(0))
    return bad


def render_markdown(segments: list[CitationSegment]) -> str:
    """Render segments as Markdown: links for resolved markers, plain text otherwise."""
    parts = []
    for segment in segments:
        if segment.kind == "text" or not segment.resolved:
            parts.append(segment.source_text)
        elif segment.url:
            parts.append(f"[{segment.source_text[1:-1]}]({segment.url})")
        else:
            parts.append(f"*{segment.source_text}*")
    return "".join(parts)

"""
PubMed efetch XML parser for MedEvidence

Turns an efetch (rettype=abstract, retmode=xml) document into PubMedRecord
objects. Records without both a PMID and a title are dropped.
"""

import html
import logging
import re
import xml.etree.ElementTree as ET
from typing import Protocol

from medevidence.models import PubMedRecord

logger = logging.getLogger(__name__)

_TAG_PATTERN = re.compile(r"<[^>]*>")
_WHITESPACE_PATTERN = re.compile(r"\s+")
_YEAR_PATTERN = re.compile(r"(\d{4})")


class PubMedParseError(Exception):
    """The efetch payload was not well-formed XML."""


class RecordParser(Protocol):
    def parse(self, xml_text: str) -> list[PubMedRecord]: ...


def clean_text(text: str | None) -> str:
    """Strip markup, unescape entities and collapse whitespace."""
    if not text:
        return ""
    text = _TAG_PATTERN.sub("", text)
    text = html.unescape(text)
    return _WHITESPACE_PATTERN.sub(" ", text).strip()


def _text(element: ET.Element | None) -> str:
    # itertext() keeps the content of inline markup such as <i> or <sup>
    if element is None:
        return ""
    return clean_text("".join(element.itertext()))


def _find_text(parent: ET.Element | None, path: str) -> str:
    if parent is None:
        return ""
    return _text(parent.find(path))


# ============================================
# Field extractors
# ============================================


def extract_publication_date(article: ET.Element) -> tuple[str, str]:
    """Return (year, year[-month[-day]]) from the journal PubDate.

    When there is no <Year>, the first four-digit run in <MedlineDate>
    (e.g. "2023 Jan-Feb") is used.
    """
    pub_date = article.find(".//JournalIssue/PubDate")
    if pub_date is None:
        pub_date = article.find(".//PubDate")
    if pub_date is None:
        return "", ""

    year = _find_text(pub_date, "Year")
    if not year:
        match = _YEAR_PATTERN.search(_find_text(pub_date, "MedlineDate"))
        year = match.group(1) if match else ""
    if not year:
        return "", ""

    month = _find_text(pub_date, "Month")
    day = _find_text(pub_date, "Day")
    return year, "-".join(part for part in (year, month, day) if part)


def extract_authors(article: ET.Element) -> tuple[str, ...]:
    authors = []
    for author in article.findall(".//AuthorList/Author"):
        last_name = _find_text(author, "LastName")
        if not last_name:
            # collective names have no LastName
            continue
        given = _find_text(author, "ForeName") or _find_text(author, "Initials")
        authors.append(" ".join(part for part in (last_name, given) if part))
    return tuple(authors)


def extract_abstract(article: ET.Element) -> str:
    abstract = article.find(".//Abstract")
    if abstract is None:
        return ""
    fragments = abstract.findall("AbstractText")
    if not fragments:
        return _text(abstract)
    return " ".join(text for text in (_text(f) for f in fragments) if text)


def extract_doi(article: ET.Element) -> str:
    for location in article.findall(".//ELocationID"):
        if location.get("EIdType", "").lower() == "doi":
            doi = _text(location)
            if doi:
                return doi
    for article_id in article.findall(".//ArticleIdList/ArticleId"):
        if article_id.get("IdType", "").lower() == "doi":
            doi = _text(article_id)
            if doi:
                return doi
    return ""


def parse_article(article: ET.Element) -> PubMedRecord | None:
    """Build a record from one <PubmedArticle> element, or None if unusable."""
    pmid = _find_text(article, ".//MedlineCitation/PMID") or _find_text(article, ".//PMID")
    title = _find_text(article, ".//ArticleTitle")
    if not pmid or not title:
        logger.debug("Dropping PubMed article without pmid/title (pmid=%r)", pmid)
        return None

    year, publication_date = extract_publication_date(article)
    return PubMedRecord(
        pmid=pmid,
        title=title,
        authors=extract_authors(article),
        journal=_find_text(article, ".//Journal/Title"),
        year=year,
        publication_date=publication_date,
        abstract=extract_abstract(article),
        doi=extract_doi(article),
    )


# ============================================
# Parser
# ============================================


class ElementTreeRecordParser:
    """Structured parser over xml.etree.ElementTree."""

    def parse(self, xml_text: str) -> list[PubMedRecord]:
        if not xml_text or not xml_text.strip():
            return []
        try:
            root = ET.fromstring(xml_text)
        except ET.ParseError as e:
            raise PubMedParseError(f"Malformed PubMed XML: {e}") from e

        if root.tag == "PubmedArticle":
            articles = [root]
        else:
            articles = root.findall(".//PubmedArticle")

        records = []
        for article in articles:
            record = parse_article(article)
            if record is not None:
                records.append(record)
        logger.debug("Parsed %d/%d PubMed articles", len(records), len(articles))
        return records


_default_parser = ElementTreeRecordParser()


def parse_pubmed_xml(xml_text: str) -> list[PubMedRecord]:
    """Parse an efetch payload with the default parser."""
    return _default_parser.parse(xml_text)

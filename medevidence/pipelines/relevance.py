"""
Relevance Filter for MedEvidence

Three escalating passes over retrieved PubMed records, stopping at the
first pass that keeps at least one record:
1. Query terms (expanded through a Japanese/English synonym table)
   against title + abstract
2. Title against high-signal clinical keywords and condition patterns
3. Title against a smaller list of basic keywords

"Nothing passed" is reported separately from "nothing retrieved".
"""

import logging
import re
from dataclasses import dataclass, field
from enum import Enum

from medevidence.models import PubMedRecord

logger = logging.getLogger(__name__)

# ============================================
# Keyword tables
# ============================================

MEDICAL_TERM_SYNONYMS: dict[str, list[str]] = {
    "心不全": [
        "heart failure",
        "cardiac failure",
        "congestive heart failure",
        "acute heart failure",
        "chronic heart failure",
    ],
    "急性": ["acute"],
    "慢性": ["chronic"],
    "治療薬": ["treatment", "therapy", "drug", "medication", "pharmaceutical", "therapeutic"],
    "薬": ["drug", "medication", "pharmaceutical"],
    "治療": ["treatment", "therapy", "therapeutic", "management"],
    "治療方法": ["treatment", "therapy", "therapeutic", "management", "intervention"],
    "手術": ["surgery", "surgical", "operation", "operative", "procedure"],
    "手術方法": ["surgical methods", "surgical procedures", "operative methods", "surgery"],
    "薬物": ["drug", "medication", "pharmaceutical"],
    "薬剤": ["drug", "medication", "pharmaceutical"],
    "ACE阻害薬": ["ace inhibitor", "ace inhibitors"],
    "ARB": ["arb", "angiotensin receptor blocker"],
    "β遮断薬": ["beta blocker", "beta blockers"],
    "利尿薬": ["diuretic", "diuretics"],
    "ジギタリス": ["digitalis", "digoxin"],
    "ドブタミン": ["dobutamine"],
    "ドパミン": ["dopamine"],
    "フロセミド": ["furosemide"],
    "スピロノラクトン": ["spironolactone"],
    "ガイドライン": ["guidelines", "guideline"],
    "診断": ["diagnosis", "diagnostic"],
    "糖尿病": ["diabetes", "diabetic", "glycemic"],
    "高血圧": ["hypertension", "blood pressure"],
    # Cardiac surgery and valve disease
    "大動脈弁": ["aortic valve"],
    "大動脈弁狭窄症": ["aortic stenosis", "aortic valve stenosis"],
    "大動脈弁狭窄": ["aortic stenosis", "aortic valve stenosis"],
    "狭窄症": ["stenosis"],
    "弁膜症": ["valvular disease", "valve disease"],
    "弁置換": ["valve replacement"],
    "弁置換術": ["valve replacement", "valve surgery"],
    "大動脈弁置換": ["aortic valve replacement", "avr"],
    "大動脈弁置換術": ["aortic valve replacement", "avr", "savr"],
    "TAVI": ["tavi", "transcatheter aortic valve implantation", "tavr"],
    "SAVR": ["savr", "surgical aortic valve replacement"],
    "経カテーテル": ["transcatheter", "percutaneous"],
    "植込み": ["implantation", "implant"],
    "心臓外科": ["cardiac surgery", "cardiothoracic surgery"],
    "開心術": ["open heart surgery", "cardiac surgery"],
    "人工弁": ["prosthetic valve", "artificial valve"],
    "生体弁": ["bioprosthetic valve", "tissue valve"],
    "機械弁": ["mechanical valve"],
}

IMPORTANT_TITLE_KEYWORDS = [
    "heart failure",
    "acute",
    "treatment",
    "therapy",
    "guidelines",
    "management",
    "aortic",
    "valve",
    "stenosis",
    "tavi",
    "savr",
    "replacement",
    "surgery",
    "surgical",
]

BASIC_TITLE_KEYWORDS = [
    "heart",
    "cardiac",
    "failure",
    "treatment",
    "therapy",
    "acute",
    "chronic",
    "aortic",
    "valve",
    "stenosis",
    "tavi",
    "savr",
    "surgery",
    "surgical",
    "replacement",
    "implantation",
    "transcatheter",
]


@dataclass(frozen=True)
class TitlePattern:
    """Query triggers that make any title containing one of ``title_terms`` relevant."""

    name: str
    query_triggers: tuple[str, ...]
    title_terms: tuple[str, ...]


TITLE_PATTERNS = [
    TitlePattern(
        name="heart failure",
        query_triggers=("急性心不全", "心不全", "heart failure"),
        title_terms=("heart failure", "cardiac failure"),
    ),
    TitlePattern(
        name="aortic valve disease",
        query_triggers=("大動脈弁", "狭窄症", "手術", "aortic", "valve"),
        title_terms=(
            "aortic",
            "valve",
            "stenosis",
            "tavi",
            "savr",
            "surgery",
            "surgical",
            "replacement",
        ),
    ),
]

# Words too generic to count as a topical match on their own
STOPWORDS = {
    "and", "or", "not", "the", "for", "with", "what", "how", "are", "is",
    "of", "in", "on", "to", "a", "an", "about", "does", "which", "vs",
}

_TOKEN_SPLIT = re.compile(r"[\s？?,.;:()\[\]\"/]+")
SHORT_TERM_MAX_CHARS = 4


def _mentions(term: str, lowered: str) -> bool:
    """Whether ``lowered`` mentions ``term``.

    Japanese has no word boundaries, so terms with Japanese characters match
    as substrings. ASCII terms must start a word (ARB is not in carbohydrate)
    and short ones, mostly acronyms, must also end it; longer terms may carry
    a suffix such as a plural. ASCII may touch Japanese text (ARBの副作用).
    """
    term = term.lower()
    if not term.isascii():
        return term in lowered
    tail = "(?![a-z0-9])" if len(term) <= SHORT_TERM_MAX_CHARS else ""
    return re.search(rf"(?<![a-z0-9]){re.escape(term)}{tail}", lowered) is not None


class RelevanceVerdict(str, Enum):
    RELEVANT = "relevant"
    NONE_RELEVANT = "none_relevant"
    EMPTY = "empty"


@dataclass
class RelevanceResult:
    verdict: RelevanceVerdict
    records: list[PubMedRecord] = field(default_factory=list)
    rejected: list[PubMedRecord] = field(default_factory=list)
    matched_pass: int | None = None

    @property
    def has_relevant(self) -> bool:
        return self.verdict is RelevanceVerdict.RELEVANT


# ============================================
# Filter
# ============================================


def query_terms(*queries: str) -> list[str]:
    """Lower-cased search terms from the raw and translated queries."""
    terms: list[str] = []
    for query in queries:
        if not query:
            continue
        lowered = query.lower()
        for key in MEDICAL_TERM_SYNONYMS:
            if key not in terms and _mentions(key, lowered):
                terms.append(key)
        for token in _TOKEN_SPLIT.split(lowered):
            if len(token) >= 3 and token not in STOPWORDS and token not in terms:
                terms.append(token)
    return terms


class RelevanceFilter:
    """Keeps the records that look on-topic for the query."""

    def filter(
        self,
        records: list[PubMedRecord],
        query: str,
        translated_query: str = "",
    ) -> RelevanceResult:
        if not records:
            return RelevanceResult(verdict=RelevanceVerdict.EMPTY)

        terms = query_terms(query, translated_query)
        combined_query = f"{query} {translated_query}".lower()

        passes = (
            lambda r: self._matches_terms(r, terms),
            lambda r: self._matches_title_keywords(r, combined_query),
            lambda r: self._matches_basic_keywords(r),
        )
        for number, check in enumerate(passes, start=1):
            kept = [r for r in records if check(r)]
            if kept:
                logger.info(
                    "Relevance pass %d kept %d/%d records", number, len(kept), len(records)
                )
                return RelevanceResult(
                    verdict=RelevanceVerdict.RELEVANT,
                    records=kept,
                    rejected=[r for r in records if r not in kept],
                    matched_pass=number,
                )

        logger.info("No relevant records among %d retrieved", len(records))
        return RelevanceResult(verdict=RelevanceVerdict.NONE_RELEVANT, rejected=list(records))

    def _matches_terms(self, record: PubMedRecord, terms: list[str]) -> bool:
        haystack = f"{record.title} {record.abstract}".lower()
        for term in terms:
            synonyms = MEDICAL_TERM_SYNONYMS.get(term)
            if synonyms:
                if any(_mentions(s, haystack) for s in synonyms):
                    return True
            elif _mentions(term, haystack):
                return True
        return False

    def _matches_title_keywords(self, record: PubMedRecord, combined_query: str) -> bool:
        title = record.title.lower()
        if any(keyword in title for keyword in IMPORTANT_TITLE_KEYWORDS):
            return True
        for pattern in TITLE_PATTERNS:
            if any(t.lower() in combined_query for t in pattern.query_triggers) and any(
                term in title for term in pattern.title_terms
            ):
                logger.debug("Title matched %s pattern: %s", pattern.name, record.title)
                return True
        return False

    def _matches_basic_keywords(self, record: PubMedRecord) -> bool:
        title = record.title.lower()
        return any(keyword in title for keyword in BASIC_TITLE_KEYWORDS)

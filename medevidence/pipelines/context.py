"""
Conversation Context for MedEvidence

Prior (query, answer) turns of a thread, loaded by following
``previous_query_id`` links through the result store. Used read-only to
bias the next search and to tell the model what not to repeat.
"""

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from medevidence.models import ConversationTurn

if TYPE_CHECKING:
    from medevidence.db.store import ResultStore

logger = logging.getLogger(__name__)

MAX_CONTEXT_TURNS = 3
SEARCH_CONTEXT_QUERIES = 2

# (keywords in the previous query, instructions for the next answer)
AVOIDANCE_RULES: list[tuple[tuple[str, ...], tuple[str, ...]]] = [
    (
        ("減量効果", "体重", "効果", "weight", "efficacy", "effect"),
        (
            "Do not restate the drug's basic mechanism (appetite suppression, "
            "delayed gastric emptying, etc.); it was already explained.",
            "Do not restate general efficacy or weight-loss effects; they were already explained.",
        ),
    ),
    (
        ("治療", "薬物療法", "作用機序", "機序", "treatment", "therapy", "mechanism", "drug"),
        (
            "Do not restate basic treatment mechanisms or general effects; "
            "they were already explained.",
            "Do not restate the drug's mechanism of action; it was already explained.",
        ),
    ),
    (
        ("診断", "検査", "diagnosis", "diagnostic", "test"),
        ("Do not restate basic diagnostic methods or test overviews; they were already explained.",),
    ),
]


def avoidance_hints(previous_query: str | None) -> list[str]:
    """Instructions derived from keywords in the immediately preceding query."""
    if not previous_query:
        return []
    lowered = previous_query.lower()
    hints: list[str] = []
    for keywords, instructions in AVOIDANCE_RULES:
        if any(k in lowered for k in keywords):
            hints.extend(i for i in instructions if i not in hints)
    return hints


@dataclass(frozen=True)
class ConversationContext:
    """Ordered prior turns, oldest first."""

    turns: tuple[ConversationTurn, ...] = field(default_factory=tuple)

    @property
    def is_empty(self) -> bool:
        return not self.turns

    def recent(self, n: int = MAX_CONTEXT_TURNS) -> list[ConversationTurn]:
        return list(self.turns[-n:]) if n > 0 else []

    @property
    def previous_queries(self) -> list[str]:
        return [turn.query for turn in self.turns]

    @property
    def last_query(self) -> str | None:
        return self.turns[-1].query if self.turns else None

    def search_text(self, query: str) -> str:
        """The text to translate and search: the last two prior queries, then ``query``."""
        recent = self.previous_queries[-SEARCH_CONTEXT_QUERIES:]
        return " ".join([*recent, query]) if recent else query

    def avoidance_hints(self) -> list[str]:
        return avoidance_hints(self.last_query)


async def load_conversation(
    store: "ResultStore",
    previous_query_id: str | None,
    max_turns: int = MAX_CONTEXT_TURNS,
) -> ConversationContext:
    """Walk the ``previous_query_id`` chain back from the given result."""
    turns: list[ConversationTurn] = []
    seen: set[str] = set()
    current_id = previous_query_id

    while current_id and current_id not in seen and len(turns) < max_turns:
        seen.add(current_id)
        record = await store.get_result(current_id)
        if record is None:
            logger.warning("Conversation link %s not found; context truncated", current_id)
            break
        answer_text = record.answer.text if record.answer else ""
        turns.append(ConversationTurn(query=record.query, answer=answer_text))
        current_id = record.previous_query_id

    turns.reverse()
    return ConversationContext(turns=tuple(turns))

"""
Synthesis Prompt Templates

Builds the citation-constrained prompt for answer synthesis from
literature, web and user evidence plus conversation context.
"""

import re
from collections.abc import Sequence

from medevidence.models import PubMedRecord, UserRecord, WebRecord
from medevidence.pipelines.context import ConversationContext

ABSTRACT_MAX_CHARS = 500
USER_CONTENT_MAX_CHARS = 1500
PREVIOUS_ANSWER_MAX_CHARS = 300
MAX_LISTED_AUTHORS = 2

LANGUAGE_NAMES = {"ja": "Japanese", "en": "English"}

SYSTEM_PROMPT = """You are a medical specialist writing for physicians. Answer ONLY from the evidence provided. Do not add facts that are not in the evidence and do not guess.

CITATION RULES:
- Cite literature as [PMID: <pmid>] using only the PMIDs listed in LITERATURE.
- Cite web results as [Web Source <n>] with n from 1 to {web_count} only.
- Cite user evidence as [User Source <n>] with n from 1 to {user_count} only.
- Never invent citation numbers and never write that more references are needed.
- If the evidence is only loosely related to the question, say so and give what is available.
{context_rules}
Write flowing prose in paragraphs, not bullet points. Respond in {language}.
Respond as JSON: {{"answer": "<answer text with inline citation markers>"}}"""

CONTEXT_RULES = """
CONVERSATION RULES:
- This question continues an earlier conversation. Focus only on what is new in the current question.
- Do not repeat basic mechanisms, overviews or general effects that earlier answers already covered.
"""


def truncate_at_sentence(text: str, max_chars: int) -> str:
    """Truncate text at a sentence boundary, falling back to hard cut.

    Finds the last sentence-ending punctuation (. ? ! or 。) before the
    limit, but only if it's past the halfway point.
    """
    if len(text) <= max_chars:
        return text
    half = max_chars // 2
    search_region = text[half:max_chars]
    match = None
    for m in re.finditer(r"[.!?](?:\s|\n)|。", search_region):
        match = m
    if match:
        cut = half + match.end()
        return text[:cut].rstrip()
    return text[:max_chars] + "..."


def format_authors(authors: Sequence[str]) -> str:
    listed = ", ".join(authors[:MAX_LISTED_AUTHORS])
    if len(authors) > MAX_LISTED_AUTHORS:
        listed += " et al."
    return listed


def format_literature_context(records: list[PubMedRecord]) -> str:
    sections = []
    for i, r in enumerate(records, 1):
        abstract = truncate_at_sentence(r.abstract, ABSTRACT_MAX_CHARS) if r.abstract else "(no abstract)"
        sections.append(
            f"{i}. {r.title} [PMID: {r.pmid}]\n"
            f"Authors: {format_authors(r.authors)}\n"
            f"Journal: {r.journal} ({r.publication_date or r.year})\n"
            f"Abstract: {abstract}"
        )
    return "\n\n".join(sections)


def format_web_context(records: list[WebRecord]) -> str:
    """Web results, clearly labelled as web-sourced."""
    return "\n\n".join(
        f"[Web Source {i}: {r.title}]\nURL: {r.url}\n{r.snippet}" for i, r in enumerate(records, 1)
    )


def format_user_context(records: list[UserRecord]) -> str:
    sections = []
    for i, r in enumerate(records, 1):
        heading = r.title or r.source
        url = f"\nURL: {r.url}" if r.url else ""
        content = truncate_at_sentence(r.content, USER_CONTENT_MAX_CHARS)
        sections.append(f"[User Source {i}: {heading}] ({r.kind}){url}\n{content}")
    return "\n\n".join(sections)


def format_conversation(context: ConversationContext, query: str) -> str:
    turns = context.recent()
    if not turns:
        return ""
    lines = ["CONVERSATION SO FAR (already explained, do not repeat):"]
    for i, turn in enumerate(turns, 1):
        lines.append(f"{i}. Q: {turn.query}")
        if turn.answer:
            lines.append(f"   A: {truncate_at_sentence(turn.answer, PREVIOUS_ANSWER_MAX_CHARS)}")
    lines.append(f"{len(turns) + 1}. Q: {query} <- current question")
    lines.append(
        f'Answer the current question in light of the immediately preceding question "{turns[-1].query}".'
    )
    hints = context.avoidance_hints()
    if hints:
        lines.append("AVOID:")
        lines.extend(f"- {hint}" for hint in hints)
    return "\n".join(lines)


def build_system_prompt(
    web_count: int,
    user_count: int,
    has_context: bool,
    language: str = "ja",
) -> str:
    return SYSTEM_PROMPT.format(
        web_count=web_count,
        user_count=user_count,
        context_rules=CONTEXT_RULES if has_context else "",
        language=LANGUAGE_NAMES.get(language, "Japanese"),
    )


def build_synthesis_prompt(
    query: str,
    literature: list[PubMedRecord],
    web: list[WebRecord],
    user: list[UserRecord],
    context: ConversationContext,
) -> str:
    """User-turn prompt listing every evidence block and the conversation."""
    parts = [f"QUESTION: {query}"]
    conversation = format_conversation(context, query)
    if conversation:
        parts.append(conversation)
    if literature:
        parts.append(f"LITERATURE ({len(literature)} articles):\n{format_literature_context(literature)}")
    if web:
        parts.append(f"WEB RESULTS ({len(web)}):\n{format_web_context(web)}")
    if user:
        parts.append(f"USER EVIDENCE ({len(user)}):\n{format_user_context(user)}")
    return "\n\n".join(parts)

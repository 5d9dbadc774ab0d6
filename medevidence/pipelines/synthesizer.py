"""
Answer Synthesizer for MedEvidence

Builds the citation-constrained prompt, calls the LLM for a structured
SynthesisOutput and falls back to a labelled title listing when the model
is unavailable.
"""

import logging
from dataclasses import dataclass, field

from medevidence.llm.citations import invalid_markers
from medevidence.llm.ollama_client import LLMError, OllamaClient
from medevidence.llm.schemas import SynthesisOutput
from medevidence.models import PubMedRecord, UserRecord, WebRecord
from medevidence.pipelines.context import ConversationContext
from medevidence.pipelines.messages import list_titles, message
from medevidence.pipelines.prompts import build_synthesis_prompt, build_system_prompt

logger = logging.getLogger(__name__)

MAX_LITERATURE_RECORDS = 3


@dataclass
class SynthesisResult:
    text: str
    degraded: bool = False
    literature_records: list[PubMedRecord] = field(default_factory=list)
    prompt: str = ""


class AnswerSynthesizer:
    """Produces the narrative answer with inline citation markers."""

    def __init__(self, llm_client: OllamaClient | None = None) -> None:
        self.llm_client = llm_client

    async def synthesize(
        self,
        query: str,
        literature_records: list[PubMedRecord],
        web_records: list[WebRecord] | None = None,
        user_records: list[UserRecord] | None = None,
        context: ConversationContext | None = None,
        language: str = "ja",
    ) -> SynthesisResult:
        literature = literature_records[:MAX_LITERATURE_RECORDS]
        web = web_records or []
        user = user_records or []
        context = context or ConversationContext()

        system_prompt = build_system_prompt(
            web_count=len(web),
            user_count=len(user),
            has_context=not context.is_empty,
            language=language,
        )
        prompt = build_synthesis_prompt(query, literature, web, user, context)

        if self.llm_client is None:
            logger.warning("No LLM client configured; returning source listing")
            return self._fallback(literature, web, user, language, prompt)

        try:
            output = await self.llm_client.complete(
                system_prompt=system_prompt,
                messages=[{"role": "user", "content": prompt}],
                response_model=SynthesisOutput,
            )
        except LLMError as e:
            logger.warning("Answer synthesis failed, using source listing: %s", e)
            return self._fallback(literature, web, user, language, prompt)
        except Exception as e:
            logger.error("Unexpected synthesis error, using source listing: %s", e)
            return self._fallback(literature, web, user, language, prompt)

        bad = invalid_markers(output.answer, len(web), len(user))
        if bad:
            # CitationResolver renders these as inert text
            logger.info("Model emitted out-of-range citation markers: %s", bad)

        return SynthesisResult(text=output.answer, literature_records=literature, prompt=prompt)

    def _fallback(
        self,
        literature: list[PubMedRecord],
        web: list[WebRecord],
        user: list[UserRecord],
        language: str,
        prompt: str,
    ) -> SynthesisResult:
        text = message("synthesis_degraded", language, titles=list_titles(literature, web, user))
        return SynthesisResult(
            text=text, degraded=True, literature_records=literature, prompt=prompt
        )

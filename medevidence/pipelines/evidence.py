"""
Evidence Pipeline for MedEvidence

One run of the retrieval & synthesis flow for a single query:

    contextual query -> translate -> (PubMed || web search) -> relevance
    filter -> synthesize

Stages run strictly in that order; literature and web search run
concurrently. Stage-local failures degrade the answer instead of
aborting the run.
"""

import asyncio
import logging
import time
from typing import Any

from medevidence.literature.pubmed_client import LiteratureClient, LiteratureSearchResult
from medevidence.literature.web_search import WebSearchClient
from medevidence.models import AnswerOutcome, SearchQuery, SynthesizedAnswer, WebRecord
from medevidence.observability.metrics import record_pipeline_run
from medevidence.pipelines.context import ConversationContext
from medevidence.pipelines.messages import list_titles, message
from medevidence.pipelines.relevance import RelevanceFilter, RelevanceVerdict
from medevidence.pipelines.synthesizer import AnswerSynthesizer
from medevidence.pipelines.translator import QueryTranslator

logger = logging.getLogger(__name__)


class EvidencePipeline:
    """Translate, search, filter and synthesize for one query."""

    def __init__(
        self,
        literature_client: LiteratureClient,
        translator: QueryTranslator,
        synthesizer: AnswerSynthesizer,
        web_client: WebSearchClient | None = None,
        relevance_filter: RelevanceFilter | None = None,
    ) -> None:
        self.literature_client = literature_client
        self.translator = translator
        self.synthesizer = synthesizer
        self.web_client = web_client
        self.relevance_filter = relevance_filter or RelevanceFilter()

    async def run(
        self,
        task_id: str,
        query: SearchQuery,
        context: ConversationContext | None = None,
    ) -> SynthesizedAnswer:
        start_time = time.time()
        steps: list[dict[str, Any]] = []
        context = context or ConversationContext()
        language = query.response_language
        user_records = query.user_records()

        # --- Translate ---
        step_start = time.time()
        search_text = context.search_text(query.query)
        translation = await self.translator.translate(search_text)
        steps.append(_step("translate", step_start, f"{translation.method}: {translation.text}"))

        # --- Search ---
        step_start = time.time()
        literature, web_records = await self._search(query, translation.text)
        steps.append(
            _step(
                "search",
                step_start,
                f"{len(literature.records)} literature, {len(web_records)} web",
            )
        )

        # --- Relevance ---
        step_start = time.time()
        relevance = self.relevance_filter.filter(literature.records, query.query, translation.text)
        steps.append(_step("relevance", step_start, relevance.verdict.value))

        answer = SynthesizedAnswer(
            task_id=task_id,
            query=query.query,
            translated_query=translation.text,
            text="",
            outcome=AnswerOutcome.ANSWERED,
            web_records=web_records,
            user_records=user_records,
            translation_degraded=translation.degraded,
            upstream_unavailable=literature.failed,
            response_language=language,
        )

        has_other_evidence = bool(web_records or user_records)
        if relevance.verdict is RelevanceVerdict.EMPTY and not has_other_evidence:
            text = message(
                "no_evidence", language, query=query.query, translated_query=translation.text
            )
            if literature.failed:
                text += message("upstream_unavailable", language)
            answer.text = text
            answer.outcome = AnswerOutcome.NO_EVIDENCE_FOUND
        elif relevance.verdict is RelevanceVerdict.NONE_RELEVANT and not has_other_evidence:
            answer.literature_records = relevance.rejected
            answer.text = message(
                "no_relevant", language, query=query.query, titles=list_titles(relevance.rejected)
            )
            answer.outcome = AnswerOutcome.NO_RELEVANT_EVIDENCE
        else:
            # --- Synthesize ---
            step_start = time.time()
            synthesis = await self.synthesizer.synthesize(
                query=query.query,
                literature_records=relevance.records,
                web_records=web_records,
                user_records=user_records,
                context=context,
                language=language,
            )
            answer.text = synthesis.text
            answer.literature_records = synthesis.literature_records
            if synthesis.degraded:
                answer.outcome = AnswerOutcome.SYNTHESIS_DEGRADED
            steps.append(_step("synthesize", step_start, answer.outcome.value))

        elapsed = (time.time() - start_time) * 1000
        record_pipeline_run(
            latency_ms=elapsed,
            outcome=answer.outcome.value,
            translation_degraded=translation.degraded,
            upstream_unavailable=literature.failed,
        )
        logger.info(
            "Pipeline %s finished in %.0fms (%s): %s",
            task_id,
            elapsed,
            answer.outcome.value,
            [s["name"] for s in steps],
        )
        return answer

    async def _search(
        self,
        query: SearchQuery,
        search_text: str,
    ) -> tuple[LiteratureSearchResult, list[WebRecord]]:
        if query.use_only_user_evidence:
            return LiteratureSearchResult(), []

        literature_task = self.literature_client.search(
            search_text, max_results=query.literature_quota
        )
        if self.web_client is None or query.web_quota <= 0:
            return await literature_task, []

        literature, web_records = await asyncio.gather(
            literature_task,
            self.web_client.search(search_text, max_results=query.web_quota),
        )
        return literature, web_records


def _step(name: str, step_start: float, detail: str) -> dict[str, Any]:
    return {
        "name": name,
        "duration_ms": round((time.time() - step_start) * 1000, 1),
        "detail": detail,
    }

"""
MedEvidence LLM Module

LLM integration components:
- OllamaClient: Async client for structured (JSON schema) completions
- CitationResolver: Splits answer text into linked citation segments
"""

from medevidence.llm.citations import CitationResolver, CitationSegment, render_markdown
from medevidence.llm.ollama_client import LLMError, OllamaClient
from medevidence.llm.schemas import SynthesisOutput, TranslationOutput

__all__ = [
    "OllamaClient",
    "LLMError",
    "TranslationOutput",
    "SynthesisOutput",
    "CitationResolver",
    "CitationSegment",
    "render_markdown",
]

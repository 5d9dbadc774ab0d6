"""
Structured output shapes for LLM calls.

Each model's JSON schema is sent to Ollama as the ``format`` constraint and
the reply is validated back into the model.
"""

from pydantic import BaseModel, Field, field_validator


class TranslationOutput(BaseModel):
    """English PubMed search keywords for a clinical question."""

    translated_query: str = Field(description="English keywords suitable for a PubMed search")

    @field_validator("translated_query")
    @classmethod
    def not_blank(cls, v: str) -> str:
        v = " ".join(v.split())
        if not v:
            raise ValueError("translated_query must not be empty")
        return v


class SynthesisOutput(BaseModel):
    """Narrative answer with inline [PMID: n] / [Web Source i] / [User Source i] markers."""

    answer: str = Field(description="Answer text with inline citation markers")

    @field_validator("answer")
    @classmethod
    def not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("answer must not be empty")
        return v

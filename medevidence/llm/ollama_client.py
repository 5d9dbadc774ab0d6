"""
Ollama LLM Client for MedEvidence

Async HTTP client for the Ollama chat API with:
- Structured (JSON-schema constrained) output validated by pydantic
- Retries through the shared RetryPolicy
- Configurable timeout
- Health check endpoint
"""

import logging
import os
from typing import TypeVar

import httpx
from pydantic import BaseModel, ValidationError

from medevidence.literature.http import RetryPolicy, UpstreamUnavailable

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

# Defaults from environment / docker-compose
DEFAULT_BASE_URL = os.environ.get("OLLAMA_URL", "http://localhost:11434")
DEFAULT_MODEL = os.environ.get("OLLAMA_MODEL", "qwen2.5:1.5b")
DEFAULT_TIMEOUT = int(os.environ.get("OLLAMA_TIMEOUT_SECONDS", "120"))

# LLM generation parameters
DEFAULT_TEMPERATURE = float(os.environ.get("LLM_TEMPERATURE", "0.0"))
DEFAULT_MAX_TOKENS = int(os.environ.get("LLM_MAX_TOKENS", "1024"))
DEFAULT_TOP_P = float(os.environ.get("LLM_TOP_P", "0.9"))
DEFAULT_NUM_CTX = int(os.environ.get("LLM_NUM_CTX", "4096"))
DEFAULT_KEEP_ALIVE = os.environ.get("OLLAMA_KEEP_ALIVE", "60m")

# Retry configuration
MAX_RETRIES = 3
RETRY_BACKOFF_BASE = 2  # seconds


class LLMError(Exception):
    """The model could not be reached or returned output that failed validation."""


def _is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code >= 500
    return isinstance(exc, (httpx.TransportError, TimeoutError))


class OllamaClient:
    """Async client for Ollama LLM inference API."""

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        model: str = DEFAULT_MODEL,
        timeout: int = DEFAULT_TIMEOUT,
        temperature: float = DEFAULT_TEMPERATURE,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        top_p: float = DEFAULT_TOP_P,
        num_ctx: int = DEFAULT_NUM_CTX,
        keep_alive: str = DEFAULT_KEEP_ALIVE,
        max_retries: int = MAX_RETRIES,
        retry_backoff: float = RETRY_BACKOFF_BASE,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout = timeout
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.top_p = top_p
        self.num_ctx = num_ctx
        self.keep_alive = keep_alive
        self.retry_policy = RetryPolicy(
            max_attempts=max_retries,
            base_delay=retry_backoff,
            is_retryable=_is_retryable,
        )

    def _build_options(self) -> dict:
        """Build the Ollama options dict from instance configuration."""
        return {
            "temperature": self.temperature,
            "top_p": self.top_p,
            "num_predict": self.max_tokens,
            "num_ctx": self.num_ctx,
        }

    async def complete(
        self,
        system_prompt: str,
        messages: list[dict[str, str]],
        response_model: type[ModelT],
    ) -> ModelT:
        """
        Run a chat completion constrained to ``response_model``'s JSON schema.

        ``messages`` are {"role": ..., "content": ...} dicts that follow the
        system prompt. Raises LLMError when the call fails after retries or
        the reply does not validate.
        """
        payload = {
            "model": self.model,
            "messages": [{"role": "system", "content": system_prompt}, *messages],
            "stream": False,
            "format": response_model.model_json_schema(),
            "keep_alive": self.keep_alive,
            "options": self._build_options(),
        }

        async def send() -> str:
            async with httpx.AsyncClient(timeout=httpx.Timeout(self.timeout)) as client:
                response = await client.post(f"{self.base_url}/api/chat", json=payload)
                response.raise_for_status()
                data = response.json()
                return (data.get("message") or {}).get("content", "")

        try:
            content = await self.retry_policy.run(send, description="Ollama chat")
        except UpstreamUnavailable as e:
            raise LLMError(str(e)) from e
        except httpx.HTTPStatusError as e:
            raise LLMError(f"Ollama HTTP error {e.response.status_code}") from e
        except ValueError as e:
            raise LLMError(f"Malformed Ollama response: {e}") from e

        try:
            return response_model.model_validate_json(content)
        except ValidationError as e:
            logger.warning("Ollama output failed %s validation: %s", response_model.__name__, e)
            raise LLMError(f"Invalid {response_model.__name__} output") from e

    async def health_check(self) -> bool:
        """
        Check if Ollama is reachable.

        Returns True if the Ollama API responds with 200, False otherwise.
        """
        try:
            async with httpx.AsyncClient(timeout=httpx.Timeout(10)) as client:
                response = await client.get(self.base_url)
                return response.status_code == 200
        except Exception as e:
            logger.warning("Ollama health check failed: %s", e)
            return False

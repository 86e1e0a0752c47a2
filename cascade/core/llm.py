"""Text-generation service client.

The engine only needs one call: chat completion with a model, messages,
temperature and max tokens. Truncation at the token limit must be
distinguishable from a normal stop, and HTTP failures keep their status code so
the caller can tell "model gone" from "rate limited".
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

import httpx

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gpt-5-mini"
DEFAULT_TEMPERATURE = 0.7
DEFAULT_MAX_TOKENS = 8000

# UI model names (including retired ones) -> provider model ids
MODEL_ALIASES: dict[str, str] = {
    "openai-gpt-4o": "google/gemini-3-flash-preview",
    "gpt-4o": "google/gemini-3-flash-preview",
    "gpt-4": "openai/gpt-5",
    "claude-3.5": "google/gemini-2.5-pro",
    "sonar": "google/gemini-2.5-flash",
    "local-vllm": "google/gemini-2.5-flash",
    "gemini-2.5-pro": "google/gemini-2.5-pro",
    "gemini-2.5-flash": "google/gemini-2.5-flash",
    "gemini-2.5-flash-lite": "google/gemini-2.5-flash-lite",
    "gemini-3-flash-preview": "google/gemini-3-flash-preview",
    "gemini-3-pro-preview": "google/gemini-3-pro-preview",
    "gpt-5": "openai/gpt-5",
    "gpt-5-mini": "openai/gpt-5-mini",
    "gpt-5-nano": "openai/gpt-5-nano",
    "gpt-5.2": "openai/gpt-5.2",
}


def map_model_name(model: str) -> str:
    """Provider id for a UI model name; unknown names pass through."""
    return MODEL_ALIASES.get(model, model)


class TextGenerationError(Exception):
    """Non-2xx response from the text-generation service."""

    def __init__(self, status_code: int, body: str = "", model: str | None = None):
        self.status_code = status_code
        self.body = body
        self.model = model
        super().__init__(f"Text generation failed with HTTP {status_code}: {body[:200]}")

    @property
    def is_model_unavailable(self) -> bool:
        return is_model_unavailable(self.status_code, self.body)


class RateLimitError(TextGenerationError):
    """HTTP 429 from the text-generation service."""

    pass


class QuotaExceededError(TextGenerationError):
    """HTTP 402 from the text-generation service (credits exhausted)."""

    pass


def is_model_unavailable(status_code: int, error_text: str) -> bool:
    """404/410 always mean the model is gone; 400 only when the error mentions the model."""
    if status_code in (404, 410):
        return True
    return status_code == 400 and "model" in (error_text or "").lower()


@dataclass
class GenerationUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


@dataclass
class GenerationRequest:
    model: str
    messages: list[dict[str, str]]
    temperature: float = DEFAULT_TEMPERATURE
    max_tokens: int = DEFAULT_MAX_TOKENS


@dataclass
class GenerationResult:
    """Response from a text-generation call."""

    content: str
    model: str
    usage: GenerationUsage = field(default_factory=GenerationUsage)
    finish_reason: str = "stop"
    raw_response: Any = None

    @property
    def truncated(self) -> bool:
        return self.finish_reason == "length"


class TextGenerationClient(ABC):
    """
    Abstract text-generation backend.

    Implementations should handle:
    - API authentication
    - Request/response formatting
    - Mapping HTTP failures onto TextGenerationError subclasses
    """

    @abstractmethod
    async def complete(self, request: GenerationRequest) -> GenerationResult:
        """Run one chat completion.

        Raises:
            TextGenerationError: On any non-2xx response
        """
        pass

    async def aclose(self) -> None:
        return None


class HttpTextGenerationClient(TextGenerationClient):
    """OpenAI-compatible ``/chat/completions`` client over httpx."""

    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        timeout: float = 120.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    async def complete(self, request: GenerationRequest) -> GenerationResult:
        response = await self._client.post(
            "/chat/completions",
            json={
                "model": request.model,
                "messages": request.messages,
                "temperature": request.temperature,
                "max_tokens": request.max_tokens,
            },
        )

        if response.status_code == 429:
            raise RateLimitError(429, response.text, request.model)
        if response.status_code == 402:
            raise QuotaExceededError(402, response.text, request.model)
        if response.status_code >= 400:
            logger.warning(
                f"Text generation HTTP {response.status_code} for model {request.model}"
            )
            raise TextGenerationError(response.status_code, response.text, request.model)

        data = response.json()
        choice = (data.get("choices") or [{}])[0]
        usage = data.get("usage") or {}
        prompt_tokens = usage.get("prompt_tokens", 0) or 0
        completion_tokens = usage.get("completion_tokens", 0) or 0
        return GenerationResult(
            content=(choice.get("message") or {}).get("content") or "",
            model=request.model,
            usage=GenerationUsage(
                prompt_tokens=prompt_tokens,
                completion_tokens=completion_tokens,
                total_tokens=usage.get("total_tokens") or prompt_tokens + completion_tokens,
            ),
            finish_reason=choice.get("finish_reason") or "stop",
            raw_response=data,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

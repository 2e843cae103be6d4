"""
LLM client used by the knowledge extractor.

Only two things are asked of a client: take a system instruction plus one
extraction prompt, and return the model's JSON text. Gemini is the
production provider; the mock client serves tests and offline runs.
"""

import asyncio
import json
import re
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import httpx
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random_exponential,
)

from rfp_graphrag.core.config import Settings, settings
from rfp_graphrag.core.logging import get_logger

logger = get_logger(__name__)


class LLMProvider(str, Enum):
    """Supported LLM providers."""

    GEMINI = "gemini"
    MOCK = "mock"


GEMINI_API_URL = "https://generativelanguage.googleapis.com/v1beta/models"

# Retryable statuses: quota exhaustion and transient overload
_RETRYABLE_STATUS = frozenset({429, 500, 503})


@dataclass
class LLMMessage:
    """One message of an extraction prompt."""

    role: str  # "system", "user" or "assistant"
    content: str


@dataclass
class LLMResponse:
    """Text returned by a completion, with token usage when the provider reports it."""

    content: str
    model: str
    provider: LLMProvider
    usage: dict[str, int] = field(default_factory=dict)


class LLMError(Exception):
    """Base exception for LLM client errors."""


class LLMRateLimitError(LLMError):
    """Provider asked us to back off (429) or was temporarily unavailable."""


class LLMAPIError(LLMError):
    """Provider rejected the request; retrying will not help."""


class LLMParseError(LLMError):
    """Provider answered with something other than the expected payload."""


class BaseLLMClient(ABC):
    """Abstract base class for LLM clients.

    Clients own an httpx.AsyncClient for the duration of an ``async with``
    block; the retrieval context enters them once at startup.
    """

    provider: LLMProvider

    def __init__(self, model: str | None = None, timeout: float = 60.0):
        self.model = model
        self.timeout = timeout
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> "BaseLLMClient":
        self._client = httpx.AsyncClient(timeout=self.timeout)
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    @property
    def client(self) -> httpx.AsyncClient:
        """The open HTTP client; raises outside ``async with``."""
        if self._client is None:
            raise RuntimeError(
                f"{type(self).__name__} must be entered with 'async with' before use"
            )
        return self._client

    @abstractmethod
    async def complete(
        self,
        messages: list[LLMMessage],
        temperature: float = 0.0,
        max_tokens: int = 4096,
    ) -> LLMResponse:
        """
        Run one completion.

        Args:
            messages: System instruction and user prompt
            temperature: Sampling temperature (extraction uses 0.0)
            max_tokens: Cap on generated tokens

        Returns:
            LLMResponse whose content is the model's raw text
        """


# =============================================================================
# Google Gemini Client
# =============================================================================


def build_gemini_payload(
    messages: list[LLMMessage], temperature: float, max_tokens: int
) -> dict[str, Any]:
    """Translate chat messages into a generateContent request body."""
    system = [m.content for m in messages if m.role == "system"]
    payload: dict[str, Any] = {
        "contents": [
            {
                "role": "model" if m.role == "assistant" else "user",
                "parts": [{"text": m.content}],
            }
            for m in messages
            if m.role != "system"
        ],
        "generation_config": {
            "temperature": temperature,
            "max_output_tokens": max_tokens,
            "response_mime_type": "application/json",
        },
    }
    if system:
        payload["system_instruction"] = {"parts": [{"text": "\n\n".join(system)}]}
    return payload


def _candidate_text(data: dict[str, Any]) -> str:
    candidates = data.get("candidates") or []
    if not candidates:
        raise LLMParseError("Gemini response has no candidates")
    parts = (candidates[0].get("content") or {}).get("parts") or []
    return "".join(part.get("text", "") for part in parts)


class GeminiClient(BaseLLMClient):
    """Client for the Gemini generateContent endpoint in JSON response mode."""

    provider = LLMProvider.GEMINI

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        timeout: float = 60.0,
    ):
        super().__init__(model=model or settings.gemini_model, timeout=timeout)
        self.api_key = api_key or settings.google_api_key
        if not self.api_key:
            raise ValueError("Google API key not configured. Set GOOGLE_API_KEY in .env")

    async def _raise_for_status(self, response: httpx.Response) -> None:
        status = response.status_code
        if status == 200:
            return
        if status in _RETRYABLE_STATUS:
            retry_after = response.headers.get("retry-after", "")
            delay = int(retry_after) if retry_after.isdigit() else 0
            logger.warning("Gemini asked to back off", status_code=status, retry_after=delay)
            if delay:
                await asyncio.sleep(delay)
            raise LLMRateLimitError(f"Gemini returned {status}")

        detail = response.text[:500]
        logger.error("Gemini API error", status_code=status, model=self.model, response=detail)
        reasons = {
            400: f"Bad request: {detail}",
            403: "API key invalid or lacks permissions",
            404: f"Model '{self.model}' not found",
        }
        raise LLMAPIError(reasons.get(status, f"Gemini returned {status}: {detail}"))

    @retry(
        retry=retry_if_exception_type((httpx.TransportError, LLMRateLimitError)),
        stop=stop_after_attempt(5),
        wait=wait_random_exponential(multiplier=1, min=2, max=30),
        reraise=True,
    )
    async def complete(
        self,
        messages: list[LLMMessage],
        temperature: float = 0.0,
        max_tokens: int = 4096,
    ) -> LLMResponse:
        response = await self.client.post(
            f"{GEMINI_API_URL}/{self.model}:generateContent",
            headers={"Content-Type": "application/json", "x-goog-api-key": self.api_key},
            json=build_gemini_payload(messages, temperature, max_tokens),
        )
        await self._raise_for_status(response)

        data = response.json()
        usage = data.get("usageMetadata", {})
        return LLMResponse(
            content=_candidate_text(data),
            model=self.model,
            provider=self.provider,
            usage={
                "input_tokens": usage.get("promptTokenCount", 0),
                "output_tokens": usage.get("candidatesTokenCount", 0),
            },
        )


# =============================================================================
# Mock Client
# =============================================================================

Responder = Callable[[str], str | Awaitable[str]]

_DOCUMENT_BLOCK = re.compile(r"<document>\s*(.*?)\s*</document>", re.DOTALL)
_CAPITALIZED_PHRASE = re.compile(r"\b[A-Z][A-Za-z0-9]+(?:\s+[A-Z0-9][A-Za-z0-9]+)*")
_LEADING_FILLER = {"The", "This", "That", "These", "All", "Each", "Any", "An", "A", "In", "On", "If"}
_MAX_MOCK_ENTITIES = 20


def capitalized_entities(text: str) -> list[dict[str, Any]]:
    """Treat each distinct capitalized phrase of ``text`` as a CONCEPT entity."""
    seen: set[str] = set()
    entities: list[dict[str, Any]] = []
    for phrase in _CAPITALIZED_PHRASE.findall(text):
        words = phrase.split()
        while words and words[0] in _LEADING_FILLER:
            words.pop(0)
        name = " ".join(words)
        if len(name) < 3 or name.lower() in seen:
            continue
        seen.add(name.lower())
        entities.append({"name": name, "type": "CONCEPT", "confidence": 0.7})
        if len(entities) == _MAX_MOCK_ENTITIES:
            break
    return entities


class MockLLMClient(BaseLLMClient):
    """
    Offline LLM client.

    Answers come from, in order of precedence:
    - a responder callable (receives the user prompt, may raise or be async)
    - canned responses, consumed in order with the last one repeating
    - the capitalized phrases of the ``<document>`` block as entities
    """

    provider = LLMProvider.MOCK

    def __init__(self, model: str = "mock-model", timeout: float = 60.0):
        super().__init__(model=model, timeout=timeout)
        self._responses: list[str] = []
        self._responder: Responder | None = None
        self.call_count = 0

    def set_responses(self, responses: list[str]) -> None:
        self._responses = list(responses)
        self._responder = None
        self.call_count = 0

    def set_responder(self, responder: Responder | None) -> None:
        self._responder = responder
        self.call_count = 0

    async def complete(
        self,
        messages: list[LLMMessage],
        temperature: float = 0.0,  # noqa: ARG002
        max_tokens: int = 4096,  # noqa: ARG002
    ) -> LLMResponse:
        prompt = next((m.content for m in messages if m.role == "user"), "")
        served = self.call_count
        self.call_count += 1

        if self._responder is not None:
            content = self._responder(prompt)
            if asyncio.iscoroutine(content):
                content = await content
        elif self._responses:
            content = self._responses[min(served, len(self._responses) - 1)]
        else:
            match = _DOCUMENT_BLOCK.search(prompt)
            text = match.group(1) if match else prompt
            content = json.dumps({"entities": capitalized_entities(text), "relationships": []})

        return LLMResponse(content=content, model=self.model, provider=self.provider)


def get_llm_client(
    provider: str | LLMProvider | None = None,
    app_settings: Settings | None = None,
    **kwargs,
) -> BaseLLMClient:
    """
    Build the LLM client selected by ``provider`` or ``LLM_EXTRACTOR``.

    Example:
        async with get_llm_client("mock") as client:
            response = await client.complete(messages)
    """
    cfg = app_settings or settings
    selected = LLMProvider((provider or cfg.llm_extractor).lower())

    if selected == LLMProvider.MOCK:
        return MockLLMClient(**kwargs)

    kwargs.setdefault("api_key", cfg.google_api_key)
    kwargs.setdefault("model", cfg.gemini_model)
    kwargs.setdefault("timeout", cfg.llm_timeout_s)
    return GeminiClient(**kwargs)

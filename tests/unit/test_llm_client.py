"""Unit tests for the LLM clients used by extraction."""

import json

import httpx
import pytest

from rfp_graphrag.services import llm_client
from rfp_graphrag.services.llm_client import (
    GeminiClient,
    LLMAPIError,
    LLMMessage,
    LLMParseError,
    LLMProvider,
    MockLLMClient,
)

pytestmark = pytest.mark.asyncio

MESSAGES = [
    LLMMessage(role="system", content="Extract entities."),
    LLMMessage(role="user", content="<document>Amazon S3 stores objects.</document>"),
]


# =============================================================================
# Mock Client Tests
# =============================================================================


class TestMockLLMClient:
    """Tests for the offline client."""

    async def test_default_response_reads_document_block(self) -> None:
        """Test the default answer lists phrases of the document block only."""
        client = MockLLMClient()

        response = await client.complete(MESSAGES)

        data = json.loads(response.content)
        assert [e["name"] for e in data["entities"]] == ["Amazon S3"]
        assert response.provider == LLMProvider.MOCK
        assert client.call_count == 1

    async def test_canned_responses_repeat_last(self) -> None:
        """Test canned responses are served in order and the last one repeats."""
        client = MockLLMClient()
        client.set_responses(["first", "second"])

        contents = [(await client.complete(MESSAGES)).content for _ in range(3)]

        assert contents == ["first", "second", "second"]

    async def test_async_responder(self) -> None:
        """Test an async responder receives the user prompt."""
        client = MockLLMClient()

        async def responder(prompt: str) -> str:
            return "lambda" if "Lambda" in prompt else "other"

        client.set_responder(responder)
        response = await client.complete([LLMMessage(role="user", content="AWS Lambda")])

        assert response.content == "lambda"


# =============================================================================
# Gemini Client Tests
# =============================================================================


class TestGeminiClient:
    """Tests for the Gemini client over a mocked transport."""

    @staticmethod
    def _client(handler) -> GeminiClient:
        client = GeminiClient(api_key="test-key", model="gemini-test")
        client._client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        return client

    async def test_requires_api_key(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test a missing key is rejected at construction."""
        monkeypatch.setattr(llm_client.settings, "google_api_key", None)
        with pytest.raises(ValueError):
            GeminiClient(api_key="", model="gemini-test")

    async def test_complete(self) -> None:
        """Test candidate parts are joined and usage is reported."""

        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path.endswith("/gemini-test:generateContent")
            assert request.headers["x-goog-api-key"] == "test-key"
            return httpx.Response(
                200,
                json={
                    "candidates": [{"content": {"parts": [{"text": '{"entities"'}, {"text": ": []}"}]}}],
                    "usageMetadata": {"promptTokenCount": 12, "candidatesTokenCount": 4},
                },
            )

        client = self._client(handler)
        response = await client.complete(MESSAGES)
        await client.__aexit__(None, None, None)

        assert response.content == '{"entities": []}'
        assert response.usage == {"input_tokens": 12, "output_tokens": 4}

    async def test_forbidden_not_retried(self) -> None:
        """Test a 403 raises an API error after a single request."""
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(403, text="denied")

        client = self._client(handler)
        with pytest.raises(LLMAPIError, match="API key invalid"):
            await client.complete(MESSAGES)
        await client.__aexit__(None, None, None)

        assert len(calls) == 1

    async def test_no_candidates(self) -> None:
        """Test an empty candidate list is a parse error."""

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"candidates": []})

        client = self._client(handler)
        with pytest.raises(LLMParseError):
            await client.complete(MESSAGES)
        await client.__aexit__(None, None, None)


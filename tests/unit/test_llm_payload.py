"""Unit tests for LLM request building and client selection."""

import pytest

from rfp_graphrag.core.config import Settings
from rfp_graphrag.services import llm_client
from rfp_graphrag.services.llm_client import (
    LLMMessage,
    MockLLMClient,
    build_gemini_payload,
    capitalized_entities,
    get_llm_client,
)

MESSAGES = [
    LLMMessage(role="system", content="Extract entities."),
    LLMMessage(role="user", content="<document>Amazon S3 stores objects.</document>"),
]


# =============================================================================
# Payload Tests
# =============================================================================


class TestGeminiPayload:
    """Tests for generateContent request bodies."""

    def test_system_message_becomes_instruction(self) -> None:
        """Test system text moves to system_instruction and JSON mode is on."""
        payload = build_gemini_payload(MESSAGES, temperature=0.0, max_tokens=512)

        assert payload["system_instruction"] == {"parts": [{"text": "Extract entities."}]}
        assert [c["role"] for c in payload["contents"]] == ["user"]
        assert payload["generation_config"]["response_mime_type"] == "application/json"
        assert payload["generation_config"]["max_output_tokens"] == 512

    def test_assistant_maps_to_model_role(self) -> None:
        """Test assistant turns use Gemini's model role."""
        payload = build_gemini_payload(
            [LLMMessage(role="user", content="q"), LLMMessage(role="assistant", content="a")],
            temperature=0.0,
            max_tokens=64,
        )

        assert [c["role"] for c in payload["contents"]] == ["user", "model"]
        assert "system_instruction" not in payload


class TestCapitalizedEntities:
    """Tests for the offline client's entity heuristic."""

    def test_capitalized_entities(self) -> None:
        """Test leading filler words are dropped and names deduplicated."""
        entities = capitalized_entities("The Amazon S3 bucket. Amazon S3 again. AWS Lambda runs.")

        assert [e["name"] for e in entities] == ["Amazon S3", "AWS Lambda"]
        assert all(e["type"] == "CONCEPT" for e in entities)


# =============================================================================
# Factory Tests
# =============================================================================


class TestFactory:
    """Tests for get_llm_client."""

    def test_mock_from_settings(self, test_settings: Settings) -> None:
        """Test the configured extractor is used when no provider is given."""
        assert isinstance(get_llm_client(app_settings=test_settings), MockLLMClient)

    def test_gemini_requires_key(
        self, test_settings: Settings, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Test selecting Gemini without a key fails."""
        monkeypatch.setattr(llm_client.settings, "google_api_key", None)
        cfg = test_settings.model_copy(update={"google_api_key": ""})

        with pytest.raises(ValueError):
            get_llm_client("gemini", app_settings=cfg)

    def test_unknown_provider(self, test_settings: Settings) -> None:
        """Test an unknown provider name is rejected."""
        with pytest.raises(ValueError):
            get_llm_client("openai", app_settings=test_settings)

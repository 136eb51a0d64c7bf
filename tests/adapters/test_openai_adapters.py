"""Unit tests for the OpenAI embedding and generation adapters (mocked client)."""

from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from openai import OpenAIError

from clinical_rag.adapters.ai import OpenAIEmbeddingAdapter, OpenAIGenerationAdapter
from clinical_rag.domain.ports import EmbeddingGenerationError, GenerationError
from clinical_rag.infrastructure.config_manager import AIConfig


@pytest.fixture
def ai_config():
    return AIConfig(
        api_key="sk-test",
        embedding_model="text-embedding-3-small",
        embedding_dimensions=4,
        generation_model="gpt-4o-mini",
    )


def embedding_response(*vectors):
    return SimpleNamespace(data=[SimpleNamespace(embedding=list(v)) for v in vectors])


def chat_response(content, total_tokens=42):
    return SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=content))],
        usage=SimpleNamespace(total_tokens=total_tokens),
    )


class TestOpenAIEmbeddingAdapter:
    """Test suite for OpenAIEmbeddingAdapter."""

    def test_embed_calls_api_with_configured_model(self, ai_config):
        client = MagicMock()
        client.embeddings.create.return_value = embedding_response([1, 2, 3, 4])
        adapter = OpenAIEmbeddingAdapter(ai_config, client=client)

        vector = adapter.embed("Diagnosis: diabetes")

        assert vector == [1.0, 2.0, 3.0, 4.0]
        assert all(isinstance(x, float) for x in vector)
        client.embeddings.create.assert_called_once_with(
            model="text-embedding-3-small",
            input="Diagnosis: diabetes",
            dimensions=4,
        )

    def test_reports_model_and_dimensions(self, ai_config):
        adapter = OpenAIEmbeddingAdapter(ai_config, client=MagicMock())
        assert adapter.model_name == "text-embedding-3-small"
        assert adapter.dimensions == 4

    def test_api_error_becomes_embedding_error(self, ai_config):
        client = MagicMock()
        client.embeddings.create.side_effect = OpenAIError("rate limited")
        adapter = OpenAIEmbeddingAdapter(ai_config, client=client)

        with pytest.raises(EmbeddingGenerationError) as exc_info:
            adapter.embed("text")

        assert "rate limited" in str(exc_info.value)
        assert exc_info.value.capability == "embedding"

    def test_empty_response_is_an_error(self, ai_config):
        client = MagicMock()
        client.embeddings.create.return_value = embedding_response()
        adapter = OpenAIEmbeddingAdapter(ai_config, client=client)

        with pytest.raises(EmbeddingGenerationError):
            adapter.embed("text")

    def test_api_key_not_in_config_repr(self, ai_config):
        assert "sk-test" not in repr(ai_config)


class TestOpenAIGenerationAdapter:
    """Test suite for OpenAIGenerationAdapter."""

    def test_generate_sends_system_and_user_messages(self, ai_config):
        client = MagicMock()
        client.chat.completions.create.return_value = chat_response("Consult your doctor.")
        adapter = OpenAIGenerationAdapter(ai_config, client=client)

        text = adapter.generate("system prompt", "user prompt", 0.2, 128)

        assert text == "Consult your doctor."
        client.chat.completions.create.assert_called_once_with(
            model="gpt-4o-mini",
            messages=[
                {"role": "system", "content": "system prompt"},
                {"role": "user", "content": "user prompt"},
            ],
            temperature=0.2,
            max_tokens=128,
        )

    def test_null_content_becomes_empty_string(self, ai_config):
        client = MagicMock()
        client.chat.completions.create.return_value = chat_response(None)
        adapter = OpenAIGenerationAdapter(ai_config, client=client)

        assert adapter.generate("s", "u", 0.7, 10) == ""

    def test_api_error_becomes_generation_error(self, ai_config):
        client = MagicMock()
        client.chat.completions.create.side_effect = OpenAIError("service unavailable")
        adapter = OpenAIGenerationAdapter(ai_config, client=client)

        with pytest.raises(GenerationError):
            adapter.generate("s", "u", 0.7, 10)

    def test_no_choices_is_an_error(self, ai_config):
        client = MagicMock()
        client.chat.completions.create.return_value = SimpleNamespace(choices=[], usage=None)
        adapter = OpenAIGenerationAdapter(ai_config, client=client)

        with pytest.raises(GenerationError):
            adapter.generate("s", "u", 0.7, 10)

    def test_model_name(self, ai_config):
        assert OpenAIGenerationAdapter(ai_config, client=MagicMock()).model_name == "gpt-4o-mini"

"""Adapters for the external embedding and text generation models."""

from clinical_rag.adapters.ai.openai_embedding import OpenAIEmbeddingAdapter
from clinical_rag.adapters.ai.openai_generation import OpenAIGenerationAdapter

__all__ = ["OpenAIEmbeddingAdapter", "OpenAIGenerationAdapter"]

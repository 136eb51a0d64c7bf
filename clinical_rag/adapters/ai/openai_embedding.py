"""OpenAI Embedding Adapter.

Implements EmbeddingPort on the OpenAI embeddings API.

Security Impact:
    - Only receives text that the embedding generator has already redacted
    - The API key is read from AIConfig as a SecretStr and never logged

Architecture:
    - Implements EmbeddingPort (Hexagonal Architecture)
    - Timeouts are enforced by the caller; the client timeout is a backstop
"""

import logging
from typing import Any, Optional

from openai import OpenAI, OpenAIError

from clinical_rag.domain.ports import EmbeddingGenerationError, EmbeddingPort
from clinical_rag.infrastructure.config_manager import AIConfig

logger = logging.getLogger(__name__)


class OpenAIEmbeddingAdapter(EmbeddingPort):
    """Embedding model backed by ``client.embeddings.create``.

    Parameters:
        config: AI configuration (model, dimensions, key, timeout)
        client: Pre-built OpenAI client (tests inject a mock)
    """

    def __init__(self, config: Optional[AIConfig] = None, client: Optional[Any] = None):
        self.config = config or AIConfig()
        if client is None:
            api_key = self.config.api_key.get_secret_value() if self.config.api_key else None
            client = OpenAI(
                api_key=api_key,
                base_url=self.config.base_url,
                timeout=self.config.request_timeout,
            )
        self.client = client

    @property
    def model_name(self) -> str:
        return self.config.embedding_model

    @property
    def dimensions(self) -> int:
        return self.config.embedding_dimensions

    def embed(self, text: str) -> list[float]:
        """Embed one text.

        Raises:
            EmbeddingGenerationError: On API failure or an empty response
        """
        try:
            response = self.client.embeddings.create(
                model=self.config.embedding_model,
                input=text,
                dimensions=self.config.embedding_dimensions,
            )
        except OpenAIError as e:
            logger.error(f"Embedding request failed: {type(e).__name__}")
            raise EmbeddingGenerationError(f"Embedding request failed: {str(e)}") from e

        if not response.data:
            raise EmbeddingGenerationError("Embedding response contained no data")

        return [float(x) for x in response.data[0].embedding]

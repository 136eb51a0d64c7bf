"""OpenAI Generation Adapter.

Implements GenerationPort on the OpenAI chat completions API.

Security Impact:
    - Prompts are built from anonymized context and a redacted query only
    - Generated text is validated for PHI by the orchestrator before delivery
"""

import logging
from typing import Any, Optional

from openai import OpenAI, OpenAIError

from clinical_rag.domain.ports import GenerationError, GenerationPort
from clinical_rag.infrastructure.config_manager import AIConfig

logger = logging.getLogger(__name__)


class OpenAIGenerationAdapter(GenerationPort):
    """Text generation backed by ``client.chat.completions.create``."""

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
        return self.config.generation_model

    def generate(
        self,
        system_prompt: str,
        user_prompt: str,
        temperature: float,
        max_tokens: int
    ) -> str:
        messages = [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_prompt},
        ]
        try:
            response = self.client.chat.completions.create(
                model=self.config.generation_model,
                messages=messages,
                temperature=temperature,
                max_tokens=max_tokens,
            )
        except OpenAIError as e:
            logger.error(f"Generation request failed: {type(e).__name__}")
            raise GenerationError(f"Generation request failed: {str(e)}") from e

        if not response.choices:
            raise GenerationError("Generation response contained no choices")

        content = response.choices[0].message.content
        usage = getattr(response, "usage", None)
        if usage is not None:
            logger.debug(f"Generation used {getattr(usage, 'total_tokens', None)} tokens")
        return content or ""

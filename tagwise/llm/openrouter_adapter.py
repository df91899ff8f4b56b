"""OpenRouter adapter implementation.

OpenRouter uses an OpenAI-compatible API with a different base URL, so the
adapter reuses the OpenAI request and error mapping.
"""

from typing import Optional

from openai import AsyncOpenAI

from .openai_adapter import OpenAIAdapter
from ..config.settings import get_api_key


OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"


class OpenRouterAdapter(OpenAIAdapter):
    """Adapter for models served through OpenRouter."""

    label = "OpenRouter"
    # Not every routed model accepts max_completion_tokens
    max_tokens_param = "max_tokens"

    def __init__(
        self,
        model_id: str = "google/gemini-2.5-flash",
        client: Optional[AsyncOpenAI] = None,
    ) -> None:
        """Initialize the OpenRouter adapter.

        Args:
            model_id: The OpenRouter model ID to use
            client: Preconfigured client, mainly for tests

        Raises:
            ValueError: If OPENROUTER_API_KEY is not set
        """
        if client is None:
            api_key = get_api_key("openrouter")
            if not api_key:
                raise ValueError(
                    "OPENROUTER_API_KEY environment variable is not set. "
                    "Please set it to your OpenRouter API key."
                )
            client = AsyncOpenAI(
                api_key=api_key,
                base_url=OPENROUTER_BASE_URL,
                default_headers={"X-Title": "Tagwise"},
            )
        super().__init__(model_id, client=client)

    @property
    def provider(self) -> str:
        """Get the provider name."""
        return "openrouter"

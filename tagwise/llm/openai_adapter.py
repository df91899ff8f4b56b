"""OpenAI adapter implementation."""

from typing import List, Dict, Any, AsyncIterator, Optional

from openai import AsyncOpenAI, APIError, RateLimitError

from .base_adapter import LLMAdapter, StreamChunk, ProviderError, QuotaExceededError
from ..config.settings import get_api_key


def build_openai_messages(
    messages: List[Dict[str, Any]],
    system: str = "",
    images: Optional[List[str]] = None,
) -> List[Dict[str, Any]]:
    """Convert generic messages to chat-completions format.

    Images are attached as ``image_url`` parts of the last user message.

    Args:
        messages: List of message dicts with 'role' and 'content' keys
        system: System prompt
        images: Data URLs for the last user message

    Returns:
        Messages ready for the chat-completions endpoint
    """
    api_messages: List[Dict[str, Any]] = []
    if system:
        api_messages.append({"role": "system", "content": system})
    api_messages.extend(dict(m) for m in messages)

    if images and api_messages and api_messages[-1]["role"] == "user":
        last = api_messages[-1]
        parts: List[Dict[str, Any]] = [{"type": "text", "text": last["content"]}]
        for url in images:
            parts.append({"type": "image_url", "image_url": {"url": url}})
        last["content"] = parts

    return api_messages


class OpenAIAdapter(LLMAdapter):
    """Adapter for OpenAI models.

    This adapter is stateless - it receives a prompt and returns a response.
    It does not maintain conversation history.
    """

    # Display name used in error messages, and the output-limit argument name
    label = "OpenAI"
    max_tokens_param = "max_completion_tokens"

    def __init__(
        self,
        model_id: str = "gpt-4o",
        client: Optional[AsyncOpenAI] = None,
    ) -> None:
        """Initialize the OpenAI adapter.

        Args:
            model_id: The OpenAI model ID to use
            client: Preconfigured client, mainly for tests

        Raises:
            ValueError: If OPENAI_API_KEY is not set
        """
        self._model_id = model_id
        if client is not None:
            self._client = client
            return
        api_key = get_api_key("openai")
        if not api_key:
            raise ValueError(
                "OPENAI_API_KEY environment variable is not set. "
                "Please set it to your OpenAI API key."
            )
        self._client = AsyncOpenAI(api_key=api_key)

    @property
    def model_id(self) -> str:
        """Get the model ID."""
        return self._model_id

    @property
    def provider(self) -> str:
        """Get the provider name."""
        return "openai"

    async def stream(
        self,
        messages: List[Dict[str, Any]],
        system: str = "",
        max_tokens: int = 4096,
        images: Optional[List[str]] = None,
    ) -> AsyncIterator[StreamChunk]:
        """Stream a response from OpenAI.

        Args:
            messages: List of message dicts with 'role' and 'content' keys
            system: System prompt
            max_tokens: Maximum tokens to generate
            images: Data URLs attached to the last user message

        Yields:
            StreamChunk objects containing response text
        """
        try:
            stream = await self._client.chat.completions.create(
                model=self._model_id,
                messages=build_openai_messages(messages, system, images),
                **{self.max_tokens_param: max_tokens},
                stream=True,
                stream_options={"include_usage": True},
            )

            async for chunk in stream:
                if chunk.choices and chunk.choices[0].delta.content:
                    yield StreamChunk(
                        text=chunk.choices[0].delta.content,
                        is_final=False
                    )

                # Check for usage in final chunk
                if chunk.usage:
                    yield StreamChunk(
                        text="",
                        is_final=True,
                        usage={
                            "input_tokens": chunk.usage.prompt_tokens,
                            "output_tokens": chunk.usage.completion_tokens,
                        },
                    )

        except RateLimitError as e:
            raise QuotaExceededError(f"{self.label} rate limit: {e}") from e
        except APIError as e:
            raise ProviderError(f"{self.label} API error: {e}") from e

    async def complete(
        self,
        messages: List[Dict[str, Any]],
        system: str = "",
        max_tokens: int = 4096,
        images: Optional[List[str]] = None,
    ) -> str:
        """Get a complete response from OpenAI.

        Args:
            messages: List of message dicts with 'role' and 'content' keys
            system: System prompt
            max_tokens: Maximum tokens to generate
            images: Data URLs attached to the last user message

        Returns:
            Complete response text
        """
        try:
            response = await self._client.chat.completions.create(
                model=self._model_id,
                messages=build_openai_messages(messages, system, images),
                **{self.max_tokens_param: max_tokens},
            )
            return response.choices[0].message.content or ""

        except RateLimitError as e:
            raise QuotaExceededError(f"{self.label} rate limit: {e}") from e
        except APIError as e:
            raise ProviderError(f"{self.label} API error: {e}") from e

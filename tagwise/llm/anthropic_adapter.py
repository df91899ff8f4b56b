"""Anthropic Claude adapter implementation."""

from typing import List, Dict, Any, AsyncIterator, Optional

import anthropic

from .base_adapter import (
    LLMAdapter,
    StreamChunk,
    ProviderError,
    QuotaExceededError,
    split_data_url,
)
from ..config.settings import get_api_key


def build_anthropic_messages(
    messages: List[Dict[str, Any]],
    images: Optional[List[str]] = None,
) -> List[Dict[str, Any]]:
    """Convert generic messages to Messages API format.

    Images are attached as base64 ``image`` blocks ahead of the text of
    the last user message.

    Args:
        messages: List of message dicts with 'role' and 'content' keys
        images: Data URLs for the last user message

    Returns:
        Messages ready for the Messages API
    """
    api_messages = [dict(m) for m in messages]
    if images and api_messages and api_messages[-1]["role"] == "user":
        last = api_messages[-1]
        blocks: List[Dict[str, Any]] = []
        for url in images:
            media_type, data = split_data_url(url)
            blocks.append({
                "type": "image",
                "source": {"type": "base64", "media_type": media_type, "data": data},
            })
        blocks.append({"type": "text", "text": last["content"]})
        last["content"] = blocks
    return api_messages


class AnthropicAdapter(LLMAdapter):
    """Adapter for Anthropic Claude models.

    This adapter is stateless - it receives a prompt and returns a response.
    It does not maintain conversation history.
    """

    def __init__(
        self,
        model_id: str = "claude-sonnet-4-5-20250929",
        client: Optional[anthropic.AsyncAnthropic] = None,
    ) -> None:
        """Initialize the Anthropic adapter.

        Args:
            model_id: The Claude model ID to use
            client: Preconfigured client, mainly for tests

        Raises:
            ValueError: If ANTHROPIC_API_KEY is not set
        """
        self._model_id = model_id
        if client is not None:
            self._client = client
            return
        api_key = get_api_key("anthropic")
        if not api_key:
            raise ValueError(
                "ANTHROPIC_API_KEY environment variable is not set. "
                "Please set it to your Anthropic API key."
            )
        self._client = anthropic.AsyncAnthropic(api_key=api_key)

    @property
    def model_id(self) -> str:
        """Get the model ID."""
        return self._model_id

    @property
    def provider(self) -> str:
        """Get the provider name."""
        return "anthropic"

    async def stream(
        self,
        messages: List[Dict[str, Any]],
        system: str = "",
        max_tokens: int = 4096,
        images: Optional[List[str]] = None,
    ) -> AsyncIterator[StreamChunk]:
        """Stream a response from Claude.

        Args:
            messages: List of message dicts with 'role' and 'content' keys
            system: System prompt
            max_tokens: Maximum tokens to generate
            images: Data URLs attached to the last user message

        Yields:
            StreamChunk objects containing response text
        """
        try:
            async with self._client.messages.stream(
                model=self._model_id,
                max_tokens=max_tokens,
                system=system if system else anthropic.NOT_GIVEN,
                messages=build_anthropic_messages(messages, images),
            ) as stream:
                async for text in stream.text_stream:
                    yield StreamChunk(text=text, is_final=False)

                # Get final message for usage stats
                final_message = await stream.get_final_message()
                yield StreamChunk(
                    text="",
                    is_final=True,
                    usage={
                        "input_tokens": final_message.usage.input_tokens,
                        "output_tokens": final_message.usage.output_tokens,
                    },
                )
        except anthropic.RateLimitError as e:
            raise QuotaExceededError(f"Anthropic rate limit: {e}") from e
        except anthropic.APIError as e:
            raise ProviderError(f"Anthropic API error: {e}") from e

    async def complete(
        self,
        messages: List[Dict[str, Any]],
        system: str = "",
        max_tokens: int = 4096,
        images: Optional[List[str]] = None,
    ) -> str:
        """Get a complete response from Claude.

        Args:
            messages: List of message dicts with 'role' and 'content' keys
            system: System prompt
            max_tokens: Maximum tokens to generate
            images: Data URLs attached to the last user message

        Returns:
            Complete response text
        """
        try:
            response = await self._client.messages.create(
                model=self._model_id,
                max_tokens=max_tokens,
                system=system if system else anthropic.NOT_GIVEN,
                messages=build_anthropic_messages(messages, images),
            )
            return "".join(
                block.text for block in response.content if block.type == "text"
            )
        except anthropic.RateLimitError as e:
            raise QuotaExceededError(f"Anthropic rate limit: {e}") from e
        except anthropic.APIError as e:
            raise ProviderError(f"Anthropic API error: {e}") from e

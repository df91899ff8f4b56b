"""Base adapter interface for LLM providers."""

import re
from abc import ABC, abstractmethod
from typing import List, Dict, Any, AsyncIterator, Optional, Tuple
from dataclasses import dataclass


_DATA_URL_RE = re.compile(r"^data:(?P<mime>[\w.+-]+/[\w.+-]+);base64,(?P<data>.+)$", re.DOTALL)


class ProviderError(RuntimeError):
    """Raised when the text-generation provider fails."""


class QuotaExceededError(ProviderError):
    """Raised when the provider reports a quota or rate-limit condition."""


@dataclass
class StreamChunk:
    """A chunk of streamed response."""

    text: str
    is_final: bool = False
    usage: Dict[str, int] | None = None


def split_data_url(data_url: str) -> Tuple[str, str]:
    """Split a base64 data URL into (mime type, payload).

    Args:
        data_url: URL of the form ``data:<mime>;base64,<payload>``

    Returns:
        Tuple of mime type and base64 payload

    Raises:
        ValueError: If the URL is not a base64 data URL
    """
    match = _DATA_URL_RE.match(data_url)
    if not match:
        raise ValueError("Image must be a base64 data URL")
    return match.group("mime"), match.group("data")


class LLMAdapter(ABC):
    """Abstract base class for LLM adapters.

    LLM adapters are stateless - they receive a prompt and return a response.
    They do not maintain conversation history or parse directives.

    Implementations raise QuotaExceededError for rate-limit responses and
    ProviderError for every other provider failure.
    """

    @abstractmethod
    async def stream(
        self,
        messages: List[Dict[str, Any]],
        system: str = "",
        max_tokens: int = 4096,
        images: Optional[List[str]] = None,
    ) -> AsyncIterator[StreamChunk]:
        """Stream a response from the LLM.

        Args:
            messages: List of message dicts with 'role' and 'content' keys
            system: System prompt
            max_tokens: Maximum tokens to generate
            images: Data URLs attached to the last user message

        Yields:
            StreamChunk objects containing response text
        """
        pass

    @abstractmethod
    async def complete(
        self,
        messages: List[Dict[str, Any]],
        system: str = "",
        max_tokens: int = 4096,
        images: Optional[List[str]] = None,
    ) -> str:
        """Get a complete response from the LLM (non-streaming).

        Args:
            messages: List of message dicts with 'role' and 'content' keys
            system: System prompt
            max_tokens: Maximum tokens to generate
            images: Data URLs attached to the last user message

        Returns:
            Complete response text
        """
        pass

    @property
    @abstractmethod
    def model_id(self) -> str:
        """Get the model ID."""
        pass

    @property
    @abstractmethod
    def provider(self) -> str:
        """Get the provider name."""
        pass

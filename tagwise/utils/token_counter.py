"""Model-aware token counting and history trimming."""

from typing import Any, Dict, List

import tiktoken

from ..config.models import get_model


# Per-message overhead for role markers and separators
MESSAGE_OVERHEAD = 4


class TokenCounter:
    """Counts tokens for a model.

    OpenAI models are counted exactly with tiktoken. Other providers do not
    publish their tokenizers, so a ~4 characters per token estimate is used.
    """

    def __init__(self, model_id: str = "gpt-4o") -> None:
        """Initialize the token counter.

        Args:
            model_id: The model ID to count for
        """
        self.model_id = model_id
        self._encoder = None

        config = get_model(model_id)
        if config is not None:
            self.provider = config.provider
        elif model_id.startswith("claude"):
            self.provider = "anthropic"
        elif model_id.startswith(("gpt", "o1", "o3")):
            self.provider = "openai"
        elif "/" in model_id:
            self.provider = "openrouter"
        else:
            self.provider = "unknown"

        # tiktoken may fetch the encoding file, so it is loaded on first use
        self._uses_tiktoken = self.provider == "openai"

    def count_text(self, text: str) -> int:
        """Count tokens in a text string.

        Args:
            text: The text to count tokens for

        Returns:
            Estimated token count
        """
        if not text:
            return 0
        if self._uses_tiktoken and self._encoder is None:
            try:
                self._encoder = tiktoken.encoding_for_model(self.model_id)
            except KeyError:
                self._encoder = tiktoken.get_encoding("o200k_base")
        if self._encoder is not None:
            return len(self._encoder.encode(text))
        return len(text) // 4

    def count_message(self, message: Dict[str, Any]) -> int:
        """Count tokens in one chat message, text parts only."""
        content = message.get("content", "")
        total = MESSAGE_OVERHEAD
        if isinstance(content, str):
            total += self.count_text(content)
        elif isinstance(content, list):
            for part in content:
                if isinstance(part, dict) and "text" in part:
                    total += self.count_text(part["text"])
        return total

    def count_messages(self, messages: List[Dict[str, Any]]) -> int:
        """Count tokens in a list of messages."""
        return sum(self.count_message(m) for m in messages)

    def trim_to_budget(
        self,
        messages: List[Dict[str, Any]],
        budget: int,
    ) -> List[Dict[str, Any]]:
        """Drop the oldest messages until the rest fit the budget.

        Messages are dropped in user/assistant pairs from the front so the
        kept history still starts with a user turn.

        Args:
            messages: Chat messages, oldest first
            budget: Maximum total tokens

        Returns:
            The newest suffix of messages that fits
        """
        kept = list(messages)
        total = self.count_messages(kept)
        while kept and total > budget:
            total -= self.count_message(kept.pop(0))
            while kept and kept[0].get("role") != "user":
                total -= self.count_message(kept.pop(0))
        return kept

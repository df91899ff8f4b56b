"""LLM provider adapters and the completion dispatcher."""

from .base_adapter import LLMAdapter, StreamChunk, ProviderError, QuotaExceededError
from ..config.models import get_model


def create_adapter(model_id: str) -> LLMAdapter:
    """Create the adapter for a configured model.

    Args:
        model_id: The model ID to create an adapter for

    Returns:
        Adapter instance for the model's provider

    Raises:
        ValueError: If the model or its provider is unknown, or the
            provider's API key is missing
    """
    model_config = get_model(model_id)
    if not model_config:
        raise ValueError(f"Unknown model: {model_id}")

    if model_config.provider == "anthropic":
        from .anthropic_adapter import AnthropicAdapter
        return AnthropicAdapter(model_id)
    if model_config.provider == "openai":
        from .openai_adapter import OpenAIAdapter
        return OpenAIAdapter(model_id)
    if model_config.provider == "openrouter":
        from .openrouter_adapter import OpenRouterAdapter
        return OpenRouterAdapter(model_id)
    raise ValueError(f"Unknown provider: {model_config.provider}")


__all__ = [
    "LLMAdapter",
    "StreamChunk",
    "ProviderError",
    "QuotaExceededError",
    "create_adapter",
]

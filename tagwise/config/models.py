"""Model definitions for all supported LLM providers."""

from dataclasses import dataclass
from typing import Dict, List, Optional

from .settings import get_api_key


@dataclass
class ModelConfig:
    """Configuration for a specific model."""

    model_id: str
    display_name: str
    provider: str  # anthropic, openai, openrouter
    context_window: int
    max_output_tokens: int
    supports_images: bool = True


# All supported models
MODELS: Dict[str, ModelConfig] = {
    # Anthropic models
    "claude-sonnet-4-5-20250929": ModelConfig(
        model_id="claude-sonnet-4-5-20250929",
        display_name="Claude Sonnet 4.5",
        provider="anthropic",
        context_window=200000,
        max_output_tokens=16384,
    ),
    "claude-haiku-4-5-20251001": ModelConfig(
        model_id="claude-haiku-4-5-20251001",
        display_name="Claude Haiku 4.5",
        provider="anthropic",
        context_window=200000,
        max_output_tokens=8192,
    ),
    # OpenAI models
    "gpt-4o": ModelConfig(
        model_id="gpt-4o",
        display_name="GPT-4o",
        provider="openai",
        context_window=128000,
        max_output_tokens=16384,
    ),
    "gpt-4o-mini": ModelConfig(
        model_id="gpt-4o-mini",
        display_name="GPT-4o mini",
        provider="openai",
        context_window=128000,
        max_output_tokens=16384,
    ),
    # OpenRouter models
    "google/gemini-2.5-flash": ModelConfig(
        model_id="google/gemini-2.5-flash",
        display_name="Gemini 2.5 Flash",
        provider="openrouter",
        context_window=1000000,
        max_output_tokens=8192,
    ),
    "deepseek/deepseek-v3.2": ModelConfig(
        model_id="deepseek/deepseek-v3.2",
        display_name="DeepSeek V3.2",
        provider="openrouter",
        context_window=128000,
        max_output_tokens=8192,
        supports_images=False,
    ),
}


def get_model(model_id: str) -> Optional[ModelConfig]:
    """Get model configuration by ID.

    Args:
        model_id: The model identifier

    Returns:
        ModelConfig if found, None otherwise
    """
    return MODELS.get(model_id)


def get_available_models() -> List[ModelConfig]:
    """Get all models that have valid API keys configured.

    Returns:
        List of ModelConfig for models with available API keys
    """
    available = []
    for model in MODELS.values():
        if get_api_key(model.provider):
            available.append(model)
    return available

"""Application settings and configuration."""

import os
from pathlib import Path
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

from dotenv import load_dotenv


# Load environment variables from .env file if present
load_dotenv()


def _default_data_dir() -> Path:
    override = os.getenv("TAGWISE_DATA_DIR")
    if override:
        return Path(override).expanduser()
    return Path.home() / ".tagwise"


@dataclass
class AppSettings:
    """Application-wide settings."""

    # Default model
    default_model: str = field(
        default_factory=lambda: os.getenv("TAGWISE_DEFAULT_MODEL", "gpt-4o")
    )

    # Paths
    app_data_dir: Path = field(default_factory=_default_data_dir)

    # Reserved thread that always exists and can never be deleted
    catch_all_thread_id: str = "everything-else"
    catch_all_thread_title: str = "Everything else"

    # Provider cooldown after a quota/rate-limit signal (seconds)
    cooldown_seconds: float = 60 * 60

    # Persistence
    conversations_key: str = "conversations"
    cooldown_key: str = "cooldown_end"
    usage_key: str = "usage"
    persist_debounce_seconds: float = 0.5
    storage_warning_bytes: int = 4 * 1024 * 1024

    # Prompt assembly
    max_history_tokens: int = 24000
    max_output_tokens: int = 4096

    # Monthly (text, image) limits per tier
    tier_limits: Dict[str, Tuple[int, int]] = field(
        default_factory=lambda: {
            "free": (55, 25),
            "pro": (1583, 328),
            "vanguard_pro": (1583, 328),
        }
    )

    # Placeholder content for panels awaiting their first fill
    panel_placeholder: str = "Loading..."


def get_api_key(provider: str) -> Optional[str]:
    """Get API key for a provider from environment variables.

    Args:
        provider: The provider name (anthropic, openai, openrouter)

    Returns:
        The API key if found, None otherwise
    """
    key_map = {
        "anthropic": "ANTHROPIC_API_KEY",
        "openai": "OPENAI_API_KEY",
        "openrouter": "OPENROUTER_API_KEY",
    }
    env_var = key_map.get(provider.lower())
    if env_var:
        return os.getenv(env_var)
    return None


# Global settings instance
settings = AppSettings()

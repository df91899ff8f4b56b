"""Configuration module for settings and model definitions."""

from .settings import settings, get_api_key
from .models import ModelConfig, get_model, get_available_models

__all__ = ["settings", "get_api_key", "ModelConfig", "get_model", "get_available_models"]

"""
Model clients for the cohort builder (Anthropic, or any OpenAI-compatible API).
"""

import os
from typing import Optional

from .types import ModelClient, ModelInvocationError


def create_client(provider: Optional[str] = None, model_name: Optional[str] = None) -> ModelClient:
    """Create the model client selected by LLM_PROVIDER (anthropic or openai)."""
    provider = (provider or os.getenv("LLM_PROVIDER", "anthropic")).lower()
    if provider == "anthropic":
        from .anthropic_client import AnthropicModelClient

        return AnthropicModelClient(model_name=model_name)
    if provider == "openai":
        from .client import OpenAICompatibleClient

        return OpenAICompatibleClient(model_name=model_name)
    raise ValueError(f"Unknown LLM_PROVIDER: {provider!r}")


__all__ = ["ModelClient", "ModelInvocationError", "create_client"]

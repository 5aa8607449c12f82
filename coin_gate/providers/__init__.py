"""
Image generation providers for coin-gate.

Provides the provider interface and the adapters behind it.
"""

import os

from coin_gate.config.loader import ProviderConfig, ProviderName

from .base import (
    GenerationRequest,
    ImageProvider,
    ProviderArtifact,
    ProviderResult,
    ProviderTransientError,
)
from .openai_images import OpenAIImageProvider
from .stability import StabilityProvider


def build_provider(config: ProviderConfig) -> ImageProvider:
    """Instantiate the adapter named by the configuration."""
    api_key = os.environ.get(config.api_key_env) if config.api_key_env else None
    if config.name == ProviderName.OPENAI:
        kwargs = {"request_timeout": config.request_timeout, "api_key": api_key}
        if config.model:
            kwargs["model"] = config.model
        return OpenAIImageProvider(**kwargs)

    kwargs = {"request_timeout": config.request_timeout, "api_key": api_key}
    if config.api_base:
        kwargs["api_base"] = config.api_base
    if config.model:
        kwargs["engine"] = config.model
    return StabilityProvider(**kwargs)


__all__ = [
    "GenerationRequest",
    "ImageProvider",
    "OpenAIImageProvider",
    "ProviderArtifact",
    "ProviderResult",
    "ProviderTransientError",
    "StabilityProvider",
    "build_provider",
]

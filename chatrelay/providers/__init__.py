"""chatrelay provider layer.

All upstream model calls go through a ModelProvider built from the TOML
model registry.
"""

from chatrelay.providers.base import CompletionStream, ModelProvider
from chatrelay.providers.openai_compat import GroqProvider, OpenAIProvider, create_provider
from chatrelay.providers.registry import load_gateway_settings, load_models, resolve_model

__all__ = [
    "CompletionStream",
    "GroqProvider",
    "ModelProvider",
    "OpenAIProvider",
    "create_provider",
    "load_gateway_settings",
    "load_models",
    "resolve_model",
]

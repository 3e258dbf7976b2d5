"""Provider definitions for ai_gateway."""

from .anthropic import AnthropicProvider
from .base import BaseProvider, HTTPProvider
from .google import GoogleProvider
from .openai import OpenAIProvider
from .openrouter import OpenRouterProvider

# provider id -> adapter class, in the default failover order
PROVIDER_FACTORIES: dict[str, type[HTTPProvider]] = {
    "anthropic": AnthropicProvider,
    "openai": OpenAIProvider,
    "google": GoogleProvider,
    "openrouter": OpenRouterProvider,
}

__all__ = [
    "BaseProvider",
    "HTTPProvider",
    "AnthropicProvider",
    "OpenAIProvider",
    "GoogleProvider",
    "OpenRouterProvider",
    "PROVIDER_FACTORIES",
]

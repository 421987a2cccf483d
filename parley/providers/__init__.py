"""Vendor adapters behind one Provider protocol."""

from parley.config import ProviderParameters
from parley.providers.anthropic import AnthropicProvider
from parley.providers.base import (
    Capabilities,
    Provider,
    ProviderError,
    ResponseAccumulator,
    ThinkingConfig,
    resolve_thinking,
)
from parley.providers.openai import OpenAIProvider
from parley.providers.vertex import VertexProvider

PROVIDERS: dict[str, type] = {
    AnthropicProvider.name: AnthropicProvider,
    OpenAIProvider.name: OpenAIProvider,
    VertexProvider.name: VertexProvider,
}


def get_provider(name: str, parameters: ProviderParameters) -> Provider:
    """Instantiate the adapter registered under ``name``."""
    try:
        cls = PROVIDERS[name]
    except KeyError:
        raise ProviderError(
            f"Unknown provider {name!r}. Available: {', '.join(sorted(PROVIDERS))}"
        ) from None
    return cls(parameters)


__all__ = [
    "PROVIDERS",
    "AnthropicProvider",
    "Capabilities",
    "OpenAIProvider",
    "Provider",
    "ProviderError",
    "ResponseAccumulator",
    "ThinkingConfig",
    "VertexProvider",
    "get_provider",
    "resolve_thinking",
]

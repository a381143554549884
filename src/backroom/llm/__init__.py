"""LLM provider implementations backing the analysis oracles.

Usage:
    from backroom.llm import create_provider

    provider = create_provider(
        provider_type="openai",
        api_key="sk-xxx",
        model="gpt-4o-mini",
        timeout=45,
    )
"""

import logging
from typing import Literal

from backroom.llm.base import LLMProvider, LLMResponse, parse_json_content

logger = logging.getLogger(__name__)

ProviderType = Literal["openai", "anthropic"]


def create_provider(
    provider_type: ProviderType,
    api_key: str,
    model: str | None = None,
    timeout: float | None = None,
) -> LLMProvider:
    """Factory function to create LLM providers.

    Args:
        provider_type: The provider to use ("openai" or "anthropic")
        api_key: API key for the provider
        model: Optional model override (uses provider default if not specified)
        timeout: Per-request timeout in seconds

    Returns:
        Configured LLMProvider instance

    Raises:
        ValueError: If provider_type is unknown or api_key is missing
    """
    if not api_key:
        raise ValueError(f"API key is required for {provider_type} provider")

    if provider_type == "openai":
        from backroom.llm.openai_provider import OpenAIProvider

        return OpenAIProvider(
            api_key=api_key,
            model=model or "gpt-4o-mini",
            timeout=timeout,
        )

    elif provider_type == "anthropic":
        from backroom.llm.anthropic_provider import AnthropicProvider

        return AnthropicProvider(
            api_key=api_key,
            model=model or "claude-sonnet-4-5-20250514",
            timeout=timeout,
        )

    else:
        raise ValueError(
            f"Unknown provider type: {provider_type}. "
            f"Supported providers: openai, anthropic"
        )


__all__ = [
    "LLMProvider",
    "LLMResponse",
    "ProviderType",
    "create_provider",
    "parse_json_content",
]

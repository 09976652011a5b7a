"""
LLM Providers module.
"""

from kbrag.providers.anthropic import AnthropicProvider
from kbrag.providers.base import LLMProvider, LLMResponse
from kbrag.providers.openai import OpenAIProvider

PROVIDERS: dict[str, type[LLMProvider]] = {
    "openai": OpenAIProvider,
    "anthropic": AnthropicProvider,
}


def create_llm_provider(
    name: str,
    api_key: str | None = None,
    base_url: str | None = None,
    timeout: float | None = None,
    max_retries: int = 2,
) -> LLMProvider:
    """
    Create an LLM provider by name.

    Args:
        name: "openai" or "anthropic"
        api_key: Optional API key (SDK environment variables otherwise)
        base_url: Optional API base URL
        timeout: Request timeout in seconds
        max_retries: Retries performed by the SDK client

    Returns:
        LLMProvider instance
    """
    try:
        provider_class = PROVIDERS[name]
    except KeyError:
        raise ValueError(f"Unknown LLM provider: {name}") from None
    return provider_class(
        api_key=api_key,
        base_url=base_url,
        timeout=timeout,
        max_retries=max_retries,
    )


__all__ = [
    "AnthropicProvider",
    "LLMProvider",
    "LLMResponse",
    "OpenAIProvider",
    "PROVIDERS",
    "create_llm_provider",
]

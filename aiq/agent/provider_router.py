from __future__ import annotations

from aiq.agent.providers.anthropic_provider import AnthropicProvider
from aiq.agent.providers.base import ProviderAdapter
from aiq.agent.providers.openai_provider import OpenAIProvider

OPENAI_COMPATIBLE_PROVIDERS = {
    "openai",
    "deepseek",
    "qwen",
    "zhipu",
    "moonshot",
    "ollama",
    "custom",
}


def build_provider(provider: str, api_key: str, base_url: str | None = None) -> ProviderAdapter:
    if not api_key and provider != "ollama":
        raise ValueError(f"API key not found for provider: {provider}")
    if provider in OPENAI_COMPATIBLE_PROVIDERS:
        return OpenAIProvider(api_key=api_key or "ollama", base_url=base_url)
    if provider == "anthropic":
        return AnthropicProvider(api_key=api_key, base_url=base_url)
    raise ValueError(f"Unsupported provider: {provider}")

"""Wire adapters and the provider factory."""

from __future__ import annotations

from typing import Any

from toolbridge.llm.providers.base import Provider
from toolbridge.llm.providers.google import GeminiProvider, GoogleOpenAIProvider
from toolbridge.llm.providers.openai_compat import OpenAICompatProvider
from toolbridge.llm.providers.openrouter import ManualToolsProvider, OpenRouterProvider

PROVIDER_KINDS: dict[str, type[Provider]] = {
    "openai": OpenAICompatProvider,
    "openrouter": OpenRouterProvider,
    "openrouter-manual": ManualToolsProvider,
    "google-openai": GoogleOpenAIProvider,
    "gemini": GeminiProvider,
}


def create_provider(kind: str, **kwargs: Any) -> Provider:
    """
    Build a provider of the given *kind* from explicit settings.

    Raises ``ValueError`` for an unknown kind.
    """
    try:
        cls = PROVIDER_KINDS[kind]
    except KeyError:
        known = ", ".join(sorted(PROVIDER_KINDS))
        raise ValueError(f"Unknown provider kind {kind!r} (known: {known})") from None
    return cls(**kwargs)


__all__ = [
    "GeminiProvider",
    "GoogleOpenAIProvider",
    "ManualToolsProvider",
    "OpenAICompatProvider",
    "OpenRouterProvider",
    "PROVIDER_KINDS",
    "Provider",
    "create_provider",
]

"""
OpenRouter providers.

``OpenRouterProvider`` uses native function calling.  ``ManualToolsProvider``
is for routed models that cannot call functions: the tool list is written
into the system prompt and calls come back as ``TOOL_CALL:`` lines.
"""

from __future__ import annotations

from typing import Any

from toolbridge.llm.manual_protocol import (
    build_tool_instructions,
    prepare_manual_messages,
)
from toolbridge.llm.providers.openai_compat import OpenAICompatProvider
from toolbridge.llm.types import ChatMessage, ToolSchema

OPENROUTER_BASE = "https://openrouter.ai/api/v1"

DEFAULT_ATTRIBUTION = {
    "HTTP-Referer": "https://github.com/toolbridge/toolbridge",
    "X-Title": "toolbridge",
}


class OpenRouterProvider(OpenAICompatProvider):
    """OpenAI-compatible transport with OpenRouter's attribution headers."""

    error_prefix = "OpenRouter"

    def __init__(
        self,
        url: str = OPENROUTER_BASE,
        model: str = "openai/gpt-4o-mini",
        api_key: str = "",
        **kwargs: Any,
    ) -> None:
        if not api_key:
            raise ValueError(
                "OpenRouter provider requires a non-empty API key. "
                "Set OPENROUTER_API_KEY or pass api_key."
            )
        headers = {**DEFAULT_ATTRIBUTION, **(kwargs.pop("headers", None) or {})}
        kwargs.setdefault("name", "openrouter")
        super().__init__(url, model, api_key, headers=headers, **kwargs)


class ManualToolsProvider(OpenRouterProvider):
    """OpenRouter models driven through the ``TOOL_CALL:`` text protocol."""

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        kwargs.setdefault("name", "openrouter-manual")
        super().__init__(*args, **kwargs)

    @property
    def native_tools(self) -> bool:
        return False

    def _wire_messages(
        self, messages: list[ChatMessage], tools: list[ToolSchema] | None
    ) -> list[dict]:
        return prepare_manual_messages(messages, build_tool_instructions(tools))

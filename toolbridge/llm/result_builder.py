"""
Unified result construction.

Every backend's terminal signal is folded into the shared ``stop`` /
``length`` / ``tool_call`` vocabulary and usage is passed through unchanged,
so callers never look at backend-specific response shapes.
"""

from __future__ import annotations

from typing import Any

from toolbridge.llm.types import ChatMessage, ChatResult, Usage
from toolbridge.types import FinishReason

# Backend spellings of "the output was cut off by the token limit".
LENGTH_SIGNALS = frozenset({"length", "max_tokens", "max_output_tokens"})


def normalize_finish_reason(raw: str | None, has_tool_calls: bool) -> str:
    if has_tool_calls:
        return FinishReason.TOOL_CALL
    if raw and raw.lower() in LENGTH_SIGNALS:
        return FinishReason.LENGTH
    return FinishReason.STOP


def _count(value: Any) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    return value


def usage_from_openai(data: dict | None) -> Usage | None:
    """Read an OpenAI-style ``usage`` object."""
    if not isinstance(data, dict):
        return None
    return Usage(
        prompt=_count(data.get("prompt_tokens")),
        completion=_count(data.get("completion_tokens")),
        total=_count(data.get("total_tokens")),
    )


def usage_from_gemini(data: dict | None) -> Usage | None:
    """Read a Gemini-style ``usageMetadata`` object."""
    if not isinstance(data, dict):
        return None
    return Usage(
        prompt=_count(data.get("promptTokenCount")),
        completion=_count(data.get("candidatesTokenCount")),
        total=_count(data.get("totalTokenCount")),
    )


def build_result(
    history: list[ChatMessage],
    message: ChatMessage,
    raw_finish_reason: str | None,
    usage: Usage | None = None,
) -> ChatResult:
    """Assemble the terminal ``ChatResult`` for one request."""
    return ChatResult(
        messages=[*history, message],
        finish_reason=normalize_finish_reason(
            raw_finish_reason, bool(message.tool_calls)
        ),
        usage=usage,
    )

"""Core types for the LLM subsystem."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class FunctionCall:
    """Name and JSON-encoded arguments of a tool invocation."""

    name: str
    arguments: str


@dataclass(frozen=True)
class ToolCall:
    """
    A finalized tool call.

    ``function.arguments`` is always valid JSON text once a ``ToolCall``
    leaves the aggregator.  In-flight calls are held in mutable buffers
    inside ``DeltaAggregator`` and only become ``ToolCall`` objects when
    snapshotted or finalized.
    """

    id: str
    function: FunctionCall
    type: str = "function"

    @property
    def name(self) -> str:
        return self.function.name

    @property
    def arguments(self) -> str:
        return self.function.arguments

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.type,
            "function": {
                "name": self.function.name,
                "arguments": self.function.arguments,
            },
        }


@dataclass
class ChatMessage:
    """A single message in a conversation."""

    role: str  # "system", "user", "assistant", "tool"
    content: str | None = None
    tool_calls: list[ToolCall] | None = None
    tool_call_id: str | None = None
    name: str | None = None

    def to_dict(self) -> dict:
        """OpenAI-style wire dict; absent fields are omitted."""
        payload: dict[str, Any] = {"role": self.role}
        if self.content is not None:
            payload["content"] = self.content
        if self.tool_calls:
            payload["tool_calls"] = [tc.to_dict() for tc in self.tool_calls]
        if self.tool_call_id:
            payload["tool_call_id"] = self.tool_call_id
        if self.name:
            payload["name"] = self.name
        return payload


@dataclass(frozen=True)
class ToolSchema:
    """Caller-supplied tool description.  Read-only to this package."""

    name: str
    description: str = ""
    parameters: dict = field(default_factory=lambda: {"type": "object"})

    def to_openai_schema(self) -> dict:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


@dataclass(frozen=True)
class Usage:
    """
    Token accounting as reported by the backend.

    Counts the backend did not report stay ``None``: absence means
    "unknown", not "zero".
    """

    prompt: int | None = None
    completion: int | None = None
    total: int | None = None


@dataclass
class ChatResult:
    """
    The outward-facing result of a chat request.

    *messages* holds the prior conversation plus exactly one new assistant
    message.  *finish_reason* is ``None`` on intermediate streamed results
    and one of ``stop`` / ``length`` / ``tool_call`` on the terminal one.
    """

    messages: list[ChatMessage]
    finish_reason: str | None = None
    usage: Usage | None = None

    @property
    def message(self) -> ChatMessage:
        """The assistant message produced by this request."""
        return self.messages[-1]

    @property
    def done(self) -> bool:
        return self.finish_reason is not None

    @property
    def tool_calls(self) -> list[ToolCall]:
        return list(self.message.tool_calls or [])


@dataclass
class ToolCallFragment:
    """
    An incremental piece of a tool call.

    *id* is the sole correlation key.  *index* is the wire position reported
    by the backend; adapters may use it to recover an omitted id, the
    aggregator never does.
    """

    id: str | None
    name: str | None = None
    arguments: str = ""
    index: int | None = None


@dataclass
class StreamChunk:
    """
    A backend-neutral fragment produced by a wire adapter.

    *content* carries new text.  *tool_fragments* carries partial tool
    calls.  *finish_reason* is the backend's own terminal signal name.
    *done* is ``True`` on the terminal chunk only.
    """

    content: str = ""
    tool_fragments: list[ToolCallFragment] | None = None
    finish_reason: str | None = None
    usage: Usage | None = None
    done: bool = False

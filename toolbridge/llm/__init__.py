"""LLM subsystem -- argument recovery, streaming aggregation and providers."""

from toolbridge.llm.delta_aggregator import DeltaAggregator
from toolbridge.llm.diagnostics import RepairEvent
from toolbridge.llm.errors import (
    BackendAPIError,
    BackendProtocolError,
    ToolBridgeError,
    TruncatedStreamError,
    UnrecoverableArgumentsError,
)
from toolbridge.llm.json_repair import (
    Recovered,
    Unrecoverable,
    normalize_arguments,
    repair_json,
)
from toolbridge.llm.manual_protocol import (
    build_tool_instructions,
    parse_manual_tool_calls,
)
from toolbridge.llm.types import (
    ChatMessage,
    ChatResult,
    FunctionCall,
    StreamChunk,
    ToolCall,
    ToolCallFragment,
    ToolSchema,
    Usage,
)

__all__ = [
    "BackendAPIError",
    "BackendProtocolError",
    "ChatMessage",
    "ChatResult",
    "DeltaAggregator",
    "FunctionCall",
    "Recovered",
    "RepairEvent",
    "StreamChunk",
    "ToolBridgeError",
    "ToolCall",
    "ToolCallFragment",
    "ToolSchema",
    "TruncatedStreamError",
    "Unrecoverable",
    "UnrecoverableArgumentsError",
    "Usage",
    "build_tool_instructions",
    "normalize_arguments",
    "parse_manual_tool_calls",
    "repair_json",
]

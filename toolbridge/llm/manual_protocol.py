"""
Text-protocol tool calling for backends without native function calling.

The model is told (through ``build_tool_instructions``) to request a tool by
writing one line of the form::

    TOOL_CALL: {"name": "tool_name", "arguments": {"param": "value"}}

``parse_manual_tool_calls`` recovers those instructions from the assistant
text.  Only the first recoverable call in a turn is honored: the tool runs,
its result is fed back, and only then may the model ask for the next one.
Later calls in the same turn are discarded with a notice.
"""

from __future__ import annotations

import json
import logging
import re
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable

import jsonschema

from toolbridge.llm.diagnostics import (
    EVENT_MANUAL_CALL_DISCARDED,
    EVENT_MANUAL_CALL_REJECTED,
    RepairEvent,
    RepairObserver,
    emit,
    preview,
)
from toolbridge.llm.json_repair import (
    Recovered,
    balanced_object_end,
    normalize_arguments,
)
from toolbridge.llm.types import ChatMessage, FunctionCall, ToolCall, ToolSchema
from toolbridge.types import Role

logger = logging.getLogger(__name__)

TOOL_CALL_MARKER = "TOOL_CALL:"

_MARKER = re.compile(r"TOOL_CALL:\s*")
_RESIDUAL_MARKER = re.compile(r"TOOL_CALL:[^\n]*")

_TOOL_CALL_SCHEMA = {
    "type": "object",
    "properties": {
        "name": {"type": "string", "minLength": 1},
        "arguments": {"type": "object"},
    },
    "required": ["name", "arguments"],
}


def new_call_id() -> str:
    return f"call_{uuid.uuid4().hex[:24]}"


@dataclass
class ManualParseResult:
    """
    Outcome of scanning assistant text for ``TOOL_CALL:`` lines.

    *content* is the text with every tool-call span removed.  *tool_calls*
    holds at most one call.  *discarded* and *rejected* keep the raw text of
    calls dropped by the sequential policy and of calls that could not be
    recovered at all.
    """

    content: str
    tool_calls: list[ToolCall] = field(default_factory=list)
    discarded: list[str] = field(default_factory=list)
    rejected: list[str] = field(default_factory=list)


@dataclass
class _Candidate:
    start: int
    end: int  # end of the marker line
    body: str


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def _line_end(text: str, pos: int) -> int:
    end = text.find("\n", pos)
    return len(text) if end == -1 else end


def _find_candidates(text: str) -> list[_Candidate]:
    candidates: list[_Candidate] = []
    consumed = 0
    for match in _MARKER.finditer(text):
        if match.start() < consumed:
            continue
        body_start = match.end()
        line_end = _line_end(text, body_start)
        body_end: int | None = None
        if text.startswith("{", body_start):
            # One call per line: the object may not borrow braces from prose below.
            body_end = balanced_object_end(text[:line_end], body_start)
        if body_end is None:
            body_end = line_end
        candidates.append(
            _Candidate(
                start=match.start(),
                end=line_end,
                body=text[body_start:body_end],
            )
        )
        consumed = line_end
    return candidates


def _repair_ladder(body: str) -> list[str]:
    body = body.rstrip()
    return [
        body,
        body + "}",
        re.sub(r",\s*$", "", body) + "}",
        re.sub(r'([^"}])$', r'\1"}', body),
    ]


def _valid_shape(data: Any) -> bool:
    try:
        jsonschema.validate(instance=data, schema=_TOOL_CALL_SCHEMA)
    except jsonschema.ValidationError:
        return False
    return True


def _decode_candidate(
    body: str, observer: RepairObserver | None
) -> dict | None:
    for attempt in _repair_ladder(body):
        try:
            data = json.loads(attempt)
        except (ValueError, RecursionError):
            continue
        if _valid_shape(data):
            return data

    result = normalize_arguments(body, observer=observer, backend="manual")
    if isinstance(result, Recovered):
        data = json.loads(result.value)
        if _valid_shape(data):
            return data
    return None


def _clean(text: str, candidates: list[_Candidate]) -> str:
    pieces: list[str] = []
    cursor = 0
    for cand in candidates:
        pieces.append(text[cursor:cand.start])
        cursor = cand.end
    pieces.append(text[cursor:])
    cleaned = _RESIDUAL_MARKER.sub("", "".join(pieces))
    lines = [line.rstrip() for line in cleaned.splitlines()]
    return "\n".join(line for line in lines if line.strip()).strip()


def _canonical(arguments: dict) -> str:
    return json.dumps(arguments, sort_keys=True, separators=(",", ":"))


def parse_manual_tool_calls(
    text: str,
    *,
    observer: RepairObserver | None = None,
    id_factory: Callable[[], str] = new_call_id,
) -> ManualParseResult:
    """
    Extract ``TOOL_CALL:`` instructions from *text*.

    Text without any marker is returned untouched.
    """
    candidates = _find_candidates(text)
    if not candidates:
        return ManualParseResult(content=text)

    result = ManualParseResult(content=_clean(text, candidates))
    seen: set[tuple[str, str]] = set()

    for cand in candidates:
        data = _decode_candidate(cand.body, observer)
        if data is None:
            result.rejected.append(cand.body)
            emit(
                RepairEvent(
                    event_type=EVENT_MANUAL_CALL_REJECTED,
                    outcome="unrecoverable",
                    backend="manual",
                    preview=preview(cand.body),
                ),
                observer,
                level=logging.WARNING,
            )
            continue

        key = (data["name"], _canonical(data["arguments"]))
        if key in seen:
            logger.debug("Skipping repeated tool call %s", data["name"])
            continue

        if result.tool_calls:
            result.discarded.append(cand.body)
            emit(
                RepairEvent(
                    event_type=EVENT_MANUAL_CALL_DISCARDED,
                    outcome="sequential",
                    backend="manual",
                    preview=preview(cand.body),
                ),
                observer,
                level=logging.INFO,
            )
            continue

        seen.add(key)
        result.tool_calls.append(
            ToolCall(
                id=id_factory(),
                function=FunctionCall(
                    name=data["name"],
                    arguments=json.dumps(
                        data["arguments"],
                        separators=(",", ":"),
                        ensure_ascii=False,
                    ),
                ),
            )
        )
        logger.debug("Parsed manual tool call: %s", data["name"])

    if result.discarded:
        logger.info(
            "Sequential execution: %d extra tool call(s) discarded, honoring %s",
            len(result.discarded),
            result.tool_calls[0].name,
        )
    return result


# ---------------------------------------------------------------------------
# Prompt side
# ---------------------------------------------------------------------------


def build_tool_instructions(tools: list[ToolSchema] | None) -> str:
    """System instruction describing the ``TOOL_CALL:`` convention."""
    if not tools:
        return ""

    descriptions = "\n".join(
        f"- {tool.name}: {tool.description}\n"
        f"  Parameters: {json.dumps(tool.parameters)}"
        for tool in tools
    )
    return f"""You are a helpful assistant with access to tools. When you need to use a tool, output it in this EXACT format:

{TOOL_CALL_MARKER} {{"name": "tool_name", "arguments": {{"param1": "value1", "param2": "value2"}}}}

Available tools:
{descriptions}

Rules:
1. ALWAYS use tools when calculation or data retrieval is needed
2. Output tool calls in the exact format above, one per line
3. Make ONE tool call at a time, wait for the result, then continue
4. ALWAYS use the actual result from previous tool calls as input to subsequent tools
5. After a tool call, I will provide the result and you can continue the conversation
6. Be precise with parameter values and types

IMPORTANT: For multi-step tasks, execute tools sequentially:
- Step 1: Make the first tool call and wait for the result
- Step 2: Use that result in the next tool call
- Never guess intermediate values for subsequent tool calls"""


def _render_tool_calls(tool_calls: list[ToolCall]) -> str:
    lines = []
    for tc in tool_calls:
        try:
            arguments = json.loads(tc.arguments)
        except ValueError:
            arguments = {}
        payload = {"name": tc.name, "arguments": arguments}
        lines.append(f"{TOOL_CALL_MARKER} {json.dumps(payload)}")
    return "\n".join(lines)


def prepare_manual_messages(
    messages: list[ChatMessage], instructions: str
) -> list[dict]:
    """
    Convert a conversation into plain role/content dicts for a backend that
    only understands text.

    The instruction block leads the conversation, merged with any caller
    system prompt.  Tool results become user turns and earlier assistant tool
    calls are written back in ``TOOL_CALL:`` form.
    """
    wire: list[dict] = []
    system_parts = [instructions] if instructions else []

    for msg in messages:
        if msg.role == Role.SYSTEM:
            if msg.content:
                system_parts.append(msg.content)
            continue

        if msg.role == Role.TOOL:
            name = msg.name or msg.tool_call_id or "unknown"
            wire.append(
                {"role": Role.USER, "content": f"Tool {name} result: {msg.content}"}
            )
            continue

        if msg.role == Role.ASSISTANT and msg.tool_calls:
            parts = [msg.content] if msg.content else []
            parts.append(_render_tool_calls(msg.tool_calls))
            wire.append({"role": Role.ASSISTANT, "content": "\n".join(parts)})
            continue

        payload: dict = {"role": msg.role}
        if msg.content is not None:
            payload["content"] = msg.content
        wire.append(payload)

    if system_parts:
        wire.insert(0, {"role": Role.SYSTEM, "content": "\n\n".join(system_parts)})
    return wire

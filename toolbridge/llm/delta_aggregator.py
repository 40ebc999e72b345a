"""
Assembles streamed response fragments into a complete assistant message.

Design goals:
  - Accumulate ``StreamChunk`` text in arrival order.
  - Route ``ToolCallFragment`` pieces into per-call buffers keyed by call id.
    Positions in the wire array are never used for correlation.
  - On the terminal chunk, run argument recovery on every buffered call and
    build the final ``ChatResult``.  A call whose arguments cannot be
    recovered raises ``UnrecoverableArgumentsError``; nothing is dropped
    silently.
  - A stream that ends without a terminal chunk raises
    ``TruncatedStreamError`` from ``close()``.

One aggregator serves exactly one in-flight request and is thrown away with
it.
"""

from __future__ import annotations

import logging
from enum import Enum

from toolbridge.llm.diagnostics import RepairObserver
from toolbridge.llm.errors import (
    BackendProtocolError,
    TruncatedStreamError,
    UnrecoverableArgumentsError,
)
from toolbridge.llm.json_repair import (
    Unrecoverable,
    normalize_arguments,
    parse_direct,
)
from toolbridge.llm.manual_protocol import parse_manual_tool_calls
from toolbridge.llm.result_builder import build_result
from toolbridge.llm.types import (
    ChatMessage,
    ChatResult,
    FunctionCall,
    StreamChunk,
    ToolCall,
    ToolCallFragment,
    Usage,
)
from toolbridge.types import Role

logger = logging.getLogger(__name__)


class AggregatorState(str, Enum):
    ACCUMULATING = "accumulating"
    FINALIZING = "finalizing"
    DONE = "done"
    DISCARDED = "discarded"


class _PendingCall:
    __slots__ = ("id", "name", "arguments")

    def __init__(self, call_id: str) -> None:
        self.id = call_id
        self.name = ""
        self.arguments: list[str] = []

    def snapshot(self) -> ToolCall:
        return ToolCall(
            id=self.id,
            function=FunctionCall(name=self.name, arguments="".join(self.arguments)),
        )


class DeltaAggregator:
    """
    Buffers one response's fragments and emits ``ChatResult`` snapshots.

    Parameters
    ----------
    history:
        The conversation sent with the request; copied into every result.
    backend:
        Provider id, used for diagnostics and error context.
    repair_arguments:
        Run the recovery cascade on malformed arguments.  When ``False`` the
        arguments must already be valid JSON.
    text_protocol:
        Parse ``TOOL_CALL:`` lines out of the final text (backends without
        native function calling).
    observer:
        Receives a ``RepairEvent`` for every recovery attempt.
    """

    def __init__(
        self,
        history: list[ChatMessage],
        *,
        backend: str | None = None,
        repair_arguments: bool = True,
        text_protocol: bool = False,
        observer: RepairObserver | None = None,
    ) -> None:
        self._history = list(history)
        self._backend = backend
        self._repair = repair_arguments
        self._text_protocol = text_protocol
        self._observer = observer
        self._content: list[str] = []
        self._calls: dict[str, _PendingCall] = {}
        self._usage: Usage | None = None
        self.state = AggregatorState.ACCUMULATING

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def done(self) -> bool:
        return self.state is AggregatorState.DONE

    def feed(self, chunk: StreamChunk) -> ChatResult:
        """
        Apply *chunk* and return the message assembled so far.

        The result returned for the terminal chunk carries the normalized
        finish reason; every other result has ``finish_reason=None``.
        """
        if self.state is not AggregatorState.ACCUMULATING:
            raise RuntimeError(
                f"aggregator is {self.state.value}; no further fragments accepted"
            )

        if chunk.content:
            self._content.append(chunk.content)

        for fragment in chunk.tool_fragments or ():
            self._feed_fragment(fragment)

        if chunk.usage is not None:
            self._usage = chunk.usage

        if not chunk.done:
            return ChatResult(messages=[*self._history, self._snapshot()])

        self.state = AggregatorState.FINALIZING
        result = build_result(
            self._history,
            self._finalize_message(),
            chunk.finish_reason,
            self._usage,
        )
        self._clear()
        self.state = AggregatorState.DONE
        return result

    def close(self) -> None:
        """
        Signal that the transport has no more fragments.

        Raises ``TruncatedStreamError`` if the terminal chunk never arrived.
        """
        if self.state is AggregatorState.ACCUMULATING:
            pending = len(self._calls)
            self.discard()
            raise TruncatedStreamError(self._backend, pending_calls=pending)

    def discard(self) -> None:
        """Drop all buffered state.  No result will be produced."""
        if self.state is AggregatorState.DONE:
            return
        self._clear()
        self.state = AggregatorState.DISCARDED

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _clear(self) -> None:
        self._content.clear()
        self._calls.clear()
        self._usage = None

    def _feed_fragment(self, fragment: ToolCallFragment) -> None:
        if not fragment.id:
            raise BackendProtocolError(
                f"tool-call fragment without a call id from {self._backend} "
                f"(index={fragment.index})"
            )

        call = self._calls.get(fragment.id)
        if call is None:
            call = self._calls[fragment.id] = _PendingCall(fragment.id)

        if fragment.name:
            if not call.name:
                call.name = fragment.name
            elif fragment.name != call.name:
                logger.debug(
                    "Ignoring rename of tool call %s from %r to %r",
                    call.id,
                    call.name,
                    fragment.name,
                )

        if fragment.arguments:
            call.arguments.append(fragment.arguments)

    def _snapshot(self) -> ChatMessage:
        content = "".join(self._content)
        tool_calls = [call.snapshot() for call in self._calls.values()]
        return ChatMessage(
            role=Role.ASSISTANT,
            content=content,
            tool_calls=tool_calls or None,
        )

    def _finalize_call(self, call: _PendingCall) -> ToolCall:
        raw = "".join(call.arguments)
        if not raw.strip():
            raw = "{}"

        if not self._repair:
            if parse_direct(raw) is None:
                raise UnrecoverableArgumentsError(
                    raw, call.id, ("direct",), self._backend
                )
            value = raw
        else:
            result = normalize_arguments(
                raw,
                observer=self._observer,
                backend=self._backend,
                call_id=call.id,
            )
            if isinstance(result, Unrecoverable):
                raise UnrecoverableArgumentsError(
                    raw, call.id, result.attempted, self._backend
                )
            value = result.value

        return ToolCall(
            id=call.id,
            function=FunctionCall(name=call.name.strip(), arguments=value),
        )

    def _finalize_message(self) -> ChatMessage:
        content = "".join(self._content)
        tool_calls = [self._finalize_call(call) for call in self._calls.values()]

        if self._text_protocol and not tool_calls:
            parsed = parse_manual_tool_calls(content, observer=self._observer)
            if parsed.rejected and not parsed.tool_calls:
                raise UnrecoverableArgumentsError(
                    parsed.rejected[0],
                    attempted=("manual_protocol",),
                    backend=self._backend,
                )
            content = parsed.content
            tool_calls = parsed.tool_calls

        return ChatMessage(
            role=Role.ASSISTANT,
            # Neither text nor calls: an explicitly empty message.
            content=content if content or not tool_calls else None,
            tool_calls=tool_calls or None,
        )

"""Abstract base class for LLM providers."""

from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import aclosing
from typing import AsyncIterator

from toolbridge.llm.delta_aggregator import DeltaAggregator
from toolbridge.llm.diagnostics import RepairObserver
from toolbridge.llm.errors import TruncatedStreamError
from toolbridge.llm.types import ChatMessage, ChatResult, StreamChunk, ToolSchema


class Provider(ABC):
    """
    A provider encapsulates access to a single chat-completion backend.

    Subclasses are wire adapters: they only turn the backend's HTTP payloads
    into backend-neutral ``StreamChunk`` objects (``_chunks``).  The base
    class drives a per-request ``DeltaAggregator`` over those chunks so every
    backend produces ``ChatResult`` the same way, streamed or not.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Provider id (e.g. ``"openrouter"``)."""
        ...

    @property
    def native_tools(self) -> bool:
        """``False`` for backends that need the ``TOOL_CALL:`` text protocol."""
        return True

    @property
    def repair_arguments(self) -> bool:
        """Run the recovery cascade on malformed tool-call arguments."""
        return True

    @abstractmethod
    def _chunks(
        self,
        messages: list[ChatMessage],
        tools: list[ToolSchema] | None,
        *,
        model: str | None,
        stream: bool,
        timeout: float | None,
    ) -> AsyncIterator[StreamChunk]:
        """
        Yield ``StreamChunk`` objects for one request.

        The terminal chunk has ``done=True``.  Returning without one means
        the transport was cut off.
        """
        ...

    async def chat(
        self,
        messages: list[ChatMessage],
        tools: list[ToolSchema] | None = None,
        *,
        model: str | None = None,
        stream: bool = False,
        timeout: float | None = None,
        observer: RepairObserver | None = None,
    ) -> AsyncIterator[ChatResult]:
        """
        Start a chat completion and yield ``ChatResult`` objects.

        Streaming requests yield one result per fragment; only the last has
        a ``finish_reason``.  Non-streaming requests yield exactly one.
        Cancelling the consumer discards the partial message and yields
        nothing further.
        """
        aggregator = DeltaAggregator(
            messages,
            backend=self.name,
            repair_arguments=self.repair_arguments,
            text_protocol=not self.native_tools and bool(tools),
            observer=observer,
        )
        try:
            async with aclosing(
                self._chunks(
                    messages, tools, model=model, stream=stream, timeout=timeout
                )
            ) as chunks:
                async for chunk in chunks:
                    result = aggregator.feed(chunk)
                    yield result
                    if aggregator.done:
                        return
            aggregator.close()
        finally:
            aggregator.discard()

    async def chat_complete(
        self,
        messages: list[ChatMessage],
        tools: list[ToolSchema] | None = None,
        *,
        model: str | None = None,
        stream: bool = False,
        timeout: float | None = None,
        observer: RepairObserver | None = None,
    ) -> ChatResult:
        """Consume the whole response and return the terminal ``ChatResult``."""
        final: ChatResult | None = None
        async for result in self.chat(
            messages,
            tools,
            model=model,
            stream=stream,
            timeout=timeout,
            observer=observer,
        ):
            final = result
        if final is None or not final.done:
            raise TruncatedStreamError(self.name)
        return final

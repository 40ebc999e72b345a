"""
OpenAI-compatible chat-completion provider.

Works with any endpoint that speaks the OpenAI ``/v1/chat/completions`` wire
protocol -- OpenAI itself, OpenRouter, Google's compatibility endpoint, vLLM,
LM Studio, etc.

Dependencies: ``httpx`` (async HTTP client).  No ``openai`` SDK needed.
"""

from __future__ import annotations

import json
import logging
import uuid
from typing import Any, AsyncIterator

import httpx

from toolbridge.llm.errors import BackendAPIError, BackendProtocolError
from toolbridge.llm.providers.base import Provider
from toolbridge.llm.providers.http import (
    SSE_DONE,
    decode_event,
    iter_sse_data,
    raise_for_api_error,
    read_json,
)
from toolbridge.llm.result_builder import usage_from_openai
from toolbridge.llm.types import (
    ChatMessage,
    StreamChunk,
    ToolCallFragment,
    ToolSchema,
)

logger = logging.getLogger(__name__)


def _synthetic_id() -> str:
    return f"call_{uuid.uuid4().hex[:24]}"


def _arguments_text(value: Any) -> str:
    # Some servers send already-decoded argument objects.
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False)


def _error_message(error: Any) -> tuple[str, Any]:
    if isinstance(error, dict):
        return str(error.get("message") or "unknown error"), error.get("code")
    return str(error), None


class OpenAIStreamDecoder:
    """
    Turns OpenAI-style SSE payloads into ``StreamChunk`` objects.

    Some servers send the call id only on the first fragment of a call and
    identify later fragments by ``index`` alone.  The decoder keeps an
    index-to-id alias table for the lifetime of one stream so every fragment
    it emits carries the call id.  A new decoder is built per request.
    """

    def __init__(self, prefix: str = "OpenAI") -> None:
        self._prefix = prefix
        self._ids_by_index: dict[int, str] = {}
        self._last_id: str | None = None

    def resolve_id(self, call_id: str | None, index: int | None) -> str:
        if call_id:
            if index is not None:
                self._ids_by_index[index] = call_id
            self._last_id = call_id
            return call_id

        if index is not None:
            known = self._ids_by_index.get(index)
            if known is None:
                known = self._ids_by_index[index] = _synthetic_id()
                logger.debug(
                    "%s: synthesized id %s for tool call index %d",
                    self._prefix,
                    known,
                    index,
                )
            self._last_id = known
            return known

        if self._last_id is None:
            self._last_id = _synthetic_id()
        return self._last_id

    def decode(self, payload: dict) -> StreamChunk | None:
        """Convert a parsed SSE ``data`` payload; ``None`` if it carries nothing."""
        if "error" in payload and not payload.get("choices"):
            message, code = _error_message(payload["error"])
            raise BackendAPIError(
                f"{self._prefix} API error: {code} {message}", error_code=code
            )

        usage = usage_from_openai(payload.get("usage"))
        choices = payload.get("choices")
        if not choices:
            # Usage-only frame (stream_options.include_usage).
            if usage is None:
                return None
            return StreamChunk(usage=usage)

        choice = choices[0]
        delta = choice.get("delta") or {}
        finish_reason = choice.get("finish_reason")

        fragments: list[ToolCallFragment] = []
        for raw_tc in delta.get("tool_calls") or ():
            index = raw_tc.get("index")
            func = raw_tc.get("function") or {}
            fragments.append(
                ToolCallFragment(
                    id=self.resolve_id(raw_tc.get("id"), index),
                    name=func.get("name") or None,
                    arguments=_arguments_text(func.get("arguments")),
                    index=index,
                )
            )

        return StreamChunk(
            content=delta.get("content") or "",
            tool_fragments=fragments or None,
            finish_reason=finish_reason,
            usage=usage,
        )


class OpenAICompatProvider(Provider):
    """
    Stream-capable provider for any OpenAI-API-compatible endpoint.

    Parameters
    ----------
    url:
        Base URL of the API, e.g. ``"https://api.openai.com/v1"`` or
        ``"http://localhost:8080/v1"``.
    model:
        Default model identifier sent in the ``model`` field.
    api_key:
        Bearer token.  Pass ``""`` for unauthenticated local endpoints.
    path:
        Endpoint path appended to *url*.
    name:
        Provider id used in diagnostics and error messages.
    headers:
        Extra request headers.
    max_tokens / temperature:
        Generation settings; ``None`` leaves the backend default.
    timeout:
        HTTP request timeout in seconds.
    repair_arguments:
        Run the recovery cascade on malformed tool-call arguments.
    transport:
        Optional ``httpx`` transport (tests use ``httpx.MockTransport``).
    """

    error_prefix = "OpenAI"

    def __init__(
        self,
        url: str = "https://api.openai.com/v1",
        model: str = "gpt-4o-mini",
        api_key: str = "",
        *,
        path: str = "/chat/completions",
        name: str = "openai",
        headers: dict[str, str] | None = None,
        max_tokens: int | None = 4000,
        temperature: float | None = None,
        timeout: float = 30.0,
        repair_arguments: bool = True,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._url = url.rstrip("/")
        self._path = path
        self._model = model
        self._api_key = api_key
        self._name = name
        self._extra_headers = dict(headers or {})
        self._max_tokens = max_tokens
        self._temperature = temperature
        self._timeout = timeout
        self._repair = repair_arguments
        self._transport = transport

    # ------------------------------------------------------------------
    # Provider interface
    # ------------------------------------------------------------------

    @property
    def name(self) -> str:
        return self._name

    @property
    def repair_arguments(self) -> bool:
        return self._repair

    @property
    def endpoint(self) -> str:
        return f"{self._url}{self._path}"

    async def _chunks(
        self,
        messages: list[ChatMessage],
        tools: list[ToolSchema] | None,
        *,
        model: str | None,
        stream: bool,
        timeout: float | None,
    ) -> AsyncIterator[StreamChunk]:
        body = self._build_body(messages, tools, model or self._model, stream)
        headers = self._build_headers(stream)
        effective_timeout = timeout or self._timeout

        if stream:
            async for chunk in self._stream_request(body, headers, effective_timeout):
                yield chunk
        else:
            yield await self._sync_request(body, headers, effective_timeout)

    # ------------------------------------------------------------------
    # Request building
    # ------------------------------------------------------------------

    def _wire_model(self, model: str) -> str:
        return model

    def _wire_messages(
        self, messages: list[ChatMessage], tools: list[ToolSchema] | None
    ) -> list[dict]:
        return [msg.to_dict() for msg in messages]

    def _build_headers(self, stream: bool) -> dict[str, str]:
        headers: dict[str, str] = {
            "Content-Type": "application/json",
            "Accept": "text/event-stream" if stream else "application/json",
        }
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        headers.update(self._extra_headers)
        return headers

    def _build_body(
        self,
        messages: list[ChatMessage],
        tools: list[ToolSchema] | None,
        model: str,
        stream: bool,
    ) -> dict:
        wire_messages = self._wire_messages(messages, tools)
        body: dict = {
            "model": self._wire_model(model),
            "messages": wire_messages,
            "stream": stream,
        }
        if self._max_tokens is not None:
            body["max_tokens"] = self._max_tokens
        if self._temperature is not None:
            body["temperature"] = self._temperature
        if tools and self.native_tools:
            body["tools"] = [tool.to_openai_schema() for tool in tools]
            body["tool_choice"] = "auto"
        logger.info(
            "REQUEST: provider=%s model=%s tools=%d messages=%d stream=%s",
            self._name,
            body["model"],
            len(tools) if tools else 0,
            len(wire_messages),
            stream,
        )
        return body

    def _client(self, timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=timeout, transport=self._transport)

    # ------------------------------------------------------------------
    # Streaming request
    # ------------------------------------------------------------------

    async def _stream_request(
        self,
        body: dict,
        headers: dict[str, str],
        timeout: float,
    ) -> AsyncIterator[StreamChunk]:
        decoder = OpenAIStreamDecoder(self.error_prefix)
        finish: str | None = None
        async with self._client(timeout) as client:
            async with client.stream(
                "POST", self.endpoint, json=body, headers=headers
            ) as response:
                await raise_for_api_error(response, self.error_prefix)

                async for data in iter_sse_data(response):
                    if data == SSE_DONE:
                        yield StreamChunk(finish_reason=finish, done=True)
                        return

                    chunk = decoder.decode(decode_event(data, self.error_prefix))
                    if chunk is None:
                        continue
                    if chunk.finish_reason is not None:
                        # Usage may still follow; [DONE] closes the stream.
                        finish = chunk.finish_reason
                        chunk.finish_reason = None
                    yield chunk

        if finish is not None:
            # finish_reason seen but the server omitted [DONE].
            yield StreamChunk(finish_reason=finish, done=True)
        # Neither marker seen: the aggregator reports truncation.

    # ------------------------------------------------------------------
    # Non-streaming request
    # ------------------------------------------------------------------

    async def _sync_request(
        self,
        body: dict,
        headers: dict[str, str],
        timeout: float,
    ) -> StreamChunk:
        async with self._client(timeout) as client:
            response = await client.post(self.endpoint, json=body, headers=headers)
            await raise_for_api_error(response, self.error_prefix)
            data = read_json(response, self.error_prefix)
        return self._parse_non_stream(data)

    def _parse_non_stream(self, data: dict) -> StreamChunk:
        """Convert a non-streaming response into a single terminal ``StreamChunk``."""
        choices = data.get("choices")
        if not choices:
            if data.get("error"):
                message, code = _error_message(data["error"])
                raise BackendAPIError(
                    f"{self.error_prefix} API error: {message} (Code: {code or 'N/A'})",
                    error_code=code,
                )
            raise BackendProtocolError(
                f"Invalid response from {self.error_prefix}: no choices returned"
            )

        choice = choices[0]
        message = choice.get("message")
        if not isinstance(message, dict):
            raise BackendProtocolError(
                f"Invalid response from {self.error_prefix}: choice has no message"
            )

        fragments: list[ToolCallFragment] = []
        for idx, raw_tc in enumerate(message.get("tool_calls") or ()):
            func = raw_tc.get("function") or {}
            fragments.append(
                ToolCallFragment(
                    id=raw_tc.get("id") or _synthetic_id(),
                    name=func.get("name") or None,
                    arguments=_arguments_text(func.get("arguments")),
                    index=idx,
                )
            )

        return StreamChunk(
            content=message.get("content") or "",
            tool_fragments=fragments or None,
            finish_reason=choice.get("finish_reason"),
            usage=usage_from_openai(data.get("usage")),
            done=True,
        )

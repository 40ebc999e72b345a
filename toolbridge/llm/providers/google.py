"""
Google Gemini providers.

``GoogleOpenAIProvider`` talks to Google's OpenAI-compatible endpoint and
only differs from ``OpenAICompatProvider`` in model naming.
``GeminiProvider`` speaks the native ``generateContent`` API.
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
    decode_event,
    iter_sse_data,
    raise_for_api_error,
    read_json,
)
from toolbridge.llm.providers.openai_compat import OpenAICompatProvider
from toolbridge.llm.result_builder import usage_from_gemini
from toolbridge.llm.types import (
    ChatMessage,
    StreamChunk,
    ToolCallFragment,
    ToolSchema,
)
from toolbridge.types import Role

logger = logging.getLogger(__name__)

GOOGLE_API_BASE = "https://generativelanguage.googleapis.com"
GOOGLE_OPENAI_BASE = f"{GOOGLE_API_BASE}/v1beta/openai"


def normalize_model_name(model: str) -> str:
    """``google/gemini-x`` and ``gemini-x`` both become ``models/gemini-x``."""
    if model.startswith("google/"):
        model = model[len("google/"):]
    if not model.startswith("models/"):
        model = f"models/{model}"
    return model


class GoogleOpenAIProvider(OpenAICompatProvider):
    """Gemini through Google's OpenAI-compatible ``/chat/completions``."""

    error_prefix = "Google OpenAI"

    def __init__(
        self,
        url: str = GOOGLE_OPENAI_BASE,
        model: str = "gemini-2.0-flash",
        api_key: str = "",
        **kwargs: Any,
    ) -> None:
        if not api_key:
            raise ValueError("Google OpenAI provider requires a non-empty API key")
        kwargs.setdefault("name", "google-openai")
        super().__init__(url, model, api_key, **kwargs)

    def _wire_model(self, model: str) -> str:
        return normalize_model_name(model)


# ---------------------------------------------------------------------------
# Native generateContent
# ---------------------------------------------------------------------------


def _parse_arguments(arguments: str) -> dict:
    try:
        value = json.loads(arguments)
    except ValueError:
        logger.warning("Sending unparseable tool-call arguments as {}: %s", arguments[:200])
        return {}
    return value if isinstance(value, dict) else {}


def to_gemini_contents(messages: list[ChatMessage]) -> list[dict]:
    """
    Map the conversation onto Gemini ``contents``.

    Gemini has no system role, so system text becomes a user turn prefixed
    with ``System:``.  Assistant turns become ``model`` turns and tool
    results become ``functionResponse`` parts.
    """
    contents: list[dict] = []
    for msg in messages:
        if msg.role == Role.SYSTEM:
            contents.append(
                {"role": "user", "parts": [{"text": f"System: {msg.content or ''}"}]}
            )
        elif msg.role == Role.ASSISTANT:
            parts: list[dict] = []
            if msg.content:
                parts.append({"text": msg.content})
            for tc in msg.tool_calls or ():
                parts.append(
                    {
                        "functionCall": {
                            "name": tc.name,
                            "args": _parse_arguments(tc.arguments),
                        }
                    }
                )
            if parts:
                contents.append({"role": "model", "parts": parts})
        elif msg.role == Role.TOOL:
            contents.append(
                {
                    "role": "function",
                    "parts": [
                        {
                            "functionResponse": {
                                "name": msg.name or "unknown",
                                "response": {"result": msg.content},
                            }
                        }
                    ],
                }
            )
        else:
            contents.append({"role": "user", "parts": [{"text": msg.content or ""}]})
    return contents


def _call_id() -> str:
    return f"call_{uuid.uuid4().hex[:24]}"


class GeminiProvider(Provider):
    """
    Native Gemini provider.

    Gemini returns each ``functionCall`` whole, without ids; the provider
    assigns one per call so the aggregator can route them.
    """

    error_prefix = "Google"

    def __init__(
        self,
        url: str = GOOGLE_API_BASE,
        model: str = "gemini-2.0-flash",
        api_key: str = "",
        *,
        api_version: str = "v1beta",
        max_tokens: int | None = 4000,
        temperature: float | None = 0.7,
        timeout: float = 30.0,
        repair_arguments: bool = True,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not api_key:
            raise ValueError("Google provider requires a non-empty API key")
        self._url = url.rstrip("/")
        self._model = model
        self._api_key = api_key
        self._api_version = api_version
        self._max_tokens = max_tokens
        self._temperature = temperature
        self._timeout = timeout
        self._repair = repair_arguments
        self._transport = transport

    @property
    def name(self) -> str:
        return "google"

    @property
    def repair_arguments(self) -> bool:
        return self._repair

    def endpoint(self, model: str, stream: bool) -> str:
        method = "streamGenerateContent" if stream else "generateContent"
        return f"{self._url}/{self._api_version}/{normalize_model_name(model)}:{method}"

    # ------------------------------------------------------------------
    # Request building
    # ------------------------------------------------------------------

    def _build_body(
        self, messages: list[ChatMessage], tools: list[ToolSchema] | None
    ) -> dict:
        generation: dict = {}
        if self._temperature is not None:
            generation["temperature"] = self._temperature
        if self._max_tokens is not None:
            generation["maxOutputTokens"] = self._max_tokens

        body: dict = {"contents": to_gemini_contents(messages)}
        if generation:
            body["generationConfig"] = generation
        if tools:
            body["tools"] = [
                {
                    "functionDeclarations": [
                        {
                            "name": tool.name,
                            "description": tool.description,
                            "parameters": tool.parameters,
                        }
                        for tool in tools
                    ]
                }
            ]
        return body

    def _build_headers(self) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "x-goog-api-key": self._api_key,
        }

    # ------------------------------------------------------------------
    # Response decoding
    # ------------------------------------------------------------------

    def _check_candidates(self, data: dict) -> dict:
        candidates = data.get("candidates")
        if candidates:
            return candidates[0]

        error = data.get("error")
        if isinstance(error, dict):
            raise BackendAPIError(
                f"{self.error_prefix} API Error: {error.get('message')} "
                f"(Code: {error.get('code')})",
                error_code=error.get("code"),
            )
        feedback = data.get("promptFeedback") or {}
        if feedback.get("blockReason"):
            reason = (
                f"Request blocked due to {feedback['blockReason']}. "
                f"Safety Ratings: {json.dumps(feedback.get('safetyRatings'))}"
            )
            logger.error("%s API Error: %s", self.error_prefix, reason)
            raise BackendAPIError(reason, error_code=feedback["blockReason"])
        raise BackendProtocolError(
            f"Invalid response from {self.error_prefix} AI: no candidates returned"
        )

    def _to_chunk(self, data: dict, *, final: bool) -> StreamChunk:
        candidate = self._check_candidates(data)
        parts = (candidate.get("content") or {}).get("parts") or []

        text: list[str] = []
        fragments: list[ToolCallFragment] = []
        for part in parts:
            if "text" in part:
                text.append(part["text"] or "")
            elif "functionCall" in part:
                call = part["functionCall"] or {}
                fragments.append(
                    ToolCallFragment(
                        id=call.get("id") or _call_id(),
                        name=call.get("name"),
                        arguments=json.dumps(
                            call.get("args") or {},
                            separators=(",", ":"),
                            ensure_ascii=False,
                        ),
                    )
                )

        finish_reason = candidate.get("finishReason")
        return StreamChunk(
            content="".join(text),
            tool_fragments=fragments or None,
            finish_reason=finish_reason,
            usage=usage_from_gemini(data.get("usageMetadata")),
            done=final or finish_reason is not None,
        )

    async def _chunks(
        self,
        messages: list[ChatMessage],
        tools: list[ToolSchema] | None,
        *,
        model: str | None,
        stream: bool,
        timeout: float | None,
    ) -> AsyncIterator[StreamChunk]:
        model = model or self._model
        url = self.endpoint(model, stream)
        body = self._build_body(messages, tools)
        headers = self._build_headers()
        logger.info(
            "REQUEST: provider=google model=%s tools=%d messages=%d stream=%s",
            model,
            len(tools) if tools else 0,
            len(body["contents"]),
            stream,
        )

        async with httpx.AsyncClient(
            timeout=timeout or self._timeout, transport=self._transport
        ) as client:
            if not stream:
                response = await client.post(url, json=body, headers=headers)
                await raise_for_api_error(response, self.error_prefix)
                yield self._to_chunk(read_json(response, self.error_prefix), final=True)
                return

            async with client.stream(
                "POST", url, params={"alt": "sse"}, json=body, headers=headers
            ) as response:
                await raise_for_api_error(response, self.error_prefix)
                async for data in iter_sse_data(response):
                    chunk = self._to_chunk(
                        decode_event(data, self.error_prefix), final=False
                    )
                    yield chunk
                    if chunk.done:
                        return

"""Tests for the wire adapters, driven through ``httpx.MockTransport``."""

from __future__ import annotations

import asyncio
import json
from typing import AsyncIterator

import httpx
import pytest

from tests.mock_providers import (
    MockProvider,
    make_malformed_tool_call_provider,
    make_text_provider,
    make_tool_call_provider,
    make_truncated_provider,
)
from toolbridge.llm.errors import (
    BackendAPIError,
    BackendProtocolError,
    TruncatedStreamError,
    UnrecoverableArgumentsError,
)
from toolbridge.llm.providers import (
    GeminiProvider,
    GoogleOpenAIProvider,
    ManualToolsProvider,
    OpenAICompatProvider,
    OpenRouterProvider,
    create_provider,
)
from toolbridge.llm.providers.google import normalize_model_name, to_gemini_contents
from toolbridge.llm.providers.openai_compat import OpenAIStreamDecoder
from toolbridge.llm.types import (
    ChatMessage,
    FunctionCall,
    StreamChunk,
    ToolCall,
    ToolSchema,
    Usage,
)

HISTORY = [ChatMessage(role="user", content="What's the weather in Oslo?")]
TOOLS = [
    ToolSchema(
        name="weather",
        description="Current weather for a city",
        parameters={"type": "object", "properties": {"city": {"type": "string"}}},
    )
]


def sse(*events: dict, done: bool = True) -> bytes:
    body = "".join(f"data: {json.dumps(e)}\n\n" for e in events)
    if done:
        body += "data: [DONE]\n\n"
    return body.encode()


def sse_response(body: bytes) -> httpx.Response:
    return httpx.Response(200, headers={"content-type": "text/event-stream"}, content=body)


class Recorder:
    """``MockTransport`` handler returning a fixed response and keeping requests."""

    def __init__(self, response: httpx.Response) -> None:
        self.response = response
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.response

    @property
    def body(self) -> dict:
        return json.loads(self.requests[-1].content)

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)


def openai_provider(response: httpx.Response, **kwargs):
    recorder = Recorder(response)
    provider = OpenAICompatProvider(
        model="gpt-test", api_key="sk-test", transport=recorder.transport(), **kwargs
    )
    return provider, recorder


# ---------------------------------------------------------------------------
# Provider base loop
# ---------------------------------------------------------------------------


class TestProviderLoop:
    @pytest.mark.asyncio
    async def test_text_stream(self):
        provider = make_text_provider("Hello there world")
        results = [r async for r in provider.chat(HISTORY, stream=True)]
        assert [r.message.content for r in results[:-1]] == [
            "Hello ",
            "Hello there ",
            "Hello there world",
        ]
        assert all(r.finish_reason is None for r in results[:-1])
        assert results[-1].finish_reason == "stop"
        assert results[-1].message.content == "Hello there world"

    @pytest.mark.asyncio
    async def test_tool_call_stream(self):
        provider = make_tool_call_provider("weather", {"city": "Oslo"}, content_prefix="One sec.")
        result = await provider.chat_complete(HISTORY, TOOLS, stream=True)
        assert result.finish_reason == "tool_call"
        assert result.message.content == "One sec."
        assert result.tool_calls[0].id == "call_abc123"
        assert json.loads(result.tool_calls[0].arguments) == {"city": "Oslo"}
        assert provider.last_tools == TOOLS

    @pytest.mark.asyncio
    async def test_truncated_stream(self):
        provider = make_truncated_provider()
        with pytest.raises(TruncatedStreamError) as exc_info:
            await provider.chat_complete(HISTORY, stream=True)
        assert exc_info.value.pending_calls == 1

    @pytest.mark.asyncio
    async def test_unrecoverable_arguments(self):
        provider = make_malformed_tool_call_provider()
        with pytest.raises(UnrecoverableArgumentsError) as exc_info:
            await provider.chat_complete(HISTORY, TOOLS)
        assert exc_info.value.raw == '{"key": INVALID_JSON'
        assert exc_info.value.call_id == "call_bad"

    @pytest.mark.asyncio
    async def test_consumer_close_discards(self):
        provider = make_text_provider("one two three")
        gen = provider.chat(HISTORY, stream=True)
        first = await gen.__anext__()
        assert first.finish_reason is None
        await gen.aclose()
        assert provider.closed

    @pytest.mark.asyncio
    async def test_cancellation_produces_no_result(self):
        gate = asyncio.Event()
        started = asyncio.Event()

        class HangingProvider(MockProvider):
            async def _chunks(self, messages, tools, *, model, stream, timeout) -> AsyncIterator[StreamChunk]:
                try:
                    yield StreamChunk(content="partial")
                    started.set()
                    await gate.wait()
                    yield StreamChunk(finish_reason="stop", done=True)
                finally:
                    self.closed = True

        provider = HangingProvider()
        results = []

        async def consume():
            async for result in provider.chat(HISTORY, stream=True):
                results.append(result)

        task = asyncio.create_task(consume())
        await started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert provider.closed
        assert all(not r.done for r in results)

    @pytest.mark.asyncio
    async def test_manual_mode_only_with_tools(self):
        text = 'TOOL_CALL: {"name": "weather", "arguments": {"city": "Oslo"}}'
        chunks = [StreamChunk(content=text), StreamChunk(finish_reason="stop", done=True)]

        with_tools = await MockProvider(chunks, native=False).chat_complete(HISTORY, TOOLS)
        assert with_tools.tool_calls[0].name == "weather"

        without_tools = await MockProvider(chunks, native=False).chat_complete(HISTORY)
        assert without_tools.tool_calls == []
        assert without_tools.message.content == text


# ---------------------------------------------------------------------------
# OpenAI-compatible
# ---------------------------------------------------------------------------


class TestOpenAIStreamDecoder:
    def test_index_alias_to_first_id(self):
        decoder = OpenAIStreamDecoder()
        assert decoder.resolve_id("call_1", 0) == "call_1"
        assert decoder.resolve_id(None, 0) == "call_1"

    def test_unseen_index_gets_stable_synthetic_id(self):
        decoder = OpenAIStreamDecoder()
        first = decoder.resolve_id(None, 3)
        assert first.startswith("call_")
        assert decoder.resolve_id(None, 3) == first

    def test_no_id_no_index_continues_last_call(self):
        decoder = OpenAIStreamDecoder()
        decoder.resolve_id("call_9", None)
        assert decoder.resolve_id(None, None) == "call_9"

    def test_dict_arguments_encoded(self):
        decoder = OpenAIStreamDecoder()
        chunk = decoder.decode(
            {
                "choices": [
                    {
                        "delta": {
                            "tool_calls": [
                                {"index": 0, "id": "c", "function": {"name": "t", "arguments": {"a": 1}}}
                            ]
                        }
                    }
                ]
            }
        )
        assert chunk.tool_fragments[0].arguments == '{"a":1}'

    def test_empty_frame_ignored(self):
        assert OpenAIStreamDecoder().decode({"id": "x", "choices": []}) is None


class TestOpenAICompatNonStream:
    @pytest.mark.asyncio
    async def test_request_shape(self):
        provider, recorder = openai_provider(
            httpx.Response(
                200,
                json={"choices": [{"message": {"role": "assistant", "content": "Hi"}, "finish_reason": "stop"}]},
            ),
            temperature=0.2,
        )
        result = await provider.chat_complete(HISTORY, TOOLS)
        assert result.message.content == "Hi"
        assert result.finish_reason == "stop"
        assert result.usage is None

        request = recorder.requests[0]
        assert request.url == "https://api.openai.com/v1/chat/completions"
        assert request.headers["authorization"] == "Bearer sk-test"
        body = recorder.body
        assert body["model"] == "gpt-test"
        assert body["stream"] is False
        assert body["max_tokens"] == 4000
        assert body["temperature"] == 0.2
        assert body["tool_choice"] == "auto"
        assert body["tools"][0]["function"]["name"] == "weather"
        assert body["messages"] == [{"role": "user", "content": "What's the weather in Oslo?"}]

    @pytest.mark.asyncio
    async def test_model_override(self):
        provider, recorder = openai_provider(
            httpx.Response(200, json={"choices": [{"message": {"content": "ok"}}]})
        )
        await provider.chat_complete(HISTORY, model="gpt-other")
        assert recorder.body["model"] == "gpt-other"
        assert "tools" not in recorder.body

    @pytest.mark.asyncio
    async def test_tool_call_with_duplicated_arguments(self):
        provider, _ = openai_provider(
            httpx.Response(
                200,
                json={
                    "choices": [
                        {
                            "message": {
                                "role": "assistant",
                                "content": None,
                                "tool_calls": [
                                    {
                                        "id": "call_7",
                                        "type": "function",
                                        "function": {
                                            "name": "weather",
                                            "arguments": '{"city":"Oslo"}{"city":"Oslo"}',
                                        },
                                    }
                                ],
                            },
                            "finish_reason": "tool_calls",
                        }
                    ],
                    "usage": {"prompt_tokens": 20, "completion_tokens": 8, "total_tokens": 28},
                },
            )
        )
        result = await provider.chat_complete(HISTORY, TOOLS)
        assert result.finish_reason == "tool_call"
        assert result.message.content is None
        assert result.tool_calls[0].id == "call_7"
        assert result.tool_calls[0].arguments == '{"city":"Oslo"}'
        assert result.usage == Usage(prompt=20, completion=8, total=28)

    @pytest.mark.asyncio
    async def test_missing_tool_call_id_generated(self):
        provider, _ = openai_provider(
            httpx.Response(
                200,
                json={
                    "choices": [
                        {
                            "message": {
                                "tool_calls": [{"function": {"name": "weather", "arguments": "{}"}}]
                            },
                            "finish_reason": "tool_calls",
                        }
                    ]
                },
            )
        )
        result = await provider.chat_complete(HISTORY, TOOLS)
        assert result.tool_calls[0].id.startswith("call_")

    @pytest.mark.asyncio
    async def test_history_serialized_with_tool_turns(self):
        provider, recorder = openai_provider(
            httpx.Response(200, json={"choices": [{"message": {"content": "Sunny."}}]})
        )
        history = [
            *HISTORY,
            ChatMessage(
                role="assistant",
                tool_calls=[
                    ToolCall(id="c1", function=FunctionCall(name="weather", arguments='{"city":"Oslo"}'))
                ],
            ),
            ChatMessage(role="tool", content="sunny", tool_call_id="c1", name="weather"),
        ]
        result = await provider.chat_complete(history, TOOLS)
        messages = recorder.body["messages"]
        assert messages[1]["tool_calls"][0]["function"]["arguments"] == '{"city":"Oslo"}'
        assert "content" not in messages[1]
        assert messages[2] == {
            "role": "tool",
            "content": "sunny",
            "tool_call_id": "c1",
            "name": "weather",
        }
        assert result.messages[:-1] == history

    @pytest.mark.asyncio
    async def test_http_error(self):
        provider, _ = openai_provider(
            httpx.Response(
                401, json={"error": {"message": "Invalid key", "code": "invalid_api_key"}}
            )
        )
        with pytest.raises(BackendAPIError) as exc_info:
            await provider.chat_complete(HISTORY)
        err = exc_info.value
        assert err.status == 401
        assert err.error_code == "invalid_api_key"
        assert "Invalid key" in str(err)
        assert err.code == "backend_api_error"

    @pytest.mark.asyncio
    async def test_http_error_without_json_body(self):
        provider, _ = openai_provider(httpx.Response(503, text="upstream down"))
        with pytest.raises(BackendAPIError) as exc_info:
            await provider.chat_complete(HISTORY)
        assert exc_info.value.status == 503

    @pytest.mark.asyncio
    async def test_error_object_instead_of_choices(self):
        provider, _ = openai_provider(
            httpx.Response(200, json={"error": {"message": "Rate limited", "code": 429}})
        )
        with pytest.raises(BackendAPIError, match="Rate limited"):
            await provider.chat_complete(HISTORY)

    @pytest.mark.asyncio
    async def test_no_choices(self):
        provider, _ = openai_provider(httpx.Response(200, json={"choices": []}))
        with pytest.raises(BackendProtocolError, match="no choices"):
            await provider.chat_complete(HISTORY)

    @pytest.mark.asyncio
    async def test_invalid_json_body(self):
        provider, _ = openai_provider(httpx.Response(200, text="<html>oops</html>"))
        with pytest.raises(BackendProtocolError):
            await provider.chat_complete(HISTORY)


class TestOpenAICompatStream:
    FRAMES = (
        {"choices": [{"index": 0, "delta": {"role": "assistant", "content": "Let me "}}]},
        {"choices": [{"index": 0, "delta": {"content": "check."}}]},
        {
            "choices": [
                {
                    "index": 0,
                    "delta": {
                        "tool_calls": [
                            {
                                "index": 0,
                                "id": "call_1",
                                "type": "function",
                                "function": {"name": "weather", "arguments": ""},
                            }
                        ]
                    },
                }
            ]
        },
        {"choices": [{"index": 0, "delta": {"tool_calls": [{"index": 0, "function": {"arguments": '{"city": '}}]}}]},
        {"choices": [{"index": 0, "delta": {"tool_calls": [{"index": 0, "function": {"arguments": '"Oslo"}'}}]}}]},
        {"choices": [{"index": 0, "delta": {}, "finish_reason": "tool_calls"}]},
        {"choices": [], "usage": {"prompt_tokens": 11, "completion_tokens": 7, "total_tokens": 18}},
    )

    @pytest.mark.asyncio
    async def test_stream_assembles_call(self):
        provider, recorder = openai_provider(sse_response(sse(*self.FRAMES)))
        results = [r async for r in provider.chat(HISTORY, TOOLS, stream=True)]

        assert recorder.body["stream"] is True
        assert recorder.requests[0].headers["accept"] == "text/event-stream"
        assert all(r.finish_reason is None for r in results[:-1])

        final = results[-1]
        assert final.finish_reason == "tool_call"
        assert final.message.content == "Let me check."
        assert final.tool_calls[0].id == "call_1"
        assert final.tool_calls[0].name == "weather"
        assert final.tool_calls[0].arguments == '{"city": "Oslo"}'
        assert final.usage == Usage(prompt=11, completion=7, total=18)

    @pytest.mark.asyncio
    async def test_stream_matches_non_stream(self):
        streamed, _ = openai_provider(sse_response(sse(*self.FRAMES)))
        whole, _ = openai_provider(
            httpx.Response(
                200,
                json={
                    "choices": [
                        {
                            "message": {
                                "content": "Let me check.",
                                "tool_calls": [
                                    {"id": "call_1", "function": {"name": "weather", "arguments": '{"city": "Oslo"}'}}
                                ],
                            },
                            "finish_reason": "tool_calls",
                        }
                    ],
                    "usage": {"prompt_tokens": 11, "completion_tokens": 7, "total_tokens": 18},
                },
            )
        )
        a = await streamed.chat_complete(HISTORY, TOOLS, stream=True)
        b = await whole.chat_complete(HISTORY, TOOLS)
        assert a.messages == b.messages
        assert a.finish_reason == b.finish_reason
        assert a.usage == b.usage

    @pytest.mark.asyncio
    async def test_interleaved_calls_without_repeated_ids(self):
        frames = (
            {"choices": [{"delta": {"tool_calls": [{"index": 0, "id": "A", "function": {"name": "alpha", "arguments": '{"x": '}}]}}]},
            {"choices": [{"delta": {"tool_calls": [{"index": 1, "id": "B", "function": {"name": "beta", "arguments": '{"y": '}}]}}]},
            {"choices": [{"delta": {"tool_calls": [{"index": 0, "function": {"arguments": "1}"}}]}}]},
            {"choices": [{"delta": {"tool_calls": [{"index": 1, "function": {"arguments": "2}"}}]}}]},
            {"choices": [{"delta": {}, "finish_reason": "tool_calls"}]},
        )
        provider, _ = openai_provider(sse_response(sse(*frames)))
        result = await provider.chat_complete(HISTORY, TOOLS, stream=True)
        assert [(tc.id, tc.name, tc.arguments) for tc in result.tool_calls] == [
            ("A", "alpha", '{"x": 1}'),
            ("B", "beta", '{"y": 2}'),
        ]

    @pytest.mark.asyncio
    async def test_comments_and_blank_frames_skipped(self):
        body = (
            b": keep-alive\n\n"
            + sse({"choices": [{"delta": {"content": "ok"}, "finish_reason": "stop"}]})
        )
        provider, _ = openai_provider(sse_response(body))
        result = await provider.chat_complete(HISTORY, stream=True)
        assert result.message.content == "ok"
        assert result.finish_reason == "stop"

    @pytest.mark.asyncio
    async def test_finish_without_done_marker(self):
        body = sse({"choices": [{"delta": {"content": "ok"}, "finish_reason": "length"}]}, done=False)
        provider, _ = openai_provider(sse_response(body))
        result = await provider.chat_complete(HISTORY, stream=True)
        assert result.finish_reason == "length"

    @pytest.mark.asyncio
    async def test_connection_cut_is_truncation(self):
        body = sse(*self.FRAMES[:4], done=False)
        provider, _ = openai_provider(sse_response(body))
        with pytest.raises(TruncatedStreamError) as exc_info:
            await provider.chat_complete(HISTORY, TOOLS, stream=True)
        assert exc_info.value.backend == "openai"
        assert exc_info.value.pending_calls == 1

    @pytest.mark.asyncio
    async def test_undecodable_frame(self):
        provider, _ = openai_provider(sse_response(b"data: {not json\n\n"))
        with pytest.raises(BackendProtocolError):
            await provider.chat_complete(HISTORY, stream=True)

    @pytest.mark.asyncio
    async def test_error_frame(self):
        body = sse({"error": {"message": "overloaded", "code": 502}}, done=False)
        provider, _ = openai_provider(sse_response(body))
        with pytest.raises(BackendAPIError, match="overloaded"):
            await provider.chat_complete(HISTORY, stream=True)

    @pytest.mark.asyncio
    async def test_stream_http_error(self):
        provider, _ = openai_provider(
            httpx.Response(429, json={"error": {"message": "slow down", "code": 429}})
        )
        with pytest.raises(BackendAPIError) as exc_info:
            await provider.chat_complete(HISTORY, stream=True)
        assert exc_info.value.status == 429


# ---------------------------------------------------------------------------
# OpenRouter
# ---------------------------------------------------------------------------


class TestOpenRouter:
    @pytest.mark.asyncio
    async def test_attribution_headers_and_base_url(self):
        recorder = Recorder(httpx.Response(200, json={"choices": [{"message": {"content": "hi"}}]}))
        provider = OpenRouterProvider(api_key="or-key", transport=recorder.transport())
        await provider.chat_complete(HISTORY)
        request = recorder.requests[0]
        assert request.url == "https://openrouter.ai/api/v1/chat/completions"
        assert request.headers["http-referer"]
        assert request.headers["x-title"] == "toolbridge"
        assert provider.name == "openrouter"

    def test_requires_api_key(self):
        with pytest.raises(ValueError):
            OpenRouterProvider(api_key="")

    @pytest.mark.asyncio
    async def test_error_prefix(self):
        recorder = Recorder(httpx.Response(200, json={"choices": []}))
        provider = OpenRouterProvider(api_key="k", transport=recorder.transport())
        with pytest.raises(BackendProtocolError, match="Invalid response from OpenRouter"):
            await provider.chat_complete(HISTORY)


class TestManualTools:
    @pytest.mark.asyncio
    async def test_tools_sent_as_instructions(self):
        recorder = Recorder(
            httpx.Response(
                200,
                json={
                    "choices": [
                        {
                            "message": {
                                "content": 'Checking.\nTOOL_CALL: {"name": "weather", "arguments": {"city": "Oslo"}}\n'
                                'TOOL_CALL: {"name": "weather", "arguments": {"city": "Bergen"}}'
                            },
                            "finish_reason": "stop",
                        }
                    ]
                },
            )
        )
        provider = ManualToolsProvider(api_key="k", transport=recorder.transport())
        history = [ChatMessage(role="system", content="Be brief."), *HISTORY]
        result = await provider.chat_complete(history, TOOLS)

        body = recorder.body
        assert "tools" not in body
        assert "tool_choice" not in body
        system = body["messages"][0]
        assert system["role"] == "system"
        assert "TOOL_CALL:" in system["content"]
        assert "- weather: Current weather for a city" in system["content"]
        assert system["content"].endswith("Be brief.")

        assert provider.name == "openrouter-manual"
        assert result.finish_reason == "tool_call"
        assert result.message.content == "Checking."
        assert len(result.tool_calls) == 1
        assert json.loads(result.tool_calls[0].arguments) == {"city": "Oslo"}
        assert result.messages[:-1] == history

    @pytest.mark.asyncio
    async def test_streamed_manual_call(self):
        text = 'TOOL_CALL: {"name": "weather", "arguments": {"city": "Oslo"}}'
        frames = [{"choices": [{"delta": {"content": text[i:i + 5]}}]} for i in range(0, len(text), 5)]
        frames.append({"choices": [{"delta": {}, "finish_reason": "stop"}]})
        recorder = Recorder(sse_response(sse(*frames)))
        provider = ManualToolsProvider(api_key="k", transport=recorder.transport())
        result = await provider.chat_complete(HISTORY, TOOLS, stream=True)
        assert result.tool_calls[0].name == "weather"
        assert result.message.content is None


# ---------------------------------------------------------------------------
# Google
# ---------------------------------------------------------------------------


class TestGoogleOpenAI:
    @pytest.mark.parametrize(
        "model, expected",
        [
            ("gemini-2.0-flash", "models/gemini-2.0-flash"),
            ("google/gemini-2.0-flash", "models/gemini-2.0-flash"),
            ("models/gemini-2.0-flash", "models/gemini-2.0-flash"),
        ],
    )
    def test_model_name_normalization(self, model, expected):
        assert normalize_model_name(model) == expected

    @pytest.mark.asyncio
    async def test_request(self):
        recorder = Recorder(httpx.Response(200, json={"choices": [{"message": {"content": "hi"}}]}))
        provider = GoogleOpenAIProvider(
            model="google/gemini-2.0-flash", api_key="g-key", transport=recorder.transport()
        )
        await provider.chat_complete(HISTORY, TOOLS)
        request = recorder.requests[0]
        assert request.url == (
            "https://generativelanguage.googleapis.com/v1beta/openai/chat/completions"
        )
        assert recorder.body["model"] == "models/gemini-2.0-flash"
        assert recorder.body["tools"][0]["type"] == "function"
        assert provider.name == "google-openai"


class TestGeminiNative:
    def _provider(self, response: httpx.Response):
        recorder = Recorder(response)
        provider = GeminiProvider(api_key="g-key", transport=recorder.transport())
        return provider, recorder

    def test_contents_mapping(self):
        messages = [
            ChatMessage(role="system", content="Be brief."),
            ChatMessage(role="user", content="Weather?"),
            ChatMessage(
                role="assistant",
                tool_calls=[
                    ToolCall(id="c1", function=FunctionCall(name="weather", arguments='{"city":"Oslo"}'))
                ],
            ),
            ChatMessage(role="tool", content="sunny", tool_call_id="c1", name="weather"),
        ]
        assert to_gemini_contents(messages) == [
            {"role": "user", "parts": [{"text": "System: Be brief."}]},
            {"role": "user", "parts": [{"text": "Weather?"}]},
            {"role": "model", "parts": [{"functionCall": {"name": "weather", "args": {"city": "Oslo"}}}]},
            {
                "role": "function",
                "parts": [
                    {"functionResponse": {"name": "weather", "response": {"result": "sunny"}}}
                ],
            },
        ]

    @pytest.mark.asyncio
    async def test_function_call_response(self):
        provider, recorder = self._provider(
            httpx.Response(
                200,
                json={
                    "candidates": [
                        {
                            "content": {
                                "role": "model",
                                "parts": [{"functionCall": {"name": "weather", "args": {"city": "Oslo"}}}],
                            },
                            "finishReason": "STOP",
                        }
                    ],
                    "usageMetadata": {"promptTokenCount": 9, "candidatesTokenCount": 4, "totalTokenCount": 13},
                },
            )
        )
        result = await provider.chat_complete(HISTORY, TOOLS)

        request = recorder.requests[0]
        assert request.url.path == "/v1beta/models/gemini-2.0-flash:generateContent"
        assert request.headers["x-goog-api-key"] == "g-key"
        body = recorder.body
        assert body["tools"][0]["functionDeclarations"][0]["name"] == "weather"
        assert body["generationConfig"] == {"temperature": 0.7, "maxOutputTokens": 4000}

        assert result.finish_reason == "tool_call"
        assert result.tool_calls[0].name == "weather"
        assert json.loads(result.tool_calls[0].arguments) == {"city": "Oslo"}
        assert result.usage == Usage(prompt=9, completion=4, total=13)

    @pytest.mark.asyncio
    async def test_max_tokens_is_length(self):
        provider, _ = self._provider(
            httpx.Response(
                200,
                json={
                    "candidates": [
                        {"content": {"parts": [{"text": "Long "}, {"text": "answer"}]}, "finishReason": "MAX_TOKENS"}
                    ]
                },
            )
        )
        result = await provider.chat_complete(HISTORY)
        assert result.finish_reason == "length"
        assert result.message.content == "Long answer"
        assert result.usage is None

    @pytest.mark.asyncio
    async def test_prompt_blocked(self):
        provider, _ = self._provider(
            httpx.Response(200, json={"promptFeedback": {"blockReason": "SAFETY", "safetyRatings": []}})
        )
        with pytest.raises(BackendAPIError, match="SAFETY"):
            await provider.chat_complete(HISTORY)

    @pytest.mark.asyncio
    async def test_no_candidates(self):
        provider, _ = self._provider(httpx.Response(200, json={}))
        with pytest.raises(BackendProtocolError, match="no candidates"):
            await provider.chat_complete(HISTORY)

    @pytest.mark.asyncio
    async def test_http_error(self):
        provider, _ = self._provider(
            httpx.Response(400, json={"error": {"code": 400, "message": "API key not valid"}})
        )
        with pytest.raises(BackendAPIError, match="API key not valid"):
            await provider.chat_complete(HISTORY)

    @pytest.mark.asyncio
    async def test_stream(self):
        frames = (
            {"candidates": [{"content": {"parts": [{"text": "Sunny "}]}}]},
            {"candidates": [{"content": {"parts": [{"text": "in Oslo."}]}}]},
            {
                "candidates": [{"content": {"parts": [{"text": ""}]}, "finishReason": "STOP"}],
                "usageMetadata": {"promptTokenCount": 5, "candidatesTokenCount": 3, "totalTokenCount": 8},
            },
        )
        provider, recorder = self._provider(sse_response(sse(*frames, done=False)))
        results = [r async for r in provider.chat(HISTORY, stream=True)]

        request = recorder.requests[0]
        assert request.url.path == "/v1beta/models/gemini-2.0-flash:streamGenerateContent"
        assert request.url.params["alt"] == "sse"
        assert [r.finish_reason for r in results] == [None, None, "stop"]
        assert results[-1].message.content == "Sunny in Oslo."
        assert results[-1].usage == Usage(prompt=5, completion=3, total=8)

    @pytest.mark.asyncio
    async def test_stream_cut_is_truncation(self):
        frames = ({"candidates": [{"content": {"parts": [{"text": "Sunny "}]}}]},)
        provider, _ = self._provider(sse_response(sse(*frames, done=False)))
        with pytest.raises(TruncatedStreamError):
            await provider.chat_complete(HISTORY, stream=True)

    def test_requires_api_key(self):
        with pytest.raises(ValueError):
            GeminiProvider(api_key="")


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


class TestCreateProvider:
    def test_known_kinds(self):
        assert isinstance(create_provider("openai", api_key=""), OpenAICompatProvider)
        assert isinstance(create_provider("openrouter", api_key="k"), OpenRouterProvider)
        manual = create_provider("openrouter-manual", api_key="k")
        assert isinstance(manual, ManualToolsProvider)
        assert manual.native_tools is False
        assert isinstance(create_provider("gemini", api_key="k"), GeminiProvider)
        assert isinstance(create_provider("google-openai", api_key="k"), GoogleOpenAIProvider)

    def test_unknown_kind(self):
        with pytest.raises(ValueError, match="Unknown provider kind"):
            create_provider("bedrock")

    def test_independent_instances(self):
        a = create_provider("openai", model="m1")
        b = create_provider("openai", model="m2")
        assert a is not b

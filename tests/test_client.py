"""Tests for the OpenAI-compatible chat client."""

from __future__ import annotations

import json
from types import SimpleNamespace
from typing import Any, Callable, List, cast

import httpx
import pytest
from openai import AsyncOpenAI

from docchat.ai.ai_types import Finish, TextDelta, ToolCallDelta, Usage, UsageEvent
from docchat.ai.client import ApproxByteCounter, ChatClient, ClientSettings, TokenCounterRegistry
from docchat.ai.errors import ConfigError, TransportError


def _sse(*frames: dict[str, Any]) -> bytes:
    body = "".join(f"data: {json.dumps(frame)}\n\n" for frame in frames)
    return (body + "data: [DONE]\n\n").encode("utf-8")


class _RecordingHandler:
    def __init__(self, respond: Callable[[httpx.Request], httpx.Response]) -> None:
        self._respond = respond
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self._respond(request)

    def payload(self, index: int = -1) -> dict[str, Any]:
        return json.loads(self.requests[index].content)


def _make_client(handler: _RecordingHandler, **overrides: Any) -> ChatClient:
    settings = ClientSettings(
        api_key=overrides.pop("api_key", "sk-test-123456789"),
        base_url=overrides.pop("base_url", "https://llm.example/v1/"),
        model=overrides.pop("model", "test-model"),
        **overrides,
    )
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return ChatClient(settings, http_client=http, token_registry=TokenCounterRegistry())


async def _drain(client: ChatClient, messages: list[dict[str, Any]], **kwargs: Any) -> list:
    return [event async for event in client.stream_chat(messages, **kwargs)]


@pytest.mark.asyncio
async def test_stream_chat_posts_payload_and_decodes_events() -> None:
    handler = _RecordingHandler(
        lambda _request: httpx.Response(
            200,
            content=_sse(
                {"choices": [{"delta": {"content": "Hi"}}]},
                {"choices": [{"delta": {}, "finish_reason": "stop"}]},
            ),
            headers={"Content-Type": "text/event-stream"},
        )
    )
    client = _make_client(handler, temperature=0.3)
    tools = [{"type": "function", "function": {"name": "fn", "description": "d", "parameters": {"type": "object"}}}]

    events = await _drain(client, [{"role": "user", "content": "hello"}], tools=tools, tool_choice="auto")

    assert events == [TextDelta("Hi"), Finish("stop")]
    request = handler.requests[0]
    assert str(request.url) == "https://llm.example/v1/chat/completions"
    assert request.headers["Authorization"] == "Bearer sk-test-123456789"
    payload = handler.payload()
    assert payload["model"] == "test-model"
    assert payload["stream"] is True
    assert payload["messages"] == [{"role": "user", "content": "hello"}]
    assert payload["tools"] == tools
    assert payload["tool_choice"] == "auto"
    assert payload["temperature"] == 0.3
    assert payload["max_completion_tokens"] == 16_000
    assert payload["stream_options"] == {"include_usage": True}
    assert "response_format" not in payload


@pytest.mark.asyncio
async def test_explicit_temperature_and_response_format_win() -> None:
    handler = _RecordingHandler(lambda _r: httpx.Response(200, content=_sse({"choices": [{"delta": {}, "finish_reason": "stop"}]})))
    client = _make_client(handler, temperature=0.9)

    await _drain(client, [{"role": "user", "content": "x"}], temperature=0.1, response_format={"type": "json_object"})

    payload = handler.payload()
    assert payload["temperature"] == 0.1
    assert payload["response_format"] == {"type": "json_object"}
    assert "tools" not in payload and "tool_choice" not in payload


@pytest.mark.asyncio
async def test_missing_api_key_raises_before_request() -> None:
    handler = _RecordingHandler(lambda _r: httpx.Response(200))
    client = _make_client(handler, api_key="  ")

    with pytest.raises(ConfigError):
        await _drain(client, [{"role": "user", "content": "x"}])

    assert handler.requests == []


@pytest.mark.asyncio
async def test_error_status_surfaces_body_verbatim() -> None:
    body = '{"error": {"message": "Incorrect API key provided"}}'
    handler = _RecordingHandler(lambda _r: httpx.Response(401, text=body))
    client = _make_client(handler)

    with pytest.raises(TransportError) as info:
        await _drain(client, [{"role": "user", "content": "x"}])

    assert info.value.message == body
    assert info.value.status_code == 401
    assert info.value.body == body


@pytest.mark.asyncio
async def test_error_status_without_body_reports_code() -> None:
    client = _make_client(_RecordingHandler(lambda _r: httpx.Response(503)))

    with pytest.raises(TransportError) as info:
        await _drain(client, [{"role": "user", "content": "x"}])

    assert info.value.message == "HTTP 503"


@pytest.mark.asyncio
async def test_network_failure_becomes_transport_error() -> None:
    def fail(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    client = _make_client(_RecordingHandler(fail))

    with pytest.raises(TransportError) as info:
        await _drain(client, [{"role": "user", "content": "x"}])

    assert "connection refused" in info.value.message
    assert info.value.status_code is None


@pytest.mark.asyncio
async def test_non_streaming_mode_replays_single_body() -> None:
    body = {
        "choices": [
            {
                "message": {
                    "content": None,
                    "tool_calls": [{"id": "c1", "type": "function", "function": {"name": "fn", "arguments": '{"a": 1}'}}],
                },
                "finish_reason": "tool_calls",
            }
        ],
        "usage": {"prompt_tokens": 4, "completion_tokens": 2, "total_tokens": 6},
    }
    handler = _RecordingHandler(lambda _r: httpx.Response(200, json=body))
    client = _make_client(handler, stream=False)

    events = await _drain(client, [{"role": "user", "content": "x"}])

    assert events == [
        UsageEvent(Usage(4, 2, 6)),
        ToolCallDelta(index=0, id="c1", name="fn", args_fragment='{"a": 1}'),
        Finish("tool_calls"),
    ]
    payload = handler.payload()
    assert payload["stream"] is False
    assert "stream_options" not in payload


@pytest.mark.asyncio
async def test_complete_collects_text_and_usage() -> None:
    body = {
        "choices": [{"message": {"content": "{\"ok\": true}"}, "finish_reason": "stop"}],
        "usage": {"prompt_tokens": 1, "completion_tokens": 1, "total_tokens": 2},
    }
    handler = _RecordingHandler(lambda _r: httpx.Response(200, json=body))
    client = _make_client(handler)

    result = await client.complete([{"role": "user", "content": "x"}], response_format={"type": "json_object"})

    assert result.content == "{\"ok\": true}"
    assert result.finish_reason == "stop"
    assert result.usage == Usage(1, 1, 2)
    assert handler.payload()["stream"] is False


@pytest.mark.asyncio
async def test_complete_rejects_invalid_json_body() -> None:
    client = _make_client(_RecordingHandler(lambda _r: httpx.Response(200, text="<html>oops</html>")))

    with pytest.raises(TransportError):
        await client.complete([{"role": "user", "content": "x"}])


class _FakeModels:
    def __init__(self, payload: list[SimpleNamespace]) -> None:
        self._payload = payload
        self.calls = 0

    async def list(self) -> SimpleNamespace:
        self.calls += 1
        return SimpleNamespace(data=self._payload)


@pytest.mark.asyncio
async def test_list_models_caches_results() -> None:
    fake_models = _FakeModels([SimpleNamespace(id="gpt-a"), SimpleNamespace(id="gpt-b")])
    client = ChatClient(
        ClientSettings(api_key="sk-test", base_url="http://local"),
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(lambda _r: httpx.Response(500))),
        openai_client=cast(AsyncOpenAI, SimpleNamespace(models=fake_models)),
    )

    first = await client.list_models()
    second = await client.list_models()
    check = await client.test_connection()

    assert first == ["gpt-a", "gpt-b"]
    assert second == first
    assert check.ok and check.models == ("gpt-a", "gpt-b")
    assert fake_models.calls == 2


@pytest.mark.asyncio
async def test_connection_check_reports_missing_key() -> None:
    client = ChatClient(ClientSettings(api_key=""), http_client=httpx.AsyncClient())

    check = await client.test_connection()

    assert not check.ok
    assert "API key" in (check.error or "")
    await client.aclose()


def test_base_url_normalization() -> None:
    assert ClientSettings(base_url="https://api.example.com/v1/").normalized_base_url == "https://api.example.com"
    assert ClientSettings(base_url="").normalized_base_url == "https://api.openai.com"


def test_approx_token_counting() -> None:
    client = ChatClient(ClientSettings(api_key="k", model="m"), token_registry=TokenCounterRegistry())

    assert client.count_tokens("abcdefgh") == 2
    assert client.count_tokens("abcdefghi") == 3
    assert client.count_tokens("") == 0
    assert ApproxByteCounter().count("abc") == 1

"""Async transport for OpenAI-compatible chat-completion endpoints.

Chat turns go through ``httpx`` directly so the raw server-sent event stream
can be decoded incrementally. Metadata calls (model listing, connection
checks) use the ``openai`` SDK and are the only requests ever retried.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import math
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, Iterable, List, Mapping, Sequence, cast

import httpx
import tiktoken
from openai import APIConnectionError, APIError, AsyncOpenAI, RateLimitError
from openai.types.chat import (
    ChatCompletionMessageParam,
    ChatCompletionToolChoiceOptionParam,
    ChatCompletionToolParam,
)
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from .ai_types import Finish, StreamEvent, TextDelta, TokenCounterProtocol, ToolCallDelta, Usage, UsageEvent
from .errors import ConfigError, TransportError
from .stream_decoder import StreamDecoder, decode_non_streaming

__all__ = [
    "ApproxByteCounter",
    "TiktokenCounter",
    "TokenCounterRegistry",
    "ClientSettings",
    "CompletionResult",
    "ConnectionCheck",
    "ChatClient",
    "DEFAULT_BASE_URL",
    "DEFAULT_MODEL",
]

LOGGER = logging.getLogger(__name__)
DEFAULT_BASE_URL = "https://api.openai.com"
DEFAULT_MODEL = "gpt-5-mini"
_CHAT_COMPLETIONS_PATH = "/v1/chat/completions"
_DEFAULT_BYTES_PER_TOKEN = 4


# -----------------------------------------------------------------------------
# Token counting
# -----------------------------------------------------------------------------


class ApproxByteCounter(TokenCounterProtocol):
    """Deterministic counter that estimates tokens as ``ceil(len / 4)``."""

    def __init__(self, *, model_name: str | None = None, chars_per_token: int = _DEFAULT_BYTES_PER_TOKEN) -> None:
        self.model_name = model_name
        self._chars_per_token = max(1, int(chars_per_token))

    def count(self, text: str) -> int:
        return self.estimate(text)

    def estimate(self, text: str) -> int:
        if not text:
            return 0
        return math.ceil(len(text) / self._chars_per_token)


class TiktokenCounter(TokenCounterProtocol):
    """Token counter backed by OpenAI's tiktoken package."""

    def __init__(self, model_name: str, *, encoding_name: str | None = None) -> None:
        if not model_name:
            raise ValueError("model_name is required for TiktokenCounter")
        self.model_name = model_name
        self._encoding = self._load_encoding(model_name, encoding_name)
        self._fallback = ApproxByteCounter(model_name=model_name)

    def count(self, text: str) -> int:
        if not text:
            return 0
        return len(self._encoding.encode(text))

    def estimate(self, text: str) -> int:
        return self._fallback.estimate(text)

    def _load_encoding(self, model_name: str, encoding_name: str | None) -> Any:
        if encoding_name:
            return tiktoken.get_encoding(encoding_name)
        try:
            return tiktoken.encoding_for_model(model_name)
        except KeyError:
            LOGGER.debug("Falling back to o200k_base encoding for model %s", model_name)
            return tiktoken.get_encoding("o200k_base")


class TokenCounterRegistry:
    """Registry maintaining tokenizer implementations per model."""

    _shared: TokenCounterRegistry | None = None

    def __init__(self, *, fallback: TokenCounterProtocol | None = None) -> None:
        self._fallback = fallback or ApproxByteCounter()
        self._counters: Dict[str, TokenCounterProtocol] = {}

    @classmethod
    def global_instance(cls) -> "TokenCounterRegistry":
        if cls._shared is None:
            cls._shared = TokenCounterRegistry()
        return cls._shared

    def register(self, model_name: str, counter: TokenCounterProtocol) -> None:
        key = self._normalize_key(model_name)
        if not key:
            raise ValueError("model_name is required for token counter registration")
        self._counters[key] = counter

    def has(self, model_name: str | None) -> bool:
        key = self._normalize_key(model_name)
        return bool(key and key in self._counters)

    def get(self, model_name: str | None = None) -> TokenCounterProtocol:
        key = self._normalize_key(model_name)
        if key and key in self._counters:
            return self._counters[key]
        return self._fallback

    def count(self, model_name: str | None, text: str) -> int:
        return self.get(model_name).count(text)

    def estimate(self, text: str) -> int:
        return self._fallback.estimate(text)

    @staticmethod
    def _normalize_key(model_name: str | None) -> str:
        return (model_name or "").strip().lower()


# -----------------------------------------------------------------------------
# Settings / results
# -----------------------------------------------------------------------------


@dataclass(slots=True)
class ClientSettings:
    """Subset of settings required to configure the chat client."""

    api_key: str = ""
    base_url: str = DEFAULT_BASE_URL
    model: str = DEFAULT_MODEL
    stream: bool = True
    temperature: float | None = None
    max_completion_tokens: int | None = 16_000
    organization: str | None = None
    request_timeout: float | None = 90.0
    max_retries: int = 3
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    default_headers: Mapping[str, str] | None = None
    use_tiktoken: bool = False
    debug_logging: bool = False

    @property
    def normalized_base_url(self) -> str:
        base = (self.base_url or DEFAULT_BASE_URL).strip().rstrip("/")
        if base.endswith("/v1"):
            base = base[: -len("/v1")]
        return base


@dataclass(slots=True, frozen=True)
class CompletionResult:
    """Outcome of a non-streaming completion."""

    content: str
    finish_reason: str
    usage: Usage | None = None
    tool_calls: tuple[ToolCallDelta, ...] = ()


@dataclass(slots=True, frozen=True)
class ConnectionCheck:
    ok: bool
    error: str | None = None
    models: tuple[str, ...] = field(default_factory=tuple)


# -----------------------------------------------------------------------------
# Client
# -----------------------------------------------------------------------------


class ChatClient:
    """Async client for streamed and non-streamed chat completions.

    Requests are never retried automatically; a failed turn surfaces a
    :class:`TransportError` and the caller decides whether to replay it.
    """

    def __init__(
        self,
        settings: ClientSettings,
        *,
        http_client: httpx.AsyncClient | None = None,
        openai_client: AsyncOpenAI | None = None,
        token_registry: TokenCounterRegistry | None = None,
    ) -> None:
        self._settings = settings
        self._owns_http = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=self._timeout())
        self._openai = openai_client
        self._owns_openai = openai_client is None
        self._models_cache: List[str] | None = None
        self._models_lock = asyncio.Lock()
        self._token_registry = token_registry or TokenCounterRegistry.global_instance()
        self._register_default_token_counter()

    @property
    def settings(self) -> ClientSettings:
        return self._settings

    @property
    def endpoint(self) -> str:
        return f"{self._settings.normalized_base_url}{_CHAT_COMPLETIONS_PATH}"

    def ensure_configured(self) -> None:
        """Raise :class:`ConfigError` when no API key is set. Performs no I/O."""

        if not (self._settings.api_key or "").strip():
            raise ConfigError()

    # ------------------------------------------------------------------
    # Chat completions
    # ------------------------------------------------------------------
    async def stream_chat(
        self,
        messages: Iterable[Mapping[str, Any] | ChatCompletionMessageParam],
        *,
        tools: Sequence[ChatCompletionToolParam] | None = None,
        tool_choice: ChatCompletionToolChoiceOptionParam | None = None,
        temperature: float | None = None,
        response_format: Mapping[str, Any] | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Yield stream events for one request.

        When ``settings.stream`` is False the request is sent without
        streaming and the single response body is replayed as events.

        Raises:
            ConfigError: No API key configured.
            TransportError: Non-2xx status, network failure or timeout.
        """

        self.ensure_configured()
        stream = self._settings.stream
        payload = self._build_chat_payload(
            messages=messages,
            tools=tools,
            tool_choice=tool_choice,
            temperature=temperature,
            response_format=response_format,
            stream=stream,
        )
        LOGGER.debug(
            "Starting %s chat completion via %s with %s message(s)",
            "streamed" if stream else "non-streamed",
            self._settings.model,
            len(payload["messages"]),
        )
        if self._settings.debug_logging:
            self._log_prompt_payload(payload)

        if not stream:
            body = await self._post_json(payload)
            for event in decode_non_streaming(body):
                yield event
            return

        try:
            async with self._http.stream("POST", self.endpoint, json=payload, headers=self._headers()) as response:
                if response.status_code >= 400:
                    raw = await response.aread()
                    raise _status_error(response.status_code, raw.decode("utf-8", errors="replace"))
                decoder = StreamDecoder()
                async with aclosing(decoder.decode(response.aiter_bytes())) as events:
                    async for event in events:
                        yield event
                if decoder.skipped_frames:
                    LOGGER.debug("Skipped %s malformed frame(s)", decoder.skipped_frames)
        except httpx.HTTPError as exc:
            raise _network_error(exc) from exc

    async def complete(
        self,
        messages: Iterable[Mapping[str, Any] | ChatCompletionMessageParam],
        *,
        tools: Sequence[ChatCompletionToolParam] | None = None,
        tool_choice: ChatCompletionToolChoiceOptionParam | None = None,
        temperature: float | None = None,
        response_format: Mapping[str, Any] | None = None,
    ) -> CompletionResult:
        """Send a single non-streaming request and return the parsed reply."""

        self.ensure_configured()
        payload = self._build_chat_payload(
            messages=messages,
            tools=tools,
            tool_choice=tool_choice,
            temperature=temperature,
            response_format=response_format,
            stream=False,
        )
        if self._settings.debug_logging:
            self._log_prompt_payload(payload)
        body = await self._post_json(payload)
        text: List[str] = []
        tool_calls: List[ToolCallDelta] = []
        usage: Usage | None = None
        finish_reason = "stop"
        for event in decode_non_streaming(body):
            if isinstance(event, TextDelta):
                text.append(event.text)
            elif isinstance(event, ToolCallDelta):
                tool_calls.append(event)
            elif isinstance(event, UsageEvent):
                usage = event.usage
            elif isinstance(event, Finish):
                finish_reason = event.reason
        return CompletionResult(
            content="".join(text),
            finish_reason=finish_reason,
            usage=usage,
            tool_calls=tuple(tool_calls),
        )

    # ------------------------------------------------------------------
    # Metadata
    # ------------------------------------------------------------------
    async def list_models(self, *, force_refresh: bool = False) -> List[str]:
        """Return a list of supported model identifiers."""

        if self._models_cache is not None and not force_refresh:
            return list(self._models_cache)

        async with self._models_lock:
            if self._models_cache is not None and not force_refresh:
                return list(self._models_cache)

            self.ensure_configured()
            client = self._get_openai_client()
            async for attempt in self._retrying():
                with attempt:
                    response = await client.models.list()
            models = [item.id for item in response.data if getattr(item, "id", None)]
            self._models_cache = models
            return list(models)

    async def test_connection(self) -> ConnectionCheck:
        """Probe credentials and reachability. Never raises."""

        try:
            models = await self.list_models(force_refresh=True)
        except ConfigError as exc:
            return ConnectionCheck(ok=False, error=exc.message)
        except (APIError, httpx.HTTPError) as exc:
            LOGGER.info("Connection test failed: %s", exc)
            return ConnectionCheck(ok=False, error=str(exc) or type(exc).__name__)
        return ConnectionCheck(ok=True, models=tuple(models))

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------
    def get_token_counter(self, model: str | None = None) -> TokenCounterProtocol:
        return self._token_registry.get(model or self._settings.model)

    def count_tokens(self, text: str, *, model: str | None = None, estimate_only: bool = False) -> int:
        if not text:
            return 0
        counter = self.get_token_counter(model)
        if estimate_only:
            return counter.estimate(text)
        return counter.count(text)

    def _register_default_token_counter(self) -> None:
        model_name = (self._settings.model or "").strip()
        if not self._settings.use_tiktoken or not model_name or self._token_registry.has(model_name):
            return
        self._token_registry.register(model_name, TiktokenCounter(model_name))

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _timeout(self) -> httpx.Timeout:
        return httpx.Timeout(self._settings.request_timeout)

    def _headers(self) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self._settings.api_key}",
        }
        if self._settings.organization:
            headers["OpenAI-Organization"] = self._settings.organization
        if self._settings.default_headers:
            headers.update(self._settings.default_headers)
        return headers

    def _build_chat_payload(
        self,
        *,
        messages: Iterable[Mapping[str, Any] | ChatCompletionMessageParam],
        tools: Sequence[ChatCompletionToolParam] | None,
        tool_choice: ChatCompletionToolChoiceOptionParam | None,
        temperature: float | None,
        response_format: Mapping[str, Any] | None,
        stream: bool,
    ) -> Dict[str, Any]:
        normalized = [cast(ChatCompletionMessageParam, dict(message)) for message in messages]
        if not normalized:
            raise ValueError("At least one message is required to start a chat")
        payload: Dict[str, Any] = {
            "model": self._settings.model,
            "messages": normalized,
            "stream": stream,
        }
        if self._settings.max_completion_tokens is not None:
            payload["max_completion_tokens"] = self._settings.max_completion_tokens
        if tools:
            payload["tools"] = list(tools)
        if tool_choice:
            payload["tool_choice"] = tool_choice
        if response_format is not None:
            payload["response_format"] = dict(response_format)
        effective_temperature = temperature if temperature is not None else self._settings.temperature
        if effective_temperature is not None:
            payload["temperature"] = effective_temperature
        if stream:
            payload["stream_options"] = {"include_usage": True}
        return payload

    async def _post_json(self, payload: Mapping[str, Any]) -> Dict[str, Any]:
        try:
            response = await self._http.post(self.endpoint, json=payload, headers=self._headers())
        except httpx.HTTPError as exc:
            raise _network_error(exc) from exc
        if response.status_code >= 400:
            raise _status_error(response.status_code, response.text)
        try:
            body = response.json()
        except ValueError as exc:
            raise TransportError(
                message=f"Invalid JSON response: {response.text[:500]}",
                status_code=response.status_code,
                body=response.text,
            ) from exc
        if not isinstance(body, dict):
            raise TransportError(message="Unexpected response body", status_code=response.status_code, body=response.text)
        return body

    def _get_openai_client(self) -> AsyncOpenAI:
        if self._openai is None:
            headers = dict(self._settings.default_headers) if self._settings.default_headers else None
            self._openai = AsyncOpenAI(
                api_key=self._settings.api_key,
                base_url=f"{self._settings.normalized_base_url}/v1",
                organization=self._settings.organization,
                timeout=self._settings.request_timeout,
                default_headers=headers,
                max_retries=0,
            )
        return self._openai

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(max(1, self._settings.max_retries)),
            wait=wait_exponential(
                multiplier=self._settings.retry_min_seconds,
                max=self._settings.retry_max_seconds,
            ),
            retry=retry_if_exception_type(
                (
                    APIConnectionError,
                    RateLimitError,
                    httpx.TimeoutException,
                )
            ),
        )

    def _log_prompt_payload(self, payload: Mapping[str, Any]) -> None:
        try:
            serialized = json.dumps(payload, ensure_ascii=False, indent=2)
        except (TypeError, ValueError):
            LOGGER.debug("Chat payload (unserializable): %s", payload)
        else:
            LOGGER.debug("Chat payload:\n%s", serialized)

    async def aclose(self) -> None:
        """Close owned HTTP clients to release network resources."""

        if self._owns_http:
            await self._http.aclose()
        if self._owns_openai and self._openai is not None:
            result = self._openai.close()
            if inspect.isawaitable(result):
                await result


def _status_error(status_code: int, body: str) -> TransportError:
    message = body.strip() or f"HTTP {status_code}"
    LOGGER.warning("Chat completion request failed with HTTP %s", status_code)
    return TransportError(message=message, status_code=status_code, body=body)


def _network_error(exc: httpx.HTTPError) -> TransportError:
    message = str(exc) or type(exc).__name__
    if isinstance(exc, httpx.TimeoutException):
        message = f"Request timed out: {message}"
    LOGGER.warning("Chat completion transport failure: %s", message)
    return TransportError(message=message, details={"exception": type(exc).__name__})

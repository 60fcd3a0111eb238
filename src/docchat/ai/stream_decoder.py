"""Incremental decoder for chat-completion server-sent event streams.

The endpoint streams newline-delimited ``data: <json>`` records terminated by
``data: [DONE]``. Network chunks can split a record (or a multi-byte UTF-8
sequence) anywhere, so the decoder buffers partial lines and only parses
complete ones. The emitted event sequence is therefore independent of how the
payload was chunked.
"""

from __future__ import annotations

import codecs
import inspect
import json
import logging
from typing import Any, AsyncIterable, AsyncIterator, Iterable, List, Mapping

from .ai_types import Finish, StreamEvent, TextDelta, ToolCallDelta, Usage, UsageEvent
from .errors import ProtocolError

__all__ = [
    "StreamDecoder",
    "DONE_SENTINEL",
    "events_from_frame",
    "decode_non_streaming",
    "tool_call_delta_from_payload",
]

LOGGER = logging.getLogger(__name__)
DONE_SENTINEL = "[DONE]"
_DATA_PREFIX = "data:"


class StreamDecoder:
    """Turns raw stream chunks into :data:`StreamEvent` values.

    The decoder is single-use: once a ``Finish`` event or the ``[DONE]``
    sentinel has been seen, ``finished`` is set and every later chunk is
    ignored.
    """

    def __init__(self, *, encoding: str = "utf-8") -> None:
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._buffer = ""
        self._finished = False
        self.skipped_frames = 0

    @property
    def finished(self) -> bool:
        return self._finished

    async def decode(self, source: AsyncIterable[bytes | str]) -> AsyncIterator[StreamEvent]:
        """Yield events lazily from ``source``.

        Reading stops as soon as the stream finishes and ``source`` is closed
        right away, so no further chunks are pulled from the network.
        """

        try:
            async for chunk in source:
                for event in self.feed(chunk):
                    yield event
                if self._finished:
                    break
            else:
                for event in self.flush():
                    yield event
        finally:
            await _close_source(source)

    def feed(self, chunk: bytes | str) -> List[StreamEvent]:
        """Consume one chunk and return the events of every completed line."""

        if self._finished:
            return []
        if isinstance(chunk, (bytes, bytearray)):
            text = self._decoder.decode(bytes(chunk))
        else:
            text = str(chunk)
        if not text:
            return []
        self._buffer += text
        *lines, self._buffer = self._buffer.split("\n")
        return self._process_lines(lines)

    def flush(self) -> List[StreamEvent]:
        """Process whatever is left once the source is exhausted."""

        if self._finished:
            return []
        tail = self._buffer + self._decoder.decode(b"", final=True)
        self._buffer = ""
        return self._process_lines([tail])

    def _process_lines(self, lines: Iterable[str]) -> List[StreamEvent]:
        events: List[StreamEvent] = []
        for raw_line in lines:
            line = raw_line.strip()
            if not line or line.startswith(":"):
                continue
            if not line.startswith(_DATA_PREFIX):
                continue
            payload = line[len(_DATA_PREFIX):].strip()
            if payload == DONE_SENTINEL:
                self._finished = True
                break
            try:
                frame_events = events_from_frame(_parse_frame(payload))
            except ProtocolError as exc:
                self.skipped_frames += 1
                LOGGER.debug("Skipping malformed stream frame: %s (%s)", exc.frame[:200], exc.message)
                continue
            for event in frame_events:
                events.append(event)
                if isinstance(event, Finish):
                    self._finished = True
            if self._finished:
                break
        return events


def _parse_frame(payload: str) -> Mapping[str, Any]:
    try:
        data = json.loads(payload)
    except json.JSONDecodeError as exc:
        raise ProtocolError(message=f"Invalid JSON: {exc.msg}", frame=payload) from exc
    if not isinstance(data, Mapping):
        raise ProtocolError(message="Frame is not a JSON object", frame=payload)
    return data


def events_from_frame(frame: Mapping[str, Any]) -> List[StreamEvent]:
    """Map one decoded frame to events: usage, text, tool-call deltas, finish."""

    events: List[StreamEvent] = []
    usage = Usage.from_payload(frame.get("usage"))
    if usage is not None:
        events.append(UsageEvent(usage))

    choices = frame.get("choices")
    choice = choices[0] if isinstance(choices, list) and choices else None
    if not isinstance(choice, Mapping):
        return events

    delta = choice.get("delta")
    if isinstance(delta, Mapping):
        content = delta.get("content")
        if isinstance(content, str) and content:
            events.append(TextDelta(content))
        tool_calls = delta.get("tool_calls")
        if isinstance(tool_calls, list):
            for position, raw in enumerate(tool_calls):
                tool_delta = tool_call_delta_from_payload(raw, default_index=position)
                if tool_delta is not None:
                    events.append(tool_delta)

    finish_reason = choice.get("finish_reason")
    if isinstance(finish_reason, str) and finish_reason:
        events.append(Finish(finish_reason))
    return events


def tool_call_delta_from_payload(raw: Any, *, default_index: int = 0) -> ToolCallDelta | None:
    if not isinstance(raw, Mapping):
        return None
    index = raw.get("index")
    if not isinstance(index, int) or isinstance(index, bool):
        index = default_index
    function = raw.get("function")
    if not isinstance(function, Mapping):
        function = {}
    name = function.get("name")
    arguments = function.get("arguments")
    call_id = raw.get("id")
    return ToolCallDelta(
        index=index,
        id=call_id if isinstance(call_id, str) and call_id else None,
        name=name if isinstance(name, str) and name else None,
        args_fragment=arguments if isinstance(arguments, str) else "",
    )


def decode_non_streaming(body: Mapping[str, Any]) -> List[StreamEvent]:
    """Express a single (non-streamed) completion body as stream events."""

    events: List[StreamEvent] = []
    usage = Usage.from_payload(body.get("usage"))
    if usage is not None:
        events.append(UsageEvent(usage))
    choices = body.get("choices")
    choice = choices[0] if isinstance(choices, list) and choices else None
    if not isinstance(choice, Mapping):
        raise ProtocolError(message="Completion response has no choices", frame=json.dumps(body)[:500])
    message = choice.get("message")
    if isinstance(message, Mapping):
        content = message.get("content")
        if isinstance(content, str) and content:
            events.append(TextDelta(content))
        tool_calls = message.get("tool_calls")
        if isinstance(tool_calls, list):
            for position, raw in enumerate(tool_calls):
                tool_delta = tool_call_delta_from_payload(raw, default_index=position)
                if tool_delta is not None:
                    events.append(tool_delta)
    finish_reason = choice.get("finish_reason")
    events.append(Finish(finish_reason if isinstance(finish_reason, str) and finish_reason else "stop"))
    return events


async def _close_source(source: Any) -> None:
    close = getattr(source, "aclose", None)
    if close is None:
        return
    try:
        result = close()
        if inspect.isawaitable(result):
            await result
    except Exception as exc:  # pragma: no cover
        LOGGER.debug("Closing stream source failed: %s", exc)

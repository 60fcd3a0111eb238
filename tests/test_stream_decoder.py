"""Tests for the incremental SSE stream decoder."""

from __future__ import annotations

import json
from typing import Any, AsyncIterator, Iterable, List

import pytest

from docchat.ai.ai_types import Finish, TextDelta, ToolCallDelta, Usage, UsageEvent
from docchat.ai.errors import ProtocolError
from docchat.ai.stream_decoder import StreamDecoder, decode_non_streaming, events_from_frame


def _frame(payload: dict[str, Any]) -> str:
    return f"data: {json.dumps(payload)}\n\n"


def _text_frame(text: str, finish: str | None = None) -> str:
    return _frame({"choices": [{"delta": {"content": text}, "finish_reason": finish}]})


SAMPLE_STREAM = "".join(
    [
        ": keep-alive\n\n",
        _text_frame("Héllo"),
        _text_frame(", wörld"),
        _frame(
            {
                "choices": [
                    {
                        "delta": {
                            "tool_calls": [
                                {"index": 0, "id": "call_a", "type": "function", "function": {"name": "fn", "arguments": "{\"x\""}}
                            ]
                        }
                    }
                ]
            }
        ),
        _frame({"choices": [{"delta": {"tool_calls": [{"index": 0, "function": {"arguments": ":1}"}}]}}]}),
        _frame({"choices": [{"delta": {}, "finish_reason": "tool_calls"}], "usage": {"prompt_tokens": 5, "completion_tokens": 3, "total_tokens": 8}}),
        "data: [DONE]\n\n",
    ]
).encode("utf-8")


class _ChunkSource:
    """Async byte source that records how many chunks were pulled and whether it was closed."""

    def __init__(self, chunks: Iterable[bytes]) -> None:
        self._chunks = list(chunks)
        self.pulled = 0
        self.closed = False

    def __aiter__(self) -> AsyncIterator[bytes]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[bytes]:
        for chunk in self._chunks:
            self.pulled += 1
            yield chunk

    async def aclose(self) -> None:
        self.closed = True


def _split(data: bytes, size: int) -> List[bytes]:
    return [data[i : i + size] for i in range(0, len(data), size)]


async def _collect(source: Any) -> list:
    decoder = StreamDecoder()
    return [event async for event in decoder.decode(source)]


@pytest.mark.asyncio
async def test_decode_emits_events_in_order() -> None:
    events = await _collect(_ChunkSource([SAMPLE_STREAM]))

    assert events == [
        TextDelta("Héllo"),
        TextDelta(", wörld"),
        ToolCallDelta(index=0, id="call_a", name="fn", args_fragment="{\"x\""),
        ToolCallDelta(index=0, id=None, name=None, args_fragment=":1}"),
        UsageEvent(Usage(prompt_tokens=5, completion_tokens=3, total_tokens=8)),
        Finish("tool_calls"),
    ]


@pytest.mark.asyncio
@pytest.mark.parametrize("chunk_size", [1, 2, 3, 7, 13, 64])
async def test_chunk_boundaries_do_not_change_events(chunk_size: int) -> None:
    whole = await _collect(_ChunkSource([SAMPLE_STREAM]))
    split = await _collect(_ChunkSource(_split(SAMPLE_STREAM, chunk_size)))

    assert split == whole


@pytest.mark.asyncio
async def test_malformed_frames_are_skipped() -> None:
    data = ("data: {not json\n\n" + "data: [1, 2]\n\n" + _text_frame("ok", finish="stop")).encode()
    decoder = StreamDecoder()

    events = [event async for event in decoder.decode(_ChunkSource([data]))]

    assert events == [TextDelta("ok"), Finish("stop")]
    assert decoder.skipped_frames == 2


@pytest.mark.asyncio
async def test_finish_stops_reading_and_closes_source() -> None:
    chunks = [
        _text_frame("a").encode(),
        _text_frame("b", finish="stop").encode(),
        _text_frame("never").encode(),
        b"data: [DONE]\n\n",
    ]
    source = _ChunkSource(chunks)
    decoder = StreamDecoder()

    events = [event async for event in decoder.decode(source)]

    assert events == [TextDelta("a"), TextDelta("b"), Finish("stop")]
    assert decoder.finished
    assert source.pulled == 2
    assert source.closed


@pytest.mark.asyncio
async def test_done_sentinel_ends_stream_without_finish() -> None:
    source = _ChunkSource([_text_frame("x").encode(), b"data: [DONE]\n\n", _text_frame("y").encode()])

    events = await _collect(source)

    assert events == [TextDelta("x")]
    assert source.pulled == 2


@pytest.mark.asyncio
async def test_trailing_line_without_newline_is_flushed() -> None:
    source = _ChunkSource([b"data: " + json.dumps({"choices": [{"delta": {"content": "tail"}}]}).encode()])

    events = await _collect(source)

    assert events == [TextDelta("tail")]


def test_feed_buffers_partial_lines() -> None:
    decoder = StreamDecoder()
    line = _text_frame("split")

    assert decoder.feed(line[:10]) == []
    assert decoder.feed(line[10:]) == [TextDelta("split")]


def test_events_from_frame_without_choices_only_reports_usage() -> None:
    events = events_from_frame({"choices": [], "usage": {"prompt_tokens": 1, "completion_tokens": 2}})

    assert events == [UsageEvent(Usage(prompt_tokens=1, completion_tokens=2, total_tokens=3))]


def test_decode_non_streaming_replays_body() -> None:
    body = {
        "choices": [
            {
                "message": {
                    "content": "hi",
                    "tool_calls": [{"id": "c1", "type": "function", "function": {"name": "fn", "arguments": "{}"}}],
                },
                "finish_reason": "tool_calls",
            }
        ],
        "usage": {"prompt_tokens": 2, "completion_tokens": 1, "total_tokens": 3},
    }

    events = decode_non_streaming(body)

    assert events == [
        UsageEvent(Usage(2, 1, 3)),
        TextDelta("hi"),
        ToolCallDelta(index=0, id="c1", name="fn", args_fragment="{}"),
        Finish("tool_calls"),
    ]


def test_decode_non_streaming_without_choices_raises() -> None:
    with pytest.raises(ProtocolError):
        decode_non_streaming({"choices": []})

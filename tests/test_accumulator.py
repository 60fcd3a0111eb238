"""Tests for tool-call delta accumulation."""

from __future__ import annotations

import pytest

from docchat.ai.ai_types import ToolCallDelta
from docchat.ai.orchestration.accumulator import ToolCallAccumulator
from docchat.ai.orchestration.types import AccumulatedToolCall


def test_fragments_merge_into_single_call() -> None:
    accumulator = ToolCallAccumulator()

    accumulator.accept(ToolCallDelta(index=0, id="abc", name="fn", args_fragment='{"x"'))
    accumulator.accept(ToolCallDelta(index=0, args_fragment=":1}"))

    assert accumulator.list() == [AccumulatedToolCall(index=0, id="abc", name="fn", args_text='{"x":1}')]
    assert accumulator.list()[0].to_request().parse_arguments() == {"x": 1}


def test_id_and_name_are_set_once() -> None:
    accumulator = ToolCallAccumulator()

    accumulator.accept(ToolCallDelta(index=0, id="first", name="alpha"))
    accumulator.accept(ToolCallDelta(index=0, id="second", name="beta", args_fragment="{}"))

    (call,) = accumulator.list()
    assert call.id == "first"
    assert call.name == "alpha"
    assert call.args_text == "{}"


def test_late_id_fills_an_empty_slot() -> None:
    accumulator = ToolCallAccumulator()

    accumulator.accept(ToolCallDelta(index=0, args_fragment="{"))
    accumulator.accept(ToolCallDelta(index=0, id="late", name="fn", args_fragment="}"))

    (call,) = accumulator.list()
    assert (call.id, call.name, call.args_text) == ("late", "fn", "{}")


def test_list_is_sorted_by_index_regardless_of_arrival() -> None:
    accumulator = ToolCallAccumulator()

    accumulator.accept(ToolCallDelta(index=2, id="c", name="third"))
    accumulator.accept(ToolCallDelta(index=0, id="a", name="first"))
    accumulator.accept(ToolCallDelta(index=1, id="b", name="second"))
    accumulator.accept(ToolCallDelta(index=2, args_fragment="{}"))

    assert [call.index for call in accumulator.list()] == [0, 1, 2]
    assert [call.name for call in accumulator.list()] == ["first", "second", "third"]
    assert len(accumulator) == 3


def test_list_returns_copies() -> None:
    accumulator = ToolCallAccumulator()
    accumulator.accept(ToolCallDelta(index=0, id="a", name="fn"))

    snapshot = accumulator.list()
    snapshot[0].args_text = "mutated"

    assert accumulator.list()[0].args_text == ""


def test_accepts_wire_dicts() -> None:
    accumulator = ToolCallAccumulator()

    accumulator.accept({"index": 0, "id": "abc", "function": {"name": "fn", "arguments": '{"x"'}})
    accumulator.accept({"index": 0, "function": {"arguments": ":1}"}})

    assert accumulator.list() == [AccumulatedToolCall(index=0, id="abc", name="fn", args_text='{"x":1}')]


def test_rejects_unknown_delta_types() -> None:
    accumulator = ToolCallAccumulator()

    with pytest.raises(TypeError):
        accumulator.accept("nope")  # type: ignore[arg-type]


def test_missing_id_gets_positional_fallback() -> None:
    call = AccumulatedToolCall(index=3, name="fn")

    assert call.to_request().id == "call_3"


def test_clear_empties_accumulator() -> None:
    accumulator = ToolCallAccumulator()
    accumulator.accept(ToolCallDelta(index=0, id="a"))

    accumulator.clear()

    assert not accumulator
    assert accumulator.list() == []

"""Reassembles streamed tool-call fragments into complete calls."""

from __future__ import annotations

from typing import Any, Dict, List, Mapping

from ..ai_types import ToolCallDelta
from ..stream_decoder import tool_call_delta_from_payload
from .types import AccumulatedToolCall

__all__ = ["ToolCallAccumulator"]


class ToolCallAccumulator:
    """Merge tool-call deltas keyed by their ``index``.

    ``id`` and ``name`` are set once: the first non-empty value wins and later
    values are ignored. Argument fragments are appended in arrival order.
    ``list()`` always returns calls sorted by index, regardless of the order
    in which the indices first appeared.
    """

    def __init__(self) -> None:
        self._calls: Dict[int, AccumulatedToolCall] = {}

    def accept(self, delta: ToolCallDelta | Mapping[str, Any]) -> AccumulatedToolCall:
        if not isinstance(delta, ToolCallDelta):
            parsed = tool_call_delta_from_payload(delta)
            if parsed is None:
                raise TypeError("Tool call delta must be a ToolCallDelta or mapping")
            delta = parsed
        call = self._calls.get(delta.index)
        if call is None:
            call = AccumulatedToolCall(index=delta.index)
            self._calls[delta.index] = call
        if delta.id and not call.id:
            call.id = delta.id
        if delta.name and not call.name:
            call.name = delta.name
        if delta.args_fragment:
            call.args_text += delta.args_fragment
        return call

    def list(self) -> List[AccumulatedToolCall]:
        return [
            AccumulatedToolCall(index=call.index, id=call.id, name=call.name, args_text=call.args_text)
            for _, call in sorted(self._calls.items())
        ]

    def clear(self) -> None:
        self._calls.clear()

    def __len__(self) -> int:
        return len(self._calls)

    def __bool__(self) -> bool:
        return bool(self._calls)

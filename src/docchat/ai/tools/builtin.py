"""Tools that ship with the engine."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Mapping

from .registry import ToolRegistry, ToolSpec

__all__ = ["CURRENT_TIME_SPEC", "get_current_time", "register_builtin_tools"]

CURRENT_TIME_SPEC = ToolSpec(
    name="get_current_time",
    description="Returns the current time as an ISO 8601 string (UTC).",
    parameters={"type": "object", "properties": {}, "additionalProperties": False},
)


def get_current_time(_arguments: Mapping[str, Any]) -> dict[str, str]:
    return {"now": datetime.now(timezone.utc).isoformat()}


def register_builtin_tools(registry: ToolRegistry) -> ToolRegistry:
    registry.register_function(CURRENT_TIME_SPEC, get_current_time, allow_override=True)
    return registry

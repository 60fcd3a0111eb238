"""Tool registry and built-in tools."""

from .builtin import get_current_time, register_builtin_tools
from .registry import DuplicateToolError, SimpleTool, Tool, ToolRegistry, ToolSpec

__all__ = [
    "DuplicateToolError",
    "SimpleTool",
    "Tool",
    "ToolRegistry",
    "ToolSpec",
    "get_current_time",
    "register_builtin_tools",
]

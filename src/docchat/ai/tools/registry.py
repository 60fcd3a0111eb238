"""Registry of tools the model may call.

A tool is a :class:`ToolSpec` (name, description, JSON Schema for its
parameters) plus a callable that receives the parsed argument mapping. The
callable may be sync or async.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Coroutine, Dict, List, Mapping, Protocol, runtime_checkable

from openai.types.chat import ChatCompletionToolParam

__all__ = [
    "ToolSpec",
    "ToolHandler",
    "AsyncToolHandler",
    "Tool",
    "SimpleTool",
    "ToolRegistry",
    "DuplicateToolError",
]

LOGGER = logging.getLogger(__name__)

# Synchronous tool handler
ToolHandler = Callable[[Mapping[str, Any]], Any]
# Asynchronous tool handler
AsyncToolHandler = Callable[[Mapping[str, Any]], Coroutine[Any, Any, Any]]


class DuplicateToolError(Exception):
    """Raised when attempting to register a tool with a name that already exists."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Tool '{name}' is already registered")


# -----------------------------------------------------------------------------
# Tool Specification
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class ToolSpec:
    """Specification for a tool's interface.

    Attributes:
        name: Unique identifier for the tool.
        description: What the tool does, shown to the model.
        parameters: JSON Schema for the tool's arguments.
    """

    name: str
    description: str
    parameters: Mapping[str, Any] = field(default_factory=dict)

    def schema(self) -> dict[str, Any]:
        if self.parameters:
            return dict(self.parameters)
        return {"type": "object", "properties": {}}

    def to_openai_tool(self) -> ChatCompletionToolParam:
        """Convert to OpenAI tool definition format."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.schema(),
            },
        }  # type: ignore[return-value]


@runtime_checkable
class Tool(Protocol):
    """Protocol for tool implementations."""

    @property
    def spec(self) -> ToolSpec:
        ...

    async def run(self, arguments: Mapping[str, Any]) -> Any:
        ...


@dataclass
class SimpleTool:
    """Tool wrapping a plain function.

    Example:
        def greet(args):
            return {"greeting": f"Hello, {args.get('name', 'World')}!"}

        tool = SimpleTool(ToolSpec(name="greet", description="Greet someone"), greet)
    """

    spec: ToolSpec
    handler: ToolHandler | AsyncToolHandler
    _is_async: bool = field(init=False, default=False)

    def __post_init__(self) -> None:
        self._is_async = inspect.iscoroutinefunction(self.handler)

    @property
    def name(self) -> str:
        return self.spec.name

    async def run(self, arguments: Mapping[str, Any]) -> Any:
        if self._is_async:
            return await self.handler(arguments)  # type: ignore[misc]
        result = self.handler(arguments)
        if asyncio.iscoroutine(result):
            return await result
        return result


# -----------------------------------------------------------------------------
# Tool Registry
# -----------------------------------------------------------------------------


class ToolRegistry:
    """Name-indexed collection of tools.

    Example:
        registry = ToolRegistry()
        registry.register_function(
            ToolSpec(name="greet", description="Greet"),
            lambda args: f"Hello, {args['name']}!",
        )
        tools = registry.to_openai_tools()
    """

    def __init__(self) -> None:
        self._tools: Dict[str, Tool] = {}

    def register(self, tool: Tool, *, allow_override: bool = False) -> Tool:
        """Register a tool implementation.

        Raises:
            DuplicateToolError: If the name is taken and ``allow_override`` is False.
        """
        name = tool.spec.name
        if not name:
            raise ValueError("Tool name is required")
        if name in self._tools and not allow_override:
            raise DuplicateToolError(name)
        self._tools[name] = tool
        LOGGER.debug("Registered tool: %s", name)
        return tool

    def register_function(
        self,
        spec: ToolSpec,
        handler: ToolHandler | AsyncToolHandler,
        *,
        allow_override: bool = False,
    ) -> Tool:
        """Register a function as a tool."""
        return self.register(SimpleTool(spec=spec, handler=handler), allow_override=allow_override)

    def unregister(self, name: str) -> bool:
        if name in self._tools:
            del self._tools[name]
            LOGGER.debug("Unregistered tool: %s", name)
            return True
        return False

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def names(self) -> List[str]:
        return list(self._tools)

    def to_openai_tools(self) -> List[ChatCompletionToolParam]:
        return [self._tools[name].spec.to_openai_tool() for name in self.names()]

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

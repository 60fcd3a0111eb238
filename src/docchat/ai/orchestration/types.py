"""Core type definitions for turn orchestration.

Messages are immutable once they enter the conversation history. The only
exception is the in-flight assistant message, which the conversation state
replaces in place while text deltas arrive.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal, Mapping, Sequence

from openai.types.chat import ChatCompletionMessageParam

from ..ai_types import Usage
from ..errors import ToolArgumentError

__all__ = [
    "MessageRole",
    "Message",
    "ToolCallRequest",
    "AccumulatedToolCall",
    "ToolExecution",
    "ToolCallStatus",
    "TurnState",
    "StopReason",
    "TurnResult",
]


# -----------------------------------------------------------------------------
# Tool calls
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class ToolCallRequest:
    """A complete tool invocation requested by the model.

    Attributes:
        id: Identifier echoed back in the matching tool message.
        name: Registered tool name.
        arguments_json: Raw argument text exactly as streamed.
    """

    id: str
    name: str
    arguments_json: str = ""

    def parse_arguments(self) -> dict[str, Any]:
        """Return the arguments as a dict, raising :class:`ToolArgumentError` when malformed."""

        text = (self.arguments_json or "").strip()
        if not text:
            return {}
        try:
            parsed = json.loads(text)
        except json.JSONDecodeError as exc:
            raise ToolArgumentError(
                message=f"Arguments for '{self.name}' are not valid JSON: {exc.msg}",
                details={"tool": self.name, "arguments": self.arguments_json[:500]},
            ) from exc
        if not isinstance(parsed, dict):
            raise ToolArgumentError(
                message=f"Arguments for '{self.name}' must be a JSON object",
                details={"tool": self.name, "arguments": self.arguments_json[:500]},
            )
        return parsed

    def to_chat_param(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments_json},
        }

    @classmethod
    def from_chat_param(cls, payload: Mapping[str, Any]) -> ToolCallRequest:
        function = payload.get("function") or {}
        return cls(
            id=str(payload.get("id") or ""),
            name=str(function.get("name") or ""),
            arguments_json=str(function.get("arguments") or ""),
        )


@dataclass(slots=True)
class AccumulatedToolCall:
    """Tool call being reconstructed from streamed deltas.

    Lives only for one streaming phase; ``to_request`` converts it into the
    permanent :class:`ToolCallRequest` stored in history.
    """

    index: int
    id: str = ""
    name: str = ""
    args_text: str = ""

    def to_request(self) -> ToolCallRequest:
        call_id = self.id or f"call_{self.index}"
        return ToolCallRequest(id=call_id, name=self.name, arguments_json=self.args_text)


class ToolCallStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    DONE = "done"
    ERROR = "error"


@dataclass(slots=True, frozen=True)
class ToolExecution:
    """Outcome of running a single tool call.

    Attributes:
        call: The request that was executed.
        success: Whether the tool completed without error.
        result: JSON-serializable result, or an error object on failure.
        error: The failure, when ``success`` is False.
        duration_ms: Wall time spent in the tool.
    """

    call: ToolCallRequest
    success: bool
    result: Any
    error: Exception | None = None
    duration_ms: float = 0.0

    @property
    def status(self) -> ToolCallStatus:
        return ToolCallStatus.DONE if self.success else ToolCallStatus.ERROR

    def content(self) -> str:
        """Render the result as tool message content."""
        if isinstance(self.result, str):
            return self.result
        try:
            return json.dumps(self.result, ensure_ascii=False, default=str)
        except (TypeError, ValueError):
            return str(self.result)


# -----------------------------------------------------------------------------
# Message Type
# -----------------------------------------------------------------------------

MessageRole = Literal["system", "user", "assistant", "tool"]


@dataclass(slots=True, frozen=True)
class Message:
    """Immutable chat message.

    Attributes:
        role: The role of the message sender.
        content: Text content. ``None`` is allowed for assistant messages that
            only carry tool calls.
        tool_calls: Tool calls declared by an assistant message.
        tool_call_id: ID linking a tool result to its call.
        name: Tool name for tool messages.
        metadata: Extra data kept locally, never sent to the model.
    """

    role: MessageRole
    content: str | None = ""
    tool_calls: tuple[ToolCallRequest, ...] = ()
    tool_call_id: str | None = None
    name: str | None = None
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def to_chat_param(self) -> ChatCompletionMessageParam:
        """Convert to OpenAI's ChatCompletionMessageParam format."""
        payload: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.tool_calls:
            payload["tool_calls"] = [call.to_chat_param() for call in self.tool_calls]
        if self.role == "tool":
            payload["tool_call_id"] = self.tool_call_id
            if self.name is not None:
                payload["name"] = self.name
        return payload  # type: ignore[return-value]

    @classmethod
    def from_chat_param(cls, param: Mapping[str, Any]) -> Message:
        """Create a Message from OpenAI's ChatCompletionMessageParam format."""
        raw_calls = param.get("tool_calls") or ()
        content = param.get("content")
        return cls(
            role=param.get("role", "user"),  # type: ignore[arg-type]
            content=None if content is None else str(content),
            tool_calls=tuple(ToolCallRequest.from_chat_param(call) for call in raw_calls),
            tool_call_id=param.get("tool_call_id"),
            name=param.get("name"),
        )

    def to_dict(self) -> dict[str, Any]:
        payload = dict(self.to_chat_param())
        if self.metadata:
            payload["metadata"] = dict(self.metadata)
        return payload

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> Message:
        message = cls.from_chat_param(payload)
        metadata = payload.get("metadata")
        if isinstance(metadata, Mapping):
            return cls(
                role=message.role,
                content=message.content,
                tool_calls=message.tool_calls,
                tool_call_id=message.tool_call_id,
                name=message.name,
                metadata=dict(metadata),
            )
        return message

    @classmethod
    def system(cls, content: str, **metadata: Any) -> Message:
        """Create a system message."""
        return cls(role="system", content=content, metadata=metadata)

    @classmethod
    def user(cls, content: str, **metadata: Any) -> Message:
        """Create a user message."""
        return cls(role="user", content=content, metadata=metadata)

    @classmethod
    def assistant(
        cls,
        content: str | None,
        tool_calls: Sequence[ToolCallRequest] | None = None,
        **metadata: Any,
    ) -> Message:
        """Create an assistant message."""
        return cls(
            role="assistant",
            content=content,
            tool_calls=tuple(tool_calls) if tool_calls else (),
            metadata=metadata,
        )

    @classmethod
    def tool(
        cls,
        content: str,
        tool_call_id: str,
        name: str | None = None,
        **metadata: Any,
    ) -> Message:
        """Create a tool result message."""
        return cls(
            role="tool",
            content=content,
            tool_call_id=tool_call_id,
            name=name,
            metadata=metadata,
        )


# -----------------------------------------------------------------------------
# Turn lifecycle
# -----------------------------------------------------------------------------


class TurnState(str, Enum):
    IDLE = "idle"
    STREAMING = "streaming"
    TOOL_EXECUTING = "tool_executing"
    DONE = "done"
    ABORTED = "aborted"
    ERRORED = "errored"

    @property
    def is_terminal(self) -> bool:
        return self in (TurnState.DONE, TurnState.ABORTED, TurnState.ERRORED)


class StopReason(str, Enum):
    COMPLETED = "completed"
    TOOL_CALLS = "tool_calls"
    ABORTED = "aborted"
    ERROR = "error"


@dataclass(slots=True, frozen=True)
class TurnResult:
    """Summary of a finished turn.

    Attributes:
        final_text: Text of the last assistant message.
        tool_calls: Every tool execution performed during the turn.
        usage: Usage summed over all requests of the turn.
        stop_reason: Why the turn ended.
        error: The terminal error when ``stop_reason`` is ``error``.
        depth: Number of tool rounds executed.
    """

    final_text: str
    tool_calls: tuple[ToolExecution, ...] = ()
    usage: Usage = field(default_factory=Usage)
    stop_reason: StopReason = StopReason.COMPLETED
    error: Exception | None = None
    depth: int = 0

    @property
    def ok(self) -> bool:
        return self.stop_reason is StopReason.COMPLETED

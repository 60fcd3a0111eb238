"""Error taxonomy for the chat engine.

Every failure the engine can surface is one of the classes below. They share
the same JSON shape (``to_dict``) so that tool failures can be fed back to the
model and transport failures can be rendered by the host verbatim.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar

__all__ = [
    "ErrorCode",
    "ChatEngineError",
    "ConfigError",
    "TransportError",
    "ProtocolError",
    "ToolArgumentError",
    "ToolExecutionError",
    "ToolNotFoundError",
    "ToolLoopExceeded",
    "BudgetExceeded",
    "CancellationError",
    "STOPPED_BY_USER_MARKER",
    "BUDGET_EXHAUSTED_MESSAGE",
]

STOPPED_BY_USER_MARKER = "Request stopped by user"
BUDGET_EXHAUSTED_MESSAGE = (
    "Autonomous run paused: the token budget is used up. Resume with additional budget, "
    "or send 'continue' to keep going."
)


# -----------------------------------------------------------------------------
# Error Code Constants
# -----------------------------------------------------------------------------


class ErrorCode:
    """Machine-readable identifiers carried by every engine error."""

    CONFIG = "config_error"
    TRANSPORT = "transport_error"
    PROTOCOL = "protocol_error"
    INVALID_TOOL_ARGUMENTS = "invalid_tool_arguments"
    TOOL_EXECUTION_FAILED = "tool_execution_failed"
    TOOL_NOT_FOUND = "tool_not_found"
    TOOL_LOOP_EXCEEDED = "tool_loop_exceeded"
    BUDGET_EXCEEDED = "budget_exceeded"
    CANCELLED = "cancelled"


# -----------------------------------------------------------------------------
# Base Error Class
# -----------------------------------------------------------------------------


@dataclass(eq=False)
class ChatEngineError(Exception):
    """Base exception for all engine errors.

    Attributes:
        error_code: Machine-readable error identifier.
        message: Human-readable description, surfaced to the host unchanged.
        details: Additional structured information.
        suggestion: Actionable guidance for recovery.
    """

    error_code: str
    message: str
    details: dict[str, Any] = field(default_factory=dict)
    suggestion: str = ""

    # Terminal errors end the current turn.
    terminal: ClassVar[bool] = True

    def __post_init__(self) -> None:
        Exception.__init__(self, self.message)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a dictionary for JSON tool responses."""
        result: dict[str, Any] = {
            "error": self.error_code,
            "message": self.message,
        }
        if self.details:
            result["details"] = dict(self.details)
        if self.suggestion:
            result["suggestion"] = self.suggestion
        return result

    def __str__(self) -> str:
        return self.message


# -----------------------------------------------------------------------------
# Configuration / Transport
# -----------------------------------------------------------------------------


@dataclass(eq=False)
class ConfigError(ChatEngineError):
    """Raised before any network call when required configuration is missing."""

    error_code: str = field(default=ErrorCode.CONFIG)
    message: str = field(default="Missing API key. Add one in settings before sending a message.")
    details: dict[str, Any] = field(default_factory=dict)
    suggestion: str = field(default="Set an API key in settings or via DOCCHAT_API_KEY")


@dataclass(eq=False)
class TransportError(ChatEngineError):
    """Non-2xx response, network failure or deadline expiry.

    ``message`` holds the upstream error text verbatim. The turn can be
    replayed explicitly with ``retry()``; it is never retried automatically.
    """

    error_code: str = field(default=ErrorCode.TRANSPORT)
    message: str = field(default="Request failed")
    details: dict[str, Any] = field(default_factory=dict)
    suggestion: str = field(default="Use retry to send the request again")
    status_code: int | None = None
    body: str = ""

    def to_dict(self) -> dict[str, Any]:
        result = ChatEngineError.to_dict(self)
        if self.status_code is not None:
            result["status_code"] = self.status_code
        return result


@dataclass(eq=False)
class ProtocolError(ChatEngineError):
    """Malformed stream frame. Never terminal: the frame is skipped."""

    error_code: str = field(default=ErrorCode.PROTOCOL)
    message: str = field(default="Malformed stream frame")
    details: dict[str, Any] = field(default_factory=dict)
    suggestion: str = ""
    frame: str = ""

    terminal: ClassVar[bool] = False


# -----------------------------------------------------------------------------
# Tool Errors
# -----------------------------------------------------------------------------


@dataclass(eq=False)
class ToolArgumentError(ChatEngineError):
    """Tool arguments are not valid JSON or do not match the tool's schema."""

    error_code: str = field(default=ErrorCode.INVALID_TOOL_ARGUMENTS)
    message: str = field(default="Tool arguments are invalid")
    details: dict[str, Any] = field(default_factory=dict)
    suggestion: str = field(default="Send arguments as a JSON object matching the tool schema")

    terminal: ClassVar[bool] = False


@dataclass(eq=False)
class ToolExecutionError(ChatEngineError):
    """A registered tool raised while running."""

    error_code: str = field(default=ErrorCode.TOOL_EXECUTION_FAILED)
    message: str = field(default="Tool execution failed")
    details: dict[str, Any] = field(default_factory=dict)
    suggestion: str = ""

    terminal: ClassVar[bool] = False


@dataclass(eq=False)
class ToolNotFoundError(ChatEngineError):
    """The model requested a tool that is not registered."""

    error_code: str = field(default=ErrorCode.TOOL_NOT_FOUND)
    message: str = field(default="Unknown tool")
    details: dict[str, Any] = field(default_factory=dict)
    suggestion: str = field(default="Call one of the tools listed in the request")

    terminal: ClassVar[bool] = False


@dataclass(eq=False)
class ToolLoopExceeded(ChatEngineError):
    """The model kept requesting tools past the configured depth cap."""

    error_code: str = field(default=ErrorCode.TOOL_LOOP_EXCEEDED)
    message: str = field(default="tool loop exceeded")
    details: dict[str, Any] = field(default_factory=dict)
    suggestion: str = field(default="Raise max_tool_depth or rephrase the request")


# -----------------------------------------------------------------------------
# Budget / Cancellation
# -----------------------------------------------------------------------------


@dataclass(eq=False)
class BudgetExceeded(ChatEngineError):
    """The autonomous continuation budget is exhausted."""

    error_code: str = field(default=ErrorCode.BUDGET_EXCEEDED)
    message: str = field(default=BUDGET_EXHAUSTED_MESSAGE)
    details: dict[str, Any] = field(default_factory=dict)
    suggestion: str = field(default="Extend the budget to resume")


@dataclass(eq=False)
class CancellationError(ChatEngineError):
    """The user stopped the turn. Terminal, but not reported as a failure."""

    error_code: str = field(default=ErrorCode.CANCELLED)
    message: str = field(default=STOPPED_BY_USER_MARKER)
    details: dict[str, Any] = field(default_factory=dict)
    suggestion: str = ""

"""Shared AI-facing type definitions used across the engine."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Protocol, Union

__all__ = [
    "TokenCounterProtocol",
    "Usage",
    "TextDelta",
    "ToolCallDelta",
    "UsageEvent",
    "Finish",
    "StreamError",
    "StreamEvent",
]


class TokenCounterProtocol(Protocol):
    """Protocol describing tokenizer implementations."""

    model_name: str | None

    def count(self, text: str) -> int:
        """Return the precise token count for *text*."""
        ...

    def estimate(self, text: str) -> int:
        """Return a deterministic fallback estimate when precise counts fail."""
        ...


@dataclass(slots=True, frozen=True)
class Usage:
    """Token usage reported by the endpoint for a single request."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    def __add__(self, other: "Usage") -> "Usage":
        if not isinstance(other, Usage):
            return NotImplemented
        return Usage(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
        )

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any] | None) -> "Usage | None":
        if not isinstance(payload, Mapping):
            return None
        prompt = _as_int(payload.get("prompt_tokens"))
        completion = _as_int(payload.get("completion_tokens"))
        total = _as_int(payload.get("total_tokens")) or prompt + completion
        return cls(prompt_tokens=prompt, completion_tokens=completion, total_tokens=total)

    def to_dict(self) -> dict[str, int]:
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
        }


def _as_int(value: Any) -> int:
    try:
        return max(0, int(value))
    except (TypeError, ValueError):
        return 0


# -----------------------------------------------------------------------------
# Stream events
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class TextDelta:
    text: str


@dataclass(slots=True, frozen=True)
class ToolCallDelta:
    """One fragment of a streamed tool call, keyed by ``index``."""

    index: int
    id: str | None = None
    name: str | None = None
    args_fragment: str = ""


@dataclass(slots=True, frozen=True)
class UsageEvent:
    usage: Usage


@dataclass(slots=True, frozen=True)
class Finish:
    reason: str


@dataclass(slots=True, frozen=True)
class StreamError:
    cause: BaseException


StreamEvent = Union[TextDelta, ToolCallDelta, UsageEvent, Finish, StreamError]

"""Ordered conversation history and request assembly."""

from __future__ import annotations

import logging
from typing import Any, Iterable, List, Mapping, Sequence

from openai.types.chat import ChatCompletionMessageParam

from .types import Message, ToolCallRequest

__all__ = ["ConversationState"]

LOGGER = logging.getLogger(__name__)


class ConversationState:
    """Append-only message history with a single in-flight assistant slot.

    ``append`` is the only way to add a complete message. While a reply is
    streaming, ``begin_assistant``/``append_text`` replace the in-flight
    message in place (same position) until ``finalize_assistant`` seals it.
    """

    def __init__(self, messages: Iterable[Message] | None = None) -> None:
        self._messages: List[Message] = []
        self._inflight: int | None = None
        for message in messages or ():
            self.append(message)

    # ------------------------------------------------------------------
    # Read access
    # ------------------------------------------------------------------
    @property
    def messages(self) -> tuple[Message, ...]:
        return tuple(self._messages)

    @property
    def inflight(self) -> Message | None:
        if self._inflight is None:
            return None
        return self._messages[self._inflight]

    def last_user_message(self) -> Message | None:
        for message in reversed(self._messages):
            if message.role == "user":
                return message
        return None

    def __len__(self) -> int:
        return len(self._messages)

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------
    def append(self, message: Message) -> None:
        if self._inflight is not None:
            raise RuntimeError("Cannot append while an assistant message is streaming")
        if message.role == "tool":
            self._validate_tool_message(message)
        self._messages.append(message)

    def begin_assistant(self) -> Message:
        if self._inflight is not None:
            raise RuntimeError("An assistant message is already streaming")
        placeholder = Message.assistant("")
        self._messages.append(placeholder)
        self._inflight = len(self._messages) - 1
        return placeholder

    def append_text(self, delta: str) -> Message:
        index = self._require_inflight()
        current = self._messages[index]
        updated = Message.assistant((current.content or "") + delta)
        self._messages[index] = updated
        return updated

    def finalize_assistant(
        self,
        *,
        tool_calls: Sequence[ToolCallRequest] | None = None,
        suffix: str | None = None,
    ) -> Message:
        """Seal the in-flight message, optionally attaching tool calls or a trailing marker."""

        index = self._require_inflight()
        content = self._messages[index].content or ""
        if suffix:
            content = f"{content}\n\n{suffix}" if content else suffix
        if tool_calls:
            sealed = Message.assistant(content or None, tool_calls=tool_calls)
        else:
            sealed = Message.assistant(content)
        self._messages[index] = sealed
        self._inflight = None
        return sealed

    def discard_inflight(self) -> None:
        """Remove the streaming assistant message without sealing it."""

        index = self._require_inflight()
        del self._messages[index]
        self._inflight = None

    def truncate_after_last_user(self) -> Message | None:
        """Drop everything after the most recent user message and return it."""

        self._inflight = None
        for index in range(len(self._messages) - 1, -1, -1):
            if self._messages[index].role == "user":
                removed = len(self._messages) - index - 1
                del self._messages[index + 1:]
                if removed:
                    LOGGER.debug("Truncated %s message(s) after last user message", removed)
                return self._messages[index]
        return None

    def clear(self) -> None:
        self._messages.clear()
        self._inflight = None

    # ------------------------------------------------------------------
    # Request assembly
    # ------------------------------------------------------------------
    def to_request_messages(
        self,
        system_prompt: str | None,
        context_blocks: Sequence[str] = (),
        pending_input: str | None = None,
    ) -> List[ChatCompletionMessageParam]:
        """Build the wire message list for the next request.

        Order: system prompt, history, then the context blocks as one system
        message placed directly before the newest user input (``pending_input``
        when given, otherwise the last user message in history). The streaming
        assistant message and empty assistant placeholders are left out.
        """

        history = [
            message
            for position, message in enumerate(self._messages)
            if position != self._inflight and not _is_empty_assistant(message)
        ]
        context_text = "\n\n".join(block for block in context_blocks if block and block.strip())
        context_message = Message.system(context_text) if context_text else None

        payload: List[ChatCompletionMessageParam] = []
        if system_prompt:
            payload.append(Message.system(system_prompt).to_chat_param())

        anchor = None
        if pending_input is None and context_message is not None:
            for position in range(len(history) - 1, -1, -1):
                if history[position].role == "user":
                    anchor = position
                    break

        for position, message in enumerate(history):
            if position == anchor and context_message is not None:
                payload.append(context_message.to_chat_param())
            payload.append(message.to_chat_param())

        if pending_input is not None:
            if context_message is not None:
                payload.append(context_message.to_chat_param())
            payload.append(Message.user(pending_input).to_chat_param())
        elif anchor is None and context_message is not None:
            payload.append(context_message.to_chat_param())
        return payload

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------
    def snapshot(self) -> dict[str, Any]:
        """Return a JSON-ready copy of the sealed history."""

        messages = [
            message.to_dict()
            for position, message in enumerate(self._messages)
            if position != self._inflight
        ]
        return {"messages": messages}

    @classmethod
    def from_snapshot(cls, snapshot: Mapping[str, Any] | None) -> ConversationState:
        state = cls()
        if not snapshot:
            return state
        for raw in snapshot.get("messages") or ():
            if not isinstance(raw, Mapping):
                continue
            try:
                state.append(Message.from_dict(raw))
            except ValueError as exc:
                LOGGER.warning("Dropping invalid message from snapshot: %s", exc)
        return state

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _require_inflight(self) -> int:
        if self._inflight is None:
            raise RuntimeError("No assistant message is streaming")
        return self._inflight

    def _validate_tool_message(self, message: Message) -> None:
        call_id = message.tool_call_id
        if not call_id:
            raise ValueError("Tool messages require a tool_call_id")
        for previous in reversed(self._messages):
            if previous.role == "assistant" and any(call.id == call_id for call in previous.tool_calls):
                return
            if previous.role == "user":
                break
        raise ValueError(f"Tool message '{call_id}' has no preceding assistant tool call")


def _is_empty_assistant(message: Message) -> bool:
    return message.role == "assistant" and not message.content and not message.tool_calls

"""Host bindings over a single :class:`TurnOrchestrator`.

Two shapes are offered so a UI layer can pick whichever matches its
framework:

* :class:`CallbackResponder` forwards turn events to plain callables and
  exposes ``send``/``stop``/``retry``.
* :class:`ChatSessionModel` keeps an observable snapshot of the session
  (messages, typing indicator, tool progress, usage) and notifies listeners
  whenever it changes. History is loaded from and saved to an injected
  :class:`~docchat.services.history_store.HistoryStore`.

Neither adapter holds turn logic of its own.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Callable, List, Literal

from ..ai_types import ToolCallDelta, Usage
from .conversation import ConversationState
from .orchestrator import TurnHandlers, TurnOrchestrator
from .types import AccumulatedToolCall, Message, ToolCallStatus, TurnResult, TurnState

if TYPE_CHECKING:  # pragma: no cover
    from ...services.history_store import HistoryStore

__all__ = [
    "CallbackResponder",
    "ChatSessionModel",
    "ThinkingStage",
    "ToolCallView",
    "thinking_text",
]

LOGGER = logging.getLogger(__name__)

ThinkingStage = Literal["none", "thinking", "processing", "generating"]

_THINKING_TEXT: dict[str, str] = {
    "thinking": "Thinking",
    "processing": "Processing",
    "generating": "Generating response",
}


def thinking_text(stage: ThinkingStage) -> str:
    """Return the indicator label shown for ``stage``; empty when idle."""

    return _THINKING_TEXT.get(stage, "")


# -----------------------------------------------------------------------------
# Callback style
# -----------------------------------------------------------------------------


class CallbackResponder:
    """Wires a turn orchestrator to plain callbacks.

    Example::

        responder = CallbackResponder(orchestrator, on_text=print)
        await responder.send("hello")
    """

    def __init__(
        self,
        orchestrator: TurnOrchestrator,
        *,
        on_text: Callable[[str], None] | None = None,
        on_tool_calls: Callable[[List[AccumulatedToolCall]], None] | None = None,
        on_tool_status: Callable[[int, ToolCallStatus, str], None] | None = None,
        on_finish: Callable[[TurnResult], None] | None = None,
        on_error: Callable[[Exception], None] | None = None,
        on_usage: Callable[[Usage, Usage], None] | None = None,
        on_state: Callable[[TurnState], None] | None = None,
    ) -> None:
        self._orchestrator = orchestrator
        handlers = TurnHandlers(
            on_text_delta=on_text,
            on_tool_call_delta=(lambda _delta, calls: on_tool_calls(calls)) if on_tool_calls else None,
            on_tool_status=on_tool_status,
            on_finish=on_finish,
            on_error=on_error,
            on_usage=on_usage,
            on_state=on_state,
        )
        self._unsubscribe: Callable[[], None] | None = orchestrator.subscribe(handlers)

    @property
    def orchestrator(self) -> TurnOrchestrator:
        return self._orchestrator

    @property
    def is_busy(self) -> bool:
        return self._orchestrator.is_running

    @property
    def messages(self) -> tuple[Message, ...]:
        return self._orchestrator.conversation.messages

    async def send(self, text: str) -> TurnResult:
        return await self._orchestrator.start(text)

    async def retry(self) -> TurnResult:
        return await self._orchestrator.retry()

    def stop(self) -> None:
        self._orchestrator.stop()

    def close(self) -> None:
        """Detach the callbacks from the orchestrator."""

        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None


# -----------------------------------------------------------------------------
# Observable model style
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class ToolCallView:
    """Display row for one tool call of the current turn."""

    index: int
    id: str
    name: str
    arguments: str
    status: ToolCallStatus = ToolCallStatus.PENDING
    preview: str = ""


SessionListener = Callable[["ChatSessionModel"], None]


class ChatSessionModel:
    """Observable chat session backed by one orchestrator.

    Attributes are read-only snapshots refreshed from orchestrator events;
    every refresh notifies the listeners registered with :meth:`add_listener`.

    Args:
        orchestrator: Orchestrator driving the turns.
        history_store: Optional persistence. Loaded once on construction and
            saved after every history change while no message is streaming.
    """

    def __init__(self, orchestrator: TurnOrchestrator, *, history_store: HistoryStore | None = None) -> None:
        self._orchestrator = orchestrator
        self._history_store = history_store
        self._listeners: List[SessionListener] = []
        self._is_typing = False
        self._thinking_stage: ThinkingStage = "none"
        self._tool_calls: tuple[ToolCallView, ...] = ()
        self._last_usage: Usage | None = None
        self._last_error: Exception | None = None
        self._last_result: TurnResult | None = None
        self._restore_history()
        self._unsubscribe = orchestrator.subscribe(
            TurnHandlers(
                on_text_delta=self._handle_text_delta,
                on_tool_call_delta=self._handle_tool_call_delta,
                on_tool_status=self._handle_tool_status,
                on_finish=self._handle_finish,
                on_error=self._handle_error,
                on_usage=self._handle_usage,
                on_state=self._handle_state,
                on_history=self._handle_history,
            )
        )

    # ------------------------------------------------------------------
    # Observable attributes
    # ------------------------------------------------------------------
    @property
    def messages(self) -> tuple[Message, ...]:
        return self._orchestrator.conversation.messages

    @property
    def is_typing(self) -> bool:
        return self._is_typing

    @property
    def thinking_stage(self) -> ThinkingStage:
        return self._thinking_stage

    @property
    def thinking_text(self) -> str:
        return thinking_text(self._thinking_stage)

    @property
    def tool_calls(self) -> tuple[ToolCallView, ...]:
        return self._tool_calls

    @property
    def last_usage(self) -> Usage | None:
        return self._last_usage

    @property
    def total_usage(self) -> Usage:
        return self._orchestrator.total_usage

    @property
    def last_error(self) -> Exception | None:
        return self._last_error

    @property
    def last_result(self) -> TurnResult | None:
        return self._last_result

    @property
    def can_stop(self) -> bool:
        return self._orchestrator.is_running

    def add_listener(self, listener: SessionListener) -> Callable[[], None]:
        """Register ``listener``; the returned callable removes it."""

        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------
    async def send(self, text: str) -> TurnResult:
        self._begin_turn()
        return await self._orchestrator.start(text)

    async def retry(self) -> TurnResult:
        self._begin_turn()
        return await self._orchestrator.retry()

    def stop(self) -> None:
        self._orchestrator.stop()

    def clear(self) -> None:
        """Drop the whole conversation and persist the empty history."""

        self._orchestrator.reset(ConversationState())
        self._tool_calls = ()
        self._last_error = None
        self._last_result = None
        self._notify()

    def close(self) -> None:
        self._unsubscribe()
        self._listeners.clear()

    # ------------------------------------------------------------------
    # Orchestrator events
    # ------------------------------------------------------------------
    def _begin_turn(self) -> None:
        if self._orchestrator.is_running:
            raise RuntimeError("A turn is already running")
        self._tool_calls = ()
        self._last_error = None

    def _handle_state(self, state: TurnState) -> None:
        if state is TurnState.STREAMING:
            self._is_typing = True
            inflight = self._orchestrator.conversation.inflight
            self._thinking_stage = "generating" if inflight is not None and inflight.content else "thinking"
        elif state is TurnState.TOOL_EXECUTING:
            self._is_typing = True
            self._thinking_stage = "processing"
        else:
            self._is_typing = False
            self._thinking_stage = "none"
        self._notify()

    def _handle_text_delta(self, _text: str) -> None:
        self._thinking_stage = "generating"
        self._notify()

    def _handle_tool_call_delta(self, _delta: ToolCallDelta, calls: List[AccumulatedToolCall]) -> None:
        known = {view.index: view for view in self._tool_calls}
        views = []
        for call in calls:
            previous = known.get(call.index)
            status = previous.status if previous is not None else ToolCallStatus.PENDING
            views.append(ToolCallView(call.index, call.id, call.name, call.args_text, status))
        self._tool_calls = tuple(views)
        self._notify()

    def _handle_tool_status(self, index: int, status: ToolCallStatus, preview: str) -> None:
        self._tool_calls = tuple(
            replace(view, status=status, preview=preview) if view.index == index else view for view in self._tool_calls
        )
        self._notify()

    def _handle_usage(self, usage: Usage, _cumulative: Usage) -> None:
        self._last_usage = usage
        self._notify()

    def _handle_error(self, exc: Exception) -> None:
        self._last_error = exc
        self._notify()

    def _handle_finish(self, result: TurnResult) -> None:
        self._last_result = result
        self._notify()

    def _handle_history(self, _messages: tuple[Message, ...]) -> None:
        conversation = self._orchestrator.conversation
        if conversation.inflight is None:
            self._persist(conversation)
        self._notify()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _restore_history(self) -> None:
        if self._history_store is None:
            return
        snapshot = self._history_store.load()
        if not snapshot:
            return
        conversation = ConversationState.from_snapshot(snapshot)
        LOGGER.debug("Restored %s message(s) from history", len(conversation))
        self._orchestrator.reset(conversation)

    def _persist(self, conversation: ConversationState) -> None:
        if self._history_store is None:
            return
        try:
            self._history_store.save(conversation.snapshot())
        except OSError as exc:
            LOGGER.warning("Failed to save chat history: %s", exc)

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self)
            except Exception:
                LOGGER.exception("Session listener raised")

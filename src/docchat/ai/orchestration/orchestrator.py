"""Turn orchestrator: the state machine behind every chat turn.

A turn moves through ``IDLE -> STREAMING -> (TOOL_EXECUTING -> STREAMING)* ->
DONE | ABORTED | ERRORED``. Each streaming phase issues one request and
consumes its events; when the model asks for tools, the calls run one after
another, their results are appended to the history and another request is
issued. The number of tool rounds is capped by ``max_tool_depth``.

Observers subscribe with a :class:`TurnHandlers` bundle. Every callback is
optional and invoked synchronously in registration order; an exception in a
handler is logged and never interrupts the turn.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import (
    Any,
    AsyncIterator,
    Callable,
    Iterable,
    List,
    Mapping,
    Protocol,
    Sequence,
    runtime_checkable,
)

from openai.types.chat import (
    ChatCompletionMessageParam,
    ChatCompletionToolChoiceOptionParam,
    ChatCompletionToolParam,
)

from ..ai_types import Finish, StreamError, StreamEvent, TextDelta, ToolCallDelta, Usage, UsageEvent
from ..errors import STOPPED_BY_USER_MARKER, CancellationError, ChatEngineError, ToolLoopExceeded
from ..tools.registry import ToolRegistry
from .accumulator import ToolCallAccumulator
from .cancellation import CancellationToken
from .conversation import ConversationState
from .tool_runner import ToolRunner
from .types import (
    AccumulatedToolCall,
    Message,
    StopReason,
    ToolCallStatus,
    ToolExecution,
    TurnResult,
    TurnState,
)

__all__ = [
    "ChatTransport",
    "ContextProvider",
    "OrchestratorConfig",
    "TurnHandlers",
    "TurnOrchestrator",
]

LOGGER = logging.getLogger(__name__)

ContextProvider = Callable[[str], Sequence[str]]


# -----------------------------------------------------------------------------
# Collaborator protocols
# -----------------------------------------------------------------------------


@runtime_checkable
class ChatTransport(Protocol):
    """What the orchestrator needs from a chat client."""

    def ensure_configured(self) -> None:
        ...

    def stream_chat(
        self,
        messages: Iterable[Mapping[str, Any] | ChatCompletionMessageParam],
        *,
        tools: Sequence[ChatCompletionToolParam] | None = None,
        tool_choice: ChatCompletionToolChoiceOptionParam | None = None,
        temperature: float | None = None,
        response_format: Mapping[str, Any] | None = None,
    ) -> AsyncIterator[StreamEvent]:
        ...


# -----------------------------------------------------------------------------
# Configuration / handlers
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class OrchestratorConfig:
    """Per-orchestrator request settings.

    Attributes:
        system_prompt: Prepended to every request when set.
        max_tool_depth: Maximum number of tool rounds in one turn.
        tool_choice: Forwarded as ``tool_choice`` when tools are offered.
        temperature: Sampling temperature override.
        response_format: Forwarded as ``response_format``.
        tool_timeout: Optional per-call tool timeout in seconds.
    """

    system_prompt: str | None = None
    max_tool_depth: int = 3
    tool_choice: ChatCompletionToolChoiceOptionParam | None = "auto"
    temperature: float | None = None
    response_format: Mapping[str, Any] | None = None
    tool_timeout: float | None = None

    def __post_init__(self) -> None:
        if self.max_tool_depth < 0:
            raise ValueError("max_tool_depth must be >= 0")


@dataclass(slots=True, eq=False)
class TurnHandlers:
    """Optional callbacks observing a turn."""

    on_text_delta: Callable[[str], None] | None = None
    on_tool_call_delta: Callable[[ToolCallDelta, List[AccumulatedToolCall]], None] | None = None
    on_tool_status: Callable[[int, ToolCallStatus, str], None] | None = None
    on_finish: Callable[[TurnResult], None] | None = None
    on_error: Callable[[Exception], None] | None = None
    on_usage: Callable[[Usage, Usage], None] | None = None
    on_state: Callable[[TurnState], None] | None = None
    on_history: Callable[[tuple[Message, ...]], None] | None = None


@dataclass(slots=True)
class _TurnProgress:
    executions: List[ToolExecution] = field(default_factory=list)
    usage: Usage = field(default_factory=Usage)
    depth: int = 0


# -----------------------------------------------------------------------------
# Orchestrator
# -----------------------------------------------------------------------------


class TurnOrchestrator:
    """Drives streaming turns, tool rounds and cancellation for one conversation.

    Args:
        client: Transport used for every request.
        tools: Registry offered to the model. When ``None`` no tools are sent
            and tool calls, if any, are left for the host.
        conversation: History to continue; a fresh one is created otherwise.
        config: Request and loop settings.
        context_provider: Called with the newest user input; returns static
            context blocks sent along with every request of that turn.
        tool_runner: Custom runner; defaults to one built from ``tools``.
    """

    def __init__(
        self,
        client: ChatTransport,
        *,
        tools: ToolRegistry | None = None,
        conversation: ConversationState | None = None,
        config: OrchestratorConfig | None = None,
        context_provider: ContextProvider | None = None,
        tool_runner: ToolRunner | None = None,
    ) -> None:
        self._client = client
        self._tools = tools
        self._conversation = conversation if conversation is not None else ConversationState()
        self._config = config or OrchestratorConfig()
        self._context_provider = context_provider
        self._runner = tool_runner or (
            ToolRunner(tools, timeout=self._config.tool_timeout) if tools is not None else None
        )
        self._handlers: List[TurnHandlers] = []
        self._state = TurnState.IDLE
        self._token: CancellationToken | None = None
        self._total_usage = Usage()

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------
    @property
    def state(self) -> TurnState:
        return self._state

    @property
    def conversation(self) -> ConversationState:
        return self._conversation

    @property
    def config(self) -> OrchestratorConfig:
        return self._config

    @property
    def is_running(self) -> bool:
        return self._state in (TurnState.STREAMING, TurnState.TOOL_EXECUTING)

    @property
    def total_usage(self) -> Usage:
        return self._total_usage

    # ------------------------------------------------------------------
    # Subscription
    # ------------------------------------------------------------------
    def subscribe(self, handlers: TurnHandlers) -> Callable[[], None]:
        """Register ``handlers`` and return a callable that removes them."""

        self._handlers.append(handlers)

        def unsubscribe() -> None:
            if handlers in self._handlers:
                self._handlers.remove(handlers)

        return unsubscribe

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    async def start(self, text: str) -> TurnResult:
        """Append ``text`` as a user message and run a turn.

        Raises:
            ConfigError: No credential configured. Raised before any request
                is made and before the history changes.
            RuntimeError: A turn is already running.
        """

        self._ensure_idle()
        self._client.ensure_configured()
        self._conversation.append(Message.user(text))
        self._emit_history()
        return await self._run(text)

    async def retry(self) -> TurnResult:
        """Replay the last user message as a fresh turn.

        Everything after the last user message is dropped first, so the retry
        does not duplicate the user message.
        """

        self._ensure_idle()
        self._client.ensure_configured()
        last_user = self._conversation.truncate_after_last_user()
        if last_user is None:
            raise RuntimeError("Nothing to retry: no user message in history")
        self._emit_history()
        return await self._run(last_user.content or "")

    def cancel(self) -> None:
        """Signal cancellation; observed at the next suspension point."""

        if self._token is not None and not self._token.cancelled:
            LOGGER.debug("Cancellation requested")
            self._token.cancel()

    stop = cancel

    def reset(self, conversation: ConversationState | None = None) -> None:
        """Replace the history. Not allowed while a turn is running."""

        self._ensure_idle()
        self._conversation = conversation if conversation is not None else ConversationState()
        self._state = TurnState.IDLE
        self._emit_history()

    # ------------------------------------------------------------------
    # Turn loop
    # ------------------------------------------------------------------
    async def _run(self, input_text: str) -> TurnResult:
        token = CancellationToken()
        self._token = token
        progress = _TurnProgress()
        context_blocks: Sequence[str] = ()
        if self._context_provider is not None:
            context_blocks = tuple(self._context_provider(input_text))

        try:
            while True:
                self._set_state(TurnState.STREAMING)
                calls = await self._stream_phase(token, progress, context_blocks)
                if not calls:
                    sealed = self._conversation.finalize_assistant()
                    self._emit_history()
                    return self._complete(
                        TurnState.DONE,
                        TurnResult(
                            final_text=sealed.content or "",
                            tool_calls=tuple(progress.executions),
                            usage=progress.usage,
                            stop_reason=StopReason.COMPLETED,
                            depth=progress.depth,
                        ),
                    )
                if self._runner is None:
                    sealed = self._conversation.finalize_assistant(tool_calls=[call.to_request() for call in calls])
                    self._emit_history()
                    return self._complete(
                        TurnState.DONE,
                        TurnResult(
                            final_text=sealed.content or "",
                            tool_calls=tuple(progress.executions),
                            usage=progress.usage,
                            stop_reason=StopReason.TOOL_CALLS,
                            depth=progress.depth,
                        ),
                    )
                if progress.depth >= self._config.max_tool_depth:
                    raise ToolLoopExceeded(
                        details={"max_tool_depth": self._config.max_tool_depth, "requested": len(calls)}
                    )
                await self._tool_phase(token, progress, calls)
        except CancellationError:
            return self._abort(progress)
        except ChatEngineError as exc:
            return self._fail(exc, progress)
        except asyncio.CancelledError:
            token.cancel()
            self._abort(progress)
            raise
        except Exception:
            LOGGER.exception("Turn crashed")
            self._seal_inflight()
            self._set_state(TurnState.ERRORED)
            raise
        finally:
            self._token = None

    async def _stream_phase(
        self,
        token: CancellationToken,
        progress: _TurnProgress,
        context_blocks: Sequence[str],
    ) -> List[AccumulatedToolCall]:
        messages = self._conversation.to_request_messages(self._config.system_prompt, context_blocks)
        tools = self._tools.to_openai_tools() if self._tools is not None and len(self._tools) else None
        accumulator = ToolCallAccumulator()
        self._conversation.begin_assistant()

        stream = self._client.stream_chat(
            messages,
            tools=tools,
            tool_choice=self._config.tool_choice if tools else None,
            temperature=self._config.temperature,
            response_format=self._config.response_format,
        )
        iterator = stream.__aiter__()
        try:
            while True:
                try:
                    event = await token.race(iterator.__anext__())
                except StopAsyncIteration:
                    break
                if isinstance(event, TextDelta):
                    self._conversation.append_text(event.text)
                    self._emit("on_text_delta", event.text)
                elif isinstance(event, ToolCallDelta):
                    accumulator.accept(event)
                    self._emit("on_tool_call_delta", event, accumulator.list())
                elif isinstance(event, UsageEvent):
                    progress.usage = progress.usage + event.usage
                    self._total_usage = self._total_usage + event.usage
                    self._emit("on_usage", event.usage, self._total_usage)
                elif isinstance(event, StreamError):
                    cause = event.cause
                    if isinstance(cause, ChatEngineError):
                        raise cause
                    raise ChatEngineError(error_code="stream_error", message=str(cause)) from cause
                elif isinstance(event, Finish):
                    LOGGER.debug("Stream finished: %s", event.reason)
                    break
        finally:
            aclose = getattr(iterator, "aclose", None)
            if aclose is not None:
                await aclose()
        return accumulator.list()

    async def _tool_phase(
        self,
        token: CancellationToken,
        progress: _TurnProgress,
        calls: Sequence[AccumulatedToolCall],
    ) -> None:
        assert self._runner is not None
        self._set_state(TurnState.TOOL_EXECUTING)
        requests = [call.to_request() for call in calls]
        LOGGER.debug("Executing %s tool call(s): %s", len(requests), [req.name for req in requests])
        executions = await self._runner.run_all(
            requests,
            cancel_token=token,
            on_status=lambda index, status, preview: self._emit("on_tool_status", index, status, preview),
        )
        self._conversation.finalize_assistant(tool_calls=requests)
        for execution in executions:
            self._conversation.append(
                Message.tool(execution.content(), tool_call_id=execution.call.id, name=execution.call.name)
            )
        progress.executions.extend(executions)
        progress.depth += 1
        self._emit_history()

    # ------------------------------------------------------------------
    # Terminal transitions
    # ------------------------------------------------------------------
    def _complete(self, state: TurnState, result: TurnResult) -> TurnResult:
        self._set_state(state)
        self._emit("on_finish", result)
        return result

    def _abort(self, progress: _TurnProgress) -> TurnResult:
        LOGGER.info("Turn stopped by user")
        sealed = self._seal_inflight(suffix=STOPPED_BY_USER_MARKER)
        self._emit_history()
        self._set_state(TurnState.ABORTED)
        return TurnResult(
            final_text=sealed.content or "" if sealed is not None else "",
            tool_calls=tuple(progress.executions),
            usage=progress.usage,
            stop_reason=StopReason.ABORTED,
            error=CancellationError(),
            depth=progress.depth,
        )

    def _fail(self, exc: ChatEngineError, progress: _TurnProgress) -> TurnResult:
        LOGGER.warning("Turn failed: %s", exc.message)
        sealed = self._seal_inflight()
        self._emit_history()
        self._set_state(TurnState.ERRORED)
        self._emit("on_error", exc)
        result = TurnResult(
            final_text=sealed.content or "" if sealed is not None else "",
            tool_calls=tuple(progress.executions),
            usage=progress.usage,
            stop_reason=StopReason.ERROR,
            error=exc,
            depth=progress.depth,
        )
        self._emit("on_finish", result)
        return result

    def _seal_inflight(self, suffix: str | None = None) -> Message | None:
        # Unexecuted tool calls are dropped; history never holds a call without its result.
        inflight = self._conversation.inflight
        if inflight is None:
            return None
        if not inflight.content and not suffix:
            self._conversation.discard_inflight()
            return None
        return self._conversation.finalize_assistant(suffix=suffix)

    # ------------------------------------------------------------------
    # Notification helpers
    # ------------------------------------------------------------------
    def _ensure_idle(self) -> None:
        if self.is_running:
            raise RuntimeError("A turn is already running")

    def _set_state(self, state: TurnState) -> None:
        if state is self._state:
            return
        LOGGER.debug("Turn state %s -> %s", self._state.value, state.value)
        self._state = state
        self._dispatch("on_state", state)

    def _emit_history(self) -> None:
        self._dispatch("on_history", self._conversation.messages)

    def _emit(self, name: str, *args: Any) -> None:
        if self._token is not None and self._token.cancelled:
            return
        self._dispatch(name, *args)

    def _dispatch(self, name: str, *args: Any) -> None:
        for handlers in list(self._handlers):
            callback = getattr(handlers, name)
            if callback is None:
                continue
            try:
                callback(*args)
            except Exception:
                LOGGER.exception("Turn handler %s raised", name)

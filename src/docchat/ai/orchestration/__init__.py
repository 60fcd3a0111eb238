"""Turn orchestration: conversation state, tool loop, budget and cancellation."""

from .accumulator import ToolCallAccumulator
from .adapters import CallbackResponder, ChatSessionModel, ToolCallView, thinking_text
from .budget import Budget, BudgetTracker
from .cancellation import CancellationToken
from .continuation import CONTINUE_PROMPT, ContinuationLoop, ContinuationOutcome
from .conversation import ConversationState
from .orchestrator import ChatTransport, OrchestratorConfig, TurnHandlers, TurnOrchestrator
from .tool_runner import ToolRunner
from .types import (
    AccumulatedToolCall,
    Message,
    StopReason,
    ToolCallRequest,
    ToolCallStatus,
    ToolExecution,
    TurnResult,
    TurnState,
)

__all__ = [
    # State
    "ConversationState",
    "Message",
    "TurnState",
    "StopReason",
    "TurnResult",
    # Tool calls
    "AccumulatedToolCall",
    "ToolCallAccumulator",
    "ToolCallRequest",
    "ToolCallStatus",
    "ToolExecution",
    "ToolRunner",
    # Orchestration
    "ChatTransport",
    "OrchestratorConfig",
    "TurnHandlers",
    "TurnOrchestrator",
    "CancellationToken",
    # Budget / continuation
    "Budget",
    "BudgetTracker",
    "CONTINUE_PROMPT",
    "ContinuationLoop",
    "ContinuationOutcome",
    # Host bindings
    "CallbackResponder",
    "ChatSessionModel",
    "ToolCallView",
    "thinking_text",
]

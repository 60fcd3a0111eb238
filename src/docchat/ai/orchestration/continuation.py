"""Budget-gated autonomous continuation.

An autonomous run keeps issuing "continue" turns without new user input until
the work is reported complete, a turn fails or is stopped, or the token budget
runs out. The budget is checked before every step, so a run never starts a
request it cannot afford.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, List, Literal

from ..context import estimate_tokens
from ..errors import BudgetExceeded
from .budget import BudgetTracker
from .orchestrator import TurnOrchestrator
from .types import StopReason, TurnResult

__all__ = ["CONTINUE_PROMPT", "ContinuationOutcome", "ContinuationLoop"]

LOGGER = logging.getLogger(__name__)

CONTINUE_PROMPT = "\n".join(
    [
        "DOCCHAT_CONTINUE",
        "Proceed with the next actionable step.",
        "If TODOs are complete, move to implement or finalize patch.",
    ]
)

OutcomeReason = Literal["complete", "budget", "aborted", "error", "max_steps"]


@dataclass(slots=True, frozen=True)
class ContinuationOutcome:
    """Why an autonomous run stopped.

    Attributes:
        reason: One of ``complete``, ``budget``, ``aborted``, ``error``, ``max_steps``.
        steps: Number of turns issued by this run.
        message: User-facing explanation, set when the budget ran out.
        results: Every turn result, in order.
    """

    reason: OutcomeReason
    steps: int
    message: str | None = None
    results: tuple[TurnResult, ...] = ()

    @property
    def last_result(self) -> TurnResult | None:
        return self.results[-1] if self.results else None


class ContinuationLoop:
    """Repeats continuation turns on one orchestrator while the budget allows.

    Args:
        orchestrator: Conversation to continue.
        budget: Tracker charged with the usage of every turn.
        prompt: User text sent for each step.
        is_complete: Predicate over the latest result; ``True`` ends the run.
        max_steps: Optional hard cap on the number of turns.
    """

    def __init__(
        self,
        orchestrator: TurnOrchestrator,
        budget: BudgetTracker,
        *,
        prompt: str = CONTINUE_PROMPT,
        is_complete: Callable[[TurnResult], bool] | None = None,
        max_steps: int | None = None,
    ) -> None:
        self._orchestrator = orchestrator
        self._budget = budget
        self._prompt = prompt
        self._is_complete = is_complete
        self._max_steps = max_steps
        self._running = False
        self._stop_requested = False

    @property
    def running(self) -> bool:
        return self._running

    @property
    def budget(self) -> BudgetTracker:
        return self._budget

    def stop(self) -> None:
        """Stop after cancelling the turn in flight."""

        self._stop_requested = True
        self._orchestrator.cancel()

    async def run(self) -> ContinuationOutcome:
        if self._running:
            raise RuntimeError("Continuation loop is already running")
        self._running = True
        self._stop_requested = False
        results: List[TurnResult] = []
        try:
            while True:
                if self._max_steps is not None and len(results) >= self._max_steps:
                    return ContinuationOutcome("max_steps", len(results), results=tuple(results))
                try:
                    self._budget.check()
                except BudgetExceeded as exc:
                    LOGGER.info("Continuation paused after %s step(s): budget exhausted", len(results))
                    return ContinuationOutcome("budget", len(results), message=exc.message, results=tuple(results))

                result = await self._orchestrator.start(self._prompt)
                results.append(result)
                self._budget.accumulate(self._charge_for(result))

                if result.stop_reason is StopReason.ABORTED or self._stop_requested:
                    return ContinuationOutcome("aborted", len(results), results=tuple(results))
                if result.stop_reason is StopReason.ERROR:
                    return ContinuationOutcome("error", len(results), results=tuple(results))
                if self._is_complete is not None and self._is_complete(result):
                    return ContinuationOutcome("complete", len(results), results=tuple(results))
        finally:
            self._running = False

    async def resume(self, extra_tokens: int) -> ContinuationOutcome:
        """Extend the budget and run again."""

        self._budget.extend(extra_tokens)
        return await self.run()

    def _charge_for(self, result: TurnResult) -> int:
        if result.usage.total_tokens > 0:
            return result.usage.total_tokens
        # No usage reported: fall back to a character-based estimate.
        spent = estimate_tokens(self._prompt) + estimate_tokens(result.final_text)
        for execution in result.tool_calls:
            spent += estimate_tokens(execution.call.arguments_json) + estimate_tokens(execution.content())
        return spent

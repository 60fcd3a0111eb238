"""Token budget tracking for autonomous continuation runs."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from ..ai_types import Usage
from ..errors import BudgetExceeded

__all__ = [
    "Budget",
    "BudgetTracker",
    "DEFAULT_TOTAL_TOKENS",
    "DEFAULT_RESERVE_OUTPUT",
    "DEFAULT_RESERVE_SAFETY",
]

LOGGER = logging.getLogger(__name__)

DEFAULT_TOTAL_TOKENS = 65_500
DEFAULT_RESERVE_OUTPUT = 2_000
DEFAULT_RESERVE_SAFETY = 1_500


@dataclass(slots=True, frozen=True)
class Budget:
    """Snapshot of a token budget.

    Attributes:
        total_tokens: Ceiling for the whole run.
        reserve_output: Tokens kept back for the model's next reply.
        reserve_safety: Extra headroom against estimation drift.
        used_approx: Tokens consumed so far. Never decreases.
    """

    total_tokens: int = DEFAULT_TOTAL_TOKENS
    reserve_output: int = DEFAULT_RESERVE_OUTPUT
    reserve_safety: int = DEFAULT_RESERVE_SAFETY
    used_approx: int = 0

    @property
    def remaining(self) -> int:
        return max(0, self.total_tokens - self.used_approx - self.reserve_output - self.reserve_safety)


class BudgetTracker:
    """Accumulates usage and decides whether another continuation step fits."""

    def __init__(
        self,
        total_tokens: int = DEFAULT_TOTAL_TOKENS,
        *,
        reserve_output: int = DEFAULT_RESERVE_OUTPUT,
        reserve_safety: int = DEFAULT_RESERVE_SAFETY,
    ) -> None:
        if total_tokens < 0 or reserve_output < 0 or reserve_safety < 0:
            raise ValueError("Budget values must be non-negative")
        self._total = int(total_tokens)
        self._reserve_output = int(reserve_output)
        self._reserve_safety = int(reserve_safety)
        self._used = 0

    @property
    def used(self) -> int:
        return self._used

    @property
    def total_tokens(self) -> int:
        return self._total

    def accumulate(self, usage: Usage | int | None) -> int:
        """Add consumed tokens and return the new running total."""

        if usage is None:
            return self._used
        tokens = usage.total_tokens if isinstance(usage, Usage) else int(usage)
        if tokens > 0:
            self._used += tokens
        return self._used

    def remaining(self) -> int:
        return self.snapshot().remaining

    def exhausted(self) -> bool:
        return self.remaining() <= 0

    def check(self) -> None:
        """Raise :class:`BudgetExceeded` when no budget is left."""

        if self.exhausted():
            LOGGER.info("Token budget exhausted (used=%s, total=%s)", self._used, self._total)
            raise BudgetExceeded(details=self.snapshot_dict())

    def extend(self, extra_tokens: int) -> None:
        """Raise the ceiling so a paused run can resume."""

        if extra_tokens <= 0:
            raise ValueError("extra_tokens must be positive")
        self._total += int(extra_tokens)
        LOGGER.debug("Token budget extended by %s to %s", extra_tokens, self._total)

    def snapshot(self) -> Budget:
        return Budget(
            total_tokens=self._total,
            reserve_output=self._reserve_output,
            reserve_safety=self._reserve_safety,
            used_approx=self._used,
        )

    def snapshot_dict(self) -> dict[str, int]:
        budget = self.snapshot()
        return {
            "total_tokens": budget.total_tokens,
            "reserve_output": budget.reserve_output,
            "reserve_safety": budget.reserve_safety,
            "used_approx": budget.used_approx,
            "remaining": budget.remaining,
        }

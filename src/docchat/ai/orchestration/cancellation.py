"""Cooperative cancellation shared by the orchestrator and the transport."""

from __future__ import annotations

import asyncio
from typing import Awaitable, TypeVar

from ..errors import CancellationError

__all__ = ["CancellationToken"]

T = TypeVar("T")


class CancellationToken:
    """One-shot cancellation flag observed at suspension points."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise CancellationError()

    async def wait(self) -> None:
        await self._event.wait()

    async def race(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` unless the token fires first.

        Raises :class:`CancellationError` when cancelled; the pending
        awaitable is cancelled in that case.
        """

        self.raise_if_cancelled()
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            waiter.cancel()
            raise
        if task in done:
            waiter.cancel()
            return task.result()
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        raise CancellationError()

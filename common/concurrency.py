from __future__ import annotations

"""
Cancellation tokens, a generation counter and a bounded-concurrency scheduler.

Limits are explicit: the mosaic loader runs tile fetches through a scheduler
of 1, snapshot probing uses one sized to its batch, and the change pipeline
runs before/after mosaics through a scheduler of 2.
"""

import asyncio
from typing import Any, Awaitable, Callable, Iterable, List, Optional, TypeVar

from common.errors import OperationCancelled

T = TypeVar("T")
R = TypeVar("R")


class CancelToken:
    """Cooperative cancellation flag threaded through async calls."""

    __slots__ = ("generation", "_cancelled")

    def __init__(self, generation: int = 0):
        self.generation = generation
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise OperationCancelled(f"Superseded by newer inputs (generation {self.generation})")

    def __repr__(self) -> str:
        return f"CancelToken(generation={self.generation}, cancelled={self._cancelled})"


def check(token: Optional[CancelToken]) -> None:
    """raise_if_cancelled() for an optional token."""
    if token is not None:
        token.raise_if_cancelled()


class Generation:
    """
    Monotonic generation counter. Each `advance()` cancels the token handed
    out previously, so only the newest computation may commit results.
    """

    def __init__(self) -> None:
        self._value = 0
        self._token = CancelToken(0)

    @property
    def value(self) -> int:
        return self._value

    def advance(self) -> CancelToken:
        self._token.cancel()
        self._value += 1
        self._token = CancelToken(self._value)
        return self._token

    def is_current(self, token: CancelToken) -> bool:
        return token is self._token and not token.cancelled


class BoundedScheduler:
    """
    Runs an async function over items with at most `concurrency` calls in
    flight. Items are started in input order; results keep input order.
    The first exception cancels the remaining work and is re-raised.
    """

    def __init__(self, concurrency: int = 1):
        if int(concurrency) < 1:
            raise ValueError("concurrency must be >= 1")
        self.concurrency = int(concurrency)

    async def map(
        self,
        func: Callable[[T], Awaitable[R]],
        items: Iterable[T],
        token: Optional[CancelToken] = None,
    ) -> List[R]:
        work = list(items)
        results: List[Any] = [None] * len(work)
        if not work:
            return results
        pending = iter(range(len(work)))

        async def worker() -> None:
            for i in pending:
                check(token)
                results[i] = await func(work[i])

        tasks = [asyncio.create_task(worker()) for _ in range(min(self.concurrency, len(work)))]
        try:
            await asyncio.gather(*tasks)
        except BaseException:
            for t in tasks:
                t.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise
        return results

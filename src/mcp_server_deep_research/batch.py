"""Bounded-concurrency batch execution with per-item failure isolation."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import Generic, TypeVar, Union

from .exceptions import InvalidConfiguration

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


@dataclass(frozen=True, slots=True)
class Success(Generic[R]):
    index: int
    value: R

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True, slots=True)
class Failure:
    index: int
    error: BaseException

    @property
    def ok(self) -> bool:
        return False


BatchResult = Union[Success[R], Failure]


class BatchExecutor:
    """Runs a worker over items with at most ``concurrency_limit`` in flight.

    Items start greedily as slots free up. Results keep input order. A failing
    item is captured as ``Failure`` and never cancels its siblings. Concurrent
    ``run`` calls on one executor share its ceiling.
    """

    def __init__(self, concurrency_limit: int, name: str = "batch"):
        if concurrency_limit < 1:
            raise InvalidConfiguration(f"concurrency_limit must be >= 1, got {concurrency_limit}")
        self.concurrency_limit = concurrency_limit
        self.name = name
        self.in_flight = 0
        self.max_in_flight = 0
        self._semaphore = asyncio.Semaphore(concurrency_limit)

    async def run(self, items: Sequence[T], worker: Callable[[T], Awaitable[R]]) -> list[BatchResult[R]]:
        if not items:
            return []

        results: list[BatchResult[R] | None] = [None] * len(items)

        async def run_one(index: int, item: T) -> None:
            async with self._semaphore:
                self.in_flight += 1
                self.max_in_flight = max(self.max_in_flight, self.in_flight)
                try:
                    results[index] = Success(index, await worker(item))
                except Exception as e:
                    logger.warning(f"[{self.name}] item {index} failed: {e}")
                    results[index] = Failure(index, e)
                finally:
                    self.in_flight -= 1

        await asyncio.gather(*(run_one(i, item) for i, item in enumerate(items)))
        return [r for r in results if r is not None]


async def run_batch(
    items: Sequence[T],
    concurrency_limit: int,
    worker: Callable[[T], Awaitable[R]],
) -> list[BatchResult[R]]:
    """Run ``worker`` over ``items`` under a concurrency ceiling; see ``BatchExecutor``."""
    return await BatchExecutor(concurrency_limit).run(items, worker)


def values_or(results: Sequence[BatchResult[R]], default: Callable[[Failure], R]) -> list[R]:
    """Unwrap results in order, substituting ``default(failure)`` for failed items."""
    return [r.value if isinstance(r, Success) else default(r) for r in results]

"""Per-call timeout and retry with exponential backoff for provider calls."""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Protocol, TypeVar

from .exceptions import InvalidConfiguration, TransientProviderFailure

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SleepFunc(Protocol):
    async def __call__(self, seconds: float) -> None: ...


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry configuration for one provider call."""

    timeout: float | None = 120.0
    max_retries: int = 2
    base_delay: float = 1.0
    max_delay: float = 30.0
    exponential_base: float = 2.0
    jitter: bool = True

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise InvalidConfiguration("max_retries must be >= 0")
        if self.timeout is not None and self.timeout <= 0:
            raise InvalidConfiguration("timeout must be positive")

    def delay_for(self, attempt: int, rng: random.Random) -> float:
        delay = min(self.base_delay * (self.exponential_base**attempt), self.max_delay)
        if self.jitter:
            # 50-150% of the computed delay
            delay *= 0.5 + rng.random()
        return delay


async def call_with_retry(
    func: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    description: str = "provider call",
    rng: random.Random | None = None,
    sleep_func: SleepFunc | None = None,
) -> T:
    """Run ``func`` with a per-attempt timeout, retrying failures with backoff.

    Raises:
        TransientProviderFailure: after ``policy.max_retries + 1`` failed attempts.
    """
    _rng = rng or random.Random()
    _sleep = sleep_func or asyncio.sleep
    last_error: BaseException | None = None

    for attempt in range(policy.max_retries + 1):
        try:
            if policy.timeout is None:
                return await func()
            return await asyncio.wait_for(func(), timeout=policy.timeout)
        except asyncio.TimeoutError as e:
            last_error = e
            logger.warning(f"{description} timed out after {policy.timeout}s (attempt {attempt + 1})")
        except Exception as e:
            last_error = e
            logger.warning(f"{description} failed (attempt {attempt + 1}): {e}")

        if attempt < policy.max_retries:
            await _sleep(policy.delay_for(attempt, _rng))

    raise TransientProviderFailure(
        f"{description} failed after {policy.max_retries + 1} attempts: {last_error}",
        attempts=policy.max_retries + 1,
    ) from last_error

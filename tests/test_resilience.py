"""Tests for timeout and retry handling of provider calls."""

import asyncio
import random

import pytest

from mcp_server_deep_research.exceptions import InvalidConfiguration, TransientProviderFailure
from mcp_server_deep_research.resilience import RetryPolicy, call_with_retry


class RecordingSleep:
    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


class TestCallWithRetry:
    @pytest.mark.anyio
    async def test_succeeds_after_transient_failures(self):
        attempts = 0

        async def flaky() -> str:
            nonlocal attempts
            attempts += 1
            if attempts < 3:
                raise ConnectionError("reset")
            return "ok"

        sleep = RecordingSleep()
        policy = RetryPolicy(max_retries=2, base_delay=1.0, jitter=False)
        assert await call_with_retry(flaky, policy, sleep_func=sleep) == "ok"
        assert sleep.delays == [1.0, 2.0]

    @pytest.mark.anyio
    async def test_gives_up_after_max_retries(self):
        async def broken() -> str:
            raise ConnectionError("reset")

        policy = RetryPolicy(max_retries=1, base_delay=0.5, jitter=False)
        with pytest.raises(TransientProviderFailure) as exc_info:
            await call_with_retry(broken, policy, sleep_func=RecordingSleep())
        assert exc_info.value.attempts == 2
        assert isinstance(exc_info.value.__cause__, ConnectionError)

    @pytest.mark.anyio
    async def test_timeout_counts_as_failure(self):
        async def slow() -> str:
            await asyncio.sleep(1)
            return "late"

        policy = RetryPolicy(timeout=0.01, max_retries=0)
        with pytest.raises(TransientProviderFailure):
            await call_with_retry(slow, policy)


class TestRetryPolicy:
    def test_delay_is_capped(self):
        policy = RetryPolicy(base_delay=1.0, max_delay=5.0, jitter=False)
        assert policy.delay_for(10, random.Random(0)) == 5.0

    def test_jitter_range(self):
        policy = RetryPolicy(base_delay=2.0, jitter=True)
        rng = random.Random(42)
        for _ in range(20):
            assert 1.0 <= policy.delay_for(0, rng) <= 3.0

    def test_invalid(self):
        with pytest.raises(InvalidConfiguration):
            RetryPolicy(max_retries=-1)
        with pytest.raises(InvalidConfiguration):
            RetryPolicy(timeout=0)

"""Tests for retry.py - per-attempt timeouts and linear backoff."""

import asyncio

import pytest

from api.services.retry import OperationTimeoutError, execute_with_retry, with_timeout
from fakes import RecordingSleep


class Flaky:
    """Fails a fixed number of times, then returns a value."""

    def __init__(self, failures, exc_factory=lambda: RuntimeError("boom"), value="ok"):
        self.failures = failures
        self.exc_factory = exc_factory
        self.value = value
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.exc_factory()
        return self.value


class NonRetryable(Exception):
    retryable = False


class TestWithTimeout:
    @pytest.mark.asyncio
    async def test_returns_value(self):
        async def quick():
            return 42

        assert await with_timeout(quick(), 1, "quick") == 42

    @pytest.mark.asyncio
    async def test_raises_operation_timeout(self):
        with pytest.raises(OperationTimeoutError) as exc_info:
            await with_timeout(asyncio.sleep(1), 0.01, "story")

        assert exc_info.value.operation == "story"
        assert "story timed out" in str(exc_info.value)


class TestExecuteWithRetry:
    """Retry loop behaviour."""

    @pytest.mark.asyncio
    async def test_success_first_try(self):
        func = Flaky(0)
        sleep = RecordingSleep()

        assert await execute_with_retry(func, "op", sleep=sleep) == "ok"
        assert func.calls == 1
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_linear_backoff(self):
        func = Flaky(2)
        sleep = RecordingSleep()

        result = await execute_with_retry(func, "op", max_retries=3, base_delay=0.3, sleep=sleep)

        assert result == "ok"
        assert func.calls == 3
        assert sleep.delays == pytest.approx([0.3, 0.6])

    @pytest.mark.asyncio
    async def test_exhausted_raises_last_error(self):
        func = Flaky(5)
        sleep = RecordingSleep()

        with pytest.raises(RuntimeError, match="boom"):
            await execute_with_retry(func, "op", max_retries=3, sleep=sleep)

        assert func.calls == 3
        assert len(sleep.delays) == 2

    @pytest.mark.asyncio
    async def test_non_retryable_raised_immediately(self):
        func = Flaky(1, exc_factory=lambda: NonRetryable("bad input"))
        sleep = RecordingSleep()

        with pytest.raises(NonRetryable):
            await execute_with_retry(func, "op", sleep=sleep)

        assert func.calls == 1
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_each_attempt_gets_timeout(self):
        calls = []

        async def slow_then_fast():
            calls.append(1)
            if len(calls) == 1:
                await asyncio.sleep(1)
            return "done"

        result = await execute_with_retry(slow_then_fast, "op", timeout=0.01, sleep=RecordingSleep())

        assert result == "done"
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_invalid_max_retries(self):
        with pytest.raises(ValueError):
            await execute_with_retry(Flaky(0), "op", max_retries=0)

"""
Unit Tests for Retry with Backoff

Tests:
- Delay schedule (exponential, capped)
- Retry until success / exhaustion
- Non-retryable errors fail fast
- Per-attempt timeout counts as a failed attempt

Run with: pytest tests/test_retry.py -v
"""

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest

from reconciliation.errors import ExternalServiceError
from reconciliation.retry import RetryPolicy, is_retryable, retry_async


class FakeSleep:
    """Records requested delays instead of sleeping."""

    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


class TestRetryPolicy:
    """Test backoff schedule."""

    def test_default_delays(self):
        assert RetryPolicy().delays() == [1.0, 2.0, 4.0]

    def test_delays_are_capped(self):
        policy = RetryPolicy(max_retries=6, initial_delay=1.0, max_delay=10.0)
        assert policy.delays() == [1.0, 2.0, 4.0, 8.0, 10.0, 10.0]

    def test_from_settings(self):
        settings = SimpleNamespace(
            RETRY_MAX_RETRIES=2,
            RETRY_INITIAL_DELAY_SECONDS=0.5,
            RETRY_MAX_DELAY_SECONDS=5.0,
            EXTERNAL_TIMEOUT_SECONDS=12.0,
        )
        policy = RetryPolicy.from_settings(settings)
        assert policy.max_retries == 2
        assert policy.delays() == [0.5, 1.0]
        assert policy.timeout == 12.0


class TestIsRetryable:
    """Test retry classification."""

    def test_server_errors_retry(self):
        assert is_retryable(ExternalServiceError.from_status("crm", 503, "unavailable"))
        assert is_retryable(ExternalServiceError.from_status("crm", 429, "rate limited"))

    def test_client_errors_do_not_retry(self):
        assert not is_retryable(ExternalServiceError.from_status("crm", 404, "missing"))
        assert not is_retryable(ValueError("bad input"))

    def test_timeouts_retry(self):
        assert is_retryable(asyncio.TimeoutError())


class TestRetryAsync:
    """Test the retry loop."""

    @pytest.mark.asyncio
    async def test_success_first_time(self):
        operation = AsyncMock(return_value="ok")
        sleep = FakeSleep()

        result = await retry_async(operation, RetryPolicy(), "op", sleep=sleep)

        assert result == "ok"
        assert operation.await_count == 1
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_recovers_after_transient_failures(self):
        operation = AsyncMock(side_effect=[
            ExternalServiceError("crm", "503", status_code=503),
            ExternalServiceError("crm", "502", status_code=502),
            "ok",
        ])
        sleep = FakeSleep()

        result = await retry_async(operation, RetryPolicy(), "op", sleep=sleep)

        assert result == "ok"
        assert sleep.delays == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_exhaustion_raises_last_error(self):
        errors = [ExternalServiceError("crm", f"failure {i}") for i in range(4)]
        operation = AsyncMock(side_effect=errors)
        sleep = FakeSleep()

        with pytest.raises(ExternalServiceError) as exc_info:
            await retry_async(operation, RetryPolicy(max_retries=3), "op", sleep=sleep)

        assert exc_info.value is errors[-1]
        assert operation.await_count == 4
        assert sleep.delays == [1.0, 2.0, 4.0]

    @pytest.mark.asyncio
    async def test_non_retryable_fails_fast(self):
        operation = AsyncMock(side_effect=ExternalServiceError.from_status("crm", 400, "bad request"))
        sleep = FakeSleep()

        with pytest.raises(ExternalServiceError):
            await retry_async(operation, RetryPolicy(), "op", sleep=sleep)

        assert operation.await_count == 1
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_attempt_timeout_is_retried(self):
        calls = 0

        async def slow_then_fast():
            nonlocal calls
            calls += 1
            if calls == 1:
                await asyncio.sleep(1)
            return "done"

        sleep = FakeSleep()
        result = await retry_async(slow_then_fast, RetryPolicy(timeout=0.01), "op", sleep=sleep)

        assert result == "done"
        assert calls == 2
        assert sleep.delays == [1.0]

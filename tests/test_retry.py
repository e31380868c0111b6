"""
Tests for retry_async.
"""

from unittest.mock import AsyncMock, patch

import pytest

from nestedlab.errors import RetryExhaustedError
from nestedlab.services.helpers.retry import retry_async


class Flaky:
    def __init__(self, failures, exc_type=ConnectionError, result="ok"):
        self.failures = failures
        self.exc_type = exc_type
        self.result = result
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.exc_type(f"failure {self.calls}")
        return self.result


class TestRetryAsync:
    @pytest.mark.asyncio
    async def test_first_try(self):
        operation = Flaky(0)
        with patch("nestedlab.services.helpers.retry.asyncio.sleep", new_callable=AsyncMock) as sleep:
            assert await retry_async(operation, attempts=3, delay=5) == "ok"
        assert operation.calls == 1
        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_succeeds_after_failures(self):
        operation = Flaky(2)
        with patch("nestedlab.services.helpers.retry.asyncio.sleep", new_callable=AsyncMock) as sleep:
            assert await retry_async(operation, attempts=3, delay=5, retry_on=(ConnectionError,)) == "ok"
        assert operation.calls == 3
        assert sleep.await_count == 2
        sleep.assert_awaited_with(5)

    @pytest.mark.asyncio
    async def test_exhausted(self):
        operation = Flaky(10)
        with patch("nestedlab.services.helpers.retry.asyncio.sleep", new_callable=AsyncMock) as sleep:
            with pytest.raises(RetryExhaustedError) as exc_info:
                await retry_async(operation, attempts=3, delay=1, description="probe")
        assert operation.calls == 3
        # no sleep after the final attempt
        assert sleep.await_count == 2
        assert exc_info.value.attempts == 3
        assert isinstance(exc_info.value.last_exception, ConnectionError)
        assert "probe failed after 3 attempts" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_unlisted_exception_propagates(self):
        operation = Flaky(1, exc_type=KeyError)
        with patch("nestedlab.services.helpers.retry.asyncio.sleep", new_callable=AsyncMock):
            with pytest.raises(KeyError):
                await retry_async(operation, attempts=5, delay=1, retry_on=(ConnectionError,))
        assert operation.calls == 1

    @pytest.mark.asyncio
    async def test_attempts_must_be_positive(self):
        with pytest.raises(ValueError):
            await retry_async(Flaky(0), attempts=0, delay=1)

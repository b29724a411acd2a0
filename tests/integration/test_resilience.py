"""
Integration tests for core/resilience.py

Tests retry with exponential backoff, as used for the store readiness wait.
"""
from unittest.mock import AsyncMock, patch

import pytest

from core.exceptions import StoreUnavailableError
from core.config import StoreConfig
from core.resilience import RetryConfig, retry_with_backoff

FAST = RetryConfig(max_attempts=3, base_delay=0.001, max_delay=0.01, jitter=0)


class TestRetryConfig:

    def test_exponential_delays(self):
        config = RetryConfig(base_delay=1.0, exponential_base=2.0, max_delay=30.0)
        assert config.delay_for(1) == 1.0
        assert config.delay_for(2) == 2.0
        assert config.delay_for(3) == 4.0

    def test_delay_capped(self):
        config = RetryConfig(base_delay=1.0, max_delay=5.0)
        assert config.delay_for(10) == 5.0


class TestRetryWithBackoff:

    @pytest.mark.asyncio
    async def test_success_first_attempt(self):
        func = AsyncMock(return_value="ready")

        result = await retry_with_backoff(func, config=FAST)

        assert result == "ready"
        assert func.await_count == 1

    @pytest.mark.asyncio
    async def test_retries_until_success(self):
        """Store comes up on the third attempt."""
        func = AsyncMock(side_effect=[
            StoreUnavailableError("locked"),
            StoreUnavailableError("locked"),
            "ready",
        ])

        result = await retry_with_backoff(
            func, config=FAST, retryable_exceptions=(StoreUnavailableError,)
        )

        assert result == "ready"
        assert func.await_count == 3

    @pytest.mark.asyncio
    async def test_raises_after_max_attempts(self):
        func = AsyncMock(side_effect=StoreUnavailableError("down"))

        with pytest.raises(StoreUnavailableError):
            await retry_with_backoff(
                func, config=FAST, retryable_exceptions=(StoreUnavailableError,)
            )
        assert func.await_count == 3

    @pytest.mark.asyncio
    async def test_non_retryable_raises_immediately(self):
        func = AsyncMock(side_effect=ValueError("bad input"))

        with pytest.raises(ValueError):
            await retry_with_backoff(
                func, config=FAST, retryable_exceptions=(StoreUnavailableError,)
            )
        assert func.await_count == 1

    @pytest.mark.asyncio
    async def test_sleeps_with_backoff(self):
        func = AsyncMock(side_effect=[StoreUnavailableError("x"), StoreUnavailableError("x"), "ok"])
        config = RetryConfig(max_attempts=3, base_delay=1.0, jitter=0)

        with patch("core.resilience.asyncio.sleep", new=AsyncMock()) as sleep:
            await retry_with_backoff(func, config=config)

        assert [c.args[0] for c in sleep.await_args_list] == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_waits_at_least_retry_after(self):
        func = AsyncMock(side_effect=[StoreUnavailableError("locked", retry_after=5.0), "ok"])
        config = RetryConfig(max_attempts=2, base_delay=1.0, jitter=0)

        with patch("core.resilience.asyncio.sleep", new=AsyncMock()) as sleep:
            await retry_with_backoff(func, config=config, operation="store readiness")

        sleep.assert_awaited_once_with(5.0)

    def test_from_store_config(self):
        store_config = StoreConfig(ready_max_attempts=7, ready_base_delay=0.5, ready_max_delay=4.0)

        config = RetryConfig.from_store_config(store_config)

        assert (config.max_attempts, config.base_delay, config.max_delay) == (7, 0.5, 4.0)

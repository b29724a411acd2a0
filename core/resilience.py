"""
Retry with exponential backoff for the store readiness wait.

The engine does not serve queries or register jobs until the transactional
store answers; startup retries the ping instead of failing on the first
locked or missing database file.
"""
import asyncio
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from core.config import StoreConfig
from core.observability import get_logger

logger = get_logger(__name__)


@dataclass
class RetryConfig:
    """Backoff schedule: base_delay * exponential_base ** (attempt - 1), capped."""
    max_attempts: int = 3
    base_delay: float = 1.0  # seconds
    max_delay: float = 30.0  # seconds
    exponential_base: float = 2.0
    jitter: float = 0.1  # fraction of the delay added at random

    @classmethod
    def from_store_config(cls, store_config: StoreConfig) -> "RetryConfig":
        return cls(
            max_attempts=store_config.ready_max_attempts,
            base_delay=store_config.ready_base_delay,
            max_delay=store_config.ready_max_delay,
        )

    def delay_for(self, attempt: int) -> float:
        """Backoff delay after the given (1-based) failed attempt, without jitter."""
        return min(
            self.base_delay * (self.exponential_base ** (attempt - 1)),
            self.max_delay
        )


async def retry_with_backoff(
    func: Callable[..., Awaitable[Any]],
    *args,
    config: Optional[RetryConfig] = None,
    retryable_exceptions: tuple = (Exception,),
    operation: Optional[str] = None,
    **kwargs
) -> Any:
    """
    Await ``func(*args, **kwargs)``, retrying retryable failures with backoff.

    An exception carrying ``retry_after`` (e.g. StoreUnavailableError) waits
    at least that long before the next attempt.

    Raises:
        The last exception if all attempts fail, or any non-retryable one at once
    """
    config = config or RetryConfig()
    operation = operation or getattr(func, "__name__", "operation")

    for attempt in range(1, config.max_attempts + 1):
        try:
            return await func(*args, **kwargs)
        except retryable_exceptions as e:
            if attempt == config.max_attempts:
                logger.error(
                    f"{operation} failed after {config.max_attempts} attempts: {e}",
                    extra={"operation": operation, "error": str(e)}
                )
                raise

            delay = config.delay_for(attempt)
            delay += delay * config.jitter * random.random()
            retry_after = getattr(e, "retry_after", None)
            if retry_after:
                delay = max(delay, retry_after)

            logger.warning(
                f"{operation} attempt {attempt}/{config.max_attempts} failed, retrying in {delay:.2f}s",
                extra={"operation": operation, "attempt": attempt, "delay": delay, "error": str(e)}
            )

            await asyncio.sleep(delay)

"""
Retry with capped exponential backoff for external calls.

Delays start at ``initial_delay`` and double up to ``max_delay``.
Each attempt is bounded by ``timeout``; a timed-out attempt counts as a
failure. Nothing is held across the sleep between attempts.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional, TypeVar

from reconciliation.errors import ExternalServiceError

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 3
    initial_delay: float = 1.0
    max_delay: float = 10.0
    multiplier: float = 2.0
    timeout: Optional[float] = 30.0

    @classmethod
    def from_settings(cls, settings) -> "RetryPolicy":
        return cls(
            max_retries=settings.RETRY_MAX_RETRIES,
            initial_delay=settings.RETRY_INITIAL_DELAY_SECONDS,
            max_delay=settings.RETRY_MAX_DELAY_SECONDS,
            timeout=settings.EXTERNAL_TIMEOUT_SECONDS,
        )

    def delays(self) -> List[float]:
        """Sleep before each retry: [1, 2, 4] for the defaults."""
        result = []
        delay = self.initial_delay
        for _ in range(self.max_retries):
            result.append(min(delay, self.max_delay))
            delay *= self.multiplier
        return result


def is_retryable(error: Exception) -> bool:
    if isinstance(error, ExternalServiceError):
        return error.retryable
    return isinstance(error, (asyncio.TimeoutError, ConnectionError, OSError))


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    operation_name: str,
    logger: Optional[logging.Logger] = None,
    should_retry: Callable[[Exception], bool] = is_retryable,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Run ``operation`` until it succeeds or retries are exhausted.

    Raises the last error once ``policy.max_retries`` retries have failed,
    or immediately when ``should_retry`` rejects the error.
    """
    logger = logger or logging.getLogger(__name__)
    delays = policy.delays()
    attempts = policy.max_retries + 1

    for attempt in range(1, attempts + 1):
        try:
            if policy.timeout:
                return await asyncio.wait_for(operation(), timeout=policy.timeout)
            return await operation()
        except Exception as e:
            if attempt >= attempts or not should_retry(e):
                logger.error(
                    f"{operation_name} failed after {attempt} attempt(s): {e}",
                    extra={"operation": operation_name, "attempts": attempt}
                )
                raise

            delay = delays[attempt - 1]
            logger.warning(
                f"{operation_name} attempt {attempt} failed, retrying in {delay}s: {e}",
                extra={"operation": operation_name, "attempt": attempt, "next_retry_seconds": delay}
            )
            await sleep(delay)

    raise RuntimeError("unreachable")

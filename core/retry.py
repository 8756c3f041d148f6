"""Retry and backoff utilities.

Single place for exponential backoff shared by the upstream API client and
any downstream consumer that talks to a flaky service.

Usage:
    config = RetryConfig(max_attempts=5, base_delay=1.0)
    result = await retry_async(lambda: client.fetch(), config, is_retryable)
"""

import asyncio
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Tuple, TypeVar

from core.observability import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""
    max_attempts: int = 5
    base_delay: float = 1.0  # seconds
    max_delay: float = 60.0  # seconds
    exponential_base: float = 2.0
    jitter: float = 0.1  # fraction of the delay
    retry_on_status: Tuple[int, ...] = (429, 500, 502, 503, 504)

    def get_delay(self, attempt: int, retry_after: Optional[float] = None) -> float:
        """Calculate delay before retry number `attempt` (0-based).

        A server-provided Retry-After wins when it is longer than the
        computed backoff, but is still capped at max_delay.
        """
        delay = self.base_delay * (self.exponential_base ** attempt)
        if retry_after is not None:
            delay = max(delay, retry_after)
        delay = min(delay, self.max_delay)
        if self.jitter:
            delay += random.uniform(0, delay * self.jitter)
        return delay


class RetryableError(Exception):
    """Raised by an operation to request a retry.

    Attributes:
        retry_after: Optional server hint in seconds
        status_code: HTTP status that triggered the retry (0 for network errors)
    """

    def __init__(self, message: str, status_code: int = 0, retry_after: Optional[float] = None):
        super().__init__(message)
        self.status_code = status_code
        self.retry_after = retry_after


class RetriesExhausted(Exception):
    """All attempts failed with retryable errors."""

    def __init__(self, last_error: RetryableError, attempts: int):
        super().__init__(f"Gave up after {attempts} attempts: {last_error}")
        self.last_error = last_error
        self.attempts = attempts


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    config: RetryConfig,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    on_retry: Optional[Callable[[int, RetryableError, float], None]] = None,
) -> T:
    """Run `operation` until it succeeds or attempts are exhausted.

    Only RetryableError triggers another attempt; any other exception
    propagates immediately.

    Args:
        operation: Zero-arg coroutine factory; called once per attempt
        config: Retry configuration
        sleep: Sleep function (injectable for tests)
        on_retry: Callback(attempt, error, delay) before each sleep

    Raises:
        RetriesExhausted: When every attempt raised RetryableError
    """
    last_error: Optional[RetryableError] = None
    attempts = max(1, config.max_attempts)
    for attempt in range(attempts):
        try:
            return await operation()
        except RetryableError as e:
            last_error = e
            if attempt + 1 >= attempts:
                break
            delay = config.get_delay(attempt, e.retry_after)
            if on_retry:
                on_retry(attempt + 1, e, delay)
            else:
                logger.warning(
                    f"Retryable failure ({e}), retrying in {delay:.1f}s "
                    f"(attempt {attempt + 1}/{attempts})",
                    extra_fields={"status_code": e.status_code},
                )
            await sleep(delay)

    raise RetriesExhausted(last_error, attempts)

"""Retry logic with exponential backoff for pipeline steps."""

import asyncio
import logging
import random
from typing import Any, Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


class RetryConfig:
    """Configuration for retry behavior."""

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        exponential_base: float = 2.0,
        jitter: bool = False,
    ):
        """
        Initialize retry configuration.

        Args:
            max_attempts: Maximum number of attempts, first attempt included
            base_delay: Delay in seconds before the first retry
            max_delay: Maximum delay in seconds
            exponential_base: Base for exponential backoff (2.0 = double each time)
            jitter: Add random jitter to delays
        """
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter

    def calculate_delay(self, attempt: int, retry_after: Optional[float] = None) -> float:
        """
        Calculate delay before the given retry.

        Args:
            attempt: Retry number (1 for the first retry)
            retry_after: Optional Retry-After value in seconds

        Returns:
            Delay in seconds
        """
        if retry_after is not None:
            delay = min(retry_after, self.max_delay)
        else:
            delay = min(
                self.base_delay * (self.exponential_base ** (attempt - 1)),
                self.max_delay,
            )

        if self.jitter:
            jitter_amount = delay * 0.25  # +/- 25%
            delay += random.uniform(-jitter_amount, jitter_amount)
            delay = max(0.0, delay)

        return delay


async def sleep_unless_cancelled(delay: float, cancel_event: Optional[asyncio.Event]) -> bool:
    """
    Sleep for ``delay`` seconds, waking early if ``cancel_event`` is set.

    Returns:
        True if the sleep was interrupted by cancellation
    """
    if cancel_event is None:
        await asyncio.sleep(delay)
        return False
    if cancel_event.is_set():
        return True
    try:
        await asyncio.wait_for(cancel_event.wait(), timeout=delay)
        return True
    except asyncio.TimeoutError:
        return False


async def retry_async(
    func: Callable[[int], Awaitable[Any]],
    *,
    config: Optional[RetryConfig] = None,
    is_retryable: Callable[[BaseException], bool],
    is_cancelled: Callable[[], bool] = lambda: False,
    on_cancelled: Callable[[], BaseException],
    on_retry: Optional[Callable[[int, float, BaseException], None]] = None,
    cancel_event: Optional[asyncio.Event] = None,
) -> Any:
    """
    Retry an async callable with exponential backoff and cooperative cancellation.

    ``func`` receives the attempt number (1-based). Cancellation is checked
    before every attempt and interrupts the backoff sleep; a cancelled retry
    never fires.

    Args:
        func: Async callable to run
        config: Retry configuration (uses defaults if None)
        is_retryable: Predicate deciding whether a failure is retried
        is_cancelled: Predicate polled before each attempt
        on_cancelled: Factory for the exception raised on cancellation
        on_retry: Callback invoked as (next_attempt, delay, error) before sleeping
        cancel_event: Event that interrupts backoff sleeps

    Returns:
        Result from func

    Raises:
        Last exception if all attempts are exhausted or the failure is not retryable
    """
    if config is None:
        config = RetryConfig()

    max_attempts = max(1, config.max_attempts)

    for attempt in range(1, max_attempts + 1):
        if is_cancelled():
            raise on_cancelled()
        try:
            return await func(attempt)
        except Exception as e:
            if not is_retryable(e):
                raise
            if attempt >= max_attempts:
                logger.error(f"Retry exhausted after {attempt} attempts: {e}")
                raise

            retry_after = getattr(e, "retry_after", None)
            delay = config.calculate_delay(attempt, retry_after)

            logger.warning(
                f"Attempt {attempt}/{max_attempts} failed: {e}. "
                f"Retrying in {delay:.2f}s..."
            )
            if on_retry is not None:
                on_retry(attempt + 1, delay, e)

            if await sleep_unless_cancelled(delay, cancel_event):
                raise on_cancelled()

    # The last attempt always returns or raises
    raise on_cancelled()


class RateLimitError(Exception):
    """Exception for rate limit errors."""

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class ServiceUnavailableError(Exception):
    """Exception for service unavailable errors."""

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


# Default retry configuration for pipeline steps
DEFAULT_STEP_RETRY_CONFIG = RetryConfig(max_attempts=3, base_delay=1.0)

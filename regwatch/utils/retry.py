"""Unified retry logic with exponential backoff and jitter.

One retry wrapper serves both the fetch client and the agent runner:

- Exponential backoff with configurable base delay and max delay
- Full jitter or proportional jitter to avoid detectable periodic patterns
- Selective retry through an exception tuple or an ``is_retryable`` predicate
- A separate, much longer backoff when the failure is a rate-limit signal

Usage:
    result = await retry_async(
        lambda: fetch_page(url),
        config=FETCH_RETRY,
    )

    async def on_retry_callback(error: Exception, attempt: int) -> None:
        logger.warning("retrying", attempt=attempt, error=str(error))

    result = await retry_async(func, config=AGENT_RETRY, on_retry=on_retry_callback)
"""

import asyncio
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TypeVar

from regwatch.utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass
class RetryConfig:
    """Configuration for retry behavior.

    Attributes:
        max_retries: Maximum number of retry attempts (default: 3)
        base_delay: Base delay in seconds before first retry (default: 1.0)
        max_delay: Maximum delay in seconds between retries (default: 60.0)
        backoff_factor: Exponential backoff multiplier (default: 2.0)
        jitter: Whether to add random jitter to delays (default: True)
        jitter_range: Range for jitter as fraction of delay (default: 0.1 = ±10%)
        full_jitter: Draw the delay uniformly from [0, capped backoff] instead
            of applying ±jitter_range (default: False)
        retryable_exceptions: Tuple of exception types to retry (default: all)
        is_retryable: Optional predicate, consulted after the exception tuple
        rate_limit: Optional config used when ``is_rate_limit`` matches the error

    Examples:
        # Fast retries for transient errors
        RetryConfig(max_retries=5, base_delay=0.5, max_delay=5.0)

        # Predicate-driven retries with a separate rate-limit policy
        RetryConfig(
            is_retryable=is_retryable,
            is_rate_limit=is_rate_limit,
            rate_limit=RetryConfig(base_delay=30.0, max_delay=300.0),
        )
    """

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 60.0
    backoff_factor: float = 2.0
    jitter: bool = True
    jitter_range: float = 0.1
    full_jitter: bool = False
    retryable_exceptions: tuple[type[Exception], ...] = field(default_factory=lambda: (Exception,))
    is_retryable: Callable[[Exception], bool] | None = None
    is_rate_limit: Callable[[Exception], bool] | None = None
    rate_limit: "RetryConfig | None" = None

    def __post_init__(self):
        """Validate configuration parameters."""
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.base_delay <= 0:
            raise ValueError("base_delay must be > 0")
        if self.max_delay < self.base_delay:
            raise ValueError("max_delay must be >= base_delay")
        if self.backoff_factor < 1:
            raise ValueError("backoff_factor must be >= 1")
        if not 0 <= self.jitter_range <= 1:
            raise ValueError("jitter_range must be between 0 and 1")

    def calculate_delay(self, attempt: int) -> float:
        """Calculate delay for a given retry attempt.

        Args:
            attempt: The retry attempt number (0-indexed)

        Returns:
            Delay in seconds, with exponential backoff and optional jitter
        """
        delay = min(self.base_delay * (self.backoff_factor**attempt), self.max_delay)

        if self.full_jitter:
            return random.uniform(0, delay)

        if self.jitter:
            jitter_amount = delay * self.jitter_range
            jitter = random.uniform(-jitter_amount, jitter_amount)
            delay = max(0, delay + jitter)

        return delay

    def should_retry(self, error: Exception) -> bool:
        """Return True when ``error`` qualifies for another attempt."""
        if not isinstance(error, self.retryable_exceptions):
            return False
        if self.is_retryable is not None:
            return self.is_retryable(error)
        return True

    def delay_for(self, error: Exception, attempt: int) -> float:
        """Delay before the next attempt, honouring the rate-limit policy."""
        if self.rate_limit is not None and self.is_rate_limit and self.is_rate_limit(error):
            delay = self.rate_limit.calculate_delay(attempt)
            retry_after = getattr(error, "retry_after", None)
            if retry_after:
                delay = max(delay, min(float(retry_after), self.rate_limit.max_delay))
            return delay
        return self.calculate_delay(attempt)


async def retry_async(
    func: Callable[[], Awaitable[T]],
    config: RetryConfig | None = None,
    on_retry: Callable[[Exception, int], Awaitable[None]] | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Retry an async function with exponential backoff.

    Args:
        func: Async function to retry (takes no arguments)
        config: Retry configuration (uses defaults if None)
        on_retry: Optional callback called before each retry
                 Signature: async def on_retry(error: Exception, attempt: int)
        sleep: Awaitable used to wait between attempts (tests pass a fake)

    Returns:
        The return value of func() on success

    Raises:
        The last exception if all retries are exhausted, or the first
        non-retryable exception
    """
    config = config or RetryConfig()
    last_exception: Exception | None = None

    for attempt in range(config.max_retries + 1):
        try:
            return await func()

        except Exception as e:
            last_exception = e

            if not config.should_retry(e):
                logger.debug(
                    "retry_skipped_non_retryable_exception",
                    exception_type=type(e).__name__,
                    error=str(e),
                )
                raise

            if attempt >= config.max_retries:
                logger.error(
                    "retry_exhausted",
                    attempts=attempt + 1,
                    exception=type(e).__name__,
                    error=str(e),
                )
                raise

            delay = config.delay_for(e, attempt)

            logger.info(
                "retry_attempt",
                attempt=attempt + 1,
                max_retries=config.max_retries,
                delay_seconds=round(delay, 2),
                exception=type(e).__name__,
                error=str(e),
            )

            if on_retry:
                try:
                    await on_retry(e, attempt + 1)
                except Exception as callback_error:
                    logger.warning(
                        "retry_callback_failed",
                        error=str(callback_error),
                    )

            await sleep(delay)

    # This should never be reached, but satisfy type checker
    if last_exception:
        raise last_exception
    raise RuntimeError("retry_async: unexpected code path")


def _default_is_retryable(error: Exception) -> bool:
    from regwatch.exceptions import is_retryable

    return is_retryable(error)


def _default_is_rate_limit(error: Exception) -> bool:
    from regwatch.exceptions import is_rate_limit

    return is_rate_limit(error)


# Pre-configured retry strategies

# Page fetches: full jitter, 1s base, 30s cap
FETCH_RETRY = RetryConfig(
    max_retries=3,
    base_delay=1.0,
    max_delay=30.0,
    backoff_factor=2.0,
    full_jitter=True,
    is_retryable=_default_is_retryable,
)

# Long backoff used when the LLM backend signals a rate limit
AGENT_RATE_LIMIT_RETRY = RetryConfig(
    max_retries=3,
    base_delay=30.0,
    max_delay=300.0,
    backoff_factor=2.0,
)

# LLM round-trips
AGENT_RETRY = RetryConfig(
    max_retries=3,
    base_delay=1.0,
    max_delay=30.0,
    backoff_factor=2.0,
    is_retryable=_default_is_retryable,
    is_rate_limit=_default_is_rate_limit,
    rate_limit=AGENT_RATE_LIMIT_RETRY,
)

# Database connection retries
DATABASE_RETRY = RetryConfig(
    max_retries=3,
    base_delay=1.0,
    max_delay=10.0,
    backoff_factor=2.0,
)

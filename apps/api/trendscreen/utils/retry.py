"""
Retry with exponential backoff and jitter.

One combinator serves provider calls and database calls alike:

    result = await retry_async(
        lambda: provider.get_daily_ohlcv("AAPL", 5),
        is_retryable=is_transient_error,
        policy=RetryPolicy(max_attempts=3, base_delay=1.0),
        name="prices:AAPL",
    )

Non-retryable errors propagate immediately. Retryable errors are retried until
``policy.max_attempts`` is reached, after which RetryExhaustedError is raised
with the last error attached.
"""

import asyncio
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

import httpx
import structlog
from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError

from trendscreen.exceptions import ProviderError, RetryExhaustedError, TransientProviderError

logger = structlog.get_logger()

T = TypeVar("T")

RETRYABLE_STATUS = {408, 429}
RETRYABLE_MESSAGES = ("rate limit", "quota exceeded", "timeout", "timed out")


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    multiplier: float = 2.0
    jitter: float = 0.25  # +/-25%, then clamped to max_delay

    @classmethod
    def from_settings(cls, settings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.RETRY_MAX_ATTEMPTS,
            base_delay=settings.RETRY_BASE_DELAY,
            max_delay=settings.RETRY_MAX_DELAY,
            multiplier=settings.RETRY_MULTIPLIER,
        )

    def delay_for(self, attempt: int, rng: Callable[[], float] = random.random) -> float:
        """Delay before the retry that follows failed attempt number ``attempt`` (1-based)."""
        delay = min(self.base_delay * (self.multiplier ** (attempt - 1)), self.max_delay)
        if self.jitter > 0:
            delay += (rng() - 0.5) * 2 * self.jitter * delay
        return min(max(0.0, delay), self.max_delay)


DEFAULT_RETRY_POLICY = RetryPolicy()


def is_retryable_status(status_code: int) -> bool:
    return status_code >= 500 or status_code in RETRYABLE_STATUS


def is_transient_error(exc: BaseException) -> bool:
    """Default predicate: network faults, 5xx/408/429, timeouts and dropped DB connections."""
    if isinstance(exc, TransientProviderError):
        return True
    if isinstance(exc, ProviderError):
        return False
    if isinstance(exc, httpx.HTTPStatusError):
        return is_retryable_status(exc.response.status_code)
    if isinstance(exc, (httpx.TransportError, ConnectionError, TimeoutError, asyncio.TimeoutError)):
        return True
    if isinstance(exc, (OperationalError, InterfaceError)):
        return True
    if isinstance(exc, DBAPIError) and exc.connection_invalidated:
        return True

    message = str(exc).lower()
    return any(token in message for token in RETRYABLE_MESSAGES)


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    is_retryable: Callable[[BaseException], bool] = is_transient_error,
    policy: RetryPolicy = DEFAULT_RETRY_POLICY,
    name: str = "operation",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    rng: Callable[[], float] = random.random,
) -> T:
    last_error: Optional[BaseException] = None

    for attempt in range(1, policy.max_attempts + 1):
        try:
            return await operation()
        except Exception as e:
            if not is_retryable(e):
                raise
            last_error = e

            if attempt >= policy.max_attempts:
                logger.warning("Retry exhausted", operation=name, attempts=attempt, error=str(e))
                raise RetryExhaustedError(attempt, e) from e

            delay = policy.delay_for(attempt, rng)
            logger.info(
                "Attempt failed, retrying",
                operation=name,
                attempt=attempt,
                max_attempts=policy.max_attempts,
                delay=round(delay, 3),
                error=str(e),
            )
            await sleep(delay)

    raise RetryExhaustedError(policy.max_attempts, last_error)

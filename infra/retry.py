"""
Bounded retry behind a RateLimiter.

Only retryable kinds (rate limits and timeouts) are retried; everything
else propagates on the first attempt. Each attempt is wrapped in an
explicit timeout.
"""
import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

from core.exceptions import RateLimitError, RequestTimeoutError, TradingError, is_retryable
from infra.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_TIMEOUT_SECONDS = 10.0
DEFAULT_MAX_ATTEMPTS = 3


async def call_with_retry(
    operation: Callable[[], Awaitable[T]],
    limiter: RateLimiter,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
    description: str = "call",
) -> T:
    """
    Run `operation` behind `limiter`, retrying RateLimitError/RequestTimeoutError.

    The first attempt waits the plain interval; retries wait with backoff.
    Raises the last error once attempts are exhausted.
    """
    if max_attempts < 1:
        raise ValueError(f"max_attempts must be >= 1 (got {max_attempts})")

    last_error: Optional[TradingError] = None
    for attempt in range(1, max_attempts + 1):
        if attempt == 1:
            await limiter.wait()
        else:
            await limiter.wait_with_backoff()

        try:
            result = await asyncio.wait_for(operation(), timeout=timeout)
        except (RateLimitError, RequestTimeoutError) as exc:
            last_error = exc
        except asyncio.TimeoutError as exc:
            last_error = RequestTimeoutError(
                f"{description} timed out after {timeout:.1f}s",
                source=description,
                original=exc,
            )
        else:
            limiter.record_success()
            return result

        limiter.record_failure()
        if attempt < max_attempts:
            logger.warning(
                f"{description}: {last_error.kind.value} on attempt {attempt}/{max_attempts}, retrying"
            )

    logger.warning(f"{description}: giving up after {max_attempts} attempts: {last_error}")
    raise last_error


async def retry_result(
    operation: Callable[[], Awaitable[T]],
    limiter: RateLimiter,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    description: str = "call",
) -> T:
    """
    Retry an operation that reports failure through a result object.

    The result must expose `success` and `error_kind`. Attempts whose
    error_kind is retryable are repeated after a backoff wait; the final
    result is returned as-is.
    """
    if max_attempts < 1:
        raise ValueError(f"max_attempts must be >= 1 (got {max_attempts})")

    result = None
    for attempt in range(1, max_attempts + 1):
        if attempt == 1:
            await limiter.wait()
        else:
            await limiter.wait_with_backoff()

        result = await operation()
        if result.success:
            limiter.record_success()
            return result
        if not is_retryable(result.error_kind):
            return result

        limiter.record_failure()
        if attempt < max_attempts:
            logger.warning(
                f"{description}: {result.error_kind.value} on attempt {attempt}/{max_attempts}, retrying"
            )
    return result

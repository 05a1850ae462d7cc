"""
Rate Limiter with exponential backoff

Paces calls to one external resource (market data, quotes, ...). Every
caller awaits `wait()` before touching the resource; callers serialize
through an asyncio.Lock so only one of them can be "next" at a time.

After failures the spacing grows as min_interval * 2^failures, capped at
max_backoff, and drops back to min_interval after one success.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, Optional

from infra.clock import Clock

logger = logging.getLogger(__name__)


@dataclass
class RateLimitStats:
    """Statistics for rate limit monitoring"""
    calls: int = 0
    waits: int = 0
    total_wait_seconds: float = 0.0
    max_wait_seconds: float = 0.0
    successes: int = 0
    failures: int = 0

    def record_wait(self, wait_seconds: float) -> None:
        self.calls += 1
        if wait_seconds > 0:
            self.waits += 1
            self.total_wait_seconds += wait_seconds
            self.max_wait_seconds = max(self.max_wait_seconds, wait_seconds)

    def throttled_pct(self) -> float:
        if self.calls == 0:
            return 0.0
        return (self.waits / self.calls) * 100.0


class RateLimiter:
    """
    Minimum-interval limiter for a single external resource.

    Usage:
        limiter = RateLimiter("quotes", min_interval=2.0)

        await limiter.wait()
        try:
            quote = await service.get_quote(...)
            limiter.record_success()
        except RateLimitError:
            limiter.record_failure()
    """

    def __init__(
        self,
        name: str,
        min_interval: float = 2.0,
        max_backoff: float = 30.0,
        clock: Optional[Clock] = None,
        metrics=None,
    ):
        if min_interval < 0:
            raise ValueError(f"min_interval must be >= 0 (got {min_interval})")
        self.name = name
        self.min_interval = min_interval
        self.max_backoff = max(max_backoff, min_interval)
        self.consecutive_failures = 0
        self._clock = clock or Clock()
        self._metrics = metrics
        self._lock = asyncio.Lock()
        self._last_call: Optional[float] = None
        self._stats = RateLimitStats()

        logger.info(
            f"RateLimiter[{name}] initialized: min_interval={min_interval:.2f}s, "
            f"max_backoff={self.max_backoff:.1f}s"
        )

    def current_delay(self) -> float:
        """Spacing currently required between calls, including backoff."""
        if self.consecutive_failures == 0:
            return self.min_interval
        # Cap the exponent so a long failure streak cannot overflow.
        exponent = min(self.consecutive_failures, 32)
        return min(self.min_interval * (2 ** exponent), self.max_backoff)

    def _remaining(self, spacing: float) -> float:
        if self._last_call is None:
            return 0.0
        elapsed = self._clock.monotonic() - self._last_call
        return max(0.0, spacing - elapsed)

    async def wait(self) -> float:
        """Block until min_interval has passed since the previous call. Returns seconds waited."""
        return await self._acquire(self.min_interval)

    async def wait_with_backoff(self) -> float:
        """Like wait(), but spacing grows with consecutive failures."""
        return await self._acquire(self.current_delay())

    async def _acquire(self, spacing: float) -> float:
        async with self._lock:
            delay = self._remaining(spacing)
            if delay > 0:
                logger.debug(
                    f"RateLimiter[{self.name}]: waiting {delay:.2f}s "
                    f"(failures={self.consecutive_failures})"
                )
                await self._clock.sleep(delay)
            self._last_call = self._clock.monotonic()
            self._stats.record_wait(delay)

        if self._metrics is not None:
            self._metrics.record_rate_limit_wait(self.name, delay, self.consecutive_failures)
        return delay

    def record_success(self) -> None:
        if self.consecutive_failures:
            logger.info(
                f"RateLimiter[{self.name}]: recovered after "
                f"{self.consecutive_failures} consecutive failures"
            )
        self.consecutive_failures = 0
        self._stats.successes += 1

    def record_failure(self) -> None:
        self.consecutive_failures += 1
        self._stats.failures += 1
        logger.warning(
            f"RateLimiter[{self.name}]: failure #{self.consecutive_failures}, "
            f"next spacing {self.current_delay():.1f}s"
        )

    def get_stats(self) -> Dict[str, float]:
        return {
            "calls": self._stats.calls,
            "waits": self._stats.waits,
            "throttled_pct": self._stats.throttled_pct(),
            "total_wait_seconds": self._stats.total_wait_seconds,
            "max_wait_seconds": self._stats.max_wait_seconds,
            "successes": self._stats.successes,
            "failures": self._stats.failures,
            "consecutive_failures": self.consecutive_failures,
            "current_delay": self.current_delay(),
        }

    def reset_stats(self) -> None:
        self._stats = RateLimitStats()

"""
Bounded-concurrency batch analysis.

Runs one async call per token with at most `concurrency_limit` calls in
flight. Each token is looked up in the cache first; only misses go
through the RateLimiter to the upstream. Every item gets its own result,
in input order, and one failure never aborts the batch.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, List, Optional, Sequence

from core.exceptions import ErrorKind, classify
from infra.cache import CacheStore
from infra.clock import Clock
from infra.rate_limiter import RateLimiter
from infra.retry import DEFAULT_MAX_ATTEMPTS, DEFAULT_TIMEOUT_SECONDS, call_with_retry

logger = logging.getLogger(__name__)

DEFAULT_CONCURRENCY_LIMIT = 3


@dataclass(frozen=True)
class BatchItemResult:
    token_address: str
    success: bool
    value: Any = None
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    cached: bool = False


class BatchOrchestrator:
    def __init__(
        self,
        cache: CacheStore,
        limiter: RateLimiter,
        concurrency_limit: int = DEFAULT_CONCURRENCY_LIMIT,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        clock: Optional[Clock] = None,
        metrics=None,
    ):
        self.cache = cache
        self.limiter = limiter
        self.concurrency_limit = concurrency_limit
        self.max_attempts = max_attempts
        self.timeout = timeout
        self.clock = clock or Clock()
        self.metrics = metrics
        self.in_flight = 0
        self.max_in_flight = 0

    async def analyze_batch(
        self,
        token_addresses: Sequence[str],
        analyze_one: Callable[[str], Awaitable[Any]],
        concurrency_limit: Optional[int] = None,
    ) -> List[BatchItemResult]:
        limit = self.concurrency_limit if concurrency_limit is None else concurrency_limit
        if limit < 1:
            reason = f"concurrency_limit must be >= 1 (got {limit})"
            logger.warning(f"Batch rejected: {reason}")
            return [
                BatchItemResult(token_address=t, success=False, error=reason, error_kind=ErrorKind.VALIDATION)
                for t in token_addresses
            ]
        if not token_addresses:
            return []

        started = self.clock.monotonic()
        semaphore = asyncio.Semaphore(limit)
        results = await asyncio.gather(
            *(self._run_one(token, analyze_one, semaphore) for token in token_addresses)
        )

        duration = self.clock.monotonic() - started
        failures = sum(1 for r in results if not r.success)
        cached = sum(1 for r in results if r.cached)
        logger.info(
            f"Batch of {len(results)}: {len(results) - failures} ok, {failures} failed, "
            f"{cached} cached ({duration:.2f}s, peak in-flight {self.max_in_flight})"
        )
        if self.metrics is not None:
            self.metrics.record_batch(duration)
        return list(results)

    async def _run_one(
        self,
        token_address: str,
        analyze_one: Callable[[str], Awaitable[Any]],
        semaphore: asyncio.Semaphore,
    ) -> BatchItemResult:
        hit, value = self.cache.lookup(token_address)
        if hit:
            return BatchItemResult(token_address=token_address, success=True, value=value, cached=True)

        try:
            async with semaphore:
                self.in_flight += 1
                self.max_in_flight = max(self.max_in_flight, self.in_flight)
                try:
                    value = await call_with_retry(
                        lambda: analyze_one(token_address),
                        self.limiter,
                        max_attempts=self.max_attempts,
                        timeout=self.timeout,
                        description=f"analyze {token_address[:8]}",
                    )
                finally:
                    self.in_flight -= 1
        except Exception as exc:
            kind = classify(exc)
            if kind is ErrorKind.UNKNOWN:
                logger.error(f"Batch item {token_address[:8]} failed: {exc}", exc_info=True)
            else:
                logger.warning(f"Batch item {token_address[:8]} failed ({kind.value}): {exc}")
            return BatchItemResult(
                token_address=token_address,
                success=False,
                error=str(exc) or kind.value,
                error_kind=kind,
            )

        self.cache.set(token_address, value)
        return BatchItemResult(token_address=token_address, success=True, value=value)

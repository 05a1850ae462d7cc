"""
External service interfaces and in-process implementations.

The engine only ever talks to market data, quotes, swap execution and
analytics through these narrow interfaces.
"""

import logging
import random
import uuid
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Dict, Mapping, Optional

from core.exceptions import ExecutionError, InsufficientFundsError
from core.models import MarketSnapshot, Quote, SwapResult
from infra.cache import CacheStore
from infra.rate_limiter import RateLimiter
from infra.retry import DEFAULT_MAX_ATTEMPTS, DEFAULT_TIMEOUT_SECONDS, call_with_retry

if TYPE_CHECKING:
    from strategy.analysis import AnalysisBundle  # noqa: F401

logger = logging.getLogger(__name__)


class MarketDataProvider(ABC):
    @abstractmethod
    async def get_market_snapshot(self, token_address: str) -> Optional[MarketSnapshot]:
        """Current price/liquidity/holders for a token, or None if the token is unknown."""


class QuoteService(ABC):
    @abstractmethod
    async def get_quote(self, input_asset: str, output_asset: str, amount: float) -> Quote:
        """Raises QuoteUnavailableError when no route exists."""


class ExecutionVenue(ABC):
    @abstractmethod
    async def submit_swap(self, quote: Quote, signer: Any = None) -> SwapResult:
        """Execute the quoted swap. Raises ExecutionError / InsufficientFundsError."""


class AnalyticsSource(ABC):
    @abstractmethod
    async def get_analysis(self, token_address: str) -> Optional["AnalysisBundle"]:
        """Prediction/technical/sentiment payloads for a token, or None if there are none."""


class SimulatedExecutionVenue(ExecutionVenue):
    """
    Paper-trading venue.

    Fills at the quote's expected output minus a random slippage in
    [0, max_slippage_pct]. Pass a seeded `rng` for reproducible fills.
    """

    def __init__(self, max_slippage_pct: float = 2.0, rng: Optional[random.Random] = None,
                 available_balance: Optional[float] = None):
        self.max_slippage_pct = max_slippage_pct
        self.available_balance = available_balance
        self._rng = rng or random.Random()
        self.submitted = 0

    async def submit_swap(self, quote: Quote, signer: Any = None) -> SwapResult:
        if quote.expected_output <= 0:
            raise ExecutionError(f"quote for {quote.output_asset} has no output", source="simulated")
        if self.available_balance is not None and quote.input_amount > self.available_balance:
            raise InsufficientFundsError(
                f"need {quote.input_amount:.6f} {quote.input_asset[:8]}, have {self.available_balance:.6f}",
                source="simulated",
            )

        slippage = self._rng.uniform(0.0, self.max_slippage_pct) / 100.0
        actual_output = quote.expected_output * (1.0 - slippage)
        if self.available_balance is not None:
            self.available_balance -= quote.input_amount
        self.submitted += 1

        tx_id = f"sim_{uuid.uuid4().hex[:16]}"
        logger.info(
            f"Simulated swap {tx_id}: {quote.input_amount:.6f} -> {actual_output:.6f} "
            f"(slippage {slippage * 100:.2f}%)"
        )
        return SwapResult(tx_id=tx_id, actual_output=actual_output)


class StaticAnalyticsSource(AnalyticsSource):
    """Serves pre-computed bundles, e.g. loaded from an analysis feed file."""

    def __init__(self, bundles: Optional[Mapping[str, "AnalysisBundle"]] = None):
        self._bundles: Dict[str, "AnalysisBundle"] = dict(bundles or {})

    def update(self, token_address: str, bundle: "AnalysisBundle") -> None:
        self._bundles[token_address] = bundle

    async def get_analysis(self, token_address: str) -> Optional["AnalysisBundle"]:
        return self._bundles.get(token_address)


class CachedMarketData(MarketDataProvider):
    """
    MarketDataProvider front: cache first, then the rate-limited upstream.

    Uncached lookups go through the shared market-data RateLimiter with
    bounded retry on rate limits and timeouts. "Not found" answers are
    cached like any other answer.
    """

    def __init__(
        self,
        provider: MarketDataProvider,
        cache: CacheStore,
        limiter: RateLimiter,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ):
        self.provider = provider
        self.cache = cache
        self.limiter = limiter
        self.max_attempts = max_attempts
        self.timeout = timeout

    async def get_market_snapshot(self, token_address: str) -> Optional[MarketSnapshot]:
        async def fetch():
            return await call_with_retry(
                lambda: self.provider.get_market_snapshot(token_address),
                self.limiter,
                max_attempts=self.max_attempts,
                timeout=self.timeout,
                description=f"market snapshot {token_address[:8]}",
            )

        return await self.cache.get_or_fetch(token_address, fetch)


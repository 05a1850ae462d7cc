"""
Tests for the paper-trading venue, static analytics and the cached market-data front.
"""
import random

import pytest

from core.exceptions import ExecutionError, InsufficientFundsError, RateLimitError
from core.models import Quote
from core.venue import CachedMarketData, SimulatedExecutionVenue, StaticAnalyticsSource
from infra.cache import CacheStore
from infra.rate_limiter import RateLimiter
from strategy.analysis import AnalysisBundle
from tests.helpers import FakeClock, FakeMarketData, make_snapshot

TOKEN = "TokenMint1111111111111111111111111111111111"


def quote(expected=100.0, input_amount=10.0):
    return Quote("BASE", TOKEN, input_amount, expected)


class TestSimulatedExecutionVenue:
    @pytest.mark.asyncio
    async def test_fill_within_slippage_bound(self):
        venue = SimulatedExecutionVenue(max_slippage_pct=2.0, rng=random.Random(7))

        for _ in range(20):
            swap = await venue.submit_swap(quote())
            assert 98.0 <= swap.actual_output <= 100.0
            assert swap.tx_id.startswith("sim_")

        assert venue.submitted == 20

    @pytest.mark.asyncio
    async def test_seeded_fills_are_reproducible(self):
        first = SimulatedExecutionVenue(rng=random.Random(42))
        second = SimulatedExecutionVenue(rng=random.Random(42))

        assert (await first.submit_swap(quote())).actual_output == (await second.submit_swap(quote())).actual_output

    @pytest.mark.asyncio
    async def test_empty_quote_rejected(self):
        with pytest.raises(ExecutionError):
            await SimulatedExecutionVenue().submit_swap(quote(expected=0.0))

    @pytest.mark.asyncio
    async def test_balance_enforced(self):
        venue = SimulatedExecutionVenue(available_balance=15.0)

        await venue.submit_swap(quote(input_amount=10.0))
        with pytest.raises(InsufficientFundsError):
            await venue.submit_swap(quote(input_amount=10.0))

        assert venue.available_balance == pytest.approx(5.0)


class TestStaticAnalyticsSource:
    @pytest.mark.asyncio
    async def test_serves_and_updates_bundles(self):
        source = StaticAnalyticsSource()
        assert await source.get_analysis(TOKEN) is None

        bundle = AnalysisBundle(token_address=TOKEN, price=1.0)
        source.update(TOKEN, bundle)

        assert await source.get_analysis(TOKEN) is bundle


class TestCachedMarketData:
    @pytest.fixture
    def setup(self):
        clock = FakeClock()
        provider = FakeMarketData({TOKEN: make_snapshot(TOKEN, price=3.0)})
        front = CachedMarketData(
            provider,
            CacheStore("market_snapshot", 30, clock=clock),
            RateLimiter("market_data", min_interval=1.0, clock=clock),
        )
        return clock, provider, front

    @pytest.mark.asyncio
    async def test_repeat_lookup_served_from_cache(self, setup):
        clock, provider, front = setup

        await front.get_market_snapshot(TOKEN)
        snapshot = await front.get_market_snapshot(TOKEN)

        assert snapshot.price == 3.0
        assert provider.calls == [TOKEN]

    @pytest.mark.asyncio
    async def test_expired_entry_refetched(self, setup):
        clock, provider, front = setup

        await front.get_market_snapshot(TOKEN)
        clock.advance(30)
        await front.get_market_snapshot(TOKEN)

        assert provider.calls == [TOKEN, TOKEN]

    @pytest.mark.asyncio
    async def test_not_found_is_cached(self, setup):
        clock, provider, front = setup

        assert await front.get_market_snapshot("unknown") is None
        assert await front.get_market_snapshot("unknown") is None
        assert provider.calls == ["unknown"]

    @pytest.mark.asyncio
    async def test_rate_limit_retried_with_backoff(self, setup):
        clock, provider, front = setup
        provider.fail(TOKEN, RateLimitError("429"))

        snapshot = await front.get_market_snapshot(TOKEN)

        assert snapshot.price == 3.0
        assert provider.calls == [TOKEN, TOKEN]
        assert clock.sleeps == [pytest.approx(2.0)]

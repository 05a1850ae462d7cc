"""
Pytest configuration and shared fixtures.

Every fixture builds fresh instances; nothing in the engine is a process
singleton, so tests need no reset hooks.
"""
import pytest

from core.trade_limits import SignalValidator
from core.execution import TradeExecutor
from infra.metrics import MetricsRecorder
from tests.helpers import (
    FakeAnalytics,
    FakeClock,
    FakeMarketData,
    FakeQuoteService,
    FakeVenue,
    make_config,
)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config():
    return make_config()


@pytest.fixture
def metrics():
    """Exporting recorder on a private registry (no HTTP server is started)."""
    return MetricsRecorder(enabled=True)


@pytest.fixture
def market():
    return FakeMarketData()


@pytest.fixture
def quotes():
    return FakeQuoteService()


@pytest.fixture
def venue():
    return FakeVenue()


@pytest.fixture
def analytics():
    return FakeAnalytics()


@pytest.fixture
def make_executor(market, quotes, venue, clock, metrics):
    """Factory: TradeExecutor over the fake services, with config overrides."""

    def _make(**overrides):
        cfg = make_config(**overrides)
        return TradeExecutor(
            cfg,
            market_data=market,
            quote_service=quotes,
            venue=venue,
            validator=SignalValidator(cfg),
            clock=clock,
            metrics=metrics,
        )

    return _make

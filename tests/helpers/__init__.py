"""Test helpers for the trading engine test suite"""

from tests.helpers.fakes import (
    START_TIME,
    FakeAnalytics,
    FakeClock,
    FakeMarketData,
    FakeQuoteService,
    FakeVenue,
    make_config,
    make_snapshot,
)

__all__ = [
    "START_TIME",
    "FakeAnalytics",
    "FakeClock",
    "FakeMarketData",
    "FakeQuoteService",
    "FakeVenue",
    "make_config",
    "make_snapshot",
]

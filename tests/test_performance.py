"""
Tests for the trade log and performance tracking.
"""
from datetime import timedelta

import pytest

from analytics.performance import PerformanceStats, PerformanceTracker
from analytics.trade_log import TradeLog, TradeRecord
from core.models import Quote, Signal, SignalType, TradeStatus
from tests.helpers import START_TIME

TOKEN = "TokenMint1111111111111111111111111111111111"


def make_record(n, actual_output=None, status=TradeStatus.COMPLETED, input_amount=100.0, token=TOKEN):
    signal = Signal(token_address=token, type=SignalType.BUY, confidence=0.8, amount=input_amount)
    quote = Quote("BASE", token, input_amount, input_amount)
    return TradeRecord(
        id=f"trade_{n}",
        token_address=token,
        signal=signal,
        status=status,
        timestamp=START_TIME + timedelta(minutes=n),
        quote=quote,
        actual_output=actual_output,
        error=None if status is TradeStatus.COMPLETED else "no route",
    )


@pytest.fixture
def trade_log():
    log = TradeLog()
    for n, output in enumerate([110.0, 90.0, 105.0]):
        log.append(make_record(n, actual_output=output))
    return log


class TestPerformanceTracker:
    def test_win_rate_and_profit(self, trade_log):
        stats = PerformanceTracker(trade_log).snapshot()

        assert stats.total_trades == 3
        assert stats.winning_trades == 2
        assert stats.losing_trades == 1
        assert stats.win_rate == pytest.approx(2 / 3)
        assert stats.total_profit == pytest.approx(5.0)

    def test_failed_trades_ignored(self, trade_log):
        trade_log.append(make_record(9, status=TradeStatus.FAILED))
        stats = PerformanceTracker(trade_log).snapshot()

        assert stats.total_trades == 3

    def test_break_even_is_not_a_win(self):
        log = TradeLog()
        log.append(make_record(0, actual_output=100.0))

        stats = PerformanceTracker(log).snapshot()

        assert stats.winning_trades == 0
        assert stats.losing_trades == 1

    def test_empty_log(self):
        assert PerformanceTracker(TradeLog()).snapshot() == PerformanceStats()

    def test_stats_follow_the_log(self, trade_log):
        tracker = PerformanceTracker(trade_log)
        before = tracker.snapshot()
        trade_log.append(make_record(5, actual_output=150.0))

        assert before.total_trades == 3
        assert tracker.snapshot().total_trades == 4
        assert tracker.snapshot().total_profit == pytest.approx(55.0)

    def test_recent_newest_first(self, trade_log):
        recent = PerformanceTracker(trade_log).recent(2)
        assert [r.id for r in recent] == ["trade_2", "trade_1"]

    def test_to_dict(self, trade_log):
        data = PerformanceTracker(trade_log).to_dict()

        assert data["total_trades"] == 3
        assert data["recent_trades"][0]["id"] == "trade_2"


class TestTradeLog:
    def test_snapshot_is_immutable_copy(self, trade_log):
        snapshot = trade_log.snapshot()
        trade_log.append(make_record(7, actual_output=1.0))

        assert isinstance(snapshot, tuple)
        assert len(snapshot) == 3
        assert len(trade_log) == 4

    def test_get_recent_trades_includes_failures(self, trade_log):
        trade_log.append(make_record(8, status=TradeStatus.FAILED))
        recent = trade_log.get_recent_trades(2)

        assert recent[0].status is TradeStatus.FAILED
        assert recent[1].id == "trade_2"

    def test_filters(self, trade_log):
        trade_log.append(make_record(8, status=TradeStatus.FAILED, token="other"))

        assert len(trade_log.completed()) == 3
        assert [r.id for r in trade_log.for_token("other")] == ["trade_8"]

    def test_record_profit_and_export(self):
        record = make_record(0, actual_output=110.0)

        assert record.side == "BUY"
        assert record.profit == pytest.approx(10.0)
        exported = record.to_dict()
        assert exported["status"] == "completed"
        assert exported["input_amount"] == 100.0
        assert exported["timestamp"] == START_TIME.isoformat()

    def test_failed_record_has_no_profit(self):
        assert make_record(0, status=TradeStatus.FAILED).profit == 0.0

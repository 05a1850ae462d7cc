"""
Analytics: performance tracking

Stats are recomputed from a trade-log snapshot on every query, so they
can never drift from the log. Only completed records count.
"""

from dataclasses import asdict, dataclass
from typing import Dict, List
import logging

from analytics.trade_log import TradeLog, TradeRecord

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PerformanceStats:
    """Read-only performance snapshot"""
    total_trades: int = 0
    winning_trades: int = 0
    losing_trades: int = 0
    win_rate: float = 0.0
    total_profit: float = 0.0

    def to_dict(self) -> Dict:
        return asdict(self)


class PerformanceTracker:
    """Derives PerformanceStats from the trade log."""

    def __init__(self, trade_log: TradeLog):
        self._trade_log = trade_log

    @staticmethod
    def compute(records) -> PerformanceStats:
        completed = [r for r in records if r.is_completed and r.actual_output is not None]
        total = len(completed)
        if total == 0:
            return PerformanceStats()

        winning = sum(1 for r in completed if r.actual_output > r.input_amount)
        total_profit = sum(r.actual_output - r.input_amount for r in completed)
        return PerformanceStats(
            total_trades=total,
            winning_trades=winning,
            losing_trades=total - winning,
            win_rate=winning / total,
            total_profit=total_profit,
        )

    def snapshot(self) -> PerformanceStats:
        return self.compute(self._trade_log.snapshot())

    def recent(self, limit: int = 10) -> List[TradeRecord]:
        """Most recent completed records, newest first."""
        if limit <= 0:
            return []
        completed = self._trade_log.completed()
        return list(reversed(completed[-limit:]))

    def to_dict(self) -> Dict:
        stats = self.snapshot()
        return {
            **stats.to_dict(),
            "recent_trades": [r.to_dict() for r in self.recent()],
        }

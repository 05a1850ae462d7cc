"""
Analytics: append-only trade log

Every trade attempt (completed or failed) becomes one immutable
TradeRecord. Readers get tuple snapshots; records are never edited or
removed once written.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from core.models import Quote, Signal, TradeStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TradeRecord:
    """Outcome of one trade attempt."""
    id: str
    token_address: str
    signal: Signal
    status: TradeStatus
    timestamp: datetime
    quote: Optional[Quote] = None
    actual_output: Optional[float] = None
    slippage_pct: Optional[float] = None
    tx_id: Optional[str] = None
    position_id: Optional[str] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None

    @property
    def side(self) -> str:
        return self.signal.type.value if hasattr(self.signal.type, "value") else str(self.signal.type)

    @property
    def is_completed(self) -> bool:
        return self.status is TradeStatus.COMPLETED

    @property
    def input_amount(self) -> float:
        if self.quote is not None:
            return self.quote.input_amount
        return self.signal.amount

    @property
    def profit(self) -> float:
        """actual_output - input_amount for completed trades, 0 otherwise."""
        if not self.is_completed or self.actual_output is None:
            return 0.0
        return self.actual_output - self.input_amount

    def to_dict(self) -> Dict:
        """Convert to dictionary (for JSON export)"""
        return {
            "id": self.id,
            "token_address": self.token_address,
            "side": self.side,
            "source": getattr(self.signal.source, "value", self.signal.source),
            "confidence": self.signal.confidence,
            "reason": self.signal.reason,
            "status": self.status.value,
            "timestamp": self.timestamp.isoformat(),
            "input_amount": self.input_amount,
            "expected_output": self.quote.expected_output if self.quote else None,
            "actual_output": self.actual_output,
            "slippage_pct": self.slippage_pct,
            "tx_id": self.tx_id,
            "position_id": self.position_id,
            "error": self.error,
            "error_kind": self.error_kind,
        }


class TradeLog:
    """In-memory append-only trade log."""

    def __init__(self):
        self._records: List[TradeRecord] = []

    def __len__(self) -> int:
        return len(self._records)

    def append(self, record: TradeRecord) -> None:
        self._records.append(record)
        logger.debug(f"TradeLog: {record.side} {record.token_address} -> {record.status.value} ({record.id})")

    def snapshot(self) -> Tuple[TradeRecord, ...]:
        return tuple(self._records)

    def completed(self) -> Tuple[TradeRecord, ...]:
        return tuple(r for r in self._records if r.is_completed)

    def for_token(self, token_address: str) -> Tuple[TradeRecord, ...]:
        return tuple(r for r in self._records if r.token_address == token_address)

    def get_recent_trades(self, limit: int = 100) -> List[TradeRecord]:
        """Most recent records first."""
        if limit <= 0:
            return []
        return list(reversed(self._records[-limit:]))

    def export(self) -> List[Dict]:
        return [r.to_dict() for r in self._records]

"""
Shared value types: signals, quotes, swaps, market snapshots, positions.

All of these are frozen dataclasses. State changes (e.g. closing a
position) produce a new instance, so snapshots handed to readers never
change underneath them.
"""
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Tuple

from core.exceptions import ValidationError

# Wrapped SOL mint, the default base asset for swaps.
WRAPPED_SOL_MINT = "So11111111111111111111111111111111111111112"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SignalType(str, Enum):
    BUY = "BUY"
    SELL = "SELL"


class SignalSource(str, Enum):
    PREDICTION = "prediction"
    TECHNICAL = "technical"
    SENTIMENT = "sentiment"
    POSITION_EXIT = "position_exit"
    MANUAL = "manual"


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class TradeStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"


class PositionStatus(str, Enum):
    OPEN = "OPEN"
    CLOSED_STOP_LOSS = "CLOSED_STOP_LOSS"
    CLOSED_TAKE_PROFIT = "CLOSED_TAKE_PROFIT"
    CLOSED_MANUAL = "CLOSED_MANUAL"

    @property
    def is_closed(self) -> bool:
        return self is not PositionStatus.OPEN


@dataclass(frozen=True)
class Signal:
    """
    Trade intent produced by the generator or supplied externally.

    `type` and `source` accept their string values and are normalized to
    the enums; anything unrecognized is left as-is for the validator to
    reject.
    """
    token_address: str
    type: SignalType
    confidence: float
    amount: float
    reason: str = ""
    source: SignalSource = SignalSource.MANUAL
    created_at: datetime = field(default_factory=utc_now)

    def __post_init__(self):
        if isinstance(self.type, str) and not isinstance(self.type, SignalType):
            normalized = self.type.upper()
            if normalized in SignalType.__members__:
                object.__setattr__(self, "type", SignalType(normalized))
        if isinstance(self.source, str) and not isinstance(self.source, SignalSource):
            try:
                object.__setattr__(self, "source", SignalSource(self.source.lower()))
            except ValueError:
                pass

    @property
    def is_buy(self) -> bool:
        return self.type is SignalType.BUY


@dataclass(frozen=True)
class Quote:
    input_asset: str
    output_asset: str
    input_amount: float
    expected_output: float
    price_impact_pct: float = 0.0
    routes: Tuple[str, ...] = ()


@dataclass(frozen=True)
class SwapResult:
    tx_id: str
    actual_output: float


@dataclass(frozen=True)
class MarketSnapshot:
    token_address: str
    price: float
    liquidity_usd: float = 0.0
    volume_24h: float = 0.0
    holder_count: int = 0
    verified: bool = False
    organic_score: float = 0.0
    symbol: Optional[str] = None


@dataclass(frozen=True)
class Position:
    id: str
    token_address: str
    entry_price: float
    amount: float
    stop_loss_price: float
    take_profit_price: float
    opened_at: datetime
    status: PositionStatus = PositionStatus.OPEN
    closed_at: Optional[datetime] = None
    exit_price: Optional[float] = None
    entry_trade_id: Optional[str] = None

    @classmethod
    def open(
        cls,
        position_id: str,
        token_address: str,
        entry_price: float,
        amount: float,
        stop_loss_pct: float,
        take_profit_pct: float,
        opened_at: datetime,
        entry_trade_id: Optional[str] = None,
    ) -> "Position":
        """Open a position with stop-loss/take-profit thresholds derived from entry."""
        if entry_price <= 0:
            raise ValidationError(f"entry_price must be > 0 (got {entry_price})")
        if amount <= 0:
            raise ValidationError(f"amount must be > 0 (got {amount})")
        if not 0 < stop_loss_pct < 1:
            raise ValidationError(f"stop_loss_pct must be in (0, 1) (got {stop_loss_pct})")
        if take_profit_pct <= 0:
            raise ValidationError(f"take_profit_pct must be > 0 (got {take_profit_pct})")

        return cls(
            id=position_id,
            token_address=token_address,
            entry_price=entry_price,
            amount=amount,
            stop_loss_price=entry_price * (1 - stop_loss_pct),
            take_profit_price=entry_price * (1 + take_profit_pct),
            opened_at=opened_at,
            entry_trade_id=entry_trade_id,
        )

    @property
    def is_open(self) -> bool:
        return self.status is PositionStatus.OPEN

    def close(self, status: PositionStatus, price: Optional[float], at: datetime) -> "Position":
        """Return a closed copy. Closed positions are terminal."""
        if not self.is_open:
            raise ValidationError(f"position {self.id} already {self.status.value}")
        if not status.is_closed:
            raise ValidationError("close() requires a CLOSED_* status")
        return replace(self, status=status, closed_at=at, exit_price=price)

    def pnl_pct(self, price: float) -> float:
        return (price - self.entry_price) / self.entry_price * 100.0

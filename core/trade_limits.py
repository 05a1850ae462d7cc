"""
Signal gating and trade pacing.

SignalValidator answers two questions about a candidate Signal:
- validate(): is the signal well-formed and confident enough?
- should_execute(): does pacing (per-token cooldown) and the accuracy
  circuit breaker allow acting on it right now?

Both are pure functions of their arguments. The accepted-signal history
lives in a SignalLog owned by the caller and is passed in explicitly.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Iterable, List, Optional
import logging

from core.exceptions import ValidationError
from core.models import Signal, SignalType

logger = logging.getLogger(__name__)

MIN_CONFIDENCE = 0.6

# Circuit breaker: suspend new trades while accuracy is poor over a
# meaningful sample.
CIRCUIT_BREAKER_MIN_TRADES = 10
CIRCUIT_BREAKER_MIN_WIN_RATE = 0.4

RISK_MULTIPLIERS = {
    "low": 0.5,
    "medium": 1.0,
    "high": 1.5,
}


@dataclass
class ValidationResult:
    """Result of a signal check"""
    approved: bool
    reason: str = ""
    violated_checks: List[str] = None

    def __post_init__(self):
        if self.violated_checks is None:
            self.violated_checks = []

    @classmethod
    def ok(cls) -> "ValidationResult":
        return cls(approved=True)

    @classmethod
    def reject(cls, check: str, reason: str) -> "ValidationResult":
        return cls(approved=False, reason=reason, violated_checks=[check])


@dataclass(frozen=True)
class SignalLogEntry:
    token_address: str
    accepted_at: datetime
    signal_type: Optional[SignalType] = None


class SignalLog:
    """Append-only log of accepted signals, used for cooldown checks."""

    def __init__(self):
        self._entries: List[SignalLogEntry] = []

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self):
        return iter(tuple(self._entries))

    def record(self, signal: Signal, accepted_at: datetime) -> SignalLogEntry:
        entry = SignalLogEntry(
            token_address=signal.token_address,
            accepted_at=accepted_at,
            signal_type=signal.type if isinstance(signal.type, SignalType) else None,
        )
        self._entries.append(entry)
        return entry

    def entries(self) -> tuple:
        return tuple(self._entries)

    def last_for(self, token_address: str) -> Optional[SignalLogEntry]:
        for entry in reversed(self._entries):
            if entry.token_address == token_address:
                return entry
        return None

    def prune(self, now: datetime, max_age: timedelta) -> int:
        """Drop entries older than max_age. Returns how many were dropped."""
        cutoff = now - max_age
        kept = [e for e in self._entries if e.accepted_at > cutoff]
        dropped = len(self._entries) - len(kept)
        self._entries = kept
        return dropped


class SignalValidator:
    """
    Stateless signal checks driven by TradingConfig.

    Config fields used:
    - cooldown_ms: per-token window after an accepted signal
    - risk_level: low/medium/high sizing multiplier
    - max_trade_size_usd: sizing cap
    """

    def __init__(self, config):
        self.config = config

    def validate(self, signal: Optional[Signal]) -> ValidationResult:
        if signal is None:
            return ValidationResult.reject("missing_field", "signal is missing")

        for name in ("token_address", "type", "confidence", "amount"):
            value = getattr(signal, name, None)
            if value is None or value == "":
                return ValidationResult.reject("missing_field", f"signal field '{name}' is missing")

        if not isinstance(signal.type, SignalType):
            return ValidationResult.reject("type", f"signal type must be BUY or SELL (got {signal.type!r})")

        try:
            confidence = float(signal.confidence)
            amount = float(signal.amount)
        except (TypeError, ValueError):
            return ValidationResult.reject("numeric", "confidence and amount must be numbers")

        if not 0.0 <= confidence <= 1.0:
            return ValidationResult.reject("confidence", f"confidence {confidence} outside [0, 1]")
        if confidence < MIN_CONFIDENCE:
            return ValidationResult.reject(
                "confidence", f"confidence {confidence:.2f} below minimum {MIN_CONFIDENCE:.2f}"
            )
        if amount <= 0:
            return ValidationResult.reject("amount", f"amount must be > 0 (got {amount})")

        return ValidationResult.ok()

    def should_execute(
        self,
        signal: Signal,
        token_address: str,
        recent_signal_log: Iterable[SignalLogEntry],
        performance_stats,
        current_time: Optional[datetime] = None,
    ) -> ValidationResult:
        """
        Pacing and circuit-breaker check.

        Args:
            signal: Candidate signal
            token_address: Token the signal targets
            recent_signal_log: Accepted signals (token_address, accepted_at)
            performance_stats: Object with total_trades and win_rate
            current_time: Current time (injected for tests)
        """
        now = current_time or datetime.now(timezone.utc)

        cooldown = timedelta(milliseconds=self.config.cooldown_ms)
        for entry in recent_signal_log:
            if entry.token_address != token_address:
                continue
            elapsed = now - entry.accepted_at
            if timedelta(0) <= elapsed < cooldown:
                remaining = (cooldown - elapsed).total_seconds()
                return ValidationResult.reject(
                    "cooldown",
                    f"{token_address[:8]} on cooldown for another {remaining:.0f}s",
                )

        if self.circuit_breaker_tripped(performance_stats):
            return ValidationResult.reject(
                "circuit_breaker",
                f"circuit breaker: win rate {performance_stats.win_rate:.1%} over "
                f"{performance_stats.total_trades} trades is below {CIRCUIT_BREAKER_MIN_WIN_RATE:.0%}",
            )

        return ValidationResult.ok()

    @staticmethod
    def circuit_breaker_tripped(performance_stats) -> bool:
        if performance_stats is None:
            return False
        return (
            performance_stats.total_trades > CIRCUIT_BREAKER_MIN_TRADES
            and performance_stats.win_rate < CIRCUIT_BREAKER_MIN_WIN_RATE
        )

    def compute_trade_amount(self, token_price: float) -> float:
        """Size a trade in token units from the USD cap and risk level."""
        if token_price is None or token_price <= 0:
            raise ValidationError(f"token price must be > 0 (got {token_price})")

        cap = self.config.max_trade_size_usd / token_price
        multiplier = RISK_MULTIPLIERS.get(self.config.risk_level, 1.0)
        return min(cap * multiplier, cap)

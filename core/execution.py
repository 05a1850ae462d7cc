"""
Trade execution pipeline.

Steps, each able to abort the rest:
1. auto-trading switch + signal validation
2. risk preconditions (BUY only: position cap, liquidity, verification)
3. quote
4. swap submission
5. trade record (written for every attempt that reached step 3)
6. position bookkeeping (open on BUY, close the matched position on SELL)

Nothing raises out of execute(); every failure comes back as an
ExecutionResult with an error kind. Rate limits and timeouts are NOT
retried here; callers retry via infra.retry.retry_result.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Set, Tuple

from analytics.trade_log import TradeLog, TradeRecord
from core.exceptions import (
    ErrorKind,
    ExecutionError,
    QuoteUnavailableError,
    RequestTimeoutError,
    classify,
)
from core.models import Position, PositionStatus, Quote, Signal, SignalType, TradeStatus
from core.trade_limits import SignalValidator
from core.venue import ExecutionVenue, MarketDataProvider, QuoteService
from infra.clock import Clock

logger = logging.getLogger(__name__)


@dataclass
class ExecutionResult:
    """Result of a trade attempt"""
    success: bool
    token_address: Optional[str]
    side: Optional[str]
    record: Optional[TradeRecord] = None
    position: Optional[Position] = None  # opened (BUY) or closed (SELL)
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    timestamp: datetime = None

    def __post_init__(self):
        if self.timestamp is None:
            self.timestamp = datetime.now(timezone.utc)
        if self.side:
            self.side = self.side.upper()

    @property
    def tx_id(self) -> Optional[str]:
        return self.record.tx_id if self.record else None

    @property
    def slippage_pct(self) -> Optional[float]:
        return self.record.slippage_pct if self.record else None


def _side_of(signal: Any) -> Optional[str]:
    side = getattr(signal, "type", None)
    if isinstance(side, SignalType):
        return side.value
    return str(side) if side else None


class TradeExecutor:
    """
    Runs signals through the execution pipeline and owns the position book.

    Active positions and the trade log are only mutated under one
    asyncio.Lock; readers get copies.
    """

    def __init__(
        self,
        config,
        market_data: MarketDataProvider,
        quote_service: QuoteService,
        venue: ExecutionVenue,
        validator: SignalValidator,
        trade_log: Optional[TradeLog] = None,
        clock: Optional[Clock] = None,
        metrics=None,
        signer: Any = None,
    ):
        self.config = config
        self.market_data = market_data
        self.quote_service = quote_service
        self.venue = venue
        self.validator = validator
        self.trade_log = trade_log if trade_log is not None else TradeLog()
        self.clock = clock or Clock()
        self.metrics = metrics
        self.signer = signer

        self._lock = asyncio.Lock()
        self._active: Dict[str, Position] = {}
        self._closed: List[Position] = []
        self._closing: Set[str] = set()
        self._pending_buys = 0

    # ----- Public API -----

    async def execute(
        self,
        signal: Signal,
        *,
        position_id: Optional[str] = None,
        close_status: PositionStatus = PositionStatus.CLOSED_MANUAL,
        exit_price: Optional[float] = None,
    ) -> ExecutionResult:
        """
        Execute one signal.

        Args:
            signal: BUY or SELL signal
            position_id: SELL only, the position to close (default: oldest OPEN for the token)
            close_status: SELL only, the CLOSED_* status to apply to the matched position
            exit_price: SELL only, price recorded on the closed position
        """
        token = getattr(signal, "token_address", None)
        side = _side_of(signal)

        if not self.config.enable_auto_trading:
            return self._reject(token, side, ErrorKind.VALIDATION, "auto trading disabled")

        check = self.validator.validate(signal)
        if not check.approved:
            return self._reject(token, side, ErrorKind.VALIDATION, check.reason)

        if signal.type is SignalType.BUY:
            return await self._execute_buy(signal)
        return await self._execute_sell(signal, position_id, close_status, exit_price)

    def set_auto_trading_enabled(self, enabled: bool) -> None:
        self.config = self.config.model_copy(update={"enable_auto_trading": bool(enabled)})
        logger.info(f"Auto trading {'enabled' if enabled else 'disabled'}")

    def update_config(self, config) -> None:
        self.config = config

    def trade_history(self) -> Tuple[TradeRecord, ...]:
        return self.trade_log.snapshot()

    def active_positions(self) -> Dict[str, Position]:
        return dict(self._active)

    def closed_positions(self) -> Tuple[Position, ...]:
        return tuple(self._closed)

    @property
    def open_position_count(self) -> int:
        return len(self._active)

    def open_positions_for(self, token_address: str) -> List[Position]:
        return [p for p in self._active.values() if p.token_address == token_address]

    def stats(self) -> Dict[str, Any]:
        history = self.trade_log.snapshot()
        completed = sum(1 for r in history if r.is_completed)
        return {
            "total_trades": len(history),
            "completed_trades": completed,
            "failed_trades": len(history) - completed,
            "active_positions": len(self._active),
            "closed_positions": len(self._closed),
            "auto_trading_enabled": self.config.enable_auto_trading,
            "risk_level": self.config.risk_level,
        }

    # ----- BUY path -----

    async def _execute_buy(self, signal: Signal) -> ExecutionResult:
        token = signal.token_address

        async with self._lock:
            reason = self._capacity_violation(token)
            if reason:
                return self._reject(token, "BUY", ErrorKind.VALIDATION, reason)
            # Hold a slot so concurrent BUYs cannot overshoot max_open_positions.
            self._pending_buys += 1

        try:
            try:
                snapshot = await asyncio.wait_for(
                    self.market_data.get_market_snapshot(token),
                    timeout=self.config.request_timeout_seconds,
                )
            except Exception as exc:
                kind = classify(exc)
                return self._reject(token, "BUY", kind, f"market data unavailable: {str(exc) or kind.value}")

            if snapshot is None:
                return self._reject(token, "BUY", ErrorKind.PROVIDER, "token not found")
            if snapshot.liquidity_usd < self.config.min_liquidity_usd:
                return self._reject(
                    token, "BUY", ErrorKind.VALIDATION,
                    f"liquidity ${snapshot.liquidity_usd:,.0f} below minimum ${self.config.min_liquidity_usd:,.0f}",
                )
            if self.config.risk_level == "low" and not snapshot.verified:
                return self._reject(token, "BUY", ErrorKind.VALIDATION, "unverified token rejected at low risk level")

            return await self._trade(
                signal,
                input_asset=self.config.base_asset,
                output_asset=token,
                market_price=snapshot.price,
            )
        finally:
            self._pending_buys -= 1

    def _capacity_violation(self, token_address: str) -> Optional[str]:
        in_use = len(self._active) + self._pending_buys
        if in_use >= self.config.max_open_positions:
            return f"max open positions reached ({in_use}/{self.config.max_open_positions})"
        if not self.config.allow_multiple_positions_per_token and self.open_positions_for(token_address):
            return f"position already open for {token_address[:8]}"
        return None

    # ----- SELL path -----

    async def _execute_sell(
        self,
        signal: Signal,
        position_id: Optional[str],
        close_status: PositionStatus,
        exit_price: Optional[float],
    ) -> ExecutionResult:
        token = signal.token_address

        if not close_status.is_closed:
            return self._reject(token, "SELL", ErrorKind.VALIDATION, "close_status must be a CLOSED_* status")

        async with self._lock:
            position = self._claim_position(token, position_id)
            if position_id is not None and position is None:
                return self._reject(token, "SELL", ErrorKind.VALIDATION, f"position {position_id} is not open")

        try:
            return await self._trade(
                signal,
                input_asset=token,
                output_asset=self.config.base_asset,
                closing=position,
                close_status=close_status,
                exit_price=exit_price,
            )
        finally:
            if position is not None:
                self._closing.discard(position.id)

    def _claim_position(self, token_address: str, position_id: Optional[str]) -> Optional[Position]:
        if position_id is not None:
            position = self._active.get(position_id)
            if position is None or position.token_address != token_address or position_id in self._closing:
                return None
        else:
            candidates = [
                p for p in self._active.values()
                if p.token_address == token_address and p.id not in self._closing
            ]
            if not candidates:
                return None
            position = min(candidates, key=lambda p: p.opened_at)
        self._closing.add(position.id)
        return position

    # ----- Shared quote/swap/record steps -----

    async def _trade(
        self,
        signal: Signal,
        input_asset: str,
        output_asset: str,
        market_price: Optional[float] = None,
        closing: Optional[Position] = None,
        close_status: PositionStatus = PositionStatus.CLOSED_MANUAL,
        exit_price: Optional[float] = None,
    ) -> ExecutionResult:
        side = signal.type.value
        token = signal.token_address
        trade_id = f"trade_{uuid.uuid4().hex[:12]}"
        timeout = self.config.request_timeout_seconds
        quote: Optional[Quote] = None

        try:
            quote = await asyncio.wait_for(
                self.quote_service.get_quote(input_asset, output_asset, signal.amount),
                timeout=timeout,
            )
            if quote.expected_output <= 0:
                raise QuoteUnavailableError(f"quote for {token[:8]} has no output", source="quotes")
            if quote.price_impact_pct > self.config.max_slippage_pct:
                raise QuoteUnavailableError(
                    f"price impact {quote.price_impact_pct:.2f}% exceeds max slippage "
                    f"{self.config.max_slippage_pct:.2f}%",
                    source="quotes",
                )

            swap = await asyncio.wait_for(self.venue.submit_swap(quote, self.signer), timeout=timeout)
            if swap.actual_output <= 0:
                raise ExecutionError(f"swap {swap.tx_id} returned no output", source="venue")
        except Exception as exc:
            if isinstance(exc, asyncio.TimeoutError) and not isinstance(exc, RequestTimeoutError):
                exc = RequestTimeoutError(f"{'swap' if quote else 'quote'} timed out after {timeout:.1f}s")
            kind = classify(exc)
            if kind is ErrorKind.UNKNOWN:
                logger.error(f"Unexpected error executing {side} {token[:8]}: {exc}", exc_info=True)
            else:
                logger.warning(f"{side} {token[:8]} failed ({kind.value}): {exc}")

            record = TradeRecord(
                id=trade_id,
                token_address=token,
                signal=signal,
                status=TradeStatus.FAILED,
                timestamp=self.clock.now(),
                quote=quote,
                position_id=closing.id if closing else None,
                error=str(exc),
                error_kind=kind.value,
            )
            async with self._lock:
                self.trade_log.append(record)
            self._record_metrics(side, record)
            return ExecutionResult(
                success=False,
                token_address=token,
                side=side,
                record=record,
                error=str(exc),
                error_kind=kind,
            )

        slippage_pct = (quote.expected_output - swap.actual_output) / quote.expected_output * 100.0
        if slippage_pct > self.config.max_slippage_pct:
            logger.warning(
                f"{side} {token[:8]} slippage {slippage_pct:.2f}% exceeds max {self.config.max_slippage_pct:.2f}%"
            )

        now = self.clock.now()
        position: Optional[Position] = None
        async with self._lock:
            if signal.type is SignalType.BUY:
                entry_price = market_price if market_price and market_price > 0 else quote.input_amount / swap.actual_output
                position = Position.open(
                    position_id=f"pos_{uuid.uuid4().hex[:12]}",
                    token_address=token,
                    entry_price=entry_price,
                    amount=swap.actual_output,
                    stop_loss_pct=self.config.stop_loss_pct,
                    take_profit_pct=self.config.take_profit_pct,
                    opened_at=now,
                    entry_trade_id=trade_id,
                )
                self._active[position.id] = position
            elif closing is not None and closing.id in self._active:
                position = self._active.pop(closing.id).close(close_status, exit_price, now)
                self._closed.append(position)

            record = TradeRecord(
                id=trade_id,
                token_address=token,
                signal=signal,
                status=TradeStatus.COMPLETED,
                timestamp=now,
                quote=quote,
                actual_output=swap.actual_output,
                slippage_pct=slippage_pct,
                tx_id=swap.tx_id,
                position_id=position.id if position else None,
            )
            self.trade_log.append(record)

        if position is not None and position.is_open:
            logger.info(
                f"Opened {position.id} {token[:8]}: {position.amount:.6f} @ {position.entry_price:.8f} "
                f"(SL {position.stop_loss_price:.8f} / TP {position.take_profit_price:.8f})"
            )
        elif position is not None:
            logger.info(f"Closed {position.id} {token[:8]} as {position.status.value}")
        logger.info(f"{side} {token[:8]} completed: tx={swap.tx_id} slippage={slippage_pct:.2f}%")

        self._record_metrics(side, record)
        return ExecutionResult(
            success=True,
            token_address=token,
            side=side,
            record=record,
            position=position,
        )

    # ----- helpers -----

    def _reject(self, token: Optional[str], side: Optional[str], kind: ErrorKind, reason: str) -> ExecutionResult:
        logger.warning(f"Rejected {side or '?'} {(token or '?')[:8]}: {reason}")
        if self.metrics is not None and kind is not ErrorKind.VALIDATION:
            self.metrics.record_api_error(kind.value)
        return ExecutionResult(
            success=False,
            token_address=token,
            side=side,
            error=reason,
            error_kind=kind,
        )

    def _record_metrics(self, side: str, record: TradeRecord) -> None:
        if self.metrics is None:
            return
        self.metrics.record_trade(side, record.status.value, record.slippage_pct)
        self.metrics.record_open_positions(len(self._active))
        if record.error_kind:
            self.metrics.record_api_error(record.error_kind)

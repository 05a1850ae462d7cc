"""
Position monitoring and exit management.

Every poll interval, each OPEN position is priced independently and
checked against its thresholds:
- price <= stop_loss_price   -> SELL, CLOSED_STOP_LOSS
- price >= take_profit_price -> SELL, CLOSED_TAKE_PROFIT

Stop-loss is checked first. A failure pricing or closing one position is
logged and recorded in the sweep report; the position stays OPEN and is
retried on the next tick.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from core.exceptions import ErrorKind, ProviderError, classify
from core.execution import ExecutionResult, TradeExecutor
from core.models import Position, PositionStatus, Signal, SignalSource, SignalType
from core.venue import MarketDataProvider
from infra.clock import Clock, PeriodicTask
from infra.rate_limiter import RateLimiter
from infra.retry import retry_result

logger = logging.getLogger(__name__)

EXIT_SIGNAL_CONFIDENCE = 0.9


@dataclass
class SweepReport:
    """Outcome of one monitor_positions() pass"""
    checked: int = 0
    closed: List[str] = field(default_factory=list)
    errors: Dict[str, str] = field(default_factory=dict)
    discarded: int = 0

    @property
    def ok(self) -> bool:
        return not self.errors


class PositionManager:
    """
    Drives the OPEN -> CLOSED_* state machine for the executor's positions.

    `market_data` should be the rate-limited, cached front shared with the
    rest of the engine; SELLs go through `quote_limiter` with retry on rate
    limits and timeouts.
    """

    def __init__(
        self,
        executor: TradeExecutor,
        market_data: MarketDataProvider,
        config,
        quote_limiter: Optional[RateLimiter] = None,
        clock: Optional[Clock] = None,
        metrics=None,
    ):
        self.executor = executor
        self.market_data = market_data
        self.config = config
        self.quote_limiter = quote_limiter
        self.clock = clock or Clock()
        self.metrics = metrics
        self._task: Optional[PeriodicTask] = None
        self._generation = 0
        self.sweeps = 0

    @property
    def is_active(self) -> bool:
        return self._task is not None and self._task.is_active

    @staticmethod
    def evaluate(position: Position, price: float) -> PositionStatus:
        """Pure transition: the status `position` should move to at `price`."""
        if not position.is_open:
            return position.status
        if price <= position.stop_loss_price:
            return PositionStatus.CLOSED_STOP_LOSS
        if price >= position.take_profit_price:
            return PositionStatus.CLOSED_TAKE_PROFIT
        return PositionStatus.OPEN

    def start(self) -> None:
        if self.is_active:
            return
        self._task = PeriodicTask(
            "position-monitor",
            self.monitor_positions,
            self.config.poll_interval_seconds,
            clock=self.clock,
        )
        self._task.start()

    def stop(self) -> None:
        """Stop polling. Sweeps already in flight drop their results."""
        self._generation += 1
        if self._task is not None:
            self._task.stop()

    async def wait_stopped(self) -> None:
        if self._task is not None:
            await self._task.wait_stopped()

    async def monitor_positions(self) -> SweepReport:
        """Check every OPEN position once."""
        report = SweepReport()
        positions = list(self.executor.active_positions().values())
        if not positions:
            return report

        generation = self._generation
        report.checked = len(positions)
        await asyncio.gather(*(self._check_position(p, generation, report) for p in positions))

        self.sweeps += 1
        if report.closed or report.errors:
            logger.info(
                f"Position sweep: checked={report.checked} closed={len(report.closed)} "
                f"errors={len(report.errors)}"
            )
        return report

    async def close_manually(self, token_address: str, position_id: Optional[str] = None) -> ExecutionResult:
        """Close a position on request (oldest OPEN one for the token unless position_id is given)."""
        if position_id is not None:
            position = self.executor.active_positions().get(position_id)
        else:
            candidates = self.executor.open_positions_for(token_address)
            position = min(candidates, key=lambda p: p.opened_at) if candidates else None

        if position is None or position.token_address != token_address:
            logger.warning(f"Manual close: no OPEN position for {token_address[:8]}")
            return ExecutionResult(
                success=False,
                token_address=token_address,
                side="SELL",
                error="no open position",
                error_kind=ErrorKind.VALIDATION,
            )

        price = None
        try:
            snapshot = await self.market_data.get_market_snapshot(token_address)
            price = snapshot.price if snapshot else None
        except Exception as exc:
            logger.warning(f"Manual close {position.id}: no exit price ({exc})")

        return await self._close(position, PositionStatus.CLOSED_MANUAL, price, "Manual close")

    async def _check_position(self, position: Position, generation: int, report: SweepReport) -> None:
        try:
            snapshot = await self.market_data.get_market_snapshot(position.token_address)
            if snapshot is None:
                raise ProviderError(f"no price for {position.token_address}", source="market_data")

            if generation != self._generation:
                report.discarded += 1
                logger.debug(f"Discarding price for {position.id}: monitor stopped")
                return

            status = self.evaluate(position, snapshot.price)
            if status is PositionStatus.OPEN:
                return

            reason = (
                f"Stop loss hit at {snapshot.price:.8f} (SL {position.stop_loss_price:.8f})"
                if status is PositionStatus.CLOSED_STOP_LOSS
                else f"Take profit hit at {snapshot.price:.8f} (TP {position.take_profit_price:.8f})"
            )
            logger.info(f"{position.id} {position.token_address[:8]}: {reason}")

            result = await self._close(position, status, snapshot.price, reason)
            if result.success:
                report.closed.append(position.id)
            else:
                report.errors[position.id] = result.error or "close failed"
        except Exception as exc:
            kind = classify(exc)
            if kind is ErrorKind.UNKNOWN:
                logger.error(f"Position check {position.id} failed: {exc}", exc_info=True)
            else:
                logger.warning(f"Position check {position.id} failed ({kind.value}): {exc}")
            report.errors[position.id] = str(exc) or kind.value
            if self.metrics is not None:
                self.metrics.record_api_error(kind.value)

    async def _close(self, position: Position, status: PositionStatus, price: Optional[float],
                     reason: str) -> ExecutionResult:
        signal = Signal(
            token_address=position.token_address,
            type=SignalType.SELL,
            confidence=EXIT_SIGNAL_CONFIDENCE,
            amount=position.amount,
            reason=reason,
            source=SignalSource.POSITION_EXIT if status is not PositionStatus.CLOSED_MANUAL else SignalSource.MANUAL,
        )

        async def attempt():
            return await self.executor.execute(
                signal, position_id=position.id, close_status=status, exit_price=price
            )

        if self.quote_limiter is None:
            return await attempt()
        return await retry_result(
            attempt,
            self.quote_limiter,
            max_attempts=self.config.max_retries,
            description=f"close {position.id}",
        )

"""
Tests for the TradeExecutor pipeline.

Coverage:
- BUY opens a position with stop-loss / take-profit from the entry price
- Quote and swap failures produce FAILED records and no position
- BUY preconditions (position cap, liquidity, verification at low risk)
- SELL closes the matched position
- Auto-trading switch
"""
import asyncio

import pytest

from core.exceptions import (
    ErrorKind,
    InsufficientFundsError,
    QuoteUnavailableError,
    RateLimitError,
)
from core.models import PositionStatus, Signal, SignalType, TradeStatus

TOKEN = "TokenMint1111111111111111111111111111111111"
OTHER = "OtherMint2222222222222222222222222222222222"


def buy(token=TOKEN, amount=10.0, confidence=0.8):
    return Signal(token_address=token, type=SignalType.BUY, confidence=confidence, amount=amount)


def sell(token=TOKEN, amount=10.0):
    return Signal(token_address=token, type=SignalType.SELL, confidence=0.9, amount=amount)


class TestBuy:
    """Successful BUYs"""

    @pytest.mark.asyncio
    async def test_buy_opens_position_with_thresholds(self, make_executor, market):
        market.set_price(TOKEN, 100.0)
        executor = make_executor(stop_loss_pct=0.1, take_profit_pct=0.2)

        result = await executor.execute(buy())

        assert result.success
        assert result.side == "BUY"
        position = result.position
        assert position.status is PositionStatus.OPEN
        assert position.entry_price == 100.0
        assert position.stop_loss_price == pytest.approx(90.0)
        assert position.take_profit_price == pytest.approx(120.0)
        assert position.amount == pytest.approx(10.0)
        assert executor.active_positions() == {position.id: position}

    @pytest.mark.asyncio
    async def test_buy_writes_completed_record(self, make_executor, market, quotes, venue, config):
        market.set_price(TOKEN, 2.0)
        venue.slippage_pct = 0.25
        executor = make_executor()

        result = await executor.execute(buy())

        record = result.record
        assert record.status is TradeStatus.COMPLETED
        assert record.actual_output == pytest.approx(9.975)
        assert record.slippage_pct == pytest.approx(0.25)
        assert record.tx_id == result.tx_id == "tx_1"
        assert record.position_id == result.position.id
        assert executor.trade_history() == (record,)
        # BUY pays in the base asset for the token
        assert quotes.calls == [(config.base_asset, TOKEN, 10.0)]

    @pytest.mark.asyncio
    async def test_slippage_above_max_still_completes(self, make_executor, market, venue):
        market.set_price(TOKEN, 2.0)
        venue.slippage_pct = 2.0
        executor = make_executor(max_slippage_pct=0.5)

        result = await executor.execute(buy())

        assert result.success
        assert result.slippage_pct == pytest.approx(2.0)

    @pytest.mark.asyncio
    async def test_metrics_recorded(self, make_executor, market, metrics):
        market.set_price(TOKEN, 2.0)
        await make_executor().execute(buy())

        snapshot = metrics.snapshot()
        assert snapshot["trades"] == {"BUY:completed": 1}
        assert snapshot["open_positions"] == 1


class TestTradeFailures:
    """Quote and swap failures leave a FAILED record and no position"""

    @pytest.mark.asyncio
    async def test_quote_unavailable(self, make_executor, market, quotes, venue):
        market.set_price(TOKEN, 2.0)
        quotes.errors.append(QuoteUnavailableError("no route"))
        executor = make_executor()

        result = await executor.execute(buy())

        assert not result.success
        assert result.error_kind is ErrorKind.QUOTE_UNAVAILABLE
        assert result.record.status is TradeStatus.FAILED
        assert result.record.quote is None
        assert executor.trade_history() == (result.record,)
        assert executor.active_positions() == {}
        assert venue.submitted == []

    @pytest.mark.asyncio
    async def test_rate_limit_not_retried_inside_executor(self, make_executor, market, quotes):
        market.set_price(TOKEN, 2.0)
        quotes.errors.append(RateLimitError("429"))

        result = await make_executor().execute(buy())

        assert result.error_kind is ErrorKind.RATE_LIMIT
        assert len(quotes.calls) == 1

    @pytest.mark.asyncio
    async def test_quote_timeout_classified(self, make_executor, market, quotes):
        market.set_price(TOKEN, 2.0)
        quotes.errors.append(asyncio.TimeoutError())

        result = await make_executor().execute(buy())

        assert result.error_kind is ErrorKind.TIMEOUT
        assert result.record.error_kind == "timeout"

    @pytest.mark.asyncio
    async def test_zero_output_quote_rejected(self, make_executor, market, quotes):
        market.set_price(TOKEN, 2.0)
        quotes.rate = 0.0

        result = await make_executor().execute(buy())

        assert result.error_kind is ErrorKind.QUOTE_UNAVAILABLE

    @pytest.mark.asyncio
    async def test_price_impact_above_max_rejected(self, make_executor, market, quotes, venue):
        market.set_price(TOKEN, 2.0)
        quotes.price_impact_pct = 1.0

        result = await make_executor(max_slippage_pct=0.5).execute(buy())

        assert result.error_kind is ErrorKind.QUOTE_UNAVAILABLE
        assert venue.submitted == []

    @pytest.mark.asyncio
    async def test_insufficient_funds(self, make_executor, market, venue):
        market.set_price(TOKEN, 2.0)
        venue.errors.append(InsufficientFundsError("balance too low"))
        executor = make_executor()

        result = await executor.execute(buy())

        assert result.error_kind is ErrorKind.INSUFFICIENT_FUNDS
        assert result.record.quote is not None
        assert executor.active_positions() == {}

    @pytest.mark.asyncio
    async def test_empty_swap_output(self, make_executor, market, venue):
        market.set_price(TOKEN, 2.0)
        venue.output = 0.0

        result = await make_executor().execute(buy())

        assert result.error_kind is ErrorKind.EXECUTION
        assert result.record.status is TradeStatus.FAILED

    @pytest.mark.asyncio
    async def test_unexpected_error_is_unknown_kind(self, make_executor, market, venue):
        market.set_price(TOKEN, 2.0)
        venue.errors.append(KeyError("boom"))

        result = await make_executor().execute(buy())

        assert result.error_kind is ErrorKind.UNKNOWN
        assert result.record.status is TradeStatus.FAILED

    @pytest.mark.asyncio
    async def test_failed_trade_metrics(self, make_executor, market, quotes, metrics):
        market.set_price(TOKEN, 2.0)
        quotes.errors.append(QuoteUnavailableError("no route"))

        await make_executor().execute(buy())

        snapshot = metrics.snapshot()
        assert snapshot["trades"] == {"BUY:failed": 1}
        assert snapshot["api_errors"] == {"quote_unavailable": 1}


class TestBuyPreconditions:
    """Rejected before any quote is requested; nothing is recorded"""

    @pytest.mark.asyncio
    async def test_max_open_positions(self, make_executor, market, quotes):
        market.set_price(TOKEN, 2.0)
        market.set_price(OTHER, 3.0)
        executor = make_executor(max_open_positions=1)

        assert (await executor.execute(buy(TOKEN))).success
        result = await executor.execute(buy(OTHER))

        assert not result.success
        assert result.error_kind is ErrorKind.VALIDATION
        assert "max open positions" in result.error
        assert len(executor.trade_history()) == 1
        assert len(quotes.calls) == 1

    @pytest.mark.asyncio
    async def test_concurrent_buys_respect_cap(self, make_executor, market):
        tokens = [f"Token{i}" for i in range(4)]
        for token in tokens:
            market.set_price(token, 1.0)
        executor = make_executor(max_open_positions=2)

        results = await asyncio.gather(*(executor.execute(buy(t)) for t in tokens))

        assert sum(1 for r in results if r.success) == 2
        assert executor.open_position_count == 2

    @pytest.mark.asyncio
    async def test_low_liquidity_rejected(self, make_executor, market, quotes):
        market.set_price(TOKEN, 2.0, liquidity_usd=500.0)

        result = await make_executor(min_liquidity_usd=1000.0).execute(buy())

        assert result.error_kind is ErrorKind.VALIDATION
        assert "liquidity" in result.error
        assert quotes.calls == []

    @pytest.mark.asyncio
    async def test_unverified_rejected_at_low_risk(self, make_executor, market):
        market.set_price(TOKEN, 2.0, verified=False)

        result = await make_executor(risk_level="low").execute(buy())

        assert result.error_kind is ErrorKind.VALIDATION
        assert "unverified" in result.error

    @pytest.mark.asyncio
    async def test_unverified_allowed_at_medium_risk(self, make_executor, market):
        market.set_price(TOKEN, 2.0, verified=False)
        assert (await make_executor(risk_level="medium").execute(buy())).success

    @pytest.mark.asyncio
    async def test_unknown_token(self, make_executor):
        result = await make_executor().execute(buy())

        assert result.error_kind is ErrorKind.PROVIDER
        assert result.error == "token not found"

    @pytest.mark.asyncio
    async def test_market_data_failure_classified(self, make_executor, market):
        market.fail(TOKEN, RateLimitError("429"))

        result = await make_executor().execute(buy())

        assert result.error_kind is ErrorKind.RATE_LIMIT
        assert result.record is None

    @pytest.mark.asyncio
    async def test_single_position_per_token_policy(self, make_executor, market):
        market.set_price(TOKEN, 2.0)
        executor = make_executor(allow_multiple_positions_per_token=False)

        assert (await executor.execute(buy())).success
        result = await executor.execute(buy())

        assert result.error_kind is ErrorKind.VALIDATION
        assert executor.open_position_count == 1

    @pytest.mark.asyncio
    async def test_multiple_positions_per_token_allowed_by_default(self, make_executor, market):
        market.set_price(TOKEN, 2.0)
        executor = make_executor()

        await executor.execute(buy())
        await executor.execute(buy())

        assert len(executor.open_positions_for(TOKEN)) == 2


class TestSell:
    @pytest.mark.asyncio
    async def test_sell_closes_oldest_position(self, make_executor, market, clock):
        market.set_price(TOKEN, 2.0)
        executor = make_executor()
        first = (await executor.execute(buy())).position
        clock.advance(60)
        second = (await executor.execute(buy())).position

        result = await executor.execute(sell())

        assert result.success
        assert result.position.id == first.id
        assert result.position.status is PositionStatus.CLOSED_MANUAL
        assert result.record.position_id == first.id
        assert list(executor.active_positions()) == [second.id]
        assert executor.closed_positions() == (result.position,)

    @pytest.mark.asyncio
    async def test_sell_pays_out_in_base_asset(self, make_executor, market, quotes, config):
        market.set_price(TOKEN, 2.0)
        executor = make_executor()
        await executor.execute(buy())

        await executor.execute(sell(amount=10.0))

        assert quotes.calls[-1] == (TOKEN, config.base_asset, 10.0)

    @pytest.mark.asyncio
    async def test_sell_with_explicit_position_and_status(self, make_executor, market, clock):
        market.set_price(TOKEN, 2.0)
        executor = make_executor()
        position = (await executor.execute(buy())).position
        clock.advance(30)

        result = await executor.execute(
            sell(), position_id=position.id,
            close_status=PositionStatus.CLOSED_TAKE_PROFIT, exit_price=2.5,
        )

        closed = result.position
        assert closed.status is PositionStatus.CLOSED_TAKE_PROFIT
        assert closed.exit_price == 2.5
        assert closed.closed_at == clock.now()
        assert executor.active_positions() == {}

    @pytest.mark.asyncio
    async def test_unknown_position_id_rejected(self, make_executor):
        result = await make_executor().execute(sell(), position_id="pos_missing")

        assert result.error_kind is ErrorKind.VALIDATION
        assert "not open" in result.error

    @pytest.mark.asyncio
    async def test_open_status_is_not_a_close_status(self, make_executor):
        result = await make_executor().execute(sell(), close_status=PositionStatus.OPEN)
        assert result.error_kind is ErrorKind.VALIDATION

    @pytest.mark.asyncio
    async def test_failed_sell_keeps_position_open(self, make_executor, market, quotes):
        market.set_price(TOKEN, 2.0)
        executor = make_executor()
        position = (await executor.execute(buy())).position
        quotes.errors.append(QuoteUnavailableError("no route"))

        result = await executor.execute(sell())

        assert not result.success
        assert result.record.position_id == position.id
        assert executor.active_positions()[position.id].is_open

    @pytest.mark.asyncio
    async def test_sell_without_position_still_trades(self, make_executor):
        result = await make_executor().execute(sell())

        assert result.success
        assert result.position is None


class TestGating:
    @pytest.mark.asyncio
    async def test_auto_trading_disabled(self, make_executor, market, quotes):
        market.set_price(TOKEN, 2.0)
        executor = make_executor()
        executor.set_auto_trading_enabled(False)

        result = await executor.execute(buy())

        assert not result.success
        assert result.error == "auto trading disabled"
        assert result.record is None
        assert quotes.calls == []
        assert executor.trade_history() == ()

    @pytest.mark.asyncio
    async def test_invalid_signal_rejected_without_record(self, make_executor, market):
        market.set_price(TOKEN, 2.0)
        executor = make_executor()

        result = await executor.execute(buy(confidence=0.3))

        assert result.error_kind is ErrorKind.VALIDATION
        assert executor.trade_history() == ()

    @pytest.mark.asyncio
    async def test_stats(self, make_executor, market, quotes):
        market.set_price(TOKEN, 2.0)
        executor = make_executor()
        await executor.execute(buy())
        quotes.errors.append(QuoteUnavailableError("no route"))
        await executor.execute(buy())

        stats = executor.stats()
        assert stats["total_trades"] == 2
        assert stats["completed_trades"] == 1
        assert stats["failed_trades"] == 1
        assert stats["active_positions"] == 1

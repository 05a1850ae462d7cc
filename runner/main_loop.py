"""
Runner: trading engine + CLI

TradingEngine is the context object that owns one instance of every
component (limiters, caches, validator, executor, position manager,
tracker, batch orchestrator, metrics). Several engines can coexist in one
process; nothing is module-global.

Flow per opportunity scan:
1. Fetch analysis bundles for the watchlist (batched, cached, rate limited)
2. Skip tokens whose market snapshot scores as extreme risk
3. Generate signals from each bundle
4. Gate each signal (validation, cooldown, circuit breaker) and execute it

Independently, the PositionManager sweeps OPEN positions every
poll interval and closes them on stop-loss / take-profit.
"""

import argparse
import asyncio
import logging
import signal as os_signal
import sys
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

import yaml

from analytics.performance import PerformanceStats, PerformanceTracker
from analytics.trade_log import TradeLog, TradeRecord
from core.batch import BatchOrchestrator
from core.exceptions import ErrorKind, ValidationError, classify
from core.execution import ExecutionResult, TradeExecutor
from core.models import Position, Signal
from core.position_manager import PositionManager
from core.trade_limits import SignalLog, SignalValidator
from core.venue import (
    AnalyticsSource,
    CachedMarketData,
    ExecutionVenue,
    MarketDataProvider,
    QuoteService,
    SimulatedExecutionVenue,
    StaticAnalyticsSource,
)
from infra.cache import CacheRegistry, CacheStats
from infra.clock import Clock, PeriodicTask
from infra.jupiter_client import JupiterClient
from infra.metrics import MetricsRecorder, ScanStats
from infra.rate_limiter import RateLimiter
from infra.retry import retry_result
from strategy.analysis import bundles_from_mapping
from strategy.scoring import score_snapshot
from strategy.signal_generator import SignalGenerator
from tools.config_validator import LoggingConfig, TradingConfig, build_config, load_config, load_yaml_file

logger = logging.getLogger(__name__)

LAST_SCAN_KEY = "last_scan"


def configure_logging(log_cfg: LoggingConfig) -> None:
    log_path = Path(log_cfg.file)
    log_path.parent.mkdir(parents=True, exist_ok=True)

    logging.basicConfig(
        level=getattr(logging, log_cfg.level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        handlers=[logging.FileHandler(log_path), logging.StreamHandler()],
    )


@dataclass
class ScanReport:
    """Outcome of one watchlist scan"""
    tokens: int = 0
    analyzed: int = 0
    signals: int = 0
    results: List[ExecutionResult] = field(default_factory=list)
    skipped: Dict[str, str] = field(default_factory=dict)
    errors: Dict[str, str] = field(default_factory=dict)

    @property
    def executed(self) -> int:
        return sum(1 for r in self.results if r.success)


@dataclass(frozen=True)
class DashboardSnapshot:
    """Read-only view of engine state"""
    performance: PerformanceStats
    active_positions: Tuple[Position, ...]
    recent_trades: Tuple[TradeRecord, ...]
    auto_trading_enabled: bool
    running: bool
    config: Dict[str, Any]
    caches: Dict[str, CacheStats]
    limiters: Dict[str, Dict[str, float]]
    last_scan: Optional[ScanReport] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "performance": self.performance.to_dict(),
            "active_positions": [asdict(p) for p in self.active_positions],
            "recent_trades": [r.to_dict() for r in self.recent_trades],
            "auto_trading_enabled": self.auto_trading_enabled,
            "running": self.running,
            "config": dict(self.config),
            "caches": {name: asdict(stats) for name, stats in self.caches.items()},
            "limiters": {name: dict(stats) for name, stats in self.limiters.items()},
        }


class TradingEngine:
    """
    Owns and wires every trading component.

    Usage:
        engine = TradingEngine(config, market_data=jupiter, quote_service=jupiter,
                               venue=SimulatedExecutionVenue(), analytics=feed)
        report = await engine.scan_watchlist()
        engine.start()
        ...
        await engine.shutdown()
    """

    def __init__(
        self,
        config: Union[TradingConfig, Dict[str, Any], None],
        market_data: MarketDataProvider,
        quote_service: QuoteService,
        venue: ExecutionVenue,
        analytics: AnalyticsSource,
        clock: Optional[Clock] = None,
        metrics: Optional[MetricsRecorder] = None,
        signer: Any = None,
    ):
        if not isinstance(config, TradingConfig):
            config = build_config(dict(config or {}))
        self.config = config
        self.clock = clock or Clock()
        self.metrics = metrics or MetricsRecorder(enabled=config.metrics.enabled, port=config.metrics.port)
        self.analytics = analytics

        self.caches = CacheRegistry(clock=self.clock, metrics=self.metrics)
        snapshot_cache = self.caches.create("market_snapshot", config.cache.market_snapshot_ttl_ms / 1000.0)
        analysis_cache = self.caches.create("analysis", config.cache.analysis_ttl_ms / 1000.0)
        self.caches.create("batch_display", config.cache.batch_display_ttl_ms / 1000.0)

        # One limiter per external resource
        self.market_data_limiter = RateLimiter(
            "market_data", config.min_interval_seconds, config.max_backoff_seconds,
            clock=self.clock, metrics=self.metrics,
        )
        self.quote_limiter = RateLimiter(
            "quotes", config.min_interval_seconds, config.max_backoff_seconds,
            clock=self.clock, metrics=self.metrics,
        )

        self.market_data = CachedMarketData(
            market_data, snapshot_cache, self.market_data_limiter,
            max_attempts=config.max_retries, timeout=config.request_timeout_seconds,
        )

        self.trade_log = TradeLog()
        self.performance = PerformanceTracker(self.trade_log)
        self.validator = SignalValidator(config)
        self.signal_log = SignalLog()
        self.generator = SignalGenerator(self.validator.compute_trade_amount, min_move_pct=config.min_move_pct)
        self.executor = TradeExecutor(
            config, self.market_data, quote_service, venue, self.validator,
            trade_log=self.trade_log, clock=self.clock, metrics=self.metrics, signer=signer,
        )
        self.position_manager = PositionManager(
            self.executor, self.market_data, config,
            quote_limiter=self.quote_limiter, clock=self.clock, metrics=self.metrics,
        )
        self.batch = BatchOrchestrator(
            analysis_cache, self.market_data_limiter,
            concurrency_limit=config.concurrency_limit,
            max_attempts=config.max_retries,
            timeout=config.request_timeout_seconds,
            clock=self.clock,
            metrics=self.metrics,
        )

        self._signal_lock = asyncio.Lock()
        self._scan_task: Optional[PeriodicTask] = None
        self._running = False

        logger.info(
            f"TradingEngine ready: risk_level={config.risk_level}, auto_trading={config.enable_auto_trading}, "
            f"max_open_positions={config.max_open_positions}, watchlist={len(config.watchlist)} tokens"
        )

    # ----- Signals -----

    async def process_signal(self, signal: Signal) -> ExecutionResult:
        """Gate a signal (validation, cooldown, circuit breaker) and execute it."""
        token = getattr(signal, "token_address", None)
        source = getattr(getattr(signal, "source", None), "value", "unknown")
        side = getattr(getattr(signal, "type", None), "value", None)

        async with self._signal_lock:
            check = self.validator.validate(signal)
            if not check.approved:
                return self._rejected(token, side, source, check.reason)

            now = self.clock.now()
            stats = self.performance.snapshot()
            self.metrics.record_circuit_breaker_state(
                "accuracy", SignalValidator.circuit_breaker_tripped(stats)
            )
            decision = self.validator.should_execute(signal, token, self.signal_log, stats, current_time=now)
            if not decision.approved:
                return self._rejected(token, side, source, decision.reason)

            self.signal_log.record(signal, now)

        result = await retry_result(
            lambda: self.executor.execute(signal),
            self.quote_limiter,
            max_attempts=self.config.max_retries,
            description=f"{side} {token[:8]}",
        )
        self.metrics.record_signal(source, "executed" if result.success else "failed")
        return result

    def _rejected(self, token: Optional[str], side: Optional[str], source: str, reason: str) -> ExecutionResult:
        logger.info(f"Signal {side or '?'} {(token or '?')[:8]} ({source}) rejected: {reason}")
        self.metrics.record_signal(source, "rejected")
        return ExecutionResult(
            success=False,
            token_address=token,
            side=side,
            error=reason,
            error_kind=ErrorKind.VALIDATION,
        )

    # ----- Opportunity scan -----

    async def scan_watchlist(self, tokens: Optional[Iterable[str]] = None) -> ScanReport:
        tokens = list(self.config.watchlist if tokens is None else tokens)
        report = ScanReport(tokens=len(tokens))
        if not tokens:
            return report

        started = self.clock.monotonic()
        items = await self.batch.analyze_batch(tokens, self.analytics.get_analysis)

        for item in items:
            token = item.token_address
            if not item.success:
                report.errors[token] = item.error or "analysis failed"
                continue
            bundle = item.value
            if bundle is None:
                report.skipped[token] = "no analysis"
                continue
            report.analyzed += 1

            try:
                snapshot = await self.market_data.get_market_snapshot(token)
            except Exception as exc:
                kind = classify(exc)
                if kind is ErrorKind.UNKNOWN:
                    logger.error(f"Scan {token[:8]}: market data lookup failed: {exc}", exc_info=True)
                else:
                    logger.warning(f"Scan {token[:8]}: market data unavailable ({kind.value}): {exc}")
                report.errors[token] = str(exc) or kind.value
                self.metrics.record_api_error(kind.value)
                continue
            if snapshot is None:
                report.skipped[token] = "token not found"
                continue

            assessment = score_snapshot(snapshot)
            if assessment.is_extreme:
                logger.info(f"Scan {token[:8]}: skipping extreme risk score {assessment.score:.0f}")
                report.skipped[token] = f"extreme risk ({assessment.score:.0f})"
                continue

            try:
                signals = self.generator.generate(bundle)
            except ValidationError as exc:
                logger.warning(f"Scan {token[:8]}: cannot generate signals: {exc}")
                report.errors[token] = str(exc)
                continue

            report.signals += len(signals)
            for candidate in signals:
                report.results.append(await self.process_signal(candidate))

        duration = self.clock.monotonic() - started
        self.caches["batch_display"].set(LAST_SCAN_KEY, report)
        self.metrics.observe_scan(ScanStats(
            tokens=report.tokens,
            analyzed=report.analyzed,
            signals=report.signals,
            executed=report.executed,
            duration_seconds=duration,
        ))
        logger.info(
            f"Scan: tokens={report.tokens} analyzed={report.analyzed} signals={report.signals} "
            f"executed={report.executed} skipped={len(report.skipped)} errors={len(report.errors)}"
        )
        return report

    async def _scan_tick(self) -> None:
        if self.config.watchlist:
            await self.scan_watchlist()

    # ----- Lifecycle -----

    @property
    def is_running(self) -> bool:
        return self._running

    def start(self) -> None:
        """Start the periodic scan, position monitor and cache sweep."""
        if self._running:
            return
        self._running = True
        self.metrics.start()
        self.caches.start_cleanup(self.config.cache.cleanup_interval_ms / 1000.0)
        self.position_manager.start()
        self._scan_task = PeriodicTask(
            "opportunity-scan",
            self._scan_tick,
            self.config.scan_interval_seconds,
            clock=self.clock,
            run_immediately=True,
        )
        self._scan_task.start()
        logger.info("TradingEngine started")

    def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        if self._scan_task is not None:
            self._scan_task.stop()
        self.position_manager.stop()
        self.caches.stop_cleanup()
        logger.info("TradingEngine stopped")

    async def shutdown(self) -> None:
        """stop() and wait for the background tasks to unwind."""
        self.stop()
        if self._scan_task is not None:
            await self._scan_task.wait_stopped()
        await self.position_manager.wait_stopped()
        await self.caches.wait_cleanup_stopped()

    # ----- Configuration -----

    def update_config(self, **changes) -> TradingConfig:
        """Validate and apply config changes. Raises ValidationError on bad values."""
        config = build_config({**self.config.model_dump(), **changes})
        self.config = config
        self.validator.config = config
        self.executor.update_config(config)
        self.position_manager.config = config
        self.generator.min_move_pct = config.min_move_pct
        self.batch.concurrency_limit = config.concurrency_limit
        for limiter in (self.market_data_limiter, self.quote_limiter):
            limiter.min_interval = config.min_interval_seconds
            limiter.max_backoff = max(config.max_backoff_seconds, config.min_interval_seconds)
        logger.info(f"Config updated: {sorted(changes)}")
        return config

    def set_auto_trading_enabled(self, enabled: bool) -> None:
        self.update_config(enable_auto_trading=bool(enabled))

    # ----- Observability -----

    def dashboard(self, recent: int = 10) -> DashboardSnapshot:
        return DashboardSnapshot(
            performance=self.performance.snapshot(),
            active_positions=tuple(self.executor.active_positions().values()),
            recent_trades=tuple(self.performance.recent(recent)),
            auto_trading_enabled=self.config.enable_auto_trading,
            running=self._running,
            config=self.config.model_dump(),
            caches=self.caches.stats(),
            limiters={
                "market_data": self.market_data_limiter.get_stats(),
                "quotes": self.quote_limiter.get_stats(),
            },
            last_scan=self.caches["batch_display"].get(LAST_SCAN_KEY),
        )


async def _run(config: TradingConfig, once: bool, analytics: AnalyticsSource) -> int:
    async with JupiterClient(timeout=config.request_timeout_seconds, slippage_bps=config.slippage_bps) as jupiter:
        engine = TradingEngine(
            config,
            market_data=jupiter,
            quote_service=jupiter,
            venue=SimulatedExecutionVenue(max_slippage_pct=config.max_simulated_slippage_pct),
            analytics=analytics,
        )

        if once:
            report = await engine.scan_watchlist()
            sweep = await engine.position_manager.monitor_positions()
            logger.info(
                f"Single pass done: executed={report.executed} closed={len(sweep.closed)} "
                f"performance={engine.performance.snapshot().to_dict()}"
            )
            return 0

        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (os_signal.SIGINT, os_signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop_event.set)
            except NotImplementedError:
                logger.debug(f"Signal handler for {sig} not supported on this platform")

        engine.start()
        await stop_event.wait()
        await engine.shutdown()
        logger.info("Trading engine stopped cleanly.")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Entry point"""
    parser = argparse.ArgumentParser(description="On-chain auto-trading engine")
    parser.add_argument("--config", default="config/trading.yaml", help="Config file (YAML)")
    parser.add_argument("--once", action="store_true", help="Run one scan + position sweep and exit")
    parser.add_argument("--watchlist", help="Comma-separated token addresses (overrides config watchlist)")
    parser.add_argument("--analysis", help="YAML/JSON analysis feed: token -> {price, prediction, technical, sentiment}")

    args = parser.parse_args(argv)

    try:
        config = load_config(args.config)
        if args.watchlist:
            tokens = [t.strip() for t in args.watchlist.split(",")]
            config = build_config({**config.model_dump(), "watchlist": tokens})
    except ValidationError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return 2

    try:
        feed = load_yaml_file(Path(args.analysis)) if args.analysis else {}
        analytics = StaticAnalyticsSource(bundles_from_mapping(feed))
    except (FileNotFoundError, yaml.YAMLError, ValidationError) as e:
        print(f"Invalid analysis feed: {e}", file=sys.stderr)
        return 2

    configure_logging(config.logging)
    return asyncio.run(_run(config, args.once, analytics))


if __name__ == "__main__":
    sys.exit(main())

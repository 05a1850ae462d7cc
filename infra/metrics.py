"""Prometheus-backed metrics hooks for the trading engine."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Summary, start_http_server

logger = logging.getLogger(__name__)


@dataclass
class ScanStats:
    tokens: int
    analyzed: int
    signals: int
    executed: int
    duration_seconds: float


class MetricsRecorder:
    """
    Expose engine stats via Prometheus.

    Each recorder owns its own CollectorRegistry, so several engines (or
    tests) can coexist in one process without duplicate registration
    errors. Last-seen values are kept on the instance even when exporting
    is disabled, for dashboards and tests.
    """

    def __init__(self, enabled: bool = True, port: int = 9100,
                 registry: Optional[CollectorRegistry] = None) -> None:
        self._enabled = bool(enabled)
        self._port = port
        self._started = False
        self.registry = registry or CollectorRegistry()

        self._last_scan: Optional[ScanStats] = None
        self._last_rate_wait: Dict[str, float] = {}
        self._cache_lookups: Dict[str, Dict[str, int]] = {}
        self._trades: Dict[str, int] = {}
        self._api_errors: Dict[str, int] = {}
        self._signal_outcomes: Dict[str, int] = {}
        self._open_positions = 0
        self._circuit_state: Dict[str, bool] = {}

        if not self._enabled:
            self._scan_summary = None
            self._rate_wait_summary = None
            self._backoff_gauge = None
            self._cache_counter = None
            self._trades_counter = None
            self._slippage_summary = None
            self._positions_gauge = None
            self._circuit_breaker_gauge = None
            self._api_errors_counter = None
            self._signals_counter = None
            self._batch_summary = None
            return

        self._scan_summary = Summary(
            "trader_scan_duration_seconds",
            "Duration of a full watchlist scan",
            registry=self.registry,
        )
        self._rate_wait_summary = Summary(
            "trader_rate_limit_wait_seconds",
            "Time spent waiting on a rate limiter before an external call",
            labelnames=("limiter",),
            registry=self.registry,
        )
        self._backoff_gauge = Gauge(
            "trader_rate_limit_consecutive_failures",
            "Consecutive failures currently driving backoff",
            labelnames=("limiter",),
            registry=self.registry,
        )
        self._cache_counter = Counter(
            "trader_cache_lookups_total",
            "Cache lookups by cache and outcome",
            labelnames=("cache", "outcome"),
            registry=self.registry,
        )
        self._trades_counter = Counter(
            "trader_trades_total",
            "Trade attempts by side and status",
            labelnames=("side", "status"),
            registry=self.registry,
        )
        self._slippage_summary = Summary(
            "trader_trade_slippage_pct",
            "Realized slippage of completed trades",
            registry=self.registry,
        )
        self._positions_gauge = Gauge(
            "trader_open_positions",
            "Number of OPEN positions",
            registry=self.registry,
        )
        self._circuit_breaker_gauge = Gauge(
            "trader_circuit_breaker_open",
            "Circuit breaker state (1=tripped, 0=closed)",
            labelnames=("breaker",),
            registry=self.registry,
        )
        self._api_errors_counter = Counter(
            "trader_api_errors_total",
            "External call failures by error kind",
            labelnames=("kind",),
            registry=self.registry,
        )
        self._signals_counter = Counter(
            "trader_signals_total",
            "Signals by source and outcome",
            labelnames=("source", "outcome"),
            registry=self.registry,
        )
        self._batch_summary = Summary(
            "trader_batch_duration_seconds",
            "Duration of a batch analysis fan-out",
            registry=self.registry,
        )

    def start(self) -> None:
        if not self._enabled or self._started:
            return

        # Auto-retry on port conflict
        ports_to_try = [self._port, self._port + 1, self._port + 2, self._port + 3]
        last_error = None
        for port in ports_to_try:
            try:
                start_http_server(port, registry=self.registry)
                self._started = True
                if port != self._port:
                    logger.warning(f"Port {self._port} in use, bound metrics exporter to {port} instead")
                    self._port = port
                logger.info(f"Prometheus metrics exporter listening on 0.0.0.0:{self._port}")
                return
            except OSError as exc:
                last_error = exc
                logger.debug(f"Port {port} in use, trying next port...")

        self._enabled = False
        logger.error(f"Failed to start metrics exporter after trying ports {ports_to_try}: {last_error}")

    def is_enabled(self) -> bool:
        return self._enabled

    def observe_scan(self, stats: ScanStats) -> None:
        self._last_scan = stats
        if self._enabled:
            self._scan_summary.observe(stats.duration_seconds)

    def record_rate_limit_wait(self, limiter: str, wait_seconds: float, consecutive_failures: int) -> None:
        self._last_rate_wait[limiter] = wait_seconds
        if self._enabled:
            self._rate_wait_summary.labels(limiter=limiter).observe(max(wait_seconds, 0.0))
            self._backoff_gauge.labels(limiter=limiter).set(consecutive_failures)

    def record_cache_lookup(self, cache: str, hit: bool) -> None:
        outcome = "hit" if hit else "miss"
        counts = self._cache_lookups.setdefault(cache, {"hit": 0, "miss": 0})
        counts[outcome] += 1
        if self._enabled:
            self._cache_counter.labels(cache=cache, outcome=outcome).inc()

    def record_trade(self, side: str, status: str, slippage_pct: Optional[float] = None) -> None:
        key = f"{side.upper()}:{status}"
        self._trades[key] = self._trades.get(key, 0) + 1
        if self._enabled:
            self._trades_counter.labels(side=side.upper(), status=status).inc()
            if slippage_pct is not None:
                self._slippage_summary.observe(slippage_pct)

    def record_open_positions(self, count: int) -> None:
        self._open_positions = count
        if self._enabled:
            self._positions_gauge.set(count)

    def record_circuit_breaker_state(self, breaker_name: str, is_open: bool) -> None:
        self._circuit_state[breaker_name] = is_open
        if self._enabled:
            self._circuit_breaker_gauge.labels(breaker=breaker_name).set(1 if is_open else 0)

    def record_api_error(self, kind: str) -> None:
        self._api_errors[kind] = self._api_errors.get(kind, 0) + 1
        if self._enabled:
            self._api_errors_counter.labels(kind=kind).inc()

    def record_signal(self, source: str, outcome: str) -> None:
        key = f"{source}:{outcome}"
        self._signal_outcomes[key] = self._signal_outcomes.get(key, 0) + 1
        if self._enabled:
            self._signals_counter.labels(source=source, outcome=outcome).inc()

    def record_batch(self, duration_seconds: float) -> None:
        if self._enabled:
            self._batch_summary.observe(duration_seconds)

    @property
    def last_scan(self) -> Optional[ScanStats]:
        return self._last_scan

    def snapshot(self) -> Dict[str, object]:
        """Plain-dict view of everything recorded so far."""
        return {
            "rate_limit_waits": dict(self._last_rate_wait),
            "cache_lookups": {name: dict(counts) for name, counts in self._cache_lookups.items()},
            "trades": dict(self._trades),
            "api_errors": dict(self._api_errors),
            "signals": dict(self._signal_outcomes),
            "open_positions": self._open_positions,
            "circuit_breakers": dict(self._circuit_state),
        }

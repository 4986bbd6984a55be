"""
Prometheus metrics for the peg stabilizer.

Metrics live on a private CollectorRegistry per PegMetrics instance so
several bots (or test cases) can coexist in one process. The web server
exposes them at /metrics.
"""

import threading
from typing import Optional

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

from .utils import get_logger

logger = get_logger(__name__)


class PegMetrics:
    """
    Trading metrics collection

    Provides Prometheus-compatible metrics for:
    - Trade submissions, rejections and outcomes
    - Circuit breaker trips
    - Peg deviation, pool liquidity and daily volume
    """

    content_type = CONTENT_TYPE_LATEST

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or CollectorRegistry()
        self._lock = threading.RLock()
        self._initialize_metrics()

    def _initialize_metrics(self):
        # === TRADE METRICS ===
        self.trades_submitted_total = Counter(
            "peg_stabilizer_trades_submitted_total",
            "Trade submissions that passed validation",
            ["bot_id", "action"],
            registry=self.registry,
        )

        self.trades_rejected_total = Counter(
            "peg_stabilizer_trades_rejected_total",
            "Trade submissions rejected before a record was opened",
            ["bot_id", "reason"],
            registry=self.registry,
        )

        self.trades_completed_total = Counter(
            "peg_stabilizer_trades_completed_total",
            "Trades closed, by terminal status",
            ["bot_id", "action", "status"],
            registry=self.registry,
        )

        self.execution_duration_seconds = Histogram(
            "peg_stabilizer_execution_duration_seconds",
            "Chain executor call duration",
            ["bot_id", "action"],
            buckets=[0.1, 0.5, 1, 2, 5, 10, 30, 60, 120],
            registry=self.registry,
        )

        # === RISK METRICS ===
        self.circuit_breaker_trips_total = Counter(
            "peg_stabilizer_circuit_breaker_trips_total",
            "Automatic pauses after consecutive execution failures",
            ["bot_id"],
            registry=self.registry,
        )

        self.consecutive_errors = Gauge(
            "peg_stabilizer_consecutive_errors",
            "Current consecutive execution failure count",
            ["bot_id"],
            registry=self.registry,
        )

        self.bot_enabled = Gauge(
            "peg_stabilizer_bot_enabled",
            "1 when the bot accepts trades",
            ["bot_id"],
            registry=self.registry,
        )

        self.daily_volume = Gauge(
            "peg_stabilizer_daily_volume",
            "Successful input volume for the current UTC day",
            ["bot_id"],
            registry=self.registry,
        )

        # === MARKET METRICS ===
        self.peg_deviation_percent = Gauge(
            "peg_stabilizer_peg_deviation_percent",
            "Signed deviation of the token price from the peg",
            ["bot_id"],
            registry=self.registry,
        )

        self.liquidity_usd = Gauge(
            "peg_stabilizer_liquidity_usd",
            "Pool liquidity in USD",
            ["bot_id"],
            registry=self.registry,
        )

        self.upstream_errors_total = Counter(
            "peg_stabilizer_upstream_errors_total",
            "Failed reads from price, pool or chain sources",
            ["bot_id", "source"],
            registry=self.registry,
        )

    # === METRIC RECORDING METHODS ===

    def record_submission(self, bot_id: str, action: str):
        with self._lock:
            self.trades_submitted_total.labels(bot_id=bot_id, action=action).inc()

    def record_rejection(self, bot_id: str, reason: str):
        with self._lock:
            self.trades_rejected_total.labels(bot_id=bot_id, reason=reason).inc()

    def record_outcome(
        self, bot_id: str, action: str, status: str, duration_seconds: float = 0.0
    ):
        """Record a closed trade"""
        with self._lock:
            self.trades_completed_total.labels(
                bot_id=bot_id, action=action, status=status
            ).inc()
            if duration_seconds > 0:
                self.execution_duration_seconds.labels(
                    bot_id=bot_id, action=action
                ).observe(duration_seconds)

    def record_circuit_breaker(self, bot_id: str):
        with self._lock:
            self.circuit_breaker_trips_total.labels(bot_id=bot_id).inc()

    def record_upstream_error(self, bot_id: str, source: str):
        with self._lock:
            self.upstream_errors_total.labels(bot_id=bot_id, source=source).inc()

    def update_bot_state(self, bot_id: str, enabled: bool, consecutive_errors: int):
        with self._lock:
            self.bot_enabled.labels(bot_id=bot_id).set(1 if enabled else 0)
            self.consecutive_errors.labels(bot_id=bot_id).set(consecutive_errors)

    def update_daily_volume(self, bot_id: str, volume: float):
        with self._lock:
            self.daily_volume.labels(bot_id=bot_id).set(volume)

    def update_market(self, bot_id: str, deviation_percent: float, liquidity_usd: Optional[float] = None):
        with self._lock:
            self.peg_deviation_percent.labels(bot_id=bot_id).set(deviation_percent)
            if liquidity_usd is not None:
                self.liquidity_usd.labels(bot_id=bot_id).set(liquidity_usd)

    def render(self) -> bytes:
        """Exposition-format snapshot of every metric"""
        return generate_latest(self.registry)

    def get_value(self, name: str, labels: dict) -> Optional[float]:
        return self.registry.get_sample_value(name, labels)

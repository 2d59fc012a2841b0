import errno
import logging
from prometheus_client import REGISTRY, CollectorRegistry, Counter, Gauge, Histogram, start_http_server
from typing import Optional

from config import config


logger = logging.getLogger(__name__)

_METRICS_PORT: Optional[int] = None


def _port_scan_limit() -> int:
    monitoring = config.get('monitoring') or {}
    try:
        return max(0, int(monitoring.get('prometheus_port_scan', 0)))
    except (TypeError, ValueError):
        return 0


class MetricsCollector:
    def __init__(self, registry: CollectorRegistry = REGISTRY):
        self.registry = registry
        self.anomalies_detected = Counter(
            'anomalies_detected_total', 'Volume anomalies detected', ['trade_type'], registry=registry
        )
        self.watchlist_outcomes = Counter(
            'watchlist_outcomes_total', 'Watchlist entries resolved', ['outcome'], registry=registry
        )
        self.positions_opened = Counter(
            'positions_opened_total', 'Positions opened', ['trade_type'], registry=registry
        )
        self.positions_closed = Counter(
            'positions_closed_total', 'Positions closed', ['reason'], registry=registry
        )
        self.levels_executed = Counter('levels_executed_total', 'Partial exit levels executed', registry=registry)
        self.break_even_promotions = Counter(
            'break_even_promotions_total', 'Stops promoted to break-even', registry=registry
        )
        self.reconnect_count = Counter('websocket_reconnects_total', 'Total WebSocket reconnects', registry=registry)
        self.fetch_failures = Counter(
            'candle_fetch_failures_total', 'Historical candle fetch failures', ['kind'], registry=registry
        )
        self.persistence_failures = Counter(
            'persistence_failures_total', 'Snapshot writes that failed', ['collection'], registry=registry
        )
        self.notification_failures = Counter(
            'notification_failures_total', 'Notifications that could not be delivered', ['event'], registry=registry
        )
        self.invariant_violations = Counter(
            'invariant_violations_total', 'Symbols quarantined after a contract failure', registry=registry
        )

        self.pending_anomalies = Gauge('pending_anomalies', 'Anomalies awaiting confirmation', registry=registry)
        self.open_positions = Gauge('open_positions', 'Currently open positions', registry=registry)
        self.realized_profit_percent = Gauge(
            'realized_profit_percent', 'Sum of closed trade P/L in percent', registry=registry
        )
        self.scan_duration = Histogram(
            'anomaly_scan_duration_seconds', 'Duration of a full slow-path scan', registry=registry
        )

    def record_anomaly(self, trade_type: str):
        self.anomalies_detected.labels(trade_type=trade_type).inc()

    def record_watchlist_outcome(self, outcome: str):
        self.watchlist_outcomes.labels(outcome=outcome).inc()

    def record_position_opened(self, trade_type: str):
        self.positions_opened.labels(trade_type=trade_type).inc()

    def record_position_closed(self, reason: str, profit_loss_percent: Optional[float] = None):
        self.positions_closed.labels(reason=reason).inc()
        if profit_loss_percent is not None:
            self.realized_profit_percent.inc(profit_loss_percent)

    def record_level_executed(self, count: int = 1):
        if count:
            self.levels_executed.inc(count)

    def record_break_even(self):
        self.break_even_promotions.inc()

    def record_reconnect(self):
        self.reconnect_count.inc()

    def record_fetch_failure(self, kind: str):
        self.fetch_failures.labels(kind=kind).inc()

    def record_persistence_failure(self, collection: str):
        self.persistence_failures.labels(collection=collection).inc()

    def record_notification_failure(self, event: str):
        self.notification_failures.labels(event=event).inc()

    def record_invariant_violation(self):
        self.invariant_violations.inc()

    def update_state(self, pending: int, open_positions: int):
        self.pending_anomalies.set(pending)
        self.open_positions.set(open_positions)

    def observe_scan(self, seconds: float):
        self.scan_duration.observe(seconds)


def start_metrics_server(port: int = 9090) -> int:
    """Expose the default registry over HTTP, trying up to ``prometheus_port_scan`` higher ports."""
    global _METRICS_PORT
    if _METRICS_PORT is not None:
        return _METRICS_PORT
    last = port + _port_scan_limit()
    for candidate in range(port, last + 1):
        try:
            start_http_server(candidate)
        except OSError as exc:
            if exc.errno != errno.EADDRINUSE:
                raise
            logger.warning("Prometheus metrics port %s already in use", candidate)
            continue
        _METRICS_PORT = candidate
        logger.info("Prometheus metrics server started on port %s", candidate)
        return candidate
    raise RuntimeError(f"Unable to bind Prometheus metrics server on ports {port}-{last}")


metrics = MetricsCollector()

"""
Rich Prometheus metrics for production observability.

Organized into: orders, position guard, spread guard, operational.
"""

from prometheus_client import Counter, Gauge, CollectorRegistry, start_http_server
from typing import Optional


class RichMetrics:
    """Metrics for the maker-quoting bot."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        reg = registry or CollectorRegistry()

        # === Order Metrics ===
        self.orders_placed = Counter(
            'orders_placed_total',
            'Quote orders accepted by the exchange',
            labelnames=['coin', 'side'],
            registry=reg
        )
        self.orders_rejected = Counter(
            'orders_rejected_total',
            'Orders rejected by the exchange',
            labelnames=['coin', 'side'],
            registry=reg
        )
        self.orders_canceled = Counter(
            'orders_canceled_total',
            'Orders canceled',
            labelnames=['coin', 'reason'],
            registry=reg
        )
        self.replaces = Counter(
            'order_replaces_total',
            'Cancel/replace cycles by trigger zone',
            labelnames=['coin', 'side', 'reason'],
            registry=reg
        )
        self.replaces_throttled = Counter(
            'order_replaces_throttled_total',
            'Replace triggers dropped by the min replace interval',
            labelnames=['coin', 'side'],
            registry=reg
        )

        # === Position Guard Metrics ===
        self.fills_total = Counter(
            'fills_total',
            'Quote fills detected',
            labelnames=['coin', 'side'],
            registry=reg
        )
        self.flattens = Counter(
            'flattens_total',
            'Flatten operations by outcome',
            labelnames=['coin', 'outcome'],
            registry=reg
        )
        self.position = Gauge(
            'position',
            'Current net position (coins)',
            labelnames=['coin'],
            registry=reg
        )
        self.reference_price = Gauge(
            'reference_price',
            'Latest reference (mark) price',
            labelnames=['coin'],
            registry=reg
        )

        # === Spread Guard Metrics ===
        self.spread_bp = Gauge(
            'reference_spread_bp',
            'Latest reference market spread (bp)',
            labelnames=['coin'],
            registry=reg
        )
        self.spread_jump_threshold_bp = Gauge(
            'spread_jump_threshold_bp',
            'Effective spread jump threshold (bp)',
            labelnames=['coin'],
            registry=reg
        )
        self.spread_max_threshold_bp = Gauge(
            'spread_max_threshold_bp',
            'Effective spread max threshold (bp)',
            labelnames=['coin'],
            registry=reg
        )
        self.spread_volatility_bp = Gauge(
            'spread_volatility_bp',
            'Spread standard deviation over the volatility window (bp)',
            labelnames=['coin'],
            registry=reg
        )
        self.spread_guard_trips = Counter(
            'spread_guard_trips_total',
            'Spread anomaly detections by regime',
            labelnames=['coin', 'regime'],
            registry=reg
        )
        self.quoting_suspended = Gauge(
            'quoting_suspended',
            'Spread guard cooldown active (1=suspended, 0=active)',
            labelnames=['coin'],
            registry=reg
        )

        # === Operational Metrics ===
        self.api_errors_total = Counter(
            'api_errors_total',
            'Venue / reference API errors encountered',
            labelnames=['coin', 'where'],
            registry=reg
        )
        self.halted = Gauge(
            'bot_halted',
            'Fatal halt status (1=halted, 0=ok)',
            labelnames=['coin'],
            registry=reg
        )
        self.bot_started = Counter(
            'bot_started_total',
            'Bot instances started',
            labelnames=['coin'],
            registry=reg
        )

        self.registry = reg

    def get_registry(self):
        """Return the Prometheus registry for export."""
        return self.registry


def start_metrics_server(metrics: RichMetrics, port: int) -> bool:
    """Expose the registry over HTTP; port 0 disables the endpoint."""
    if port <= 0:
        return False
    start_http_server(port, registry=metrics.get_registry())
    return True

"""
Monitoring and observability package.

This package contains Prometheus metrics and status snapshots.
"""

from makerbot.monitoring.metrics_rich import RichMetrics, start_metrics_server
from makerbot.monitoring.status import StatusBoard

__all__ = [
    "RichMetrics",
    "start_metrics_server",
    "StatusBoard",
]

"""
Execution layer components.

- OrderLifecycleManager: per-side quoting, distance bands, throttled replace
- order_ops: venue operations shared by the engines (cancel-all, bounded calls)
- HyperliquidGateway: ExchangeGateway over the Hyperliquid SDK and info API
"""

from makerbot.execution.order_lifecycle import (
    DistanceZone,
    Evaluation,
    LifecycleConfig,
    OrderLifecycleManager,
    ReplaceOutcome,
    ReplaceResult,
)
from makerbot.execution.order_ops import cancel_all_orders, venue_call
from makerbot.execution.hyperliquid_gateway import HyperliquidGateway

__all__ = [
    "DistanceZone",
    "Evaluation",
    "LifecycleConfig",
    "OrderLifecycleManager",
    "ReplaceOutcome",
    "ReplaceResult",
    "cancel_all_orders",
    "venue_call",
    "HyperliquidGateway",
]

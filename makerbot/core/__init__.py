"""
Core package.

Shared data model, Decimal rounding helpers and collaborator interfaces.
"""

from makerbot.core.models import (
    BidAsk,
    BotState,
    BotStats,
    ConnectivityRestored,
    Order,
    OrderStatus,
    OrderStatusEvent,
    OrderType,
    PlaceResult,
    PositionChanged,
    PriceTick,
    Side,
    SpreadSample,
    TimerTick,
    TradingMode,
)

__all__ = [
    "BidAsk",
    "BotState",
    "BotStats",
    "ConnectivityRestored",
    "Order",
    "OrderStatus",
    "OrderStatusEvent",
    "OrderType",
    "PlaceResult",
    "PositionChanged",
    "PriceTick",
    "Side",
    "SpreadSample",
    "TimerTick",
    "TradingMode",
]

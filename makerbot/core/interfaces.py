"""
Collaborator interfaces the core depends on.

Concrete adapters live in makerbot.execution.hyperliquid_gateway,
makerbot.market_data.hyperliquid_stream and makerbot.market_data.binance_spread;
tests substitute AsyncMock objects with the same shape.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Callable, List, Optional, Protocol

from makerbot.core.models import BidAsk, Order, OrderType, PlaceResult, Side

EventSink = Callable[[Any], None]


class ExchangeGateway(Protocol):
    async def place_order(
        self,
        side: Side,
        qty: Decimal,
        price: Decimal,
        reduce_only: bool = False,
        order_type: OrderType = OrderType.LIMIT,
    ) -> PlaceResult: ...

    async def cancel_order(self, order_id: str) -> bool: ...

    async def get_order_info(self, order_id: str) -> Optional[Order]: ...

    async def get_open_orders(self, symbol: str) -> List[Order]: ...

    async def get_position(self, symbol: str) -> Decimal: ...

    async def get_tick_size(self, symbol: str) -> Decimal: ...


class MarketDataSource(Protocol):
    """Delivers PriceTick / OrderStatusEvent / PositionChanged / ConnectivityRestored to a sink."""

    async def start(self, sink: EventSink) -> None: ...

    async def resubscribe(self) -> None: ...

    async def stop(self) -> None: ...


class ReferenceSpreadSource(Protocol):
    async def poll_best_bid_ask(self, symbol: str) -> BidAsk: ...

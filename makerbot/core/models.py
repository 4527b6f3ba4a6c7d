"""
Core data model shared by the quoting engines.

Everything price- or size-like is a Decimal. Orders are immutable values:
the slot in BotState is replaced wholesale on every requote, and status
updates produce a new Order via dataclasses.replace.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field, replace
from decimal import Decimal
from enum import Enum
from typing import Any, Deque, Dict, Optional


class Side(str, Enum):
    BUY = "buy"
    SELL = "sell"

    @property
    def sign(self) -> int:
        """+1 for buy, -1 for sell (position delta of a fill on this side)."""
        return 1 if self is Side.BUY else -1


class OrderStatus(str, Enum):
    """
    Order lifecycle states as reported by the venue.

    OPEN ──> PARTIALLY_FILLED ──> FILLED
      │             │
      └─────────────┴──> CANCELED

    FAILED covers rejections and anything the venue refused to rest.
    """
    OPEN = "open"
    PARTIALLY_FILLED = "partially_filled"
    FILLED = "filled"
    CANCELED = "canceled"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (OrderStatus.FILLED, OrderStatus.CANCELED, OrderStatus.FAILED)


class OrderType(str, Enum):
    LIMIT = "limit"
    MARKET = "market"


class TradingMode(str, Enum):
    BOTH = "both"
    BUY = "buy"
    SELL = "sell"

    @property
    def sides(self) -> tuple:
        if self is TradingMode.BUY:
            return (Side.BUY,)
        if self is TradingMode.SELL:
            return (Side.SELL,)
        return (Side.BUY, Side.SELL)


@dataclass(frozen=True)
class Order:
    order_id: str
    side: Side
    price: Decimal
    qty: Decimal
    filled_qty: Decimal = Decimal(0)
    status: OrderStatus = OrderStatus.OPEN
    reduce_only: bool = False

    def with_status(self, status: OrderStatus, filled_qty: Optional[Decimal] = None) -> "Order":
        return replace(
            self,
            status=status,
            filled_qty=self.filled_qty if filled_qty is None else filled_qty,
        )


@dataclass(frozen=True)
class PlaceResult:
    """Outcome of an ExchangeGateway.place_order call."""
    success: bool
    order_id: Optional[str] = None
    status: Optional[OrderStatus] = None
    filled_qty: Decimal = Decimal(0)
    price: Optional[Decimal] = None
    error_message: Optional[str] = None


@dataclass(frozen=True)
class BidAsk:
    bid: Decimal
    ask: Decimal

    @property
    def mid(self) -> Decimal:
        return (self.bid + self.ask) / 2

    @property
    def is_valid(self) -> bool:
        return self.bid > 0 and self.ask > 0 and self.ask >= self.bid


@dataclass(frozen=True)
class SpreadSample:
    timestamp_ms: int
    spread_bp: Decimal


# ---------------------------------------------------------------------------
# Stream events (MarketDataSource -> Orchestrator queue)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PriceTick:
    symbol: str
    price: Decimal
    timestamp_ms: int = 0


@dataclass(frozen=True)
class OrderStatusEvent:
    order_id: str
    status: OrderStatus
    filled_qty: Decimal = Decimal(0)
    avg_fill_price: Optional[Decimal] = None


@dataclass(frozen=True)
class PositionChanged:
    quantity: Decimal


@dataclass(frozen=True)
class ConnectivityRestored:
    pass


@dataclass(frozen=True)
class TimerTick:
    timestamp_ms: int = 0


# ---------------------------------------------------------------------------
# Run-time state (single owner: BotOrchestrator)
# ---------------------------------------------------------------------------


@dataclass
class BotStats:
    orders_placed: int = 0
    orders_canceled: int = 0
    orders_filled: int = 0
    flattens: int = 0
    start_time_ms: int = 0
    last_trade_time_ms: Optional[int] = None


RETIRED_ORDER_LIMIT = 16


def _side_map(value: Any) -> Dict[Side, Any]:
    return {Side.BUY: value, Side.SELL: value}


@dataclass
class BotState:
    """
    Authoritative run-time state.

    Mutated only by the engines on behalf of the orchestrator; anything else
    reads it through snapshot().
    """
    symbol: str = ""
    running: bool = False
    reference_price: Decimal = Decimal(0)
    position: Decimal = Decimal(0)
    orders: Dict[Side, Optional[Order]] = field(default_factory=lambda: _side_map(None))
    last_replace_ms: Dict[Side, int] = field(default_factory=lambda: _side_map(0))
    replace_in_flight: Dict[Side, bool] = field(default_factory=lambda: _side_map(False))
    flatten_in_flight: bool = False
    stats: BotStats = field(default_factory=BotStats)
    spread_cooldown_until_ms: int = 0
    quoting_suspended: bool = False
    spread_samples: Deque[SpreadSample] = field(default_factory=deque)
    last_position_check_ms: int = 0
    halted_reason: Optional[str] = None
    # Orders that left a slot recently; late fill events still resolve against them.
    retired_orders: Deque[Order] = field(default_factory=lambda: deque(maxlen=RETIRED_ORDER_LIMIT))
    # A placement timed out; the venue may hold an order the slot does not know about.
    placement_unconfirmed: Dict[Side, bool] = field(default_factory=lambda: _side_map(False))

    def order_for(self, side: Side) -> Optional[Order]:
        return self.orders.get(side)

    def set_order(self, side: Side, order: Optional[Order]) -> None:
        self.orders[side] = order

    def retire_order(self, side: Side) -> Optional[Order]:
        """Empty the slot, remembering its order for late status events."""
        order = self.orders.get(side)
        if order is not None:
            self.retired_orders.append(order)
        self.orders[side] = None
        return order

    def clear_orders(self) -> None:
        for side in Side:
            self.retire_order(side)

    def find_order(self, order_id: str) -> Optional[Order]:
        """Order currently in a slot."""
        for order in self.orders.values():
            if order is not None and order.order_id == order_id:
                return order
        return None

    def find_retired(self, order_id: str) -> Optional[Order]:
        for order in self.retired_orders:
            if order.order_id == order_id:
                return order
        return None

    def update_order(self, order: Order) -> None:
        """Store a newer version of a slotted or retired order, matched by id."""
        current = self.orders.get(order.side)
        if current is not None and current.order_id == order.order_id:
            self.orders[order.side] = order
            return
        for i, old in enumerate(self.retired_orders):
            if old.order_id == order.order_id:
                self.retired_orders[i] = order
                return

    def snapshot(self) -> Dict[str, Any]:
        """Plain-dict copy for telemetry readers."""
        def _order(o: Optional[Order]) -> Optional[Dict[str, Any]]:
            if o is None:
                return None
            return {
                "order_id": o.order_id,
                "price": str(o.price),
                "qty": str(o.qty),
                "filled_qty": str(o.filled_qty),
                "status": o.status.value,
            }

        return {
            "symbol": self.symbol,
            "running": self.running,
            "reference_price": str(self.reference_price),
            "position": str(self.position),
            "buy_order": _order(self.orders.get(Side.BUY)),
            "sell_order": _order(self.orders.get(Side.SELL)),
            "flatten_in_flight": self.flatten_in_flight,
            "spread_cooldown_until_ms": self.spread_cooldown_until_ms,
            "quoting_suspended": self.quoting_suspended,
            "spread_samples": len(self.spread_samples),
            "halted_reason": self.halted_reason,
            "stats": {
                "orders_placed": self.stats.orders_placed,
                "orders_canceled": self.stats.orders_canceled,
                "orders_filled": self.stats.orders_filled,
                "flattens": self.stats.flattens,
                "start_time_ms": self.stats.start_time_ms,
                "last_trade_time_ms": self.stats.last_trade_time_ms,
            },
        }

"""
OrderLifecycleManager: keeps one resting quote per side inside the distance band.

Handles:
- Target price computation (reference +/- distance, exact tick rounding)
- Distance zone classification with a dead-zone around min/max
- Throttled cancel/replace, serialized per side; the old quote stays in its
  slot until the venue confirms it is gone, and a fill found there is returned
  for the position guard
- Adoption of a quote left on the book by a timed-out placement
- Quote restore into an empty slot

Stateless apart from immutable config and collaborators; every method works on
the BotState handed in by the orchestrator.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from decimal import Decimal
from enum import Enum
from typing import Callable, Optional, Tuple, TYPE_CHECKING

from makerbot.core.models import BotState, Order, OrderStatus, OrderStatusEvent, OrderType, Side, TradingMode
from makerbot.core.rounding import distance_bp, offset_price, round_to_tick
from makerbot.execution.order_ops import default_log_event, venue_call
from makerbot.utils import ms_to_sec, now_ms

if TYPE_CHECKING:
    from makerbot.config.config import Settings
    from makerbot.core.interfaces import ExchangeGateway
    from makerbot.monitoring.metrics_rich import RichMetrics

log = logging.getLogger("makerbot")


class DistanceZone(Enum):
    TOO_CLOSE = "too_close"
    TOO_FAR = "too_far"
    VALID = "valid"
    DEAD_ZONE = "dead_zone"

    @property
    def needs_replace(self) -> bool:
        return self in (DistanceZone.TOO_CLOSE, DistanceZone.TOO_FAR)


class ReplaceOutcome(Enum):
    REPLACED = "replaced"
    THROTTLED = "throttled"
    IN_FLIGHT = "in_flight"
    NO_ORDER = "no_order"
    PLACE_FAILED = "place_failed"
    CANCEL_FAILED = "cancel_failed"  # old order still resting or unknown; slot kept
    FILLED = "filled"  # old order filled before the cancel; nothing placed


@dataclass(frozen=True)
class ReplaceResult:
    outcome: ReplaceOutcome
    order: Optional[Order] = None
    fill: Optional[OrderStatusEvent] = None


@dataclass(frozen=True)
class Evaluation:
    side: Side
    zone: DistanceZone
    distance_bp: Decimal
    replaced: Optional[ReplaceResult] = None

    @property
    def fill(self) -> Optional[OrderStatusEvent]:
        return self.replaced.fill if self.replaced is not None else None


@dataclass(frozen=True)
class LifecycleConfig:
    """Quoting thresholds, immutable for a run."""
    order_size: Decimal = Decimal("0.001")
    target_distance_bp: Decimal = Decimal(10)
    min_distance_bp: Decimal = Decimal(5)
    max_distance_bp: Decimal = Decimal(15)
    dead_zone_bp: Decimal = Decimal(1)
    min_replace_interval_ms: int = 3000
    tick_size: Optional[Decimal] = None
    mode: TradingMode = TradingMode.BOTH
    call_timeout_ms: int = 10000

    @classmethod
    def from_settings(cls, cfg: "Settings") -> "LifecycleConfig":
        return cls(
            order_size=cfg.order_size,
            target_distance_bp=cfg.target_distance_bp,
            min_distance_bp=cfg.min_distance_bp,
            max_distance_bp=cfg.max_distance_bp,
            dead_zone_bp=cfg.dead_zone_bp,
            min_replace_interval_ms=cfg.min_replace_interval_ms,
            tick_size=cfg.tick_size,
            mode=TradingMode(cfg.mode),
            call_timeout_ms=cfg.call_timeout_ms,
        )

    @property
    def replace_below_bp(self) -> Decimal:
        return self.min_distance_bp - self.dead_zone_bp

    @property
    def replace_above_bp(self) -> Decimal:
        return self.max_distance_bp + self.dead_zone_bp


class OrderLifecycleManager:
    """
    Owns the per-side quoting decision.

    A replace is dropped (not queued) when the side was replaced less than
    min_replace_interval_ms ago or another replace of that side is in flight;
    the next reference tick re-evaluates.
    """

    def __init__(
        self,
        config: LifecycleConfig,
        gateway: "ExchangeGateway",
        metrics: Optional["RichMetrics"] = None,
        clock: Callable[[], int] = now_ms,
        log_event: Optional[Callable[..., None]] = None,
    ) -> None:
        self.config = config
        self.gateway = gateway
        self.metrics = metrics
        self._clock = clock
        self._log_event = log_event or default_log_event

    @property
    def sides(self) -> tuple:
        return self.config.mode.sides

    @property
    def _timeout_s(self) -> float:
        return ms_to_sec(self.config.call_timeout_ms)

    def set_tick_size(self, tick_size: Decimal) -> None:
        """Install the venue tick size discovered at startup (no-op if configured)."""
        if self.config.tick_size is None:
            self.config = replace(self.config, tick_size=tick_size)

    # ========== Pricing ==========

    def price_for(self, side: Side, reference_price: Decimal, distance: Optional[Decimal] = None) -> Decimal:
        """Buy below, sell above the reference by distance bp, rounded half-up to the tick."""
        bp = self.config.target_distance_bp if distance is None else distance
        raw = offset_price(reference_price, bp, below=side is Side.BUY)
        tick = self.config.tick_size
        if tick is None:
            return raw
        return round_to_tick(raw, tick)

    def classify(self, distance: Decimal) -> DistanceZone:
        cfg = self.config
        if distance < cfg.replace_below_bp:
            return DistanceZone.TOO_CLOSE
        if distance > cfg.replace_above_bp:
            return DistanceZone.TOO_FAR
        if cfg.min_distance_bp <= distance <= cfg.max_distance_bp:
            return DistanceZone.VALID
        return DistanceZone.DEAD_ZONE

    def evaluate(self, side: Side, order: Order, reference_price: Decimal) -> Evaluation:
        distance = distance_bp(reference_price, order.price)
        return Evaluation(side=side, zone=self.classify(distance), distance_bp=distance)

    # ========== Decisions on BotState ==========

    def is_throttled(self, state: BotState, side: Side, now: Optional[int] = None) -> bool:
        last = state.last_replace_ms.get(side, 0)
        if not last:
            return False
        now = self._clock() if now is None else now
        return now - last < self.config.min_replace_interval_ms

    async def check(self, state: BotState, side: Side) -> Optional[Evaluation]:
        """Evaluate the side's open order against the current reference and replace if out of band."""
        order = state.order_for(side)
        if order is None or order.status is not OrderStatus.OPEN or state.reference_price <= 0:
            return None
        ev = self.evaluate(side, order, state.reference_price)
        if ev.zone.needs_replace:
            self._log_event(
                "quote_out_of_band",
                side=side.value,
                zone=ev.zone.value,
                distance_bp=round(ev.distance_bp, 2),
                order_px=order.price,
                ref_px=state.reference_price,
            )
            return replace(ev, replaced=await self.replace(state, side, reason=ev.zone.value))
        self._log_event(
            "quote_in_band",
            level=logging.DEBUG,
            side=side.value,
            zone=ev.zone.value,
            distance_bp=round(ev.distance_bp, 2),
        )
        return ev

    async def replace(self, state: BotState, side: Side, reason: str) -> ReplaceResult:
        """
        Cancel the side's order and quote again from the *current* reference price.

        The slot keeps the old order until the venue confirms it is gone. When
        the cancel fails the order is looked up: if it filled, nothing is placed
        and the fill comes back in the result for the position guard; if it is
        still resting (or its state is unknown) the side is left alone for the
        replace interval.
        """
        now = self._clock()
        if state.replace_in_flight[side]:
            self._log_event("replace_in_flight", level=logging.DEBUG, side=side.value)
            return ReplaceResult(ReplaceOutcome.IN_FLIGHT)
        if self.is_throttled(state, side, now):
            self._log_event(
                "replace_throttled",
                level=logging.DEBUG,
                side=side.value,
                since_ms=now - state.last_replace_ms[side],
                min_interval_ms=self.config.min_replace_interval_ms,
            )
            if self.metrics:
                self.metrics.replaces_throttled.labels(coin=state.symbol, side=side.value).inc()
            return ReplaceResult(ReplaceOutcome.THROTTLED)
        order = state.order_for(side)
        if order is None:
            return ReplaceResult(ReplaceOutcome.NO_ORDER)

        new_order: Optional[Order] = None
        state.replace_in_flight[side] = True
        try:
            venue_order = await self._cancel(state, order)
            if venue_order is not None and venue_order.filled_qty > order.filled_qty:
                self._log_event(
                    "replace_found_fill",
                    level=logging.WARNING,
                    side=side.value,
                    order_id=order.order_id,
                    status=venue_order.status.value,
                    filled_qty=venue_order.filled_qty,
                )
                fill_status = OrderStatus.FILLED if venue_order.status is OrderStatus.FILLED else OrderStatus.PARTIALLY_FILLED
                return ReplaceResult(
                    ReplaceOutcome.FILLED,
                    fill=OrderStatusEvent(order.order_id, fill_status, venue_order.filled_qty),
                )
            if venue_order is None or not venue_order.status.is_terminal:
                self._log_event(
                    "replace_cancel_unconfirmed",
                    level=logging.WARNING,
                    side=side.value,
                    order_id=order.order_id,
                    status=venue_order.status.value if venue_order is not None else "unknown",
                )
                return ReplaceResult(ReplaceOutcome.CANCEL_FAILED)

            state.retire_order(side)
            new_order = await self._place(state, side)
        finally:
            state.last_replace_ms[side] = now
            state.replace_in_flight[side] = False

        if self.metrics:
            self.metrics.replaces.labels(coin=state.symbol, side=side.value, reason=reason).inc()
        if new_order is None:
            return ReplaceResult(ReplaceOutcome.PLACE_FAILED)
        self._log_event(
            "order_replaced",
            side=side.value,
            reason=reason,
            old_px=order.price,
            new_px=new_order.price,
            ref_px=state.reference_price,
        )
        return ReplaceResult(ReplaceOutcome.REPLACED, order=new_order)

    async def _cancel(self, state: BotState, order: Order) -> Optional[Order]:
        """
        Cancel for a replace. Returns the venue's view of the old order:
        CANCELED when the cancel went through, otherwise whatever the order
        lookup reports, or None when that could not be determined.
        """
        try:
            canceled = await venue_call(self.gateway.cancel_order(order.order_id), self._timeout_s)
        except Exception as exc:
            canceled = False
            self._log_event("cancel_error", level=logging.WARNING, side=order.side.value, order_id=order.order_id, err=str(exc))
        if canceled:
            state.stats.orders_canceled += 1
            if self.metrics:
                self.metrics.orders_canceled.labels(coin=state.symbol, reason="replace").inc()
            return order.with_status(OrderStatus.CANCELED)

        self._log_event("cancel_failed_may_be_filled", level=logging.WARNING, side=order.side.value, order_id=order.order_id)
        try:
            info = await venue_call(self.gateway.get_order_info(order.order_id), self._timeout_s)
            if info is not None:
                return info
            # Unknown to the order lookup: gone unless the book still lists it.
            open_orders = await venue_call(self.gateway.get_open_orders(state.symbol), self._timeout_s)
        except Exception as exc:
            self._log_event("order_query_failed", level=logging.WARNING, order_id=order.order_id, err=str(exc))
            if self.metrics:
                self.metrics.api_errors_total.labels(coin=state.symbol, where="get_order_info").inc()
            return None
        if any(o.order_id == order.order_id for o in open_orders):
            return order
        return order.with_status(OrderStatus.CANCELED)

    async def requote(self, state: BotState, side: Side, force: bool = False) -> Optional[Order]:
        """
        Place a fresh quote into an empty slot.

        Tick-driven restores respect the replace throttle; forced requotes
        (after a flatten, on resume, on reconnect) do not.
        """
        existing = state.order_for(side)
        if existing is not None:
            return existing
        if state.reference_price <= 0:
            self._log_event("no_reference_price", level=logging.DEBUG, side=side.value)
            return None
        if state.replace_in_flight[side]:
            return None
        now = self._clock()
        if not force and self.is_throttled(state, side, now):
            return None
        state.replace_in_flight[side] = True
        try:
            order = await self._place(state, side)
            state.last_replace_ms[side] = now
        finally:
            state.replace_in_flight[side] = False
        return order

    async def _place(self, state: BotState, side: Side) -> Optional[Order]:
        if state.placement_unconfirmed[side]:
            adopted, listed = await self._adopt_resting(state, side)
            if adopted is not None or not listed:
                return adopted
        price = self.price_for(side, state.reference_price)
        qty = self.config.order_size
        try:
            result = await venue_call(
                self.gateway.place_order(side, qty, price, False, OrderType.LIMIT),
                self._timeout_s,
            )
        except (asyncio.TimeoutError, TimeoutError):
            # The order may still reach the book; the next placement on this
            # side lists open orders first.
            state.placement_unconfirmed[side] = True
            self._log_event("place_timeout", level=logging.ERROR, side=side.value, px=price)
            if self.metrics:
                self.metrics.api_errors_total.labels(coin=state.symbol, where="place_order").inc()
            return None
        except Exception as exc:
            self._log_event("place_error", level=logging.ERROR, side=side.value, px=price, err=str(exc))
            if self.metrics:
                self.metrics.api_errors_total.labels(coin=state.symbol, where="place_order").inc()
            return None
        if not result.success or not result.order_id:
            self._log_event("place_rejected", level=logging.ERROR, side=side.value, px=price, err=result.error_message)
            if self.metrics:
                self.metrics.orders_rejected.labels(coin=state.symbol, side=side.value).inc()
            return None

        order = Order(
            order_id=result.order_id,
            side=side,
            price=result.price if result.price else price,
            qty=qty,
            filled_qty=result.filled_qty,
            status=result.status or OrderStatus.OPEN,
        )
        state.set_order(side, order)
        state.stats.orders_placed += 1
        if self.metrics:
            self.metrics.orders_placed.labels(coin=state.symbol, side=side.value).inc()
        if order.status is not OrderStatus.OPEN:
            self._log_event("placed_order_not_resting", level=logging.WARNING, side=side.value, order_id=order.order_id, status=order.status.value)
        self._log_event("order_placed", side=side.value, order_id=order.order_id, px=order.price, qty=qty, ref_px=state.reference_price)
        return order

    async def _adopt_resting(self, state: BotState, side: Side) -> Tuple[Optional[Order], bool]:
        """
        Look for a quote of ours on `side` that the slot does not know about
        (left behind by a timed-out placement) and take it into the slot.

        Returns (adopted order or None, whether the venue could be listed).
        """
        try:
            open_orders = await venue_call(self.gateway.get_open_orders(state.symbol), self._timeout_s)
        except Exception as exc:
            self._log_event("adopt_query_failed", level=logging.WARNING, side=side.value, err=str(exc))
            return None, False
        state.placement_unconfirmed[side] = False
        resting = [o for o in open_orders if o.side is side and not o.reduce_only]
        if not resting:
            return None, True
        order = resting[0]
        state.set_order(side, order)
        self._log_event("order_adopted", level=logging.WARNING, side=side.value, order_id=order.order_id, px=order.price, resting=len(resting))
        return order, True

"""
PositionGuard: returns the account to flat after any fill, or halts.

Handles:
- Fill detection from order-status events on a quoted or recently retired order
- Position-changed events and periodic position reconciliation
- Single-flight flatten: cancel all, size from a fresh position query,
  reduce-only close on the opposing side
- Close policy: market, or limit with a bounded wait and market fallback
- Startup check that refuses to quote on top of an existing position

A flatten that cannot be confirmed is fatal; the orchestrator halts on a
FAILED result.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from decimal import Decimal
from enum import Enum
from typing import Callable, Optional, TYPE_CHECKING

from makerbot.core.models import BotState, Order, OrderStatus, OrderStatusEvent, OrderType, Side
from makerbot.core.rounding import offset_price, round_to_tick
from makerbot.execution.order_ops import cancel_all_orders, default_log_event, venue_call
from makerbot.utils import ms_to_sec, now_ms

if TYPE_CHECKING:
    from makerbot.config.config import Settings
    from makerbot.core.interfaces import ExchangeGateway
    from makerbot.monitoring.metrics_rich import RichMetrics

log = logging.getLogger("makerbot")


class FlattenError(RuntimeError):
    """Position could not be closed; quoting must not continue."""


class FlattenOutcome(Enum):
    CLOSED = "closed"
    ALREADY_FLAT = "already_flat"
    SKIPPED = "skipped"  # another flatten in flight
    FAILED = "failed"


@dataclass(frozen=True)
class FlattenResult:
    outcome: FlattenOutcome
    closed_qty: Decimal = Decimal(0)
    method: Optional[str] = None
    error: Optional[str] = None

    @property
    def fatal(self) -> bool:
        return self.outcome is FlattenOutcome.FAILED

    @property
    def flat(self) -> bool:
        return self.outcome in (FlattenOutcome.CLOSED, FlattenOutcome.ALREADY_FLAT)


@dataclass(frozen=True)
class PositionGuardConfig:
    close_mode: str = "market"  # market | limit
    close_limit_offset_bp: Decimal = Decimal(0)
    close_limit_timeout_ms: int = 5000
    close_fill_timeout_ms: int = 5000
    close_poll_interval_ms: int = 500
    position_check_interval_ms: int = 2000
    position_epsilon: Decimal = Decimal("0.00001")
    tick_size: Optional[Decimal] = None
    call_timeout_ms: int = 10000

    @classmethod
    def from_settings(cls, cfg: "Settings") -> "PositionGuardConfig":
        return cls(
            close_mode=cfg.close_mode,
            close_limit_offset_bp=cfg.close_limit_offset_bp,
            close_limit_timeout_ms=cfg.close_limit_timeout_ms,
            close_fill_timeout_ms=cfg.close_fill_timeout_ms,
            close_poll_interval_ms=cfg.close_poll_interval_ms,
            position_check_interval_ms=cfg.position_check_interval_ms,
            position_epsilon=cfg.position_epsilon,
            tick_size=cfg.tick_size,
            call_timeout_ms=cfg.call_timeout_ms,
        )


class PositionGuard:
    """
    Keeps net position at zero.

    Works on the BotState borrowed from the orchestrator; the flatten flag in
    that state is the single-flight guard, so overlapping triggers (a fill
    event racing a position event) collapse into one close.
    """

    def __init__(
        self,
        config: PositionGuardConfig,
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
    def _timeout_s(self) -> float:
        return ms_to_sec(self.config.call_timeout_ms)

    def set_tick_size(self, tick_size: Decimal) -> None:
        if self.config.tick_size is None:
            self.config = replace(self.config, tick_size=tick_size)

    def is_flat(self, qty: Decimal) -> bool:
        return abs(qty) <= self.config.position_epsilon

    # ========== Triggers ==========

    async def on_fill(self, state: BotState, event: OrderStatusEvent) -> Optional[FlattenResult]:
        """
        Handle a Filled / PartiallyFilled event for one of our quotes.

        The order may already have left its slot (replaced or canceled just as
        it filled); retired orders are matched too. Returns None when the event
        does not represent new fill volume on a known order.
        """
        if event.status not in (OrderStatus.FILLED, OrderStatus.PARTIALLY_FILLED):
            return None
        order = state.find_order(event.order_id) or state.find_retired(event.order_id)
        if order is None:
            return None
        filled = event.filled_qty
        if event.status is OrderStatus.FILLED and filled <= 0:
            filled = order.qty
        delta = filled - order.filled_qty
        if delta <= 0:
            return None

        state.update_order(order.with_status(event.status, filled))
        state.position += order.side.sign * delta
        state.stats.orders_filled += 1
        state.stats.last_trade_time_ms = self._clock()
        self._log_event(
            "fill_detected",
            level=logging.WARNING,
            side=order.side.value,
            order_id=order.order_id,
            px=event.avg_fill_price or order.price,
            fill_qty=delta,
            total_filled=filled,
            status=event.status.value,
            position=state.position,
        )
        if self.metrics:
            self.metrics.fills_total.labels(coin=state.symbol, side=order.side.value).inc()
            self.metrics.position.labels(coin=state.symbol).set(float(state.position))
        return await self.flatten(state, reason="fill")

    async def on_position_changed(self, state: BotState, quantity: Decimal) -> Optional[FlattenResult]:
        """
        Handle a pushed position snapshot.

        Snapshots can lag a flatten that already finished, so a nonzero reading
        is confirmed against the venue before anything is canceled. If the
        query fails the pushed value is trusted.
        """
        if state.flatten_in_flight:
            return None
        if not self.is_flat(quantity):
            try:
                confirmed = await venue_call(self.gateway.get_position(state.symbol), self._timeout_s)
            except Exception as exc:
                self._log_event("position_query_failed", level=logging.WARNING, err=str(exc), fallback=quantity)
            else:
                if self.is_flat(confirmed):
                    self._log_event("position_event_stale", level=logging.DEBUG, pushed=quantity, venue=confirmed)
                quantity = confirmed
        state.position = quantity
        if self.metrics:
            self.metrics.position.labels(coin=state.symbol).set(float(quantity))
        if self.is_flat(quantity):
            return None
        self._log_event("position_event_nonzero", level=logging.WARNING, position=quantity)
        return await self.flatten(state, reason="position_event")

    def reconcile_due(self, state: BotState, now: Optional[int] = None) -> bool:
        now = self._clock() if now is None else now
        return now - state.last_position_check_ms >= self.config.position_check_interval_ms

    async def reconcile(self, state: BotState) -> Optional[FlattenResult]:
        """Query the venue position; a nonzero reading outside a flatten triggers one."""
        if state.flatten_in_flight:
            return None
        state.last_position_check_ms = self._clock()
        try:
            qty = await venue_call(self.gateway.get_position(state.symbol), self._timeout_s)
        except Exception as exc:
            self._log_event("position_query_failed", level=logging.WARNING, err=str(exc))
            if self.metrics:
                self.metrics.api_errors_total.labels(coin=state.symbol, where="get_position").inc()
            return None
        state.position = qty
        if self.metrics:
            self.metrics.position.labels(coin=state.symbol).set(float(qty))
        if self.is_flat(qty):
            return None
        self._log_event("position_drift_detected", level=logging.WARNING, position=qty)
        return await self.flatten(state, reason="reconcile")

    async def ensure_flat(self, state: BotState) -> FlattenResult:
        """
        Startup check: close whatever position the account already holds.

        Raises:
            FlattenError: position query failed or the close could not be confirmed
        """
        try:
            qty = await venue_call(self.gateway.get_position(state.symbol), self._timeout_s)
        except Exception as exc:
            raise FlattenError(f"startup position query failed: {exc}") from exc
        state.position = qty
        if self.is_flat(qty):
            self._log_event("startup_position_flat", position=qty)
            return FlattenResult(FlattenOutcome.ALREADY_FLAT)
        self._log_event("startup_position_found", level=logging.WARNING, position=qty)
        result = await self.flatten(state, reason="startup")
        if result.fatal:
            raise FlattenError(f"startup flatten failed: {result.error}")
        return result

    # ========== Flatten ==========

    async def flatten(self, state: BotState, reason: str) -> FlattenResult:
        if state.flatten_in_flight:
            self._log_event("flatten_already_in_flight", level=logging.DEBUG, reason=reason)
            return FlattenResult(FlattenOutcome.SKIPPED)

        state.flatten_in_flight = True
        self._log_event("flatten_start", level=logging.WARNING, reason=reason, position=state.position)
        try:
            await cancel_all_orders(
                self.gateway,
                state,
                reason="flatten",
                timeout_s=self._timeout_s,
                log_event=self._log_event,
                metrics=self.metrics,
            )
            qty = await self._current_position(state, fallback=state.position)
            if self.is_flat(qty):
                result = FlattenResult(FlattenOutcome.ALREADY_FLAT)
            else:
                result = await self._close(state, qty)
        except Exception as exc:
            result = FlattenResult(FlattenOutcome.FAILED, error=str(exc))
        finally:
            state.flatten_in_flight = False

        if result.flat:
            state.position = Decimal(0)
            state.stats.flattens += 1
            self._log_event(
                "flatten_done",
                level=logging.WARNING,
                reason=reason,
                outcome=result.outcome.value,
                method=result.method,
                closed_qty=result.closed_qty,
            )
        else:
            self._log_event(
                "flatten_failed",
                level=logging.CRITICAL,
                reason=reason,
                position=state.position,
                err=result.error,
            )
        if self.metrics:
            self.metrics.flattens.labels(coin=state.symbol, outcome=result.outcome.value).inc()
            self.metrics.position.labels(coin=state.symbol).set(float(state.position))
        return result

    async def _current_position(self, state: BotState, fallback: Decimal) -> Decimal:
        try:
            return await venue_call(self.gateway.get_position(state.symbol), self._timeout_s)
        except Exception as exc:
            self._log_event("position_query_failed", level=logging.WARNING, err=str(exc), fallback=fallback)
            return fallback

    def close_price(self, close_side: Side, reference_price: Decimal) -> Decimal:
        raw = offset_price(reference_price, self.config.close_limit_offset_bp, below=close_side is Side.BUY)
        if self.config.tick_size is None:
            return raw
        return round_to_tick(raw, self.config.tick_size)

    async def _close(self, state: BotState, qty: Decimal) -> FlattenResult:
        close_side = Side.SELL if qty > 0 else Side.BUY
        size = abs(qty)

        if self.config.close_mode == "limit":
            if state.reference_price > 0:
                remaining = await self._close_limit(state, close_side, size)
                if self.is_flat(remaining):
                    return FlattenResult(FlattenOutcome.CLOSED, closed_qty=size, method="limit")
                size = remaining
            else:
                self._log_event("close_limit_no_reference", level=logging.WARNING, side=close_side.value)

        return await self._close_market(state, close_side, size)

    async def _close_limit(self, state: BotState, side: Side, size: Decimal) -> Decimal:
        """
        Rest a reduce-only limit for close_limit_timeout_ms; cancel whatever is
        left. Returns the quantity still open afterwards.
        """
        price = self.close_price(side, state.reference_price)
        try:
            result = await venue_call(
                self.gateway.place_order(side, size, price, True, OrderType.LIMIT),
                self._timeout_s,
            )
        except Exception as exc:
            self._log_event("close_limit_error", level=logging.ERROR, side=side.value, px=price, err=str(exc))
            return size
        if not result.success or not result.order_id:
            self._log_event("close_limit_rejected", level=logging.ERROR, side=side.value, px=price, err=result.error_message)
            return size
        self._log_event("close_limit_placed", side=side.value, px=price, qty=size, order_id=result.order_id)
        if result.status is OrderStatus.FILLED:
            return Decimal(0)

        info = await self._wait_for_fill(result.order_id, self.config.close_limit_timeout_ms)
        if info is not None and info.status is OrderStatus.FILLED:
            return Decimal(0)

        try:
            await venue_call(self.gateway.cancel_order(result.order_id), self._timeout_s)
        except Exception as exc:
            self._log_event("close_limit_cancel_failed", level=logging.WARNING, order_id=result.order_id, err=str(exc))
        self._log_event("close_limit_timeout", level=logging.WARNING, order_id=result.order_id, timeout_ms=self.config.close_limit_timeout_ms)

        filled = info.filled_qty if info is not None else Decimal(0)
        remaining = await self._current_position(state, fallback=size - filled)
        return abs(remaining)

    async def _close_market(self, state: BotState, side: Side, size: Decimal) -> FlattenResult:
        try:
            result = await venue_call(
                self.gateway.place_order(side, size, state.reference_price, True, OrderType.MARKET),
                self._timeout_s,
            )
        except Exception as exc:
            return FlattenResult(FlattenOutcome.FAILED, method="market", error=f"market close error: {exc}")
        if not result.success or not result.order_id:
            return FlattenResult(FlattenOutcome.FAILED, method="market", error=result.error_message or "market close rejected")
        self._log_event("close_market_sent", side=side.value, qty=size, order_id=result.order_id)

        if result.status is not OrderStatus.FILLED:
            info = await self._wait_for_fill(result.order_id, self.config.close_fill_timeout_ms)
            if info is None or info.status is not OrderStatus.FILLED:
                status = info.status.value if info is not None else "unknown"
                return FlattenResult(FlattenOutcome.FAILED, method="market", error=f"market close not filled ({status})")
        return FlattenResult(FlattenOutcome.CLOSED, closed_qty=size, method="market")

    async def _wait_for_fill(self, order_id: str, timeout_ms: int) -> Optional[Order]:
        """
        Poll the order until it is terminal or timeout_ms elapses.

        Returns the last order seen, or None if nothing could be read in time.
        """
        last: Optional[Order] = None

        async def _poll() -> Optional[Order]:
            nonlocal last
            while True:
                try:
                    info = await venue_call(self.gateway.get_order_info(order_id), self._timeout_s)
                except Exception as exc:
                    self._log_event("order_query_failed", level=logging.WARNING, order_id=order_id, err=str(exc))
                    info = None
                if info is not None:
                    last = info
                    if info.status.is_terminal:
                        return info
                await asyncio.sleep(ms_to_sec(self.config.close_poll_interval_ms))

        try:
            return await asyncio.wait_for(_poll(), timeout=ms_to_sec(timeout_ms))
        except asyncio.TimeoutError:
            return last

"""
BotOrchestrator: single owner of BotState and the only consumer of events.

Architecture:
    Stream callbacks and the timer never touch state directly; they enqueue
    events on one asyncio.Queue, consumed in arrival order by one task:

    - PriceTick            -> reconcile if due, restore empty slots, check bands
    - OrderStatusEvent     -> fills to PositionGuard, cancels/failures clear the slot
    - PositionChanged      -> PositionGuard
    - ConnectivityRestored -> resubscribe, cancel everything, quote from scratch
    - TimerTick            -> spread poll, reconcile, restore after cooldown

    Engines (OrderLifecycleManager, PositionGuard, SpreadAnomalyGuard) never call
    each other; what one decides, the orchestrator hands to the next.

Usage:
    orchestrator = build_bot(Settings.load())
    halted_reason = await orchestrator.run()
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional, TYPE_CHECKING

from makerbot.core.models import (
    BotState,
    ConnectivityRestored,
    OrderStatus,
    OrderStatusEvent,
    PositionChanged,
    PriceTick,
    TimerTick,
)
from makerbot.execution.order_ops import cancel_all_orders, default_log_event, venue_call
from makerbot.risk.position_guard import FlattenOutcome, FlattenResult
from makerbot.utils import ms_to_sec, now_ms

if TYPE_CHECKING:
    from makerbot.config.config import Settings
    from makerbot.core.interfaces import ExchangeGateway, MarketDataSource
    from makerbot.execution.order_lifecycle import OrderLifecycleManager
    from makerbot.monitoring.metrics_rich import RichMetrics
    from makerbot.monitoring.status import StatusBoard
    from makerbot.risk.position_guard import PositionGuard
    from makerbot.risk.spread_guard import SpreadAnomalyGuard

log = logging.getLogger("makerbot")


@dataclass(frozen=True)
class OrchestratorConfig:
    """Configuration for BotOrchestrator."""
    symbol: str = "BTC"
    timer_interval_ms: int = 1000  # Spread poll / restore cadence
    call_timeout_ms: int = 10000

    @classmethod
    def from_settings(cls, cfg: "Settings") -> "OrchestratorConfig":
        return cls(
            symbol=cfg.coin,
            timer_interval_ms=cfg.spread_poll_interval_ms,
            call_timeout_ms=cfg.call_timeout_ms,
        )


class BotOrchestrator:
    def __init__(
        self,
        config: OrchestratorConfig,
        gateway: "ExchangeGateway",
        market_data: "MarketDataSource",
        lifecycle: "OrderLifecycleManager",
        position_guard: "PositionGuard",
        spread_guard: "SpreadAnomalyGuard",
        metrics: Optional["RichMetrics"] = None,
        status_board: Optional["StatusBoard"] = None,
        clock: Callable[[], int] = now_ms,
        log_event: Optional[Callable[..., None]] = None,
    ) -> None:
        self.config = config
        self.gateway = gateway
        self.market_data = market_data
        self.lifecycle = lifecycle
        self.position_guard = position_guard
        self.spread_guard = spread_guard
        self.metrics = metrics
        self.status_board = status_board
        self._clock = clock
        self._log_event = log_event or default_log_event

        self.state = BotState(symbol=config.symbol)
        self._queue: asyncio.Queue = asyncio.Queue()
        self._stop_event = asyncio.Event()
        self._consumer_task: Optional[asyncio.Task] = None
        self._timer_task: Optional[asyncio.Task] = None
        self._timer_pending = False
        self._stopped = False

    @property
    def _timeout_s(self) -> float:
        return ms_to_sec(self.config.call_timeout_ms)

    @property
    def is_running(self) -> bool:
        return self.state.running

    def snapshot(self) -> dict:
        return self.state.snapshot()

    # ========== Lifecycle ==========

    async def start(self) -> None:
        """
        Prepare the account and begin consuming events.

        Raises:
            FlattenError: a pre-existing position could not be closed
        """
        state = self.state
        state.stats.start_time_ms = self._clock()

        if self.lifecycle.config.tick_size is None:
            tick = await venue_call(self.gateway.get_tick_size(state.symbol), self._timeout_s)
            self.lifecycle.set_tick_size(tick)
            self.position_guard.set_tick_size(tick)
            self._log_event("tick_size_loaded", coin=state.symbol, tick_size=tick)

        await cancel_all_orders(
            self.gateway,
            state,
            reason="startup",
            timeout_s=self._timeout_s,
            log_event=self._log_event,
            metrics=self.metrics,
        )
        await self.position_guard.ensure_flat(state)

        state.running = True
        self._consumer_task = asyncio.create_task(self._consume(), name="makerbot-events")
        await self.market_data.start(self.submit)
        self._timer_task = asyncio.create_task(self._timer_loop(), name="makerbot-timer")

        if self.metrics:
            self.metrics.bot_started.labels(coin=state.symbol).inc()
            self.metrics.halted.labels(coin=state.symbol).set(0)
        self._log_event(
            "bot_started",
            coin=state.symbol,
            sides=[s.value for s in self.lifecycle.sides],
            spread_guard=self.spread_guard.enabled,
        )

    async def run(self) -> Optional[str]:
        """Run until stopped or halted. Returns the halt reason, if any."""
        try:
            await self.start()
            await self._stop_event.wait()
        finally:
            await self.stop()
        return self.state.halted_reason

    def request_stop(self) -> None:
        """Signal-safe stop request."""
        self._log_event("stop_requested", coin=self.state.symbol)
        self._stop_event.set()

    async def stop(self) -> None:
        if self._stopped:
            return
        self._stopped = True
        self.state.running = False
        self._stop_event.set()

        for task in (self._timer_task, self._consumer_task):
            if task is not None and not task.done() and task is not asyncio.current_task():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

        try:
            await self.market_data.stop()
        except Exception as exc:
            self._log_event("market_data_stop_error", level=logging.WARNING, err=str(exc))

        await cancel_all_orders(
            self.gateway,
            self.state,
            reason="shutdown",
            timeout_s=self._timeout_s,
            log_event=self._log_event,
            metrics=self.metrics,
        )
        await self._publish_status()
        self._log_event("bot_stopped", coin=self.state.symbol, stats=self.state.snapshot()["stats"])

    async def halt(self, reason: str) -> None:
        """Fatal: stop quoting for good and let run() return non-clean."""
        state = self.state
        if state.halted_reason:
            return
        state.halted_reason = reason
        state.running = False
        self._log_event("bot_halted", level=logging.CRITICAL, coin=state.symbol, reason=reason, position=state.position)
        if self.metrics:
            self.metrics.halted.labels(coin=state.symbol).set(1)
        await cancel_all_orders(
            self.gateway,
            state,
            reason="halt",
            timeout_s=self._timeout_s,
            log_event=self._log_event,
            metrics=self.metrics,
        )
        self._stop_event.set()

    # ========== Event intake ==========

    def submit(self, event: Any) -> None:
        """Sink handed to the market data source; must be called on the loop thread."""
        if isinstance(event, TimerTick):
            if self._timer_pending:
                return
            self._timer_pending = True
        self._queue.put_nowait(event)

    async def _consume(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self.handle(event)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self._log_event(
                    "event_handler_error",
                    level=logging.ERROR,
                    event_type=type(event).__name__,
                    err=str(exc),
                )
                if self.metrics:
                    self.metrics.api_errors_total.labels(coin=self.state.symbol, where=type(event).__name__).inc()
            finally:
                self._queue.task_done()

    async def _timer_loop(self) -> None:
        interval = ms_to_sec(self.config.timer_interval_ms)
        while self.state.running:
            await asyncio.sleep(interval)
            self.submit(TimerTick(timestamp_ms=self._clock()))

    async def handle(self, event: Any) -> None:
        if isinstance(event, TimerTick):
            self._timer_pending = False
        if self.state.halted_reason:
            return
        if isinstance(event, PriceTick):
            await self.on_price_tick(event)
        elif isinstance(event, OrderStatusEvent):
            await self.on_order_status(event)
        elif isinstance(event, PositionChanged):
            await self.on_position_changed(event)
        elif isinstance(event, ConnectivityRestored):
            await self.on_connectivity_restored()
        elif isinstance(event, TimerTick):
            await self.on_timer(event)
        else:
            self._log_event("unknown_event", level=logging.WARNING, event_type=type(event).__name__)

    # ========== Handlers ==========

    async def on_price_tick(self, tick: PriceTick) -> None:
        state = self.state
        if tick.price <= 0:
            return
        state.reference_price = tick.price
        if self.metrics:
            self.metrics.reference_price.labels(coin=state.symbol).set(float(tick.price))

        if self.position_guard.reconcile_due(state):
            if await self._after_flatten(await self.position_guard.reconcile(state)):
                return
        if state.flatten_in_flight or self.spread_guard.is_suspended(state):
            return

        await self._restore_quotes()
        for side in self.lifecycle.sides:
            if state.order_for(side) is None:
                continue
            ev = await self.lifecycle.check(state, side)
            if ev is not None and ev.fill is not None:
                # The quote filled before the replace could cancel it.
                await self._after_flatten(await self.position_guard.on_fill(state, ev.fill))
                return

    async def on_order_status(self, event: OrderStatusEvent) -> None:
        state = self.state
        if event.status in (OrderStatus.FILLED, OrderStatus.PARTIALLY_FILLED):
            if state.find_order(event.order_id) is None and state.find_retired(event.order_id) is None:
                self._log_event("order_event_untracked", level=logging.DEBUG, order_id=event.order_id, status=event.status.value)
                return
            await self._after_flatten(await self.position_guard.on_fill(state, event))
            return

        order = state.find_order(event.order_id)
        if order is None:
            self._log_event("order_event_untracked", level=logging.DEBUG, order_id=event.order_id, status=event.status.value)
            return
        if event.status in (OrderStatus.CANCELED, OrderStatus.FAILED):
            state.retire_order(order.side)
            self._log_event(
                "order_closed_by_venue",
                level=logging.WARNING,
                side=order.side.value,
                order_id=order.order_id,
                status=event.status.value,
            )

    async def on_position_changed(self, event: PositionChanged) -> None:
        await self._after_flatten(await self.position_guard.on_position_changed(self.state, event.quantity))

    async def on_connectivity_restored(self) -> None:
        state = self.state
        self._log_event("connectivity_restored", level=logging.WARNING, coin=state.symbol)
        try:
            await self.market_data.resubscribe()
        except Exception as exc:
            self._log_event("resubscribe_failed", level=logging.ERROR, err=str(exc))
        await cancel_all_orders(
            self.gateway,
            state,
            reason="reconnect",
            timeout_s=self._timeout_s,
            log_event=self._log_event,
            metrics=self.metrics,
        )
        # Fills may have been missed while disconnected.
        if await self._after_flatten(await self.position_guard.reconcile(state)):
            return
        if not self.spread_guard.is_suspended(state):
            await self._requote_all(force=True)

    async def on_timer(self, tick: TimerTick) -> None:
        state = self.state
        await self._publish_status()
        if state.flatten_in_flight:
            return
        await self.spread_guard.poll(state)
        if self.position_guard.reconcile_due(state):
            if await self._after_flatten(await self.position_guard.reconcile(state)):
                return
        await self._restore_quotes()

    # ========== Helpers ==========

    async def _restore_quotes(self) -> None:
        """
        Fill empty slots once quoting is allowed. Coming out of a cooldown the
        requote is forced; otherwise it respects the replace throttle.
        """
        resuming = self.state.quoting_suspended
        for side in self.spread_guard.sides_to_restore(self.state, self.lifecycle.sides):
            await self.lifecycle.requote(self.state, side, force=resuming)

    async def _requote_all(self, force: bool) -> None:
        if self.state.halted_reason:
            return
        for side in self.lifecycle.sides:
            await self.lifecycle.requote(self.state, side, force=force)

    async def _after_flatten(self, result: Optional[FlattenResult]) -> bool:
        """
        Act on a PositionGuard outcome. Returns True when a flatten ran, so the
        caller skips the rest of its cycle.
        """
        if result is None or result.outcome is FlattenOutcome.SKIPPED:
            return False
        if result.fatal:
            await self.halt(f"flatten failed: {result.error}")
            return True
        if not self.spread_guard.is_suspended(self.state):
            await self._requote_all(force=True)
        return True

    async def _publish_status(self) -> None:
        if self.status_board is not None:
            await self.status_board.publish(self.state)

"""
HyperliquidMarketStream: MarketDataSource over the SDK websocket.

Subscriptions:
- activeAssetCtx  -> PriceTick (mark price)
- orderUpdates    -> OrderStatusEvent
- webData2        -> PositionChanged (only when the size changes)

SDK callbacks run on the websocket thread; events are handed to the loop with
call_soon_threadsafe so the sink (the orchestrator queue) is only ever touched
from the loop. A watchdog resubscribes with backoff when nothing arrived for
stale_after seconds, and ConnectivityRestored is emitted once data flows again.
"""

from __future__ import annotations

import asyncio
import json
import logging
import random
import time
from decimal import Decimal
from typing import Any, Callable, List, Optional, Tuple

from makerbot.core.interfaces import EventSink
from makerbot.core.models import ConnectivityRestored, OrderStatusEvent, PositionChanged, PriceTick
from makerbot.core.rounding import to_decimal
from makerbot.execution.hyperliquid_gateway import order_from_payload, position_from_state

log = logging.getLogger("makerbot")


class HyperliquidMarketStream:
    def __init__(
        self,
        info,
        coin: str,
        account: str,
        stale_after: float = 20.0,
        watch_interval: float = 5.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.info = info
        self.coin = coin
        self.account = account
        self._stale_after = stale_after
        self._watch_interval = watch_interval
        self._clock = clock
        self._backoff_max = 60.0

        self.loop: Optional[asyncio.AbstractEventLoop] = None
        self._sink: Optional[EventSink] = None
        self._subs: List[Tuple[dict, int]] = []
        self._watchdog_task: Optional[asyncio.Task] = None
        self._stopping = False
        self.last_event: float = clock()
        self._stale = False
        self._last_resubscribe = 0.0
        self._last_position: Optional[Decimal] = None

    # ========== MarketDataSource ==========

    async def start(self, sink: EventSink) -> None:
        self.loop = asyncio.get_running_loop()
        self._sink = sink
        self._stopping = False
        self.last_event = self._clock()
        self._subscribe()
        log.info(json.dumps({"event": "ws_start", "coin": self.coin, "account": self.account}))
        self._watchdog_task = asyncio.create_task(self._watchdog(), name="makerbot-ws-watchdog")

    async def resubscribe(self) -> None:
        self._unsubscribe()
        self._subscribe()
        self._last_resubscribe = self._clock()
        log.info(json.dumps({"event": "ws_resubscribe", "coin": self.coin}))

    async def stop(self) -> None:
        self._stopping = True
        if self._watchdog_task:
            self._watchdog_task.cancel()
            await asyncio.gather(self._watchdog_task, return_exceptions=True)
            self._watchdog_task = None
        self._unsubscribe()

    def data_age(self) -> float:
        return self._clock() - self.last_event

    # ========== Subscriptions ==========

    def _subscribe(self) -> None:
        subs = [
            ({"type": "activeAssetCtx", "coin": self.coin}, self._on_asset_ctx),
            ({"type": "orderUpdates", "user": self.account}, self._on_order_updates),
            ({"type": "webData2", "user": self.account}, self._on_web_data),
        ]
        for subscription, callback in subs:
            sub_id = self.info.subscribe(subscription, callback)
            self._subs.append((subscription, sub_id))

    def _unsubscribe(self) -> None:
        for subscription, sub_id in self._subs:
            try:
                self.info.unsubscribe(subscription, sub_id)
            except Exception as exc:
                log.debug(json.dumps({"event": "ws_unsubscribe_failed", "sub": subscription.get("type"), "err": str(exc)}))
        self._subs = []

    # ========== Callbacks (websocket thread) ==========

    def _on_asset_ctx(self, msg: Any) -> None:
        try:
            data = msg.get("data", {})
            if data.get("coin") != self.coin:
                return
            mark = to_decimal((data.get("ctx") or {}).get("markPx"))
            if mark <= 0:
                return
            self._dispatch(PriceTick(symbol=self.coin, price=mark, timestamp_ms=int(self._clock() * 1000)))
        except Exception as exc:
            log.warning(json.dumps({"event": "ws_parse_error", "channel": "activeAssetCtx", "err": str(exc)}))

    def _on_order_updates(self, msg: Any) -> None:
        try:
            data = msg.get("data", [])
            updates = data if isinstance(data, list) else [data]
            for update in updates:
                payload = update.get("order") or {}
                if payload.get("coin") != self.coin:
                    continue
                order = order_from_payload(payload, update.get("status", ""))
                self._dispatch(OrderStatusEvent(order_id=order.order_id, status=order.status, filled_qty=order.filled_qty))
        except Exception as exc:
            log.warning(json.dumps({"event": "ws_parse_error", "channel": "orderUpdates", "err": str(exc)}))

    def _on_web_data(self, msg: Any) -> None:
        try:
            data = msg.get("data", {})
            if str(data.get("user", self.account)).lower() != self.account.lower():
                return
            qty = position_from_state(data.get("clearinghouseState"), self.coin)
            self._dispatch(PositionChanged(quantity=qty))
        except Exception as exc:
            log.warning(json.dumps({"event": "ws_parse_error", "channel": "webData2", "err": str(exc)}))

    def _dispatch(self, event: Any) -> None:
        if self.loop is None or self._stopping:
            return
        self.loop.call_soon_threadsafe(self._deliver, event)

    # ========== Loop side ==========

    def _deliver(self, event: Any) -> None:
        self.last_event = self._clock()
        if isinstance(event, PositionChanged):
            if event.quantity == self._last_position:
                event = None
            else:
                self._last_position = event.quantity
        if self._sink is None:
            return
        if event is not None:
            self._sink(event)
        if self._stale:
            self._stale = False
            log.info(json.dumps({"event": "ws_resume", "coin": self.coin}))
            self._sink(ConnectivityRestored())

    async def _watchdog(self) -> None:
        """
        Monitor websocket freshness; resubscribe with exponential backoff if stale.
        """
        backoff = 5.0
        while not self._stopping:
            try:
                await asyncio.sleep(self._watch_interval)
                gap = self.data_age()
                if gap < self._stale_after:
                    backoff = 5.0
                    continue
                self._stale = True
                log.warning(json.dumps({"event": "ws_stale_detected", "coin": self.coin, "gap_sec": round(gap, 1), "backoff": backoff}))
                now = self._clock()
                if now - self._last_resubscribe < backoff:
                    continue
                await asyncio.sleep(random.uniform(0, backoff * 0.1))
                await self.resubscribe()
                backoff = min(self._backoff_max, backoff * 2)
            except asyncio.CancelledError:
                break
            except Exception as exc:
                log.error(json.dumps({"event": "ws_watchdog_error", "coin": self.coin, "err": str(exc)}))
                backoff = min(self._backoff_max, backoff * 2)

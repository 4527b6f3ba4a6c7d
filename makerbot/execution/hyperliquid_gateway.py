"""
HyperliquidGateway: ExchangeGateway over the Hyperliquid SDK and info API.

Signed actions go through AsyncExchange (thread pool, transport retries);
queries go through the HTTP/2 AsyncInfo client. Quotes are GTC limits, market
orders are reduce-only IOC limits priced a slippage margin through the
reference.

Hyperliquid rules applied here rather than in the engines:
- prices carry at most 5 significant figures and (6 - szDecimals) decimals
- sizes are truncated to szDecimals
"""

from __future__ import annotations

import json
import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple, TYPE_CHECKING

from makerbot.core.models import Order, OrderStatus, OrderType, PlaceResult, Side
from makerbot.core.rounding import hl_round_price, round_size, tick_from_decimals, to_decimal

if TYPE_CHECKING:
    from makerbot.infra.async_execution import AsyncExchange
    from makerbot.infra.async_info import AsyncInfo

log = logging.getLogger("makerbot")

GTC = {"limit": {"tif": "Gtc"}}
IOC = {"limit": {"tif": "Ioc"}}


# ---------------------------------------------------------------------------
# Payload helpers (shared with the websocket stream)
# ---------------------------------------------------------------------------


def side_from_hl(raw: str) -> Side:
    return Side.BUY if str(raw).upper().startswith("B") else Side.SELL


def map_order_status(raw: str, orig_sz: Decimal, remaining_sz: Decimal) -> OrderStatus:
    """
    Map a Hyperliquid order status string onto OrderStatus.

    Every "...Canceled" variant (margin, reduce-only, self-trade, ...) is a cancel;
    an open order with part of its size gone is partially filled.
    """
    raw = str(raw or "")
    if raw == "filled":
        return OrderStatus.FILLED
    if raw in ("open", "triggered"):
        if orig_sz > 0 and remaining_sz < orig_sz:
            return OrderStatus.PARTIALLY_FILLED
        return OrderStatus.OPEN
    if raw.lower().endswith("canceled") or raw.lower().endswith("cancelled"):
        return OrderStatus.CANCELED
    return OrderStatus.FAILED


def order_from_payload(payload: Dict[str, Any], status: str = "open") -> Order:
    """Build an Order from an HL order dict ({coin, side, limitPx, sz, origSz, oid, ...})."""
    remaining = to_decimal(payload.get("sz"))
    orig = to_decimal(payload.get("origSz", payload.get("sz")))
    mapped = map_order_status(status, orig, remaining)
    filled = orig if mapped is OrderStatus.FILLED else max(Decimal(0), orig - remaining)
    return Order(
        order_id=str(payload.get("oid")),
        side=side_from_hl(payload.get("side", "")),
        price=to_decimal(payload.get("limitPx")),
        qty=orig,
        filled_qty=filled,
        status=mapped,
        reduce_only=bool(payload.get("reduceOnly", False)),
    )


def position_from_state(state: Any, coin: str) -> Decimal:
    """Signed size (szi) for coin from a clearinghouseState payload; 0 when absent."""
    if not isinstance(state, dict):
        return Decimal(0)
    for entry in state.get("assetPositions") or []:
        pos = entry.get("position", entry) if isinstance(entry, dict) else None
        if isinstance(pos, dict) and pos.get("coin") == coin:
            return to_decimal(pos.get("szi"))
    return Decimal(0)


def extract_statuses(resp: Any) -> List[Any]:
    if not isinstance(resp, dict):
        return []
    payload: Any = resp.get("response", resp)
    if isinstance(payload, dict) and "data" in payload:
        payload = payload.get("data", payload)
    statuses = payload.get("statuses") if isinstance(payload, dict) else None
    return statuses if isinstance(statuses, list) else []


def extract_error_message(resp: Any) -> Optional[str]:
    if not isinstance(resp, dict):
        return None
    if resp.get("status") == "err":
        return str(resp.get("response", resp))
    for st in extract_statuses(resp):
        if isinstance(st, dict) and st.get("error"):
            return str(st.get("error"))
    return None


def extract_order_result(resp: Any) -> Tuple[Optional[str], OrderStatus, Decimal, Optional[Decimal]]:
    """
    (oid, status, filled size, avg fill px) from an order action response.

    Hyperliquid answers one status per order:
    {"resting": {"oid": 1}} | {"filled": {"oid": 1, "totalSz": "0.1", "avgPx": "..."}} | {"error": "..."}
    """
    for st in extract_statuses(resp):
        if not isinstance(st, dict):
            continue
        if isinstance(st.get("filled"), dict):
            f = st["filled"]
            return str(f.get("oid")), OrderStatus.FILLED, to_decimal(f.get("totalSz")), to_decimal(f.get("avgPx"))
        if isinstance(st.get("resting"), dict):
            return str(st["resting"].get("oid")), OrderStatus.OPEN, Decimal(0), None
    return None, OrderStatus.FAILED, Decimal(0), None


class HyperliquidGateway:
    def __init__(
        self,
        exchange: "AsyncExchange",
        info: "AsyncInfo",
        coin: str,
        account: str,
        dex: str = "",
        market_slippage_pct: Decimal = Decimal("0.05"),
    ) -> None:
        self.exchange = exchange
        self.info = info
        self.coin = coin
        self.account = account
        self.dex = dex
        self.market_slippage_pct = market_slippage_pct
        self.sz_decimals: Optional[int] = None

    async def load_meta(self) -> int:
        meta = await self.info.meta(dex=self.dex or None)
        for asset in (meta or {}).get("universe", []):
            if asset.get("name") == self.coin:
                self.sz_decimals = int(asset.get("szDecimals", 0))
                log.info(json.dumps({"event": "meta_loaded", "coin": self.coin, "sz_decimals": self.sz_decimals}))
                return self.sz_decimals
        raise ValueError(f"coin {self.coin!r} not found in meta universe")

    async def get_tick_size(self, symbol: str) -> Decimal:
        if self.sz_decimals is None:
            await self.load_meta()
        return tick_from_decimals(6 - self.sz_decimals)

    async def _mid(self) -> Decimal:
        mids = await self.info.all_mids(dex=self.dex or None)
        mid = to_decimal((mids or {}).get(self.coin))
        if mid <= 0:
            raise RuntimeError(f"no mid price for {self.coin}")
        return mid

    async def place_order(
        self,
        side: Side,
        qty: Decimal,
        price: Decimal,
        reduce_only: bool = False,
        order_type: OrderType = OrderType.LIMIT,
    ) -> PlaceResult:
        if self.sz_decimals is None:
            await self.load_meta()
        size = round_size(qty, self.sz_decimals)
        if size <= 0:
            return PlaceResult(success=False, error_message=f"size {qty} rounds to zero")

        if order_type is OrderType.MARKET:
            ref = price if price > 0 else await self._mid()
            factor = Decimal(1) + self.market_slippage_pct if side is Side.BUY else Decimal(1) - self.market_slippage_pct
            px = hl_round_price(ref * factor, self.sz_decimals)
            tif = IOC
            reduce_only = True
        else:
            px = hl_round_price(price, self.sz_decimals)
            tif = GTC

        resp = await self.exchange.order(self.coin, side is Side.BUY, float(size), float(px), tif, reduce_only=reduce_only)
        err = extract_error_message(resp)
        if err:
            return PlaceResult(success=False, error_message=err)
        oid, status, filled, avg_px = extract_order_result(resp)
        if oid is None:
            return PlaceResult(success=False, error_message=f"no order status in response: {resp}")
        return PlaceResult(
            success=True,
            order_id=oid,
            status=status,
            filled_qty=filled,
            price=avg_px if status is OrderStatus.FILLED and avg_px else px,
        )

    async def cancel_order(self, order_id: str) -> bool:
        resp = await self.exchange.cancel(self.coin, int(order_id))
        err = extract_error_message(resp)
        if err:
            log.warning(json.dumps({"event": "cancel_rejected_by_venue", "coin": self.coin, "oid": order_id, "err": err}))
            return False
        statuses = extract_statuses(resp)
        return bool(statuses) and all(st == "success" for st in statuses)

    async def get_order_info(self, order_id: str) -> Optional[Order]:
        data = await self.info.query_order_by_oid(self.account, int(order_id))
        if not isinstance(data, dict) or data.get("status") != "order":
            return None
        wrapper = data.get("order") or {}
        payload = wrapper.get("order") or {}
        return order_from_payload(payload, wrapper.get("status", ""))

    async def get_open_orders(self, symbol: str) -> List[Order]:
        rows = await self.info.frontend_open_orders(self.account, dex=self.dex or None)
        return [order_from_payload(row) for row in rows or [] if isinstance(row, dict) and row.get("coin") == self.coin]

    async def get_position(self, symbol: str) -> Decimal:
        state = await self.info.user_state(self.account, dex=self.dex or None)
        return position_from_state(state, self.coin)

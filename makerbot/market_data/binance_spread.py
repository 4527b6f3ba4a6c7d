"""
Reference-market best bid/ask from Binance USD-M futures.
"""

from __future__ import annotations

import httpx
from typing import Optional

from makerbot.core.models import BidAsk
from makerbot.core.rounding import to_decimal

BOOK_TICKER_PATH = "/fapi/v1/ticker/bookTicker"


class BinanceSpreadSource:
    def __init__(self, base_url: str = "https://fapi.binance.com", timeout: float = 5.0, client: Optional[httpx.AsyncClient] = None) -> None:
        self.base_url = base_url.rstrip("/")
        if client is not None:
            self.client = client
            self._owns_client = False
        else:
            self.client = httpx.AsyncClient(base_url=self.base_url, timeout=timeout)
            self._owns_client = True

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    async def poll_best_bid_ask(self, symbol: str) -> BidAsk:
        """GET bookTicker; raises httpx errors and ValueError on a malformed body."""
        resp = await self.client.get(BOOK_TICKER_PATH, params={"symbol": symbol})
        resp.raise_for_status()
        data = resp.json()
        if not isinstance(data, dict) or "bidPrice" not in data or "askPrice" not in data:
            raise ValueError(f"unexpected bookTicker payload: {data!r}")
        return BidAsk(bid=to_decimal(data["bidPrice"]), ask=to_decimal(data["askPrice"]))

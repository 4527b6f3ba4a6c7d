"""
Async HTTP/2 client for the Hyperliquid /info endpoint.

Only the queries the gateway needs: asset meta, mids, clearinghouse state,
open orders and single-order status. Builder perps are selected with "dex".
"""

from __future__ import annotations

import httpx
from typing import Any, Optional


class AsyncInfo:
    def __init__(self, base_url: str, timeout: float = 5.0, client: Optional[httpx.AsyncClient] = None) -> None:
        self.base_url = base_url.rstrip("/")
        self._owns_client = client is None
        # A shared client passed in is not closed by close().
        self.client = client or httpx.AsyncClient(base_url=self.base_url, http2=True, timeout=timeout)

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    async def meta(self, dex: Optional[str] = None) -> Any:
        return await self._query("meta", dex=dex)

    async def all_mids(self, dex: Optional[str] = None) -> Any:
        return await self._query("allMids", dex=dex)

    async def user_state(self, account: str, dex: Optional[str] = None) -> Any:
        return await self._query("clearinghouseState", user=account, dex=dex)

    async def frontend_open_orders(self, account: str, dex: Optional[str] = None) -> Any:
        return await self._query("frontendOpenOrders", user=account, dex=dex)

    async def query_order_by_oid(self, account: str, oid: int) -> Any:
        """
        {"status": "order", "order": {"order": {...}, "status": "filled"}} or
        {"status": "unknownOid"}.
        """
        return await self._query("orderStatus", user=account, oid=oid)

    async def _query(self, kind: str, **fields: Any) -> Any:
        payload = {"type": kind}
        payload.update({k: v for k, v in fields.items() if v not in (None, "")})
        resp = await self.client.post("/info", json=payload)
        resp.raise_for_status()
        return self._unwrap(resp.json())

    @staticmethod
    def _unwrap(data: Any) -> Any:
        # {status: 'ok', response: {data: {...}}}
        if isinstance(data, dict) and isinstance(data.get("response"), dict):
            data = data["response"]
        if isinstance(data, dict) and isinstance(data.get("data"), dict):
            data = data["data"]
        return data

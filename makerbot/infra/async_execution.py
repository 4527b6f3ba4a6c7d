"""
Async wrapper around the blocking Hyperliquid Exchange using a shared thread pool.

Owns the transport-level policy for signed actions: per-attempt timeout and
jittered exponential backoff. Callers above this layer never retry.
"""

from __future__ import annotations

import asyncio
import json
import logging
import random
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable

log = logging.getLogger("makerbot")


class AsyncExchange:
    def __init__(self, exchange, timeout: float = 5.0, max_workers: int = 4, retries: int = 2) -> None:
        self._exchange = exchange
        self._timeout = timeout
        self._retries = retries
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="hl-exec")

    async def order(self, coin: str, is_buy: bool, sz: float, limit_px: float, order_type: dict, reduce_only: bool = False) -> Any:
        # Placement is not idempotent without a cloid; a timed-out attempt may
        # still rest, so it is sent once.
        return await self._call(
            lambda: self._exchange.order(coin, is_buy, sz, limit_px, order_type, reduce_only=reduce_only),
            label="order",
            retries=0,
        )

    async def cancel(self, coin: str, oid: int) -> Any:
        return await self._call(lambda: self._exchange.cancel(coin, oid), label="cancel")

    async def close(self, wait: bool = True) -> None:
        # prefer graceful shutdown to avoid leaking threads between restarts
        self._executor.shutdown(wait=wait)

    async def _call(self, fn: Callable[[], Any], label: str, retries: int | None = None) -> Any:
        loop = asyncio.get_running_loop()
        retries = self._retries if retries is None else retries
        backoff = 0.2
        for attempt in range(retries + 1):
            try:
                return await asyncio.wait_for(loop.run_in_executor(self._executor, fn), timeout=self._timeout)
            except Exception as exc:
                if attempt >= retries:
                    raise
                log.warning(json.dumps({"event": "exchange_retry", "call": label, "attempt": attempt + 1, "err": str(exc)}))
                await asyncio.sleep(backoff + random.uniform(0, backoff * 0.5))
                backoff *= 2

"""
In-memory status board for lightweight dashboards.

Holds read-only snapshots of BotState; nothing here can mutate the bot.
"""

from __future__ import annotations

import asyncio
from typing import Any, Dict, Optional

from makerbot.core.models import BotState
from makerbot.utils import now_ms


def format_uptime(start_ms: int, now: Optional[int] = None) -> str:
    elapsed = max(0, (now if now is not None else now_ms()) - start_ms)
    hours = elapsed // 3_600_000
    minutes = (elapsed % 3_600_000) // 60_000
    return f"{hours}h {minutes}m"


class StatusBoard:
    def __init__(self) -> None:
        self._data: Dict[str, Dict[str, Any]] = {}
        self._lock = asyncio.Lock()

    async def publish(self, state: BotState) -> None:
        payload = state.snapshot()
        payload["uptime"] = format_uptime(state.stats.start_time_ms)
        async with self._lock:
            self._data[state.symbol] = payload

    async def snapshot(self) -> Dict[str, Dict[str, Any]]:
        async with self._lock:
            return dict(self._data)

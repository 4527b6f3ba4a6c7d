"""
Pytest configuration and fixtures.
Adds the repo root to sys.path so tests can import makerbot without installing it.
"""

import sys
from decimal import Decimal
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

repo_root = Path(__file__).parent.parent
if str(repo_root) not in sys.path:
    sys.path.insert(0, str(repo_root))

from makerbot.core.models import BotState, OrderStatus, OrderType, PlaceResult  # noqa: E402


class FakeClock:
    """Millisecond clock advanced by hand."""

    def __init__(self, start_ms: int = 1_000_000) -> None:
        self.now = start_ms

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


def make_gateway(position: Decimal = Decimal(0)) -> AsyncMock:
    """
    AsyncMock ExchangeGateway: limits rest (OPEN), market orders fill in full,
    order ids are oid-1, oid-2, ...
    """
    gw = AsyncMock()
    counter = {"n": 0}

    async def _place(side, qty, price, reduce_only=False, order_type=OrderType.LIMIT):
        counter["n"] += 1
        if order_type is OrderType.MARKET:
            return PlaceResult(success=True, order_id=f"oid-{counter['n']}", status=OrderStatus.FILLED, filled_qty=qty, price=price)
        return PlaceResult(success=True, order_id=f"oid-{counter['n']}", status=OrderStatus.OPEN, price=price)

    gw.place_order.side_effect = _place
    gw.cancel_order.return_value = True
    gw.get_open_orders.return_value = []
    gw.get_position.return_value = position
    gw.get_order_info.return_value = None
    gw.get_tick_size.return_value = Decimal("0.1")
    return gw


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def gateway() -> AsyncMock:
    return make_gateway()


@pytest.fixture
def state() -> BotState:
    return BotState(symbol="BTC")


@pytest.fixture
def events() -> list:
    """Captures log_event calls as (event, kwargs) tuples."""
    return []


@pytest.fixture
def log_event(events):
    def _log(event, level=None, **kwargs):
        events.append((event, kwargs))
    return _log

"""Tests for build_bot wiring."""

import os
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
from prometheus_client import CollectorRegistry

from makerbot.bot_factory import BotDependencies, build_bot
from makerbot.config import Settings
from makerbot.core.models import Side
from makerbot.monitoring.metrics_rich import RichMetrics


@pytest.fixture
def settings(monkeypatch):
    for key in list(os.environ):
        if key.startswith(("HL_", "MM_", "SPREAD_GUARD_")):
            monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("MM_MODE", "sell")
    monkeypatch.setenv("MM_TICK_SIZE", "0.1")
    monkeypatch.setenv("SPREAD_GUARD_POLL_INTERVAL_MS", "500")
    return Settings.load


def test_engines_share_gateway_and_settings(settings):
    cfg = settings()
    gateway = AsyncMock()
    orch = build_bot(BotDependencies(
        cfg=cfg,
        gateway=gateway,
        market_data=AsyncMock(),
        spread_source=AsyncMock(),
        metrics=RichMetrics(registry=CollectorRegistry()),
    ))

    assert orch.lifecycle.gateway is gateway
    assert orch.position_guard.gateway is gateway
    assert orch.lifecycle.sides == (Side.SELL,)
    assert orch.lifecycle.config.tick_size == Decimal("0.1")
    assert orch.config.timer_interval_ms == 500
    assert orch.spread_guard.enabled
    assert orch.state.symbol == "BTC"


def test_disabled_spread_guard_drops_source(settings, monkeypatch):
    monkeypatch.setenv("SPREAD_GUARD_ENABLED", "0")
    orch = build_bot(BotDependencies(
        cfg=settings(),
        gateway=AsyncMock(),
        market_data=AsyncMock(),
        spread_source=AsyncMock(),
    ))
    assert orch.spread_guard.source is None
    assert not orch.spread_guard.enabled

"""Tests for environment-driven Settings."""

import logging
import os
from decimal import Decimal

import pytest

from makerbot.config import Settings, log_config
from makerbot.execution.order_lifecycle import LifecycleConfig
from makerbot.core.models import TradingMode
from makerbot.risk.position_guard import PositionGuardConfig
from makerbot.risk.spread_guard import SpreadGuardConfig

PREFIXES = ("HL_", "MM_", "SPREAD_GUARD_")


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for key in list(os.environ):
        if key.startswith(PREFIXES):
            monkeypatch.delenv(key, raising=False)


class TestDefaults:
    def test_defaults(self):
        cfg = Settings.load()
        assert cfg.coin == "BTC"
        assert cfg.mode == "both"
        assert cfg.order_size == Decimal("0.001")
        assert (cfg.min_distance_bp, cfg.target_distance_bp, cfg.max_distance_bp) == (
            Decimal(5), Decimal(10), Decimal(15),
        )
        assert cfg.dead_zone_bp == Decimal(1)
        assert cfg.min_replace_interval_ms == 3000
        assert cfg.tick_size is None
        assert cfg.close_mode == "market"
        assert cfg.spread_guard_enabled is True
        assert cfg.spread_cooldown_ms == 30000
        assert cfg.max_threshold_policy == "quantile"
        assert cfg.basis_diff_policy == "multiply"

    def test_overrides(self, monkeypatch):
        monkeypatch.setenv("MM_MODE", "SELL")
        monkeypatch.setenv("MM_TICK_SIZE", "0.5")
        monkeypatch.setenv("MM_CLOSE_MODE", "limit")
        monkeypatch.setenv("SPREAD_GUARD_ENABLED", "false")
        monkeypatch.setenv("SPREAD_GUARD_COOLDOWN_MS", "5000")

        cfg = Settings.load()

        assert cfg.mode == "sell"
        assert cfg.tick_size == Decimal("0.5")
        assert cfg.close_mode == "limit"
        assert cfg.spread_guard_enabled is False
        assert cfg.spread_cooldown_ms == 5000


class TestValidation:
    @pytest.mark.parametrize(
        "key,value",
        [
            ("MM_MODE", "sideways"),
            ("MM_ORDER_SIZE", "0"),
            ("MM_TARGET_DISTANCE_BP", "20"),
            ("MM_MIN_DISTANCE_BP", "12"),
            ("MM_DEAD_ZONE_BP", "5"),
            ("MM_TICK_SIZE", "-1"),
            ("MM_CLOSE_MODE", "twap"),
            ("SPREAD_GUARD_MAX_QUANTILE", "1.5"),
            ("SPREAD_GUARD_MAX_POLICY", "median"),
            ("SPREAD_GUARD_BASIS_DIFF_POLICY", "add"),
            ("SPREAD_GUARD_VOL_LOW_THRESHOLD", "20"),
            ("MM_ORDER_SIZE", "abc"),
        ],
    )
    def test_rejects_bad_values(self, monkeypatch, key, value):
        monkeypatch.setenv(key, value)
        with pytest.raises(ValueError):
            Settings.load()

    def test_narrow_band_warns(self, monkeypatch, caplog):
        monkeypatch.setenv("MM_MIN_DISTANCE_BP", "9")
        monkeypatch.setenv("MM_MAX_DISTANCE_BP", "10")
        monkeypatch.setenv("MM_DEAD_ZONE_BP", "1")
        with caplog.at_level(logging.WARNING, logger="makerbot"):
            Settings.load()
        assert "narrower than twice the dead-zone" in caplog.text


class TestDerivedConfigs:
    """Engine configs pick their fields from Settings."""

    def test_engine_configs(self, monkeypatch):
        monkeypatch.setenv("MM_MODE", "buy")
        monkeypatch.setenv("SPREAD_GUARD_SYMBOL", "ETHUSDT")
        cfg = Settings.load()

        lifecycle = LifecycleConfig.from_settings(cfg)
        assert lifecycle.mode is TradingMode.BUY
        assert lifecycle.replace_below_bp == Decimal(4)
        assert lifecycle.replace_above_bp == Decimal(16)

        guard = PositionGuardConfig.from_settings(cfg)
        assert guard.position_epsilon == Decimal("0.00001")

        spread = SpreadGuardConfig.from_settings(cfg)
        assert spread.symbol == "ETHUSDT"
        assert spread.cooldown_ms == 30000


class TestDump:
    def test_dump_masks_credentials(self, monkeypatch):
        monkeypatch.setenv("HL_PRIVATE_KEY", "0xdeadbeef")
        cfg = Settings.load()
        data = cfg.dump()
        assert data["private_key"] == "***"
        assert data["agent_key"] is None

    def test_log_config(self, caplog):
        cfg = Settings.load()
        with caplog.at_level(logging.INFO, logger="makerbot"):
            log_config(cfg)
        assert "config_loaded" in caplog.text

    def test_resolve_account_requires_credentials(self):
        cfg = Settings.load()
        with pytest.raises(RuntimeError):
            cfg.resolve_account()

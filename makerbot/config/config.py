"""
Environment-driven configuration with validation.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Optional

from dotenv import load_dotenv

load_dotenv()

CLOSE_MODES = {"market", "limit"}
TRADING_MODES = {"both", "buy", "sell"}
MAX_THRESHOLD_POLICIES = {"quantile", "quantile_floor"}
BASIS_DIFF_POLICIES = {"multiply", "override"}


def env_bool(key: str, default: bool) -> bool:
    val = os.getenv(key)
    if val is None:
        return default
    return val.lower() in {"1", "true", "yes", "y"}


def _int_env(key: str, default: int) -> int:
    raw = os.getenv(key)
    if raw is None or raw == "":
        return default
    return int(raw)


def _float_env(key: str, default: float) -> float:
    raw = os.getenv(key)
    if raw is None or raw == "":
        return default
    return float(raw)


def _decimal_env(key: str, default: str) -> Decimal:
    raw = os.getenv(key)
    if raw is None or raw == "":
        raw = default
    try:
        return Decimal(raw)
    except InvalidOperation as exc:
        raise ValueError(f"{key} must be a decimal number, got {raw!r}") from exc


def _optional_decimal_env(key: str) -> Optional[Decimal]:
    raw = os.getenv(key)
    if raw is None or raw == "":
        return None
    return _decimal_env(key, raw)


@dataclass(frozen=True)
class Settings:
    # Venue
    base_url: str
    dex: str
    coin: str
    private_key: str | None
    agent_key: str | None
    user_address: str | None
    http_timeout: float
    market_slippage_pct: Decimal
    ws_stale_after: float
    ws_watch_interval: float
    # Quoting
    mode: str
    order_size: Decimal
    target_distance_bp: Decimal
    min_distance_bp: Decimal
    max_distance_bp: Decimal
    dead_zone_bp: Decimal
    min_replace_interval_ms: int
    tick_size: Optional[Decimal]
    call_timeout_ms: int
    # Position guard
    close_mode: str
    close_limit_offset_bp: Decimal
    close_limit_timeout_ms: int
    close_fill_timeout_ms: int
    close_poll_interval_ms: int
    position_check_interval_ms: int
    position_epsilon: Decimal
    # Spread guard
    spread_guard_enabled: bool
    spread_guard_base_url: str
    spread_guard_symbol: str
    jump_spread_bp: Decimal
    max_spread_bp: Decimal
    lookback_samples: int
    quantile_samples: int
    quantile_min_samples: int
    max_quantile: Decimal
    vol_lookback_samples: int
    vol_high_threshold_bp: Decimal
    vol_low_threshold_bp: Decimal
    high_vol_jump_multiplier: Decimal
    high_vol_max_multiplier: Decimal
    low_vol_jump_multiplier: Decimal
    low_vol_max_multiplier: Decimal
    basis_diff_bp: Decimal
    basis_diff_multiplier: Decimal
    basis_diff_policy: str
    max_threshold_policy: str
    spread_poll_interval_ms: int
    spread_cooldown_ms: int
    # Ops
    log_level: str
    log_file: str | None
    metrics_port: int

    def dump(self) -> dict:
        """Return a dict of settings for sanity checks/logging (credentials masked)."""
        data = self.__dict__.copy()
        for key in ("private_key", "agent_key"):
            if data.get(key):
                data[key] = "***"
        return data

    @classmethod
    def load(cls) -> "Settings":
        cfg = cls(
            base_url=os.getenv("HL_BASE_URL", "https://api.hyperliquid.xyz"),
            dex=os.getenv("HL_DEX", ""),
            coin=os.getenv("HL_COIN", "BTC"),
            private_key=os.getenv("HL_PRIVATE_KEY"),
            agent_key=os.getenv("HL_AGENT_KEY"),
            user_address=os.getenv("HL_USER_ADDRESS"),
            http_timeout=_float_env("HL_HTTP_TIMEOUT", 5.0),
            market_slippage_pct=_decimal_env("HL_MARKET_SLIPPAGE_PCT", "0.05"),
            ws_stale_after=_float_env("HL_WS_STALE_AFTER_SEC", 20.0),
            ws_watch_interval=_float_env("HL_WS_WATCH_INTERVAL_SEC", 5.0),
            mode=os.getenv("MM_MODE", "both").lower(),
            order_size=_decimal_env("MM_ORDER_SIZE", "0.001"),
            target_distance_bp=_decimal_env("MM_TARGET_DISTANCE_BP", "10"),
            min_distance_bp=_decimal_env("MM_MIN_DISTANCE_BP", "5"),
            max_distance_bp=_decimal_env("MM_MAX_DISTANCE_BP", "15"),
            dead_zone_bp=_decimal_env("MM_DEAD_ZONE_BP", "1"),
            min_replace_interval_ms=_int_env("MM_MIN_REPLACE_INTERVAL_MS", 3000),
            tick_size=_optional_decimal_env("MM_TICK_SIZE"),
            call_timeout_ms=_int_env("MM_CALL_TIMEOUT_MS", 10000),
            close_mode=os.getenv("MM_CLOSE_MODE", "market").lower(),
            close_limit_offset_bp=_decimal_env("MM_CLOSE_LIMIT_OFFSET_BP", "0"),
            close_limit_timeout_ms=_int_env("MM_CLOSE_LIMIT_TIMEOUT_MS", 5000),
            close_fill_timeout_ms=_int_env("MM_CLOSE_FILL_TIMEOUT_MS", 5000),
            close_poll_interval_ms=_int_env("MM_CLOSE_POLL_INTERVAL_MS", 500),
            position_check_interval_ms=_int_env("MM_POSITION_CHECK_INTERVAL_MS", 2000),
            position_epsilon=_decimal_env("MM_POSITION_EPSILON", "0.00001"),
            spread_guard_enabled=env_bool("SPREAD_GUARD_ENABLED", True),
            spread_guard_base_url=os.getenv("SPREAD_GUARD_BASE_URL", "https://fapi.binance.com"),
            spread_guard_symbol=os.getenv("SPREAD_GUARD_SYMBOL", "BTCUSDT"),
            jump_spread_bp=_decimal_env("SPREAD_GUARD_JUMP_SPREAD_BP", "20"),
            max_spread_bp=_decimal_env("SPREAD_GUARD_MAX_SPREAD_BP", "40"),
            lookback_samples=_int_env("SPREAD_GUARD_LOOKBACK_SAMPLES", 50),
            quantile_samples=_int_env("SPREAD_GUARD_QUANTILE_SAMPLES", 50),
            quantile_min_samples=_int_env("SPREAD_GUARD_QUANTILE_MIN_SAMPLES", 10),
            max_quantile=_decimal_env("SPREAD_GUARD_MAX_QUANTILE", "0.95"),
            vol_lookback_samples=_int_env("SPREAD_GUARD_VOL_LOOKBACK_SAMPLES", 50),
            vol_high_threshold_bp=_decimal_env("SPREAD_GUARD_VOL_HIGH_THRESHOLD", "15"),
            vol_low_threshold_bp=_decimal_env("SPREAD_GUARD_VOL_LOW_THRESHOLD", "5"),
            high_vol_jump_multiplier=_decimal_env("SPREAD_GUARD_HIGH_VOL_JUMP_MULTIPLIER", "1.5"),
            high_vol_max_multiplier=_decimal_env("SPREAD_GUARD_HIGH_VOL_MAX_MULTIPLIER", "1.5"),
            low_vol_jump_multiplier=_decimal_env("SPREAD_GUARD_LOW_VOL_JUMP_MULTIPLIER", "0.8"),
            low_vol_max_multiplier=_decimal_env("SPREAD_GUARD_LOW_VOL_MAX_MULTIPLIER", "0.8"),
            basis_diff_bp=_decimal_env("SPREAD_GUARD_BASIS_DIFF_BP", "0"),
            basis_diff_multiplier=_decimal_env("SPREAD_GUARD_BASIS_DIFF_MULTIPLIER", "2"),
            basis_diff_policy=os.getenv("SPREAD_GUARD_BASIS_DIFF_POLICY", "multiply").lower(),
            max_threshold_policy=os.getenv("SPREAD_GUARD_MAX_POLICY", "quantile").lower(),
            spread_poll_interval_ms=_int_env("SPREAD_GUARD_POLL_INTERVAL_MS", 1000),
            spread_cooldown_ms=_int_env("SPREAD_GUARD_COOLDOWN_MS", 30000),
            log_level=os.getenv("MM_LOG_LEVEL", "INFO").upper(),
            log_file=os.getenv("MM_LOG_FILE", "makerbot.log") or None,
            metrics_port=_int_env("MM_METRICS_PORT", 9095),
        )
        cfg._validate()
        return cfg

    def resolve_account(self) -> str:
        if self.user_address:
            return self.user_address
        if self.private_key:
            from eth_account import Account

            return Account.from_key(self.private_key).address
        raise RuntimeError("Missing HL_USER_ADDRESS or HL_PRIVATE_KEY")

    def resolve_signer(self):
        from eth_account import Account

        if self.private_key:
            return Account.from_key(self.private_key)
        if self.agent_key:
            return Account.from_key(self.agent_key)
        raise RuntimeError("Missing credentials: set HL_PRIVATE_KEY or HL_AGENT_KEY")

    def _validate(self) -> None:
        if self.mode not in TRADING_MODES:
            raise ValueError(f"MM_MODE must be one of {sorted(TRADING_MODES)}")
        if self.order_size <= 0:
            raise ValueError("MM_ORDER_SIZE must be > 0")
        if self.min_distance_bp <= 0:
            raise ValueError("MM_MIN_DISTANCE_BP must be > 0")
        if not (self.min_distance_bp <= self.target_distance_bp <= self.max_distance_bp):
            raise ValueError("Distances must satisfy MIN <= TARGET <= MAX")
        if self.dead_zone_bp < 0 or self.dead_zone_bp >= self.min_distance_bp:
            raise ValueError("MM_DEAD_ZONE_BP must be >= 0 and < MM_MIN_DISTANCE_BP")
        if self.min_replace_interval_ms < 0:
            raise ValueError("MM_MIN_REPLACE_INTERVAL_MS must be >= 0")
        if self.tick_size is not None and self.tick_size <= 0:
            raise ValueError("MM_TICK_SIZE must be > 0 when set")
        if self.call_timeout_ms <= 0:
            raise ValueError("MM_CALL_TIMEOUT_MS must be > 0")
        if self.close_mode not in CLOSE_MODES:
            raise ValueError(f"MM_CLOSE_MODE must be one of {sorted(CLOSE_MODES)}")
        if self.close_limit_timeout_ms <= 0 or self.close_fill_timeout_ms <= 0:
            raise ValueError("Close timeouts must be > 0")
        if self.close_poll_interval_ms <= 0:
            raise ValueError("MM_CLOSE_POLL_INTERVAL_MS must be > 0")
        if self.position_check_interval_ms <= 0:
            raise ValueError("MM_POSITION_CHECK_INTERVAL_MS must be > 0")
        if self.position_epsilon < 0:
            raise ValueError("MM_POSITION_EPSILON must be >= 0")
        if not (0 <= self.max_quantile <= 1):
            raise ValueError("SPREAD_GUARD_MAX_QUANTILE must be within [0, 1]")
        if min(self.lookback_samples, self.quantile_samples, self.vol_lookback_samples) <= 0:
            raise ValueError("Spread guard sample windows must be > 0")
        if self.vol_low_threshold_bp > self.vol_high_threshold_bp:
            raise ValueError("SPREAD_GUARD_VOL_LOW_THRESHOLD must be <= SPREAD_GUARD_VOL_HIGH_THRESHOLD")
        if self.basis_diff_policy not in BASIS_DIFF_POLICIES:
            raise ValueError(f"SPREAD_GUARD_BASIS_DIFF_POLICY must be one of {sorted(BASIS_DIFF_POLICIES)}")
        if self.max_threshold_policy not in MAX_THRESHOLD_POLICIES:
            raise ValueError(f"SPREAD_GUARD_MAX_POLICY must be one of {sorted(MAX_THRESHOLD_POLICIES)}")
        if self.spread_poll_interval_ms <= 0 or self.spread_cooldown_ms < 0:
            raise ValueError("Spread guard poll interval must be > 0 and cooldown >= 0")

        # ===== SAFETY WARNINGS =====
        if self.market_slippage_pct > Decimal("0.1"):
            logging.getLogger("makerbot").warning(
                f"WARNING: HL_MARKET_SLIPPAGE_PCT is {self.market_slippage_pct}. "
                "Market closes may execute far from the mark price."
            )
        if self.max_distance_bp - self.min_distance_bp < 2 * self.dead_zone_bp:
            logging.getLogger("makerbot").warning(
                "WARNING: distance band is narrower than twice the dead-zone; "
                "expect frequent replaces."
            )


def log_config(cfg: Settings) -> None:
    """
    Log the quoting-relevant settings once at startup so overrides are obvious.
    """
    logger = logging.getLogger("makerbot")
    payload = {
        "event": "config_loaded",
        "coin": cfg.coin,
        "mode": cfg.mode,
        "order_size": str(cfg.order_size),
        "target_distance_bp": str(cfg.target_distance_bp),
        "min_distance_bp": str(cfg.min_distance_bp),
        "max_distance_bp": str(cfg.max_distance_bp),
        "dead_zone_bp": str(cfg.dead_zone_bp),
        "close_mode": cfg.close_mode,
        "spread_guard_enabled": cfg.spread_guard_enabled,
    }
    logger.info(json.dumps(payload))

"""
Risk management package.

This package contains the position guard (return to flat after fills) and
the spread anomaly guard (suspend quoting on reference-market spread blowouts).
"""

from makerbot.risk.position_guard import (
    FlattenError,
    FlattenOutcome,
    FlattenResult,
    PositionGuard,
    PositionGuardConfig,
)
from makerbot.risk.spread_guard import (
    Regime,
    SpreadAnomalyGuard,
    SpreadCheck,
    SpreadGuardConfig,
    SpreadThresholds,
)

__all__ = [
    "FlattenError",
    "FlattenOutcome",
    "FlattenResult",
    "PositionGuard",
    "PositionGuardConfig",
    "Regime",
    "SpreadAnomalyGuard",
    "SpreadCheck",
    "SpreadGuardConfig",
    "SpreadThresholds",
]

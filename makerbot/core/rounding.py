"""
Exact Decimal rounding helpers.

Tick rounding is round-half-up on the tick count, never float arithmetic,
so distance calculations carry no systematic bias.
"""

from __future__ import annotations

from decimal import Decimal, ROUND_DOWN, ROUND_HALF_UP
from typing import Any

BP = Decimal(10000)

__all__ = [
    "BP",
    "to_decimal",
    "round_to_tick",
    "distance_bp",
    "offset_price",
    "hl_round_price",
    "tick_from_decimals",
    "round_size",
]


def to_decimal(value: Any) -> Decimal:
    """Convert venue payload values (str/int/float/Decimal) without float noise."""
    if isinstance(value, Decimal):
        return value
    if value is None or value == "":
        return Decimal(0)
    return Decimal(str(value))


def round_to_tick(px: Decimal, tick: Decimal) -> Decimal:
    """Round to the nearest multiple of tick, halves rounding up."""
    if tick <= 0:
        return px
    ticks = (px / tick).quantize(Decimal(1), rounding=ROUND_HALF_UP)
    return (ticks * tick).quantize(tick)


def distance_bp(reference: Decimal, price: Decimal) -> Decimal:
    """|reference - price| / price in basis points."""
    if price <= 0:
        return Decimal(0)
    return abs(reference - price) / price * BP


def offset_price(reference: Decimal, bp: Decimal, below: bool) -> Decimal:
    """Move reference by bp basis points, down when below else up."""
    factor = Decimal(1) - bp / BP if below else Decimal(1) + bp / BP
    return reference * factor


def tick_from_decimals(decimals: int) -> Decimal:
    return Decimal(1).scaleb(-max(0, decimals))


def hl_round_price(px: Decimal, sz_decimals: int, is_perp: bool = True) -> Decimal:
    """
    Hyperliquid price rounding per docs:
    - Perps: up to 5 significant figures, and at most (6 - szDecimals) decimals.
    - Spot:   up to 5 significant figures, and at most (8 - szDecimals) decimals.
    - If px > 100_000, round to int.
    """
    if px > 100_000:
        return px.quantize(Decimal(1), rounding=ROUND_HALF_UP)
    max_decimals = (6 - sz_decimals) if is_perp else (8 - sz_decimals)
    max_decimals = max(0, max_decimals)
    if px == 0:
        return px
    # 5 significant figures
    exp = px.adjusted() - 4
    sig_5 = px.quantize(Decimal(1).scaleb(exp), rounding=ROUND_HALF_UP)
    return sig_5.quantize(tick_from_decimals(max_decimals), rounding=ROUND_HALF_UP)


def round_size(sz: Decimal, sz_decimals: int) -> Decimal:
    """Sizes are truncated, never rounded up past what the caller asked for."""
    return sz.quantize(tick_from_decimals(sz_decimals), rounding=ROUND_DOWN)

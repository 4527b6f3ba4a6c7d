"""Tests for exact Decimal price/size rounding."""

from decimal import Decimal

from makerbot.core.rounding import (
    distance_bp,
    hl_round_price,
    offset_price,
    round_size,
    round_to_tick,
    tick_from_decimals,
    to_decimal,
)


class TestRoundToTick:
    def test_rounds_to_nearest_tick(self):
        assert round_to_tick(Decimal("93773.68"), Decimal("0.1")) == Decimal("93773.7")
        assert round_to_tick(Decimal("93586.32"), Decimal("0.1")) == Decimal("93586.3")

    def test_halves_round_up(self):
        assert round_to_tick(Decimal("100.05"), Decimal("0.1")) == Decimal("100.1")
        assert round_to_tick(Decimal("100.25"), Decimal("0.5")) == Decimal("100.5")

    def test_result_carries_tick_exponent(self):
        px = round_to_tick(Decimal("100"), Decimal("0.01"))
        assert str(px) == "100.00"

    def test_non_positive_tick_is_passthrough(self):
        assert round_to_tick(Decimal("1.2345"), Decimal(0)) == Decimal("1.2345")


class TestDistance:
    def test_distance_in_valid_band(self):
        d = distance_bp(Decimal("93580"), Decimal("93691"))
        assert round(d, 2) == Decimal("11.85")

    def test_distance_after_reference_moves_toward_order(self):
        d = distance_bp(Decimal("93680"), Decimal("93691"))
        assert round(d, 2) == Decimal("1.17")

    def test_distance_is_symmetric_in_sign(self):
        assert distance_bp(Decimal("101"), Decimal("100")) == distance_bp(Decimal("99"), Decimal("100"))

    def test_zero_price(self):
        assert distance_bp(Decimal("100"), Decimal(0)) == 0

    def test_offset_price(self):
        assert offset_price(Decimal("10000"), Decimal(10), below=True) == Decimal("9990")
        assert offset_price(Decimal("10000"), Decimal(10), below=False) == Decimal("10010")


class TestHyperliquidRules:
    def test_tick_from_decimals(self):
        assert tick_from_decimals(1) == Decimal("0.1")
        assert tick_from_decimals(0) == Decimal(1)
        assert tick_from_decimals(-2) == Decimal(1)

    def test_price_five_significant_figures(self):
        assert hl_round_price(Decimal("93773.68"), 5) == Decimal("93774")
        assert hl_round_price(Decimal("1.234567"), 2) == Decimal("1.2346")

    def test_price_max_decimals(self):
        # szDecimals 4 leaves 2 price decimals
        assert hl_round_price(Decimal("12.3456"), 4) == Decimal("12.35")

    def test_price_above_100k_is_integer(self):
        assert hl_round_price(Decimal("100123.6"), 5) == Decimal("100124")

    def test_size_truncates(self):
        assert round_size(Decimal("0.123456"), 5) == Decimal("0.12345")
        assert round_size(Decimal("0.000019"), 5) == Decimal("0.00001")

    def test_to_decimal(self):
        assert to_decimal(0.1) == Decimal("0.1")
        assert to_decimal("93000.5") == Decimal("93000.5")
        assert to_decimal(None) == Decimal(0)
        assert to_decimal("") == Decimal(0)

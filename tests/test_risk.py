"""Tests for the risk helpers.

Covers fixed-margin position sizing, precision flooring, and percentage
stop-loss / take-profit brackets.
"""

import pytest

from scantrader.broker.models import OrderSide
from scantrader.risk.position_sizer import calculate_quantity, floor_to_precision
from scantrader.risk.sl_tp import BracketPrices, calculate_bracket_prices


# ── Position sizing ──────────────────────────────────────────────────────


class TestPositionSizing:
    def test_margin_times_leverage_over_price(self):
        """$50 margin × 10 leverage at $25,000 → 0.02 BTC."""
        assert calculate_quantity(50.0, 10, 25_000.0) == pytest.approx(0.02)

    def test_high_leverage(self):
        # 50 × 50 / 2.5 = 1000
        assert calculate_quantity(50.0, 50, 2.5) == pytest.approx(1000.0)

    def test_rejects_zero_price(self):
        with pytest.raises(ValueError, match="price"):
            calculate_quantity(50.0, 10, 0)

    def test_rejects_zero_margin(self):
        with pytest.raises(ValueError, match="margin"):
            calculate_quantity(0, 10, 100.0)

    def test_rejects_zero_leverage(self):
        with pytest.raises(ValueError, match="leverage"):
            calculate_quantity(50.0, 0, 100.0)


class TestFloorToPrecision:
    def test_truncates_not_rounds(self):
        assert floor_to_precision(0.12399, 3) == "0.123"

    def test_float_noise_does_not_lose_a_step(self):
        assert floor_to_precision(0.3, 3) == "0.300"

    def test_zero_precision(self):
        assert floor_to_precision(7.9, 0) == "7"

    def test_zero_and_nan(self):
        assert floor_to_precision(0.0, 3) == "0"
        assert floor_to_precision(float("nan"), 3) == "0"

    def test_tiny_value_floors_to_zero(self):
        assert float(floor_to_precision(0.0004, 3)) == 0


# ── SL / TP brackets ─────────────────────────────────────────────────────


class TestBracketPrices:
    def test_long_brackets(self):
        prices = calculate_bracket_prices(100.0, OrderSide.BUY, 2, 4)
        assert isinstance(prices, BracketPrices)
        assert prices.sl == pytest.approx(98.0)
        assert prices.tp == pytest.approx(104.0)

    def test_short_brackets(self):
        prices = calculate_bracket_prices(100.0, OrderSide.SELL, 2, 4)
        assert prices.sl == pytest.approx(102.0)
        assert prices.tp == pytest.approx(96.0)

    def test_rejects_non_positive_inputs(self):
        with pytest.raises(ValueError, match="price"):
            calculate_bracket_prices(0, OrderSide.BUY, 2, 4)
        with pytest.raises(ValueError, match="stop_loss_pct"):
            calculate_bracket_prices(100.0, OrderSide.BUY, 0, 4)
        with pytest.raises(ValueError, match="take_profit_pct"):
            calculate_bracket_prices(100.0, OrderSide.BUY, 2, -1)

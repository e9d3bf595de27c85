"""Unit tests for technical indicators."""
import pytest

from basket_trader.backtest.indicators import calculate_rsi, find_double_bottom, price_change


class TestPriceChange:

    def test_change_over_lookback(self):
        assert price_change([90, 100, 110, 121], 3) == pytest.approx(0.21)

    def test_not_enough_history(self):
        assert price_change([100, 110], 3) is None

    def test_non_positive_start(self):
        assert price_change([0, 1, 2], 3) is None


class TestRSI:
    """Test the simple-average RSI."""

    def test_insufficient_history_is_neutral(self):
        assert calculate_rsi([1, 2, 3], period=14) == 50.0

    def test_only_gains(self):
        assert calculate_rsi(list(range(1, 20)), period=14) == 100.0

    def test_only_losses(self):
        assert calculate_rsi(list(range(20, 1, -1)), period=14) == pytest.approx(0.0)

    def test_mixed(self):
        # gains 2, losses 1 -> RS 2 -> RSI 66.67
        assert calculate_rsi([10, 12, 11], period=2) == pytest.approx(200 / 3)

    def test_uses_only_trailing_window(self):
        assert calculate_rsi([100, 10, 12, 11], period=2) == pytest.approx(200 / 3)


class TestDoubleBottom:
    """Test double-bottom detection."""

    LOWS = [10, 8, 9, 11, 12, 11, 8.1, 9, 10]

    def test_detects_pattern(self):
        highs = [low + 1 for low in self.LOWS]
        pattern = find_double_bottom(self.LOWS, highs)

        assert pattern is not None
        assert (pattern.first_index, pattern.second_index) == (1, 6)
        assert pattern.bottom == 8
        assert pattern.neckline == 13
        assert pattern.target == pytest.approx(18)

    def test_troughs_too_far_apart_in_depth(self):
        lows = [10, 8, 9, 11, 12, 11, 9, 10, 11]
        highs = [low + 1 for low in lows]
        assert find_double_bottom(lows, highs) is None

    def test_monotonic_series(self):
        lows = list(range(10, 20))
        highs = [low + 1 for low in lows]
        assert find_double_bottom(lows, highs) is None

    def test_mismatched_lengths(self):
        assert find_double_bottom([1, 2, 3], [1, 2]) is None

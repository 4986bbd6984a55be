"""Tests for the utils module."""

import re

import pytest

from peg_stabilizer.utils import (
    constant_product_output,
    deep_merge,
    format_deviation,
    generate_trade_id,
    get_logger,
    percent_change,
    utc_day_bounds,
)


class TestTimestamps:
    def test_utc_day_bounds(self):
        """Any moment of a UTC day maps to that day's [start, end)."""
        start, end = utc_day_bounds(1704110400.0)
        assert start == 1704067200.0
        assert end == 1704067200.0 + 86400

    def test_utc_day_bounds_at_midnight(self):
        start, end = utc_day_bounds(1704067200.0)
        assert start == 1704067200.0

        start, _ = utc_day_bounds(1704067200.0 - 0.001)
        assert start == 1704067200.0 - 86400


class TestTradeIds:
    def test_format(self):
        trade_id = generate_trade_id(1704110400.123)
        assert re.fullmatch(r"trade_1704110400123_[0-9a-f]{12}", trade_id)

    def test_unique_for_same_millisecond(self):
        ids = {generate_trade_id(1704110400.0) for _ in range(1000)}
        assert len(ids) == 1000


class TestMath:
    def test_percent_change_sign(self):
        assert percent_change(0.0105, 0.01) == pytest.approx(5.0)
        assert percent_change(0.0095, 0.01) == pytest.approx(-5.0)
        assert percent_change(1.0, 0) == 0.0

    def test_constant_product_output(self):
        # without fee: 1 * 100 / (100 + 1)
        assert constant_product_output(1, 100, 100, fee_bps=0) == pytest.approx(100 / 101)
        with_fee = constant_product_output(1, 100, 100, fee_bps=25)
        assert with_fee < 100 / 101

    def test_constant_product_output_degenerate(self):
        assert constant_product_output(0, 100, 100) == 0.0
        assert constant_product_output(1, 0, 100) == 0.0

    def test_format_deviation(self):
        assert format_deviation(1.234) == "+1.23%"
        assert format_deviation(-0.4) == "-0.40%"
        assert format_deviation(0) == "+0.00%"


def test_deep_merge():
    base = {"limits": {"max_trade_size": 1.0, "max_daily_volume": 10.0}, "bot_id": "a"}
    merged = deep_merge(base, {"limits": {"max_daily_volume": 20.0}})

    assert merged == {
        "limits": {"max_trade_size": 1.0, "max_daily_volume": 20.0},
        "bot_id": "a",
    }
    assert base["limits"]["max_daily_volume"] == 10.0

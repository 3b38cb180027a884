from __future__ import annotations

import pytest

from futures_agent.features.indicators import (
    calculate_atr,
    calculate_atr_pct,
    calculate_ema,
    calculate_hurst_exponent,
    calculate_rsi,
    calculate_sma,
    calculate_std,
)
from futures_agent.features.market_math import (
    calculate_mid_price,
    calculate_spread_pct,
    clamp,
    format_price,
    format_quantity,
    is_valid_price,
    is_valid_quantity,
    pct_change,
    round_to_qty_step,
    round_to_tick_size,
)
from futures_agent.types import Candle


def _flat_candles(count: int, price: float = 100.0, half_range: float = 1.0) -> list[Candle]:
    return [
        Candle(
            timestamp=i * 60_000,
            open=price,
            high=price + half_range,
            low=price - half_range,
            close=price,
            volume=10.0,
        )
        for i in range(count)
    ]


def test_atr_constant_range() -> None:
    candles = _flat_candles(30)
    assert calculate_atr(candles, 14) == pytest.approx(2.0)
    assert calculate_atr_pct(candles, 14) == pytest.approx(2.0)


def test_atr_needs_period_plus_one_candles() -> None:
    assert calculate_atr(_flat_candles(14), 14) == 0.0
    assert calculate_atr(_flat_candles(15), 14) > 0


def test_atr_uses_gap_from_previous_close() -> None:
    candles = _flat_candles(15)
    gapped = Candle(timestamp=15 * 60_000, open=110, high=111, low=109, close=110, volume=1)
    # true range of the gap candle is 111 - 100 = 11
    expected = (2.0 * 13 + 11.0) / 14
    assert calculate_atr([*candles[1:], gapped], 14) == pytest.approx(expected)


def test_rsi_edges() -> None:
    assert calculate_rsi([1.0] * 10, 14) is None
    assert calculate_rsi([float(i) for i in range(20)], 14) == pytest.approx(100.0)
    assert calculate_rsi([5.0] * 20, 14) == pytest.approx(50.0)


def test_rsi_balanced_moves_is_fifty() -> None:
    closes = [100.0 + (i % 2) for i in range(15)]
    assert calculate_rsi(closes, 14) == pytest.approx(50.0)


def test_hurst_degenerate_inputs() -> None:
    assert calculate_hurst_exponent([100.0] * 10) == 0.5
    assert calculate_hurst_exponent([100.0] * 50) == 0.5
    trending = [100.0 * (1.01**i) + (i % 3) * 0.1 for i in range(60)]
    assert 0.0 <= calculate_hurst_exponent(trending) <= 1.0


def test_simple_statistics() -> None:
    assert calculate_sma([1, 2, 3, 4], 2) == pytest.approx(3.5)
    assert calculate_sma([1, 2], 5) == 0.0
    assert calculate_ema([7.0] * 10, 5) == pytest.approx(7.0)
    assert calculate_std([2, 4, 4, 4, 5, 5, 7, 9]) == pytest.approx(2.0)


def test_round_quantity_down_absorbs_float_noise() -> None:
    assert round_to_qty_step(0.12345, 0.001) == pytest.approx(0.123)
    assert round_to_qty_step(0.123, 0.001) == pytest.approx(0.123)
    assert round_to_qty_step(0.1201, 0.01, "up") == pytest.approx(0.13)


def test_round_price_nearest() -> None:
    assert round_to_tick_size(101.27, 0.5) == pytest.approx(101.5)
    assert round_to_tick_size(50_200.004, 0.01) == pytest.approx(50_200.0)
    assert round_to_tick_size(3.75, 0.25) == 3.75
    assert round_to_tick_size(1.0025, 0.0025) == 1.0025


@pytest.mark.parametrize("tick", [0.25, 0.0025, 0.5, 0.01, 0.1, 5.0])
@pytest.mark.parametrize("mode", ["nearest", "down", "up"])
def test_rounded_price_is_an_idempotent_tick_multiple(tick: float, mode: str) -> None:
    for raw in (0.98765, 3.7512, 101.27, 1.0025, 49_999.123):
        price = round_to_tick_size(raw, tick, mode)  # type: ignore[arg-type]
        units = price / tick
        assert units == pytest.approx(round(units), rel=1e-12, abs=1e-9)
        assert round_to_tick_size(price, tick, mode) == price  # type: ignore[arg-type]
        assert abs(price - raw) <= tick + 1e-9


def test_quantity_step_with_uneven_decimals() -> None:
    assert round_to_qty_step(0.137, 0.025) == 0.125
    assert round_to_qty_step(0.125, 0.025) == 0.125
    assert format_quantity(0.125, 0.025) == "0.125"


def test_rounding_rejects_non_positive_step() -> None:
    with pytest.raises(ValueError):
        round_to_tick_size(100.0, 0)
    with pytest.raises(ValueError):
        round_to_qty_step(1.0, -0.1)


def test_formatting_and_percentages() -> None:
    assert format_price(50_000, 0.01) == "50000.00"
    assert format_quantity(0.5, 0.001) == "0.500"
    assert calculate_spread_pct(99, 101) == pytest.approx(2.0)
    assert calculate_spread_pct(0, 101) == 0.0
    assert calculate_mid_price(99, 101) == 100
    assert pct_change(100, 110) == pytest.approx(10.0)
    assert pct_change(0, 110) == 0.0
    assert clamp(1.5, 0.0, 1.0) == 1.0
    assert is_valid_price(10, 1, 100)
    assert not is_valid_price(float("nan"), 1, 100)
    assert is_valid_quantity(1, 1, 2)

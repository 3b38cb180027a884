"""Venue precision rounding and percentage helpers."""

from __future__ import annotations

import math
from decimal import Decimal
from typing import Literal

RoundingMode = Literal["up", "down", "nearest"]


def _step_precision(step: float) -> int:
    # decimals in the step itself, so 0.25 keeps 2 and 0.0025 keeps 4
    exponent = Decimal(repr(step)).normalize().as_tuple().exponent
    return max(0, -int(exponent))


def _round_to_step(value: float, step: float, mode: RoundingMode) -> float:
    multiplier = 1 / step
    scaled = value * multiplier
    # absorb float noise such as 0.123 * 1000 == 122.99999999999999
    nearest = round(scaled)
    if math.isclose(scaled, nearest, rel_tol=1e-12, abs_tol=1e-9):
        scaled = float(nearest)

    if mode == "up":
        units = math.ceil(scaled)
    elif mode == "down":
        units = math.floor(scaled)
    else:
        units = math.floor(scaled + 0.5)
    return round(units * step, _step_precision(step))


def round_to_tick_size(price: float, tick_size: float, mode: RoundingMode = "nearest") -> float:
    """Round a price to the venue tick size."""
    if tick_size <= 0:
        raise ValueError("Tick size must be positive")
    return _round_to_step(price, tick_size, mode)


def round_to_qty_step(quantity: float, qty_step: float, mode: RoundingMode = "down") -> float:
    """Round a quantity to the venue lot step, down by default so sizing never over-allocates."""
    if qty_step <= 0:
        raise ValueError("Quantity step must be positive")
    return _round_to_step(quantity, qty_step, mode)


def format_price(price: float, tick_size: float) -> str:
    if tick_size <= 0:
        return f"{price:.8f}"
    return f"{price:.{_step_precision(tick_size)}f}"


def format_quantity(quantity: float, qty_step: float) -> str:
    if qty_step <= 0:
        return f"{quantity:.8f}"
    return f"{quantity:.{_step_precision(qty_step)}f}"


def calculate_spread_pct(best_bid: float, best_ask: float) -> float:
    """Quoted spread as a percentage of the mid price."""
    if best_bid <= 0 or best_ask <= 0:
        return 0.0
    mid = (best_bid + best_ask) / 2
    return (best_ask - best_bid) / mid * 100


def calculate_mid_price(best_bid: float, best_ask: float) -> float:
    return (best_bid + best_ask) / 2


def pct_change(old_value: float, new_value: float) -> float:
    if old_value == 0:
        return 0.0
    return (new_value - old_value) / old_value * 100


def apply_pct_change(value: float, pct: float) -> float:
    return value * (1 + pct / 100)


def clamp(value: float, lower: float, upper: float) -> float:
    return min(max(value, lower), upper)


def is_valid_price(price: float, min_price: float, max_price: float) -> bool:
    return math.isfinite(price) and min_price < price < max_price


def is_valid_quantity(quantity: float, min_qty: float, max_qty: float) -> bool:
    return math.isfinite(quantity) and min_qty <= quantity <= max_qty

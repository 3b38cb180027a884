"""Indicator computation over candle windows and price series."""

from __future__ import annotations

import math
from collections.abc import Sequence

import numpy as np
import pandas as pd  # type: ignore[import-untyped]

from futures_agent.types import Candle

MIN_HURST_PRICES = 20


def candles_to_frame(candles: Sequence[Candle]) -> pd.DataFrame:
    """Build an oldest-first OHLCV dataframe from candles."""
    return pd.DataFrame(
        {
            "timestamp": [c.timestamp for c in candles],
            "open": [c.open for c in candles],
            "high": [c.high for c in candles],
            "low": [c.low for c in candles],
            "close": [c.close for c in candles],
            "volume": [c.volume for c in candles],
        }
    )


def calculate_atr(candles: Sequence[Candle], period: int = 14) -> float:
    """Average True Range with Wilder smoothing.

    The first value is the simple mean of the first ``period`` true ranges,
    then each later true range is blended in as ``(atr * (period - 1) + tr) / period``.
    Returns 0.0 when fewer than ``period + 1`` candles are available.
    """
    if period <= 0 or len(candles) < period + 1:
        return 0.0

    tr = _true_range(candles_to_frame(candles)).iloc[1:].to_numpy(dtype=float)
    atr = float(tr[:period].mean())
    for value in tr[period:]:
        atr = (atr * (period - 1) + float(value)) / period
    return atr


def calculate_atr_pct(candles: Sequence[Candle], period: int = 14) -> float:
    """ATR expressed as a percentage of the last close."""
    atr = calculate_atr(candles, period)
    if atr == 0 or not candles:
        return 0.0
    last_close = candles[-1].close
    if last_close <= 0:
        return 0.0
    return atr / last_close * 100


def calculate_sma(values: Sequence[float], period: int) -> float:
    """Mean of the last ``period`` values, 0.0 if there are fewer."""
    if period <= 0 or len(values) < period:
        return 0.0
    return float(np.mean(values[-period:]))


def calculate_ema(values: Sequence[float], period: int) -> float:
    """EMA seeded with the first value, smoothing factor 2 / (period + 1)."""
    if not values:
        return 0.0
    series = pd.Series(values, dtype=float)
    return float(series.ewm(span=period, adjust=False).mean().iloc[-1])


def calculate_std(values: Sequence[float]) -> float:
    """Population standard deviation."""
    if not values:
        return 0.0
    return float(np.std(np.asarray(values, dtype=float)))


def calculate_rsi(closes: Sequence[float], period: int = 14) -> float | None:
    """Simple-average RSI over the last ``period`` close-to-close changes.

    Returns None when fewer than ``period + 1`` closes are available.
    """
    if period <= 0 or len(closes) < period + 1:
        return None
    changes = np.diff(np.asarray(closes[-(period + 1) :], dtype=float))
    avg_gain = float(np.clip(changes, 0, None).mean())
    avg_loss = float(np.clip(-changes, 0, None).mean())
    if avg_loss == 0:
        return 100.0 if avg_gain > 0 else 50.0
    rs = avg_gain / avg_loss
    return 100 - 100 / (1 + rs)


def calculate_hurst_exponent(prices: Sequence[float]) -> float:
    """Single-window rescaled-range proxy for the Hurst exponent.

    H = log(R/S) / log(n) over the mean-centred cumulative log-return path,
    clamped to [0, 1]. This is not the multi-window R/S estimator; the regime
    thresholds 0.45/0.55 are calibrated against this exact form.
    """
    if len(prices) < MIN_HURST_PRICES:
        return 0.5

    returns = np.diff(np.log(np.asarray(prices, dtype=float)))
    n = len(returns)
    deviations = np.cumsum(returns - returns.mean())
    value_range = float(deviations.max() - deviations.min())
    std = float(np.std(returns))
    if std == 0 or value_range == 0:
        return 0.5

    hurst = math.log(value_range / std) / math.log(n)
    return max(0.0, min(1.0, hurst))


def _true_range(df: pd.DataFrame) -> pd.Series:
    high = df["high"].astype(float)
    low = df["low"].astype(float)
    close = df["close"].astype(float)
    prev_close = close.shift(1)
    tr_components = pd.concat(
        [
            (high - low).abs(),
            (high - prev_close).abs(),
            (low - prev_close).abs(),
        ],
        axis=1,
    )
    return tr_components.max(axis=1)

"""Regime, volume-profile and probability estimates that turn candles into signals."""

from __future__ import annotations

import math
from collections.abc import Sequence
from dataclasses import dataclass

from futures_agent.features.indicators import (
    calculate_atr,
    calculate_hurst_exponent,
    calculate_rsi,
)
from futures_agent.features.market_math import clamp
from futures_agent.types import (
    Candle,
    Direction,
    OrderBook,
    Regime,
    RegimeMetadata,
    Signal,
    StrategyTag,
    VolatilityState,
)

MIN_SIGNAL_CANDLES = 20
ATR_PERIOD = 14
RSI_PERIOD = 14
VOLUME_PROFILE_WINDOW = 50
VALUE_AREA_SHARE = 0.7


@dataclass(frozen=True, slots=True)
class RegimeStats:
    regime: Regime
    hurst_exponent: float
    trend_strength: float
    volatility_state: VolatilityState


@dataclass(frozen=True, slots=True)
class VolumeProfile:
    poc_price: float
    poc_volume: float
    value_area_high: float
    value_area_low: float
    total_volume: float


@dataclass(frozen=True, slots=True)
class SentinelConfig:
    hurst_lookback: int = 100
    volume_profile_buckets: int = 24


def classify_volatility(atr: float, price: float) -> VolatilityState:
    """LOW below 1% ATR/price, HIGH above 3%, NORMAL otherwise."""
    atr_pct = atr / price * 100 if price > 0 else 0.0
    if atr_pct < 1:
        return "LOW"
    if atr_pct > 3:
        return "HIGH"
    return "NORMAL"


def calculate_regime_stats(candles: Sequence[Candle], lookback: int = 100) -> RegimeStats:
    """Classify the window as TRENDING or RANGING from the Hurst proxy."""
    if len(candles) < MIN_SIGNAL_CANDLES:
        return RegimeStats(
            regime="RANGING",
            hurst_exponent=0.5,
            trend_strength=0.0,
            volatility_state="NORMAL",
        )

    prices = [c.close for c in candles[-lookback:]]
    hurst = calculate_hurst_exponent(prices)

    regime: Regime
    if hurst > 0.55:
        regime = "TRENDING"
        trend_strength = (hurst - 0.5) * 2
    elif hurst < 0.45:
        regime = "RANGING"
        trend_strength = (0.5 - hurst) * 2
    else:
        regime = "RANGING"
        trend_strength = 0.0

    atr = calculate_atr(candles, ATR_PERIOD)
    return RegimeStats(
        regime=regime,
        hurst_exponent=hurst,
        trend_strength=trend_strength,
        volatility_state=classify_volatility(atr, candles[-1].close),
    )


def calculate_volume_profile(candles: Sequence[Candle], buckets: int = 24) -> VolumeProfile:
    """Bucket traded volume by price and find the POC and 70% value area."""
    if not candles:
        return VolumeProfile(0.0, 0.0, 0.0, 0.0, 0.0)
    if buckets <= 0:
        raise ValueError("buckets must be positive")

    min_price = min(c.low for c in candles)
    max_price = max(c.high for c in candles)
    price_range = max_price - min_price
    if price_range == 0:
        total = sum(c.volume for c in candles)
        avg_price = (min_price + max_price) / 2
        return VolumeProfile(avg_price, total, avg_price, avg_price, total)

    bucket_size = price_range / buckets
    volume_by_bucket = [0.0] * buckets
    last_bucket = buckets - 1

    for candle in candles:
        if candle.high - candle.low == 0:
            index = math.floor((candle.close - min_price) / bucket_size)
            volume_by_bucket[max(0, min(last_bucket, index))] += candle.volume
            continue
        low_bucket = math.floor((candle.low - min_price) / bucket_size)
        high_bucket = math.floor((candle.high - min_price) / bucket_size)
        share = candle.volume / (high_bucket - low_bucket + 1)
        for b in range(max(0, low_bucket), min(last_bucket, high_bucket) + 1):
            volume_by_bucket[b] += share

    poc_bucket = 0
    poc_volume = 0.0
    for b, volume in enumerate(volume_by_bucket):
        if volume > poc_volume:
            poc_volume = volume
            poc_bucket = b

    def bucket_price(b: int) -> float:
        return min_price + (b + 0.5) * bucket_size

    total_volume = sum(volume_by_bucket)
    target = total_volume * VALUE_AREA_SHARE
    accumulated = poc_volume
    low_b = high_b = poc_bucket

    while accumulated < target and (low_b > 0 or high_b < last_bucket):
        low_vol = volume_by_bucket[low_b - 1] if low_b > 0 else 0.0
        high_vol = volume_by_bucket[high_b + 1] if high_b < last_bucket else 0.0
        if low_vol >= high_vol and low_b > 0:
            low_b -= 1
            accumulated += low_vol
        elif high_b < last_bucket:
            high_b += 1
            accumulated += high_vol
        else:
            low_b -= 1
            accumulated += low_vol

    return VolumeProfile(
        poc_price=bucket_price(poc_bucket),
        poc_volume=poc_volume,
        value_area_high=bucket_price(high_b),
        value_area_low=bucket_price(low_b),
        total_volume=total_volume,
    )


class SignalFactory:
    """Builds directional signals from candles and the live order book."""

    def __init__(self, config: SentinelConfig | None = None) -> None:
        self._config = config or SentinelConfig()

    def generate_signal(
        self,
        symbol: str,
        candles: Sequence[Candle],
        order_book: OrderBook,
        strategy: StrategyTag,
        direction: Direction,
    ) -> Signal | None:
        """Return a signal for the direction hypothesis, or None on fewer than 20 candles."""
        if len(candles) < MIN_SIGNAL_CANDLES:
            return None

        regime = calculate_regime_stats(candles, self._config.hurst_lookback)
        atr = calculate_atr(candles, ATR_PERIOD)
        profile = calculate_volume_profile(
            candles[-VOLUME_PROFILE_WINDOW:], self._config.volume_profile_buckets
        )

        last_close = candles[-1].close
        best_bid = order_book.best_bid or last_close
        best_ask = order_book.best_ask or last_close
        current_price = (best_bid + best_ask) / 2
        spread_penalty = (best_ask - best_bid) / current_price * 100

        win_probability = self._win_probability(candles, direction, regime, profile, current_price)
        expected_move = self._expected_move(atr, current_price, regime)
        strength = self._signal_strength(win_probability, expected_move, regime, spread_penalty)

        return Signal(
            symbol=symbol,
            strategy=strategy,
            direction=direction,
            win_probability=win_probability,
            expected_move_pct=expected_move,
            regime=regime.regime,
            current_price=current_price,
            atr=atr,
            metadata=RegimeMetadata(
                hurst=regime.hurst_exponent,
                trend_strength=regime.trend_strength,
                volatility_state=regime.volatility_state,
                vpoc=profile.poc_price,
                value_area_high=profile.value_area_high,
                value_area_low=profile.value_area_low,
                signal_strength=strength,
            ),
        )

    def _win_probability(
        self,
        candles: Sequence[Candle],
        direction: Direction,
        regime: RegimeStats,
        profile: VolumeProfile,
        current_price: float,
    ) -> float:
        probability = 0.5

        if regime.regime == "TRENDING":
            trend_up = candles[-1].close - candles[0].close > 0
            if (direction == "LONG") == trend_up:
                probability += regime.trend_strength * 0.15
            else:
                probability -= regime.trend_strength * 0.1

        # reversion toward the point of control
        if abs(current_price - profile.poc_price) / current_price > 0.02:
            if (direction == "LONG" and current_price < profile.poc_price) or (
                direction == "SHORT" and current_price > profile.poc_price
            ):
                probability += 0.05

        if profile.value_area_low < current_price < profile.value_area_high:
            probability += 0.02

        rsi = calculate_rsi([c.close for c in candles], RSI_PERIOD)
        if rsi is not None:
            oversold, overbought = rsi < 30, rsi > 70
            aligned, opposed = (oversold, overbought) if direction == "LONG" else (overbought, oversold)
            if aligned:
                probability += 0.08
            elif opposed:
                probability -= 0.08

        return clamp(probability, 0.3, 0.8)

    @staticmethod
    def _expected_move(atr: float, current_price: float, regime: RegimeStats) -> float:
        atr_pct = atr / current_price * 100
        if regime.regime == "TRENDING":
            return atr_pct * (1.2 + regime.trend_strength * 0.3)
        return atr_pct * 0.8

    @staticmethod
    def _signal_strength(
        win_probability: float,
        expected_move: float,
        regime: RegimeStats,
        spread_penalty: float,
    ) -> float:
        prob_score = (win_probability - 0.5) * 2
        move_score = min(1.0, expected_move / 3)
        regime_score = regime.trend_strength if regime.regime == "TRENDING" else 0.3
        spread_score = max(0.0, 1 - spread_penalty * 10)
        strength = prob_score * 0.4 + move_score * 0.25 + regime_score * 0.2 + spread_score * 0.15
        return clamp(strength, 0.0, 1.0)

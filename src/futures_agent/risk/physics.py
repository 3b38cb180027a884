"""ATR-anchored protective levels and capital-capped position sizing."""

from __future__ import annotations

import math
from collections.abc import Sequence
from dataclasses import dataclass

import numpy as np

from futures_agent.features.market_math import round_to_qty_step
from futures_agent.types import (
    Direction,
    EvaluatedSignal,
    PositionSizing,
    RiskLevels,
    Signal,
    TradeValidation,
    TrailingStop,
)

RISK_PER_TRADE_FRACTION = 0.02
MAX_LEVERAGED_LOSS = 0.5
MIN_KELLY_WARNING = 0.05


@dataclass(frozen=True, slots=True)
class RiskPhysicsConfig:
    max_capital_per_trade: float = 15.0
    max_leverage: int = 10
    min_risk_reward: float = 1.5
    taker_fee: float = 0.00055
    tp_atr_multiplier: float = 2.0
    sl_atr_multiplier: float = 1.5


@dataclass(frozen=True, slots=True)
class PartialTakeProfit:
    target_pct: float
    price: float
    move_from_entry: float


@dataclass(frozen=True, slots=True)
class TradeFees:
    entry_fee: float
    exit_fee: float
    total_fees: float


@dataclass(frozen=True, slots=True)
class NetProfit:
    gross_profit: float
    total_fees: float
    net_profit: float
    roi_pct: float


class RiskPhysics:
    """Turns a signal into TP/SL levels and a position size under a fixed capital cap."""

    def __init__(self, config: RiskPhysicsConfig | None = None) -> None:
        self._config = config or RiskPhysicsConfig()

    @property
    def config(self) -> RiskPhysicsConfig:
        return self._config

    def calculate_tp_sl(
        self,
        signal: Signal,
        tp_multiplier: float | None = None,
        sl_multiplier: float | None = None,
    ) -> RiskLevels:
        """ATR-distance take-profit and stop-loss around the signal price.

        Raises:
            ValueError: if the signal has no price or no ATR.
        """
        return self.calculate_levels(
            signal.current_price,
            signal.atr,
            signal.direction,
            tp_multiplier=tp_multiplier,
            sl_multiplier=sl_multiplier,
        )

    def calculate_levels(
        self,
        entry: float,
        atr: float,
        direction: Direction,
        *,
        tp_multiplier: float | None = None,
        sl_multiplier: float | None = None,
    ) -> RiskLevels:
        if not entry:
            raise ValueError("Signal must have current_price for TP/SL calculation")
        if not atr:
            raise ValueError("Signal must have atr for TP/SL calculation")

        tp_mult = tp_multiplier if tp_multiplier is not None else self._config.tp_atr_multiplier
        sl_mult = sl_multiplier if sl_multiplier is not None else self._config.sl_atr_multiplier
        tp_distance = atr * tp_mult
        sl_distance = atr * sl_mult

        if direction == "LONG":
            take_profit = entry + tp_distance
            stop_loss = entry - sl_distance
        else:
            take_profit = entry - tp_distance
            stop_loss = entry + sl_distance

        return RiskLevels(
            entry_price=entry,
            take_profit_price=take_profit,
            stop_loss_price=stop_loss,
            break_even_price=self.calculate_break_even(entry, direction),
            risk_reward_ratio=tp_distance / sl_distance if sl_distance > 0 else 0.0,
            atr_multiplier=sl_mult,
        )

    def calculate_break_even(self, entry_price: float, direction: Direction) -> float:
        """Price that covers the entry and exit taker fees."""
        round_trip = self._config.taker_fee * 2
        if direction == "LONG":
            return entry_price * (1 + round_trip)
        return entry_price * (1 - round_trip)

    def calculate_leverage(self, position_value: float) -> int:
        """Smallest whole leverage that keeps margin within the capital cap, capped at max."""
        cap = self._config.max_capital_per_trade
        leverage = math.ceil(position_value / cap) if position_value > cap else 1
        return min(leverage, self._config.max_leverage)

    def calculate_position_size(
        self,
        entry_price: float,
        levels: RiskLevels,
        qty_step: float = 0.001,
    ) -> PositionSizing:
        """Risk 2% of the capital cap to the stop, never exceeding the cap in notional."""
        if entry_price <= 0:
            raise ValueError("entry_price must be positive for position sizing")
        risk_distance = abs(entry_price - levels.stop_loss_price)
        if risk_distance == 0:
            raise ValueError("stop loss must differ from entry price")

        max_capital = self._config.max_capital_per_trade
        raw_size = max_capital * RISK_PER_TRADE_FRACTION / risk_distance
        raw_size = min(raw_size, max_capital / entry_price)
        quantity = round_to_qty_step(raw_size, qty_step, "down")
        position_value = quantity * entry_price

        return PositionSizing(
            capital=max_capital,
            position_size=position_value,
            quantity=quantity,
            leverage=self.calculate_leverage(position_value),
        )

    def validate_trade(
        self,
        signal: EvaluatedSignal | None,
        levels: RiskLevels,
        sizing: PositionSizing,
    ) -> TradeValidation:
        """Leverage over the maximum blocks the trade; everything else only warns."""
        result = TradeValidation(valid=True)

        if levels.risk_reward_ratio < self._config.min_risk_reward:
            result.warnings.append(
                f"Risk-Reward ratio ({levels.risk_reward_ratio:.2f}) "
                f"below minimum ({self._config.min_risk_reward})"
            )
        if sizing.leverage > self._config.max_leverage:
            result.errors.append(
                f"Required leverage ({sizing.leverage}x) "
                f"exceeds maximum ({self._config.max_leverage}x)"
            )

        entry = levels.entry_price
        if entry > 0:
            loss_pct = abs(entry - levels.stop_loss_price) / entry
            if loss_pct > MAX_LEVERAGED_LOSS and sizing.leverage > 1:
                result.warnings.append(
                    f"Potential loss ({loss_pct * 100 * sizing.leverage:.1f}%) "
                    f"with {sizing.leverage}x leverage"
                )

        if signal is not None:
            if signal.ev_score < 0:
                result.warnings.append("Signal has negative expected value")
            if signal.kelly_score < MIN_KELLY_WARNING:
                result.warnings.append("Low Kelly score - position may be over-sized")

        result.valid = not result.errors
        return result

    def calculate_partial_tp_levels(
        self,
        levels: RiskLevels,
        fractions: Sequence[float] = (0.5, 0.75, 1.0),
    ) -> list[PartialTakeProfit]:
        entry = levels.entry_price
        tp_distance = abs(levels.take_profit_price - entry)
        sign = 1 if levels.take_profit_price > entry else -1
        return [
            PartialTakeProfit(
                target_pct=fraction,
                price=entry + sign * tp_distance * fraction,
                move_from_entry=tp_distance * fraction,
            )
            for fraction in fractions
        ]

    def calculate_trailing_stop(
        self,
        entry_price: float,
        direction: Direction,
        activation_pct: float = 0.5,
        trail_pct: float = 0.25,
    ) -> TrailingStop:
        if direction == "LONG":
            activation = entry_price * (1 + activation_pct)
        else:
            activation = entry_price * (1 - activation_pct)
        return TrailingStop(activation_price=activation, trail_distance=activation * trail_pct)

    def calculate_actual_risk(self, quantity: float, entry_price: float, stop_loss: float) -> float:
        return quantity * abs(entry_price - stop_loss)

    def calculate_profit_potential(
        self, quantity: float, entry_price: float, take_profit: float
    ) -> float:
        return quantity * abs(take_profit - entry_price)

    def calculate_total_fees(self, entry_value: float, exit_value: float | None = None) -> TradeFees:
        entry_fee = entry_value * self._config.taker_fee
        exit_fee = (entry_value if exit_value is None else exit_value) * self._config.taker_fee
        return TradeFees(entry_fee=entry_fee, exit_fee=exit_fee, total_fees=entry_fee + exit_fee)

    def calculate_net_profit(
        self,
        quantity: float,
        entry_price: float,
        exit_price: float,
        direction: Direction,
    ) -> NetProfit:
        entry_value = quantity * entry_price
        fees = self.calculate_total_fees(entry_value, quantity * exit_price)
        move = exit_price - entry_price if direction == "LONG" else entry_price - exit_price
        gross = quantity * move
        net = gross - fees.total_fees
        return NetProfit(
            gross_profit=gross,
            total_fees=fees.total_fees,
            net_profit=net,
            roi_pct=net / entry_value * 100 if entry_value else 0.0,
        )


def required_win_rate_with_fees(reward_to_risk: float, taker_fee: float = 0.00055) -> float:
    adjusted = reward_to_risk * (1 - taker_fee * 2)
    return 1 / (1 + adjusted)


def calculate_max_drawdown(trade_results: Sequence[float]) -> float:
    """Largest peak-to-trough drop of the cumulative PnL curve (peak starts at 0)."""
    if not trade_results:
        return 0.0
    equity = np.cumsum(np.asarray(trade_results, dtype=float))
    peaks = np.maximum.accumulate(np.maximum(equity, 0.0))
    return float(np.max(peaks - equity))


def calculate_risk_of_ruin(win_probability: float, risk_per_trade: float, account_size: float) -> float:
    exponent = account_size / risk_per_trade
    if win_probability >= 0.5:
        return (1 - win_probability) ** exponent
    return 1 - win_probability**exponent


def calculate_sharpe_ratio(returns: Sequence[float], risk_free_rate: float = 0.0) -> float:
    if not returns:
        return 0.0
    values = np.asarray(returns, dtype=float)
    std = float(np.std(values))
    if std == 0:
        return 0.0
    return (float(values.mean()) - risk_free_rate) / std

"""Fee- and spread-adjusted signal economics, filtering and ranking."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Literal

from futures_agent.features.market_math import clamp
from futures_agent.types import Direction, EvaluatedSignal, OrderBook, Signal

Grade = Literal["A", "B", "C", "D", "F"]

MAX_KELLY = 0.25

_RECOMMENDATIONS: dict[Grade, str] = {
    "A": "Strong signal. High confidence setup with favorable risk/reward.",
    "B": "Good signal. Positive expected value with reasonable risk parameters.",
    "C": "Moderate signal. Consider additional confirmation before entering.",
    "D": "Weak signal. Risk/reward may not justify entry.",
    "F": "Poor signal. Negative expected value or excessive risk. Avoid.",
}


@dataclass(frozen=True, slots=True)
class AlphaRankerConfig:
    min_ev_score: float = 0.02
    min_kelly_score: float = 0.0
    taker_fee: float = 0.00055
    slippage_buffer_pct: float = 0.05
    base_capital: float = 15.0


@dataclass(frozen=True, slots=True)
class SignalReport:
    symbol: str
    direction: Direction
    grade: Grade
    rank_score: float
    ev_score: float
    kelly_score: float
    net_roi: float
    reward_to_risk: float
    recommendation: str


class AlphaRanker:
    """Scores signals by expected value and Kelly fraction net of costs."""

    def __init__(self, config: AlphaRankerConfig | None = None) -> None:
        self._config = config or AlphaRankerConfig()

    @property
    def config(self) -> AlphaRankerConfig:
        return self._config

    def calculate_spread_penalty(self, order_book: OrderBook) -> float:
        """Quoted spread as % of mid, 0.0 when either side of the book is empty."""
        bid, ask = order_book.best_bid, order_book.best_ask
        if not bid or not ask:
            return 0.0
        return (ask - bid) / ((bid + ask) / 2) * 100

    def calculate_effective_entry(
        self, direction: Direction, order_book: OrderBook
    ) -> tuple[float, float]:
        """Return (entry price after slippage, cost versus mid)."""
        bid, ask = order_book.best_bid, order_book.best_ask
        if not bid or not ask:
            return 0.0, 0.0
        mid = (bid + ask) / 2
        slippage = self._config.slippage_buffer_pct / 100
        if direction == "LONG":
            entry = ask * (1 + slippage)
        else:
            entry = bid * (1 - slippage)
        return entry, abs(entry - mid)

    def calculate_round_trip_fees(self, notional: float) -> float:
        return 2 * notional * self._config.taker_fee

    def evaluate_signal(self, signal: Signal, order_book: OrderBook) -> EvaluatedSignal:
        spread_penalty = self.calculate_spread_penalty(order_book)
        capital = self._config.base_capital
        fees_pct = self.calculate_round_trip_fees(capital) / capital * 100
        gross_roi = signal.expected_move_pct
        net_roi = gross_roi - spread_penalty - fees_pct

        if signal.atr > 0 and signal.current_price > 0:
            risk_pct = signal.atr / signal.current_price * 100
        else:
            risk_pct = signal.expected_move_pct / 2

        reward_to_risk = net_roi / risk_pct if risk_pct > 0 else 0.0
        p = signal.win_probability
        ev_score = p * net_roi - (1 - p) * risk_pct
        kelly_score = 0.0
        if reward_to_risk > 0:
            kelly_score = clamp(p - (1 - p) / reward_to_risk, 0.0, MAX_KELLY)

        return EvaluatedSignal(
            signal=signal,
            spread_penalty=spread_penalty,
            gross_roi=gross_roi,
            round_trip_fees=fees_pct,
            net_roi=net_roi,
            ev_score=ev_score,
            kelly_score=kelly_score,
            reward_to_risk=reward_to_risk,
            risk_pct=risk_pct,
        )

    def evaluate_and_sort(
        self,
        signals: Sequence[Signal],
        order_book: OrderBook | Mapping[str, OrderBook],
    ) -> list[EvaluatedSignal]:
        """Evaluate, drop signals below the EV/Kelly floors or with non-positive net ROI,
        and sort by ``0.6 * ev + 40 * kelly`` (stable, so ties keep input order).

        ``order_book`` is either one book for every signal or a per-symbol mapping.
        """
        evaluated = []
        for signal in signals:
            book = order_book if isinstance(order_book, OrderBook) else order_book[signal.symbol]
            evaluated.append(self.evaluate_signal(signal, book))

        kept = [
            e
            for e in evaluated
            if e.ev_score >= self._config.min_ev_score
            and e.kelly_score >= self._config.min_kelly_score
            and e.net_roi > 0
        ]
        return sorted(kept, key=lambda e: e.rank_score, reverse=True)

    @staticmethod
    def pick_apex_signal(evaluated: Sequence[EvaluatedSignal]) -> EvaluatedSignal | None:
        return evaluated[0] if evaluated else None

    @staticmethod
    def calculate_kelly_fraction(win_probability: float, reward_to_risk: float) -> float:
        """Half-Kelly bet fraction bounded to [0, 0.25]."""
        if reward_to_risk <= 0:
            return 0.0
        full_kelly = win_probability - (1 - win_probability) / reward_to_risk
        return clamp(full_kelly / 2, 0.0, MAX_KELLY)

    def generate_signal_report(self, evaluated: EvaluatedSignal) -> SignalReport:
        score = evaluated.rank_score
        grade: Grade
        if score >= 3:
            grade = "A"
        elif score >= 2:
            grade = "B"
        elif score >= 1:
            grade = "C"
        elif score >= 0.5:
            grade = "D"
        else:
            grade = "F"
        return SignalReport(
            symbol=evaluated.symbol,
            direction=evaluated.direction,
            grade=grade,
            rank_score=score,
            ev_score=evaluated.ev_score,
            kelly_score=evaluated.kelly_score,
            net_roi=evaluated.net_roi,
            reward_to_risk=evaluated.reward_to_risk,
            recommendation=_RECOMMENDATIONS[grade],
        )


def calculate_ev(
    win_probability: float,
    reward_pct: float,
    risk_pct: float,
    fees_pct: float = 0.11,
) -> float:
    """Expected value in percentage points; the default fee is a Bybit taker round trip."""
    return win_probability * (reward_pct - fees_pct) - (1 - win_probability) * risk_pct


def calculate_kelly(win_probability: float, reward_to_risk: float) -> float:
    """Unbounded full-Kelly fraction."""
    if reward_to_risk <= 0:
        return 0.0
    return win_probability - (1 - win_probability) / reward_to_risk


def break_even_win_rate(reward_to_risk: float) -> float:
    if reward_to_risk <= 0:
        return 1.0
    return 1 / (1 + reward_to_risk)


def calculate_optimal_leverage(kelly_fraction: float, max_account_risk: float = 0.02) -> float:
    return clamp(kelly_fraction / max_account_risk, 1.0, 20.0)

"""Whale-size order detection and aggressor-flow imbalance."""

from __future__ import annotations

import time
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Literal

from futures_agent.types import Direction, OrderBook, Signal, Trade, WhaleFlowMetadata

WHALE_WINDOW_MS = 5 * 60 * 1000
MAX_TRACKED_WHALES = 50
MIN_IMBALANCE = 0.2


@dataclass(frozen=True, slots=True)
class WhaleOrder:
    price: float
    quantity: float
    notional: float
    side: Literal["BUY", "SELL"]
    timestamp: int


@dataclass(frozen=True, slots=True)
class WhaleFlow:
    direction: Direction
    total_buy_notional: float
    total_sell_notional: float
    whale_count: int
    strength: float


@dataclass(frozen=True, slots=True)
class OrderFlowImbalance:
    bid_volume: float
    ask_volume: float
    imbalance_ratio: float
    direction: Direction
    strength: float


def calculate_obi(
    trades: Sequence[Trade],
    lookback: int = 20,
    threshold: float = 1.5,
) -> OrderFlowImbalance | None:
    """Directional pressure from the last ``lookback`` aggressor trades.

    Aggressive buys lift the ask, aggressive sells hit the bid.
    """
    if not trades:
        return None

    bid_volume = 0.0
    ask_volume = 0.0
    for trade in trades[-lookback:]:
        if trade.side == "BUY":
            ask_volume += trade.quantity
        else:
            bid_volume += trade.quantity
    if bid_volume + ask_volume == 0:
        return None

    ratio = ask_volume / max(bid_volume, 0.001)
    direction: Direction
    if ratio > threshold:
        direction = "LONG"
        strength = min(1.0, (ratio - 1) / 2)
    elif ratio < 1 / threshold:
        direction = "SHORT"
        strength = min(1.0, (1 / ratio - 1) / 2)
    else:
        direction = "LONG" if ratio > 1 else "SHORT"
        strength = 0.2

    return OrderFlowImbalance(
        bid_volume=bid_volume,
        ask_volume=ask_volume,
        imbalance_ratio=ratio,
        direction=direction,
        strength=strength,
    )


class WhaleFlowDetector:
    """Tracks large prints and resting whale levels for one symbol stream."""

    def __init__(self, threshold_usd: float = 50_000.0) -> None:
        self._threshold = threshold_usd
        self._recent: list[WhaleOrder] = []

    @property
    def recent_whales(self) -> list[WhaleOrder]:
        return list(self._recent)

    def detect_whale_orders(self, trades: Sequence[Trade]) -> list[WhaleOrder]:
        whales = [
            WhaleOrder(
                price=t.price,
                quantity=t.quantity,
                notional=t.notional,
                side=t.side,
                timestamp=t.timestamp,
            )
            for t in trades
            if t.notional >= self._threshold
        ]
        self._recent = (self._recent + whales)[-MAX_TRACKED_WHALES:]
        return whales

    def analyze_whale_flow(self, now_ms: int | None = None) -> WhaleFlow:
        """Aggregate whale notional over the trailing five minutes."""
        now_ms = now_ms if now_ms is not None else int(time.time() * 1000)
        window = [w for w in self._recent if now_ms - w.timestamp < WHALE_WINDOW_MS]
        buys = sum(w.notional for w in window if w.side == "BUY")
        sells = sum(w.notional for w in window if w.side == "SELL")
        total = buys + sells
        return WhaleFlow(
            direction="LONG" if buys > sells else "SHORT",
            total_buy_notional=buys,
            total_sell_notional=sells,
            whale_count=len(window),
            strength=abs(buys - sells) / max(total, 1.0),
        )

    def detect_orderbook_whales(self, order_book: OrderBook) -> tuple[float, float, int]:
        """Return (bid whale notional, ask whale notional, whale level count)."""
        bid_notional = 0.0
        ask_notional = 0.0
        count = 0
        for level in order_book.bids:
            notional = level.price * level.quantity
            if notional >= self._threshold:
                bid_notional += notional
                count += 1
        for level in order_book.asks:
            notional = level.price * level.quantity
            if notional >= self._threshold:
                ask_notional += notional
                count += 1
        return bid_notional, ask_notional, count

    def get_whale_signal(
        self,
        order_book: OrderBook,
        trades: Sequence[Trade],
        now_ms: int | None = None,
    ) -> Signal | None:
        """Emit a WHALE_FLOW signal when combined pressure is large and one-sided."""
        self.detect_whale_orders(trades)
        flow = self.analyze_whale_flow(now_ms)
        book_bids, book_asks, book_count = self.detect_orderbook_whales(order_book)

        bid_pressure = flow.total_buy_notional + book_bids
        ask_pressure = flow.total_sell_notional + book_asks
        total = bid_pressure + ask_pressure
        if total < self._threshold:
            return None

        imbalance = abs(bid_pressure - ask_pressure) / total
        if imbalance < MIN_IMBALANCE:
            return None

        current_price = ((order_book.best_bid or 0.0) + (order_book.best_ask or 0.0)) / 2
        return Signal(
            symbol=order_book.symbol,
            strategy="WHALE_FLOW",
            direction="LONG" if bid_pressure > ask_pressure else "SHORT",
            win_probability=0.5 + imbalance * 0.25,
            expected_move_pct=imbalance * 3,
            regime="TRENDING",
            current_price=current_price,
            atr=0.0,
            metadata=WhaleFlowMetadata(
                buy_pressure=bid_pressure,
                sell_pressure=ask_pressure,
                imbalance=imbalance,
                whale_trades=flow.whale_count + book_count,
            ),
        )

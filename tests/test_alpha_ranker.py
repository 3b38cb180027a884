from __future__ import annotations

import pytest

from futures_agent.strategy.alpha_ranker import (
    AlphaRanker,
    AlphaRankerConfig,
    break_even_win_rate,
    calculate_ev,
    calculate_kelly,
    calculate_optimal_leverage,
)
from futures_agent.types import OrderBook, OrderBookLevel, Signal


def _signal(
    symbol: str = "BTCUSDT",
    *,
    move: float = 2.0,
    probability: float = 0.6,
    price: float = 50_000.0,
    atr: float = 100.0,
) -> Signal:
    return Signal(
        symbol=symbol,
        strategy="MOMENTUM",
        direction="LONG",
        win_probability=probability,
        expected_move_pct=move,
        regime="TRENDING",
        current_price=price,
        atr=atr,
    )


def _book(symbol: str = "BTCUSDT", bid: float = 49_999.0, ask: float = 50_001.0) -> OrderBook:
    return OrderBook(
        symbol=symbol,
        exchange="bybit",
        bids=[OrderBookLevel(bid, 1.0)],
        asks=[OrderBookLevel(ask, 1.0)],
        timestamp=0,
    )


def test_evaluate_signal_economics() -> None:
    evaluated = AlphaRanker().evaluate_signal(_signal(), _book())

    assert evaluated.spread_penalty == pytest.approx(0.004)
    assert evaluated.round_trip_fees == pytest.approx(0.11)
    assert evaluated.net_roi == pytest.approx(1.886)
    assert evaluated.risk_pct == pytest.approx(0.2)
    assert evaluated.ev_score == pytest.approx(0.6 * 1.886 - 0.4 * 0.2)
    assert evaluated.kelly_score == pytest.approx(0.25)
    assert evaluated.rank_score == pytest.approx(0.6 * evaluated.ev_score + 10.0)


def test_risk_pct_falls_back_to_half_the_move_without_atr() -> None:
    evaluated = AlphaRanker().evaluate_signal(_signal(atr=0.0), _book())
    assert evaluated.risk_pct == pytest.approx(1.0)


def test_evaluate_and_sort_filters_and_ranks() -> None:
    ranker = AlphaRanker()
    weak = _signal("ETHUSDT", move=1.0, price=3_000, atr=6)
    strong = _signal("BTCUSDT", move=3.0)
    unprofitable = _signal("SOLUSDT", move=0.05, price=100, atr=0.2)
    books = {
        "BTCUSDT": _book(),
        "ETHUSDT": _book("ETHUSDT", 2_999.9, 3_000.1),
        "SOLUSDT": _book("SOLUSDT", 99.99, 100.01),
    }

    ranked = ranker.evaluate_and_sort([weak, unprofitable, strong], books)

    assert [e.symbol for e in ranked] == ["BTCUSDT", "ETHUSDT"]
    assert ranker.pick_apex_signal(ranked) is ranked[0]
    assert ranker.pick_apex_signal([]) is None


def test_tied_rank_scores_keep_input_order() -> None:
    ranker = AlphaRanker()
    symbols = ["XRPUSDT", "BTCUSDT", "ADAUSDT", "ETHUSDT"]
    signals = [_signal(s) for s in symbols]
    books = {s: _book(s) for s in symbols}

    ranked = ranker.evaluate_and_sort(signals, books)

    assert len({e.rank_score for e in ranked}) == 1
    assert [e.symbol for e in ranked] == symbols
    assert [e.symbol for e in ranker.evaluate_and_sort(signals[::-1], books)] == symbols[::-1]


def test_evaluate_and_sort_applies_floors() -> None:
    ranker = AlphaRanker(AlphaRankerConfig(min_ev_score=5.0))
    assert ranker.evaluate_and_sort([_signal()], _book()) == []


def test_effective_entry_includes_slippage() -> None:
    ranker = AlphaRanker()
    entry, cost = ranker.calculate_effective_entry("LONG", _book())
    assert entry == pytest.approx(50_001 * 1.0005)
    assert cost == pytest.approx(entry - 50_000)

    short_entry, _ = ranker.calculate_effective_entry("SHORT", _book())
    assert short_entry == pytest.approx(49_999 * 0.9995)

    empty = OrderBook(symbol="X", exchange="bybit", bids=[], asks=[], timestamp=0)
    assert ranker.calculate_effective_entry("LONG", empty) == (0.0, 0.0)


def test_signal_report_grades() -> None:
    ranker = AlphaRanker()
    report = ranker.generate_signal_report(ranker.evaluate_signal(_signal(), _book()))
    assert report.grade == "A"
    assert report.recommendation.startswith("Strong signal")


def test_kelly_helpers() -> None:
    assert AlphaRanker.calculate_kelly_fraction(0.6, 2.0) == pytest.approx(0.2)
    assert AlphaRanker.calculate_kelly_fraction(0.6, 0.0) == 0.0
    assert AlphaRanker.calculate_kelly_fraction(0.9, 10.0) == pytest.approx(0.25)
    assert calculate_kelly(0.6, 2.0) == pytest.approx(0.4)
    assert calculate_ev(0.5, 2.0, 1.0, fees_pct=0.0) == pytest.approx(0.5)
    assert break_even_win_rate(2.0) == pytest.approx(1 / 3)
    assert break_even_win_rate(0.0) == 1.0
    assert calculate_optimal_leverage(0.1) == pytest.approx(5.0)
    assert calculate_optimal_leverage(1.0) == pytest.approx(20.0)

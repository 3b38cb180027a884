from __future__ import annotations

import pytest

from futures_agent.strategy.order_blocks import OrderBlockBreaker
from futures_agent.strategy.sentinels import (
    SignalFactory,
    calculate_regime_stats,
    calculate_volume_profile,
    classify_volatility,
)
from futures_agent.strategy.whale_flow import WhaleFlowDetector, calculate_obi
from futures_agent.types import (
    Candle,
    OrderBlockMetadata,
    OrderBook,
    OrderBookLevel,
    RegimeMetadata,
    Trade,
    WhaleFlowMetadata,
)


def _trending_candles(count: int, start: float = 100.0, drift: float = 0.3) -> list[Candle]:
    candles = []
    for i in range(count):
        close = start + i * drift + (0.4 if i % 3 == 0 else 0.0)
        candles.append(
            Candle(
                timestamp=i * 900_000,
                open=close - drift,
                high=close + 1.0,
                low=close - 1.2,
                close=close,
                volume=100.0 + i,
            )
        )
    return candles


def _book(symbol: str, bid: float, ask: float, qty: float = 1.0) -> OrderBook:
    return OrderBook(
        symbol=symbol,
        exchange="bybit",
        bids=[OrderBookLevel(bid, qty)],
        asks=[OrderBookLevel(ask, qty)],
        timestamp=0,
    )


def _doji(ts: int, price: float) -> Candle:
    return Candle(timestamp=ts, open=price, high=price + 0.5, low=price - 0.5, close=price, volume=5)


def test_classify_volatility_bands() -> None:
    assert classify_volatility(0.5, 100) == "LOW"
    assert classify_volatility(2.0, 100) == "NORMAL"
    assert classify_volatility(5.0, 100) == "HIGH"


def test_regime_defaults_on_short_history() -> None:
    stats = calculate_regime_stats(_trending_candles(10))
    assert stats.regime == "RANGING"
    assert stats.hurst_exponent == 0.5
    assert stats.trend_strength == 0.0
    assert stats.volatility_state == "NORMAL"


def test_volume_profile_value_area_contains_poc() -> None:
    profile = calculate_volume_profile(_trending_candles(50), buckets=24)
    assert profile.value_area_low <= profile.poc_price <= profile.value_area_high
    assert profile.poc_volume > 0
    assert profile.total_volume > 0


def test_volume_profile_edge_cases() -> None:
    empty = calculate_volume_profile([])
    assert empty.total_volume == 0.0

    flat = [Candle(timestamp=i, open=50, high=50, low=50, close=50, volume=2) for i in range(5)]
    profile = calculate_volume_profile(flat)
    assert profile.poc_price == 50
    assert profile.total_volume == 10

    with pytest.raises(ValueError):
        calculate_volume_profile(_trending_candles(5), buckets=0)


def test_signal_factory_requires_twenty_candles() -> None:
    factory = SignalFactory()
    book = _book("SOLUSDT", 99.9, 100.1)
    assert factory.generate_signal("SOLUSDT", _trending_candles(19), book, "MOMENTUM", "LONG") is None


def test_signal_factory_builds_directional_signal() -> None:
    factory = SignalFactory()
    candles = _trending_candles(80)
    last = candles[-1].close
    book = _book("SOLUSDT", last - 0.05, last + 0.05)

    long_signal = factory.generate_signal("SOLUSDT", candles, book, "MOMENTUM", "LONG")
    short_signal = factory.generate_signal("SOLUSDT", candles, book, "MOMENTUM", "SHORT")

    assert long_signal is not None and short_signal is not None
    assert long_signal.direction == "LONG"
    assert long_signal.strategy == "MOMENTUM"
    assert long_signal.current_price == pytest.approx(last)
    assert long_signal.atr > 0
    assert long_signal.expected_move_pct > 0
    assert 0.3 <= long_signal.win_probability <= 0.8
    assert 0.3 <= short_signal.win_probability <= 0.8
    assert isinstance(long_signal.metadata, RegimeMetadata)
    assert 0.0 <= long_signal.metadata.signal_strength <= 1.0


def test_order_block_detected_and_fires_once() -> None:
    candles = [
        _doji(0, 100),
        _doji(1, 100),
        Candle(timestamp=2, open=100, high=100.5, low=98.5, close=99, volume=20),
        Candle(timestamp=3, open=99, high=102.5, low=98.8, close=102, volume=40),
        _doji(4, 102),
    ]
    breaker = OrderBlockBreaker()

    blocks = breaker.detect_order_blocks(candles, "SOLUSDT")
    assert len(blocks) == 1
    assert blocks[0].side == "BULLISH"
    assert (blocks[0].price_low, blocks[0].price_high) == (98.5, 100.5)

    assert breaker.check_order_block_break(100.0, blocks, "SOLUSDT") is None
    crossed = breaker.check_order_block_break(101.0, blocks, "SOLUSDT")
    assert crossed is not None
    block, direction = crossed
    assert direction == "LONG"
    assert isinstance(block.to_metadata(), OrderBlockMetadata)

    rescanned = breaker.detect_order_blocks(candles, "SOLUSDT")
    assert rescanned[0].broken
    assert breaker.check_order_block_break(101.0, rescanned, "SOLUSDT") is None
    # other symbols keep their own break history
    assert breaker.check_order_block_break(
        101.0, breaker.detect_order_blocks(candles, "ETHUSDT"), "ETHUSDT"
    ) is not None


def test_order_blocks_need_five_candles() -> None:
    assert OrderBlockBreaker().detect_order_blocks(_trending_candles(4)) == []


def test_whale_signal_on_one_sided_flow() -> None:
    detector = WhaleFlowDetector(threshold_usd=50_000)
    trades = [
        Trade(price=60_000, quantity=1.0, side="BUY", timestamp=1_000),
        Trade(price=60_000, quantity=0.01, side="SELL", timestamp=1_100),
    ]
    signal = detector.get_whale_signal(_book("BTCUSDT", 59_990, 60_010, 0.01), trades, now_ms=2_000)

    assert signal is not None
    assert signal.strategy == "WHALE_FLOW"
    assert signal.direction == "LONG"
    assert signal.current_price == pytest.approx(60_000)
    assert signal.win_probability == pytest.approx(0.75)
    assert signal.expected_move_pct == pytest.approx(3.0)
    assert signal.atr == 0.0
    assert isinstance(signal.metadata, WhaleFlowMetadata)
    assert signal.metadata.whale_trades == 1


def test_whale_signal_ignores_small_or_stale_flow() -> None:
    detector = WhaleFlowDetector(threshold_usd=50_000)
    small = [Trade(price=100, quantity=10, side="BUY", timestamp=1_000)]
    assert detector.get_whale_signal(_book("SOLUSDT", 99, 101), small, now_ms=2_000) is None

    stale = WhaleFlowDetector(threshold_usd=50_000)
    old = [Trade(price=60_000, quantity=1.0, side="SELL", timestamp=0)]
    ten_minutes = 10 * 60 * 1000
    assert stale.get_whale_signal(_book("BTCUSDT", 59_990, 60_010, 0.01), old, now_ms=ten_minutes) is None


def test_orderbook_imbalance() -> None:
    assert calculate_obi([]) is None
    trades = [Trade(price=1, quantity=1, side="BUY", timestamp=i) for i in range(3)]
    trades.append(Trade(price=1, quantity=1, side="SELL", timestamp=3))
    obi = calculate_obi(trades)
    assert obi is not None
    assert obi.direction == "LONG"
    assert obi.imbalance_ratio == pytest.approx(3.0)
    assert obi.strength == pytest.approx(1.0)

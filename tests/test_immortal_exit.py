from __future__ import annotations

import signal
import sys
import threading

import pytest

from futures_agent.exchange.base import ExchangeAPIError, ExchangeTransportError, VenuePosition
from futures_agent.exec.router import ExecutionRouter, RouterConfig
from futures_agent.journal.store import JournalStore
from futures_agent.shutdown.immortal_exit import ImmortalExit, ImmortalExitConfig
from futures_agent.state.bot_state import BotStateStore
from futures_agent.types import Candle, Position


def _candles(price: float = 100.0, count: int = 50) -> list[Candle]:
    return [
        Candle(timestamp=i * 900_000, open=price, high=price + 1, low=price - 1, close=price, volume=1)
        for i in range(count)
    ]


class _FakeNotifier:
    def __init__(self) -> None:
        self.messages: list[str] = []
        self.flushed = 0

    def send_message(self, text: str) -> bool:
        self.messages.append(text)
        return True

    def flush(self, timeout: float = 5.0) -> bool:
        self.flushed += 1
        return True


class _ExitVenue:
    """Venue fake with native TP/SL support."""

    name = "bybit"

    def __init__(
        self,
        positions: list[VenuePosition],
        *,
        kline_failures: set[str] | None = None,
        stop_failures: int = 0,
        position_failures: int = 0,
    ) -> None:
        self.positions = positions
        self.stops: list[tuple[str, float | None, float | None]] = []
        self.stop_attempts = 0
        self.position_calls = 0
        self._kline_failures = kline_failures or set()
        self._stop_failures = stop_failures
        self._position_failures = position_failures

    def get_positions(self, symbol: str | None = None) -> list[VenuePosition]:
        self.position_calls += 1
        if self.position_calls <= self._position_failures:
            raise ExchangeTransportError("timeout")
        return list(self.positions)

    def get_klines(self, symbol: str, interval: str, limit: int) -> list[Candle]:
        if symbol in self._kline_failures:
            raise ExchangeAPIError(f"no klines for {symbol}")
        return _candles()

    def set_trading_stop(
        self, symbol: str, take_profit: float | None = None, stop_loss: float | None = None
    ) -> None:
        self.stop_attempts += 1
        if self.stop_attempts <= self._stop_failures:
            raise ExchangeTransportError("rate limited")
        self.stops.append((symbol, take_profit, stop_loss))


class _NoStopVenue:
    name = "mexc"

    def __init__(self, positions: list[VenuePosition]) -> None:
        self.positions = positions

    def get_positions(self, symbol: str | None = None) -> list[VenuePosition]:
        return list(self.positions)

    def get_klines(self, symbol: str, interval: str, limit: int) -> list[Candle]:
        return _candles()


def _venue_position(symbol: str = "SOLUSDT", side: str = "LONG") -> VenuePosition:
    return VenuePosition(symbol=symbol, side=side, size=1.0, entry_price=100.0, leverage=2)  # type: ignore[arg-type]


def _protocol(
    venue: object, state: BotStateStore | None = None, **kwargs: object
) -> tuple[ImmortalExit, BotStateStore, _FakeNotifier]:
    state = state or BotStateStore()
    notifier = _FakeNotifier()
    exchange = getattr(venue, "name")
    router = ExecutionRouter({exchange: venue}, RouterConfig(exchange=exchange))  # type: ignore[dict-item]
    config = ImmortalExitConfig(exchange=exchange, max_retries=3, retry_delay_sec=0.0)
    protocol = ImmortalExit(router, state, notifier=notifier, config=config, **kwargs)  # type: ignore[arg-type]
    return protocol, state, notifier


def test_updates_every_position_with_fresh_levels() -> None:
    venue = _ExitVenue([_venue_position("SOLUSDT", "LONG"), _venue_position("ETHUSDT", "SHORT")])
    protocol, state, notifier = _protocol(venue)

    result = protocol.execute("SIGTERM")

    assert result.shutdown_complete
    assert result.positions_fetched
    assert result.errors == []
    assert len(result.positions_updated) == 2
    # ATR is 2.0 on the flat candles: TP 2x, SL 1.5x
    assert ("SOLUSDT", pytest.approx(104.0), pytest.approx(97.0)) in venue.stops
    assert ("ETHUSDT", pytest.approx(96.0), pytest.approx(103.0)) in venue.stops
    assert protocol.stop_event.is_set()
    assert state.status == "idle"
    assert "IMMORTAL EXIT PROTOCOL COMPLETE" in notifier.messages[-1]
    assert "Exchange servers managing exits" in notifier.messages[-1]
    assert notifier.flushed == 1


def test_one_failing_position_does_not_stop_the_rest() -> None:
    venue = _ExitVenue(
        [_venue_position("SOLUSDT"), _venue_position("ETHUSDT")], kline_failures={"ETHUSDT"}
    )
    protocol, _, notifier = _protocol(venue)

    result = protocol.execute("SIGINT")

    assert result.shutdown_complete
    assert len(result.errors) == 1
    assert result.errors[0].startswith("ETHUSDT:")
    assert [p.symbol for p in result.positions_updated] == ["SOLUSDT"]
    assert "ERRORS (1)" in notifier.messages[-1]


def test_second_trigger_is_a_no_op() -> None:
    venue = _ExitVenue([_venue_position()])
    protocol, _, _ = _protocol(venue)

    first = protocol.execute("SIGINT")
    second = protocol.execute("SIGTERM")

    assert protocol.is_active
    assert len(venue.stops) == 1
    assert second.shutdown_reason == first.shutdown_reason == "SIGINT"


def test_update_is_retried_until_it_succeeds() -> None:
    venue = _ExitVenue([_venue_position()], stop_failures=2)
    protocol, _, _ = _protocol(venue)

    result = protocol.execute("SIGTERM")

    assert venue.stop_attempts == 3
    assert result.errors == []
    assert len(result.positions_updated) == 1


def test_update_gives_up_after_max_retries() -> None:
    venue = _ExitVenue([_venue_position()], stop_failures=10)
    protocol, _, _ = _protocol(venue)

    result = protocol.execute("SIGTERM")

    assert venue.stop_attempts == 3
    assert len(result.errors) == 1
    assert "rate limited" in result.errors[0]
    assert result.shutdown_complete


def test_venue_without_native_tp_sl_is_not_retried() -> None:
    protocol, _, _ = _protocol(_NoStopVenue([_venue_position()]))

    result = protocol.execute("SIGTERM")

    assert len(result.errors) == 1
    assert "MEXC TP/SL update requires separate orders" in result.errors[0]
    assert result.positions_updated == []
    assert result.shutdown_complete


def test_position_fetch_retries_then_falls_back_to_local_state() -> None:
    state = BotStateStore()
    state.add_position(
        Position(
            id="local-1",
            symbol="SOLUSDT",
            exchange="bybit",
            side="LONG",
            size=1.0,
            entry_price=100.0,
            leverage=1,
            margin=100.0,
        )
    )
    venue = _ExitVenue([], position_failures=10)
    protocol, _, _ = _protocol(venue, state)

    result = protocol.execute("SIGTERM")

    assert venue.position_calls == 3
    assert [p.id for p in result.positions_before_shutdown] == ["local-1"]
    assert len(result.positions_updated) == 1


def test_venue_position_keeps_local_identity() -> None:
    state = BotStateStore()
    state.add_position(
        Position(
            id="local-7",
            symbol="SOLUSDT",
            exchange="bybit",
            side="LONG",
            size=1.0,
            entry_price=100.0,
            leverage=2,
            margin=50.0,
            take_profit=104.0,
            stop_loss=97.0,
        )
    )
    venue = _ExitVenue([_venue_position()])
    protocol, _, _ = _protocol(venue, state)

    result = protocol.execute("SIGTERM")

    assert result.positions_before_shutdown[0].id == "local-7"
    # levels are unchanged within the 1% threshold, so nothing is pushed
    assert venue.stops == []
    assert result.positions_updated == []


def test_no_positions_is_reported(tmp_path) -> None:
    journal = JournalStore(tmp_path)
    protocol, _, notifier = _protocol(_ExitVenue([]), journal=journal)

    result = protocol.execute("Manual shutdown")

    assert result.shutdown_complete
    assert "No open positions to update" in notifier.messages[-1]
    rows = journal.load_recent(5)
    assert rows[-1]["event_type"] == "shutdown"
    assert rows[-1]["payload"]["positions"] == 0


def test_reevaluate_requires_enough_candles() -> None:
    class _ShortHistory(_ExitVenue):
        def get_klines(self, symbol: str, interval: str, limit: int) -> list[Candle]:
            return _candles(count=10)

    protocol, _, _ = _protocol(_ShortHistory([]))
    position = Position(
        id="x", symbol="SOLUSDT", exchange="bybit", side="LONG", size=1, entry_price=100, leverage=1, margin=100
    )
    with pytest.raises(ValueError, match="Failed to fetch market data"):
        protocol.reevaluate_position(position)


def test_concurrent_triggers_run_the_protocol_once() -> None:
    entered = threading.Event()
    release = threading.Event()

    class _SlowVenue(_ExitVenue):
        def get_positions(self, symbol: str | None = None) -> list[VenuePosition]:
            entered.set()
            release.wait(5)
            return super().get_positions(symbol)

    venue = _SlowVenue([_venue_position()])
    protocol, _, notifier = _protocol(venue)
    results = {}
    worker = threading.Thread(target=lambda: results.update(first=protocol.execute("SIGINT")))
    worker.start()
    assert entered.wait(5)

    results["second"] = protocol.execute("SIGTERM")
    release.set()
    worker.join(timeout=5)

    assert not worker.is_alive()
    assert venue.position_calls == 1
    assert len(venue.stops) == 1
    assert len(notifier.messages) == 1
    assert results["first"].shutdown_complete
    assert results["second"].shutdown_reason == "SIGINT"


def test_signal_handler_only_requests_the_stop(monkeypatch, tmp_path) -> None:
    journal = JournalStore(tmp_path)
    venue = _ExitVenue([_venue_position()])
    protocol, _, notifier = _protocol(venue, journal=journal)
    monkeypatch.setattr(sys, "excepthook", sys.excepthook)
    monkeypatch.setattr(threading, "excepthook", threading.excepthook)
    previous = {s: signal.getsignal(s) for s in (signal.SIGINT, signal.SIGTERM)}
    try:
        protocol.bind_signals()
        handler = signal.getsignal(signal.SIGTERM)
        # the journal lock is held by the interrupted code, as it would be mid-append
        with journal._lock:
            handler(signal.SIGTERM, None)  # type: ignore[operator]
    finally:
        for signum, old in previous.items():
            signal.signal(signum, old)

    assert protocol.stop_event.is_set()
    assert protocol.requested_reason == "SIGTERM"
    assert not protocol.is_active
    assert venue.position_calls == 0
    assert notifier.messages == []

    result = protocol.execute(protocol.requested_reason)
    assert result.shutdown_reason == "SIGTERM"
    assert result.shutdown_complete
    assert journal.last_event("shutdown") is not None


def test_first_requested_reason_wins() -> None:
    protocol, _, _ = _protocol(_ExitVenue([]))
    protocol.request_stop("SIGINT")
    protocol.request_stop("SIGTERM")
    assert protocol.requested_reason == "SIGINT"

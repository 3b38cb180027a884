from __future__ import annotations

import threading
import time

import pytest

from futures_agent.config import Settings
from futures_agent.engine import EngineConfig, TradingEngine, build_engine
from futures_agent.exchange.base import (
    ExchangeAPIError,
    InstrumentInfo,
    OrderAck,
    OrderRequest,
    VenuePosition,
)
from futures_agent.exec.router import ExecutionRouter
from futures_agent.journal.store import JournalStore
from futures_agent.notify.telegram import NullNotifier
from futures_agent.shutdown.immortal_exit import ImmortalExit, ImmortalExitConfig
from futures_agent.state.bot_state import BotStateStore
from futures_agent.strategy.alpha_ranker import AlphaRanker, AlphaRankerConfig
from futures_agent.types import Candle, OrderBook, OrderBookLevel, Trade


def _candles(count: int = 60) -> list[Candle]:
    # flat bodies, so no order blocks; every true range is 2.0
    candles = []
    for i in range(count):
        close = 100.0 + 0.5 * (i % 2)
        candles.append(
            Candle(
                timestamp=i * 900_000,
                open=close,
                high=close + 1,
                low=close - 1,
                close=close,
                volume=10.0,
            )
        )
    return candles


class _EngineVenue:
    name = "bybit"

    def __init__(self, *, broken_symbols: set[str] | None = None) -> None:
        self.mid = 100.0
        self.orders: list[OrderRequest] = []
        self._broken = broken_symbols or set()

    def get_klines(self, symbol: str, interval: str, limit: int) -> list[Candle]:
        if symbol in self._broken:
            raise ExchangeAPIError(f"unknown symbol {symbol}")
        return _candles()

    def get_orderbook(self, symbol: str, depth: int) -> OrderBook:
        return OrderBook(
            symbol=symbol,
            exchange="bybit",
            bids=[OrderBookLevel(self.mid - 0.05, 1.0)],
            asks=[OrderBookLevel(self.mid + 0.05, 1.0)],
            timestamp=0,
        )

    def get_recent_trades(self, symbol: str, limit: int) -> list[Trade]:
        return [Trade(price=self.mid, quantity=0.01, side="BUY", timestamp=1)]

    def get_instrument_info(self, symbol: str) -> InstrumentInfo:
        return InstrumentInfo(symbol=symbol, tick_size=0.01, qty_step=0.01, min_notional=5.0)

    def set_leverage(self, symbol: str, leverage: int) -> None:
        pass

    def place_order(self, request: OrderRequest) -> OrderAck:
        self.orders.append(request)
        return OrderAck(
            order_id=f"o{len(self.orders)}",
            symbol=request.symbol,
            side=request.side,
            quantity=request.quantity,
            status="Created",
            order_link_id=request.client_order_id,
        )

    def get_positions(self, symbol: str | None = None) -> list[VenuePosition]:
        return []

    def get_balance(self) -> float:
        return 1000.0

    def set_trading_stop(
        self, symbol: str, take_profit: float | None = None, stop_loss: float | None = None
    ) -> None:
        pass


def _engine(
    venue: _EngineVenue,
    tmp_path,
    *,
    symbols: tuple[str, ...] = ("SOLUSDT",),
    max_open_positions: int = 3,
) -> TradingEngine:
    router = ExecutionRouter({"bybit": venue})  # type: ignore[dict-item]
    state = BotStateStore()
    journal = JournalStore(tmp_path / "journal")
    shutdown = ImmortalExit(
        router, state, journal=journal, config=ImmortalExitConfig(retry_delay_sec=0.0)
    )
    return TradingEngine(
        router,
        state,
        shutdown,
        ranker=AlphaRanker(AlphaRankerConfig(min_ev_score=-100.0)),
        notifier=NullNotifier(),
        journal=journal,
        config=EngineConfig(
            symbols=symbols,
            max_open_positions=max_open_positions,
            signal_interval_sec=0.01,
            loop_error_backoff_sec=0.01,
        ),
    )


def test_cycle_opens_position_for_apex_signal(tmp_path) -> None:
    venue = _EngineVenue()
    engine = _engine(venue, tmp_path)
    engine.initialize()

    result = engine.run_cycle()

    assert result.status == "opened"
    assert result.signals >= 2
    assert len(venue.orders) == 1
    assert venue.orders[0].quantity == pytest.approx(0.1)

    positions = engine.state.get_active_positions()
    assert len(positions) == 1
    position = positions[0]
    assert position.id == "o1"
    assert position.take_profit is not None and position.stop_loss is not None
    assert engine.state.get_pending_signals() == []

    events = [row["event_type"] for row in JournalStore(tmp_path / "journal").load_recent(20)]
    assert events[0] == "cycle_start"
    assert "signal" in events
    assert "position_opened" in events
    assert events[-1] == "cycle_end"


def test_existing_position_blocks_a_second_entry(tmp_path) -> None:
    venue = _EngineVenue()
    engine = _engine(venue, tmp_path)
    engine.initialize()
    engine.run_cycle()

    second = engine.run_cycle()

    assert second.status == "skipped"
    assert len(venue.orders) == 1


def test_full_book_monitors_and_closes_at_take_profit(tmp_path) -> None:
    venue = _EngineVenue()
    engine = _engine(venue, tmp_path, max_open_positions=1)
    engine.initialize()
    engine.run_cycle()
    position = engine.state.get_active_positions()[0]
    assert position.take_profit is not None

    unchanged = engine.run_cycle()
    assert unchanged.status == "monitoring"
    assert unchanged.orders == []
    assert engine.state.position_count() == 1

    venue.mid = position.take_profit + 1 if position.side == "LONG" else position.take_profit - 1
    closed = engine.run_cycle()

    assert closed.status == "monitoring"
    assert len(closed.orders) == 1
    assert closed.orders[0]["reason"] == "TAKE_PROFIT"
    assert closed.orders[0]["pnl"] > 0
    assert engine.state.position_count() == 0
    session = engine.state.get_session_stats()
    assert session.executed_trades == 1
    assert session.successful_trades == 1


def test_stop_request_short_circuits_cycle(tmp_path) -> None:
    venue = _EngineVenue()
    engine = _engine(venue, tmp_path)
    engine.stop_event.set()

    result = engine.run_cycle()

    assert result.status == "shutting_down"
    assert venue.orders == []


def test_failing_symbol_is_isolated(tmp_path) -> None:
    venue = _EngineVenue(broken_symbols={"BADUSDT"})
    engine = _engine(venue, tmp_path, symbols=("BADUSDT", "SOLUSDT"))

    signals, books = engine.gather_signals()

    assert set(books) == {"SOLUSDT"}
    assert signals and all(s.symbol == "SOLUSDT" for s in signals)
    assert engine.state.get_activity_log(1)[0].event == "SIGNAL_GATHER_ERROR"


def test_no_symbols_with_data_means_no_signal(tmp_path) -> None:
    venue = _EngineVenue(broken_symbols={"SOLUSDT"})
    engine = _engine(venue, tmp_path)

    assert engine.run_cycle().status == "no_signal"


def test_run_loop_exits_through_shutdown_protocol(tmp_path) -> None:
    venue = _EngineVenue()
    engine = _engine(venue, tmp_path)
    engine.initialize()
    worker = threading.Thread(target=engine.run_loop, daemon=True)
    worker.start()

    deadline = time.monotonic() + 5
    while not venue.orders and time.monotonic() < deadline:
        time.sleep(0.01)

    record = engine.stop("test")
    worker.join(timeout=5)

    assert not worker.is_alive()
    assert record.shutdown_complete
    assert record.shutdown_reason == "test"
    assert engine.status()["shutdown_requested"]


def test_build_engine_wires_components(tmp_path) -> None:
    settings = Settings(
        _env_file=None,
        bybit_api_key="k",
        bybit_api_secret="s",
        target_symbols="solusdt,ethusdt",
        journal_dir=tmp_path / "journal",
    )
    engine = build_engine(settings, interval_sec=5.0, clients={"bybit": _EngineVenue()})  # type: ignore[dict-item]

    assert engine.config.symbols == ("SOLUSDT", "ETHUSDT")
    assert engine.config.signal_interval_sec == 5.0
    assert engine.config.exchange == "bybit"
    assert (tmp_path / "journal").is_dir()
    assert engine.status()["status"] == "idle"


class _ShortHistoryWhaleVenue(_EngineVenue):
    def get_klines(self, symbol: str, interval: str, limit: int) -> list[Candle]:
        return _candles(10)

    def get_recent_trades(self, symbol: str, limit: int) -> list[Trade]:
        now_ms = int(time.time() * 1000)
        return [Trade(price=self.mid, quantity=1_000.0, side="BUY", timestamp=now_ms)]


def test_whale_print_without_volatility_does_not_fail_the_cycle(tmp_path) -> None:
    venue = _ShortHistoryWhaleVenue()
    engine = _engine(venue, tmp_path)
    engine.initialize()

    signals, _ = engine.gather_signals()
    assert signals == []

    result = engine.run_cycle()
    assert result.status == "no_signal"
    assert venue.orders == []


class _StopDuringSubmitVenue(_EngineVenue):
    def __init__(self) -> None:
        super().__init__()
        self.on_leverage = lambda: None

    def set_leverage(self, symbol: str, leverage: int) -> None:
        self.on_leverage()


def test_shutdown_mid_cycle_prevents_order_submission(tmp_path) -> None:
    venue = _StopDuringSubmitVenue()
    engine = _engine(venue, tmp_path)
    engine.initialize()
    venue.on_leverage = engine.stop_event.set

    result = engine.run_cycle()

    assert result.status == "cancelled"
    assert venue.orders == []
    assert engine.state.position_count() == 0


def test_cycle_journals_the_ranked_evaluation(tmp_path) -> None:
    engine = _engine(_EngineVenue(), tmp_path)
    engine.initialize()
    engine.run_cycle()

    row = JournalStore(tmp_path / "journal").last_event("evaluation")
    assert row is not None
    assert row["payload"]["ranked"][0]["symbol"] == "SOLUSDT"

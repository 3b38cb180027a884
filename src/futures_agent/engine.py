"""Trading engine: the gather, rank, size, execute and monitor loop."""

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from time import perf_counter
from typing import Any

from futures_agent.config import Settings
from futures_agent.exchange.base import ExchangeClient
from futures_agent.exchange.bybit import BybitClient
from futures_agent.exchange.mexc import MexcClient
from futures_agent.exec.router import ExecutionRouter, RouterConfig, TradeRequest
from futures_agent.features.indicators import calculate_atr
from futures_agent.features.market_math import calculate_mid_price, clamp
from futures_agent.journal.store import JournalStore
from futures_agent.notify.telegram import Notifier, NullNotifier, TelegramNotifier
from futures_agent.risk.physics import RiskPhysics, RiskPhysicsConfig
from futures_agent.shutdown.immortal_exit import ImmortalExit, ImmortalExitConfig
from futures_agent.state.bot_state import BotStateStore
from futures_agent.strategy.alpha_ranker import AlphaRanker, AlphaRankerConfig
from futures_agent.strategy.order_blocks import OrderBlockBreaker
from futures_agent.strategy.sentinels import SignalFactory
from futures_agent.strategy.whale_flow import WhaleFlowDetector
from futures_agent.types import (
    Candle,
    CloseReason,
    CycleResult,
    EvaluatedSignal,
    ExchangeName,
    ExecutionResult,
    OrderBook,
    Position,
    ShutdownState,
    Signal,
    Trade,
    utc_now,
)
from futures_agent.utils.logging import (
    bind_cycle_context,
    clear_cycle_context,
    get_logger,
    log_trade_signal,
)

ORDER_BLOCK_EDGE = 0.05
RECENT_TRADES_LIMIT = 100


@dataclass(frozen=True, slots=True)
class EngineConfig:
    exchange: ExchangeName = "bybit"
    symbols: tuple[str, ...] = ("BTCUSDT", "ETHUSDT", "SOLUSDT")
    max_open_positions: int = 3
    signal_interval_sec: float = 60.0
    loop_error_backoff_sec: float = 5.0
    kline_interval: str = "15m"
    kline_limit: int = 100
    orderbook_depth: int = 10
    signal_workers: int = 4
    whale_threshold_usd: float = 50_000.0


@dataclass(slots=True)
class MarketSnapshot:
    symbol: str
    candles: list[Candle]
    order_book: OrderBook
    trades: list[Trade] = field(default_factory=list)

    @property
    def last_price(self) -> float:
        bid, ask = self.order_book.best_bid, self.order_book.best_ask
        if bid and ask:
            return calculate_mid_price(bid, ask)
        return self.candles[-1].close if self.candles else 0.0


class TradingEngine:
    """Owns one trading loop against one venue.

    State mutation happens on the loop thread only; signal gathering fans out
    per symbol to a bounded thread pool.
    """

    def __init__(
        self,
        router: ExecutionRouter,
        state: BotStateStore,
        shutdown: ImmortalExit,
        *,
        ranker: AlphaRanker | None = None,
        risk: RiskPhysics | None = None,
        sentinel: SignalFactory | None = None,
        order_blocks: OrderBlockBreaker | None = None,
        notifier: Notifier | None = None,
        journal: JournalStore | None = None,
        config: EngineConfig | None = None,
    ) -> None:
        self.router = router
        self.state = state
        self.shutdown = shutdown
        self._ranker = ranker or AlphaRanker()
        self._risk = risk or RiskPhysics()
        self._sentinel = sentinel or SignalFactory()
        self._order_blocks = order_blocks or OrderBlockBreaker()
        self._notifier = notifier or NullNotifier()
        self._journal = journal
        self._config = config or EngineConfig()
        self._whales: dict[str, WhaleFlowDetector] = {
            s: WhaleFlowDetector(self._config.whale_threshold_usd) for s in self._config.symbols
        }
        self._loop_lock = threading.Lock()
        self._logger = get_logger("futures_agent.engine")

    @property
    def config(self) -> EngineConfig:
        return self._config

    @property
    def stop_event(self) -> threading.Event:
        return self.shutdown.stop_event

    def shutdown_requested(self) -> bool:
        return self.stop_event.is_set() or self.state.is_shutting_down()

    # ---- lifecycle ----

    def initialize(self) -> None:
        self.state.set_status("initializing")
        try:
            self.router.initialize_cache(list(self._config.symbols), self._config.exchange)
            self._refresh_balance()
        except Exception as exc:
            self.state.set_status("error")
            self.state.record_error(exc, "initialize")
            raise
        self.state.log_activity(
            "ENGINE_INITIALIZED",
            {"exchange": self._config.exchange, "symbols": list(self._config.symbols)},
        )
        self._logger.info(
            "engine_initialized", exchange=self._config.exchange, symbols=len(self._config.symbols)
        )

    def start(self) -> None:
        self.initialize()
        self.run_loop()

    def run_loop(self) -> None:
        """Cycle until a shutdown is requested. Per-cycle failures back off and retry."""
        if not self._loop_lock.acquire(blocking=False):
            self._logger.warning("engine_loop_already_running")
            return
        try:
            self.state.set_status("running")
            self._logger.info(
                "engine_loop_started",
                interval_sec=self._config.signal_interval_sec,
                symbols=list(self._config.symbols),
            )
            iteration = 0
            while not self.shutdown_requested():
                iteration += 1
                bind_cycle_context(exchange=self._config.exchange, iteration=iteration)
                try:
                    result = self.run_cycle()
                    self._logger.info(
                        "engine_cycle_completed",
                        status=result.status,
                        signals=result.signals,
                        orders=len(result.orders),
                        elapsed_ms=round(result.elapsed_ms, 2),
                    )
                    wait = self._config.signal_interval_sec
                except Exception as exc:  # noqa: BLE001 - top-level guard for loop resilience.
                    self._logger.exception("engine_cycle_failed", error=str(exc))
                    self.state.record_error(exc, "run_loop")
                    wait = self._config.loop_error_backoff_sec
                # returns early when a shutdown trigger sets the event
                self.stop_event.wait(wait)
            if self.state.is_running():
                self.state.set_status("stopped")
            self._logger.info("engine_loop_stopped", iterations=iteration)
        finally:
            clear_cycle_context()
            self._loop_lock.release()

    def stop(self, reason: str = "Manual stop") -> ShutdownState:
        """Stop trading by running the shutdown protocol, not by just halting the loop."""
        return self.shutdown.execute(reason)

    # ---- one cycle ----

    def run_cycle(self) -> CycleResult:
        started = perf_counter()
        result = CycleResult(status="unknown")
        self._journal_append("cycle_start", {"exchange": self._config.exchange})

        try:
            if self.shutdown_requested():
                return self._finish(result, started, "shutting_down")

            if self.state.position_count() >= self._config.max_open_positions:
                for closed in self.monitor_positions():
                    result.orders.append(closed)
                return self._finish(result, started, "monitoring")

            signals, books = self.gather_signals()
            result.signals = len(signals)
            if not signals:
                return self._finish(result, started, "no_signal")

            evaluated = self._ranker.evaluate_and_sort(signals, books)
            result.evaluated = [_evaluation_row(e) for e in evaluated]
            self._journal_append("evaluation", {"ranked": result.evaluated})
            apex = self._ranker.pick_apex_signal(evaluated)
            if apex is None:
                return self._finish(result, started, "no_apex_signal")
            self._announce(apex)

            # shutdown may have been triggered while signals were gathered
            if self.shutdown_requested():
                result.warnings.append("shutdown_during_cycle")
                return self._finish(result, started, "shutting_down")

            execution = self.execute_signal(apex, books.get(apex.symbol))
            if execution is None:
                return self._finish(result, started, "skipped")
            result.orders.append(_execution_row(execution))
            status = "opened" if execution.success else execution.status.lower()
            return self._finish(result, started, status)

        except Exception as exc:  # noqa: BLE001 - a failed cycle is journaled then re-raised.
            self._journal_append("error", {"error": str(exc)})
            self._finish(result, started, "failed")
            raise

    def gather_signals(self) -> tuple[list[Signal], dict[str, OrderBook]]:
        """Collect signals for every configured symbol, isolating per-symbol failures."""
        symbols = list(self._config.symbols)
        workers = max(1, min(self._config.signal_workers, len(symbols)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="signals") as pool:
            futures = {symbol: pool.submit(self._signals_for_symbol, symbol) for symbol in symbols}

        signals: list[Signal] = []
        books: dict[str, OrderBook] = {}
        for symbol, future in futures.items():
            try:
                symbol_signals, book = future.result()
            except Exception as exc:  # noqa: BLE001 - one symbol must not stop the others.
                self._logger.warning("signal_gather_failed", symbol=symbol, error=str(exc))
                self.state.log_activity(
                    "SIGNAL_GATHER_ERROR", {"symbol": symbol, "error": str(exc)}, "error"
                )
                continue
            books[symbol] = book
            signals.extend(symbol_signals)
        return signals, books

    def execute_signal(
        self, apex: EvaluatedSignal, order_book: OrderBook | None = None
    ) -> ExecutionResult | None:
        """Size the apex signal and route it. Returns None when the trade is skipped."""
        signal = apex.signal
        if self.shutdown_requested():
            return None
        if self.state.get_position_by_symbol(signal.symbol) is not None:
            self._logger.info("signal_skipped_position_open", symbol=signal.symbol)
            return None

        entry = signal.current_price
        if order_book is not None:
            effective, _ = self._ranker.calculate_effective_entry(signal.direction, order_book)
            if effective > 0:
                entry = effective

        result = self.router.execute_trade(
            TradeRequest(
                symbol=signal.symbol,
                direction=signal.direction,
                entry_price=entry,
                atr=signal.atr,
                wallet_balance=self._refresh_balance(),
                signal=apex,
            ),
            should_abort=self.shutdown_requested,
        )

        if result.success:
            physics = result.risk_physics
            position = Position(
                id=result.order_id or f"pos-{signal.symbol}-{int(result.timestamp.timestamp() * 1000)}",
                symbol=signal.symbol,
                exchange=self._config.exchange,
                side=signal.direction,
                size=result.quantity,
                entry_price=result.price or entry,
                leverage=physics.leverage if physics else 1,
                margin=physics.margin if physics else result.quantity * entry,
                current_price=entry,
                stop_loss=result.stop_loss,
                take_profit=result.take_profit,
                signal_id=result.order_link_id,
            )
            self.state.add_position(position)
            self.state.mark_signal_executed(signal, {"order_id": result.order_id})
            self._journal_append("position_opened", _position_row(position))
        else:
            self.state.log_activity(
                "TRADE_FAILED",
                {"symbol": signal.symbol, "status": result.status, "message": result.message},
                "error",
            )

        self._journal_append("order", _execution_row(result))
        self._notify(self._notifier.send_trade_alert, apex, result)
        return result

    def monitor_positions(self) -> list[dict[str, Any]]:
        """Refresh prices of tracked positions and close locally those past TP or SL."""
        closed: list[dict[str, Any]] = []
        for position in self.state.get_active_positions():
            try:
                snapshot = self._fetch_market(position.symbol, with_trades=False)
            except Exception as exc:  # noqa: BLE001 - one position must not stop the others.
                self.state.log_activity(
                    "POSITION_MONITOR_ERROR", {"position_id": position.id, "error": str(exc)}, "error"
                )
                continue

            price = snapshot.last_price
            if price <= 0:
                continue
            gross = self._gross_pnl(position, price)
            self.state.update_position(position.id, current_price=price, unrealized_pnl=gross)

            reason = _crossed_level(position, price)
            if reason is None:
                continue
            closed.append(self._close_locally(position, price, reason))
        return closed

    def status(self) -> dict[str, Any]:
        summary = self.state.summary()
        last_signal = self.state.last_signal_time
        return {
            **summary,
            "is_running": summary["status"] == "running",
            "exchange": self._config.exchange,
            "last_signal": last_signal.isoformat() if last_signal else None,
            "shutdown_requested": self.shutdown_requested(),
        }

    # ---- helpers ----

    def _signals_for_symbol(self, symbol: str) -> tuple[list[Signal], OrderBook]:
        snapshot = self._fetch_market(symbol, with_trades=True)
        candles, book = snapshot.candles, snapshot.order_book
        signals: list[Signal] = []

        for direction in ("LONG", "SHORT"):
            momentum = self._sentinel.generate_signal(symbol, candles, book, "MOMENTUM", direction)
            if momentum is not None:
                signals.append(momentum)

        whale = self._whales.setdefault(
            symbol, WhaleFlowDetector(self._config.whale_threshold_usd)
        ).get_whale_signal(book, snapshot.trades)
        if whale is not None:
            atr = calculate_atr(candles)
            # without volatility there is nothing to anchor TP/SL on
            if atr > 0:
                signals.append(replace(whale, atr=atr))
            else:
                self._logger.debug("whale_signal_dropped_no_atr", symbol=symbol, candles=len(candles))

        blocks = self._order_blocks.detect_order_blocks(candles, symbol)
        crossed = self._order_blocks.check_order_block_break(snapshot.last_price, blocks, symbol)
        if crossed is not None:
            block, direction = crossed
            base = self._sentinel.generate_signal(symbol, candles, book, "ORDER_BLOCK", direction)
            if base is not None:
                signals.append(
                    replace(
                        base,
                        win_probability=clamp(base.win_probability + ORDER_BLOCK_EDGE, 0.0, 0.8),
                        metadata=block.to_metadata(),
                    )
                )
        return signals, book

    def _fetch_market(self, symbol: str, *, with_trades: bool) -> MarketSnapshot:
        exchange = self._config.exchange
        candles = self.router.get_klines(
            symbol, self._config.kline_interval, self._config.kline_limit, exchange
        )
        book = self.router.get_orderbook(symbol, self._config.orderbook_depth, exchange)
        trades = (
            self.router.get_recent_trades(symbol, RECENT_TRADES_LIMIT, exchange) if with_trades else []
        )
        return MarketSnapshot(symbol=symbol, candles=candles, order_book=book, trades=trades)

    def _announce(self, apex: EvaluatedSignal) -> None:
        self.state.add_signal(apex.signal)
        log_trade_signal(
            self._logger,
            symbol=apex.symbol,
            direction=apex.direction,
            strategy=apex.signal.strategy,
            ev_score=round(apex.ev_score, 4),
            kelly_score=round(apex.kelly_score, 4),
        )
        self._journal_append("signal", _evaluation_row(apex))
        self._notify(self._notifier.send_signal_alert, apex)

    def _refresh_balance(self) -> float:
        try:
            balance = self.router.get_balance(self._config.exchange)
        except Exception as exc:  # noqa: BLE001 - fall back to the last known balance.
            self._logger.warning("balance_refresh_failed", error=str(exc))
            return self.state.wallet_balance
        self.state.set_wallet_balance(balance)
        return balance

    @staticmethod
    def _gross_pnl(position: Position, price: float) -> float:
        move = price - position.entry_price if position.side == "LONG" else position.entry_price - price
        return move * position.size

    def _close_locally(self, position: Position, price: float, reason: CloseReason) -> dict[str, Any]:
        net = self._risk.calculate_net_profit(position.size, position.entry_price, price, position.side)
        self.state.update_position(
            position.id, realized_pnl=net.net_profit, status="closed", closed_at=utc_now()
        )
        removed = self.state.remove_position(position.id) or position
        self.state.record_trade_result(net.net_profit > 0, net.net_profit, net.total_fees)

        row = {
            "position_id": position.id,
            "symbol": position.symbol,
            "close_price": price,
            "pnl": net.net_profit,
            "fees": net.total_fees,
            "reason": reason,
        }
        self._journal_append("position_closed", row)
        self._notify(self._notifier.send_position_closed_alert, removed, price, net.net_profit, reason)
        self._logger.info("position_closed", **row)
        return row

    def _notify(self, send: Any, *args: Any) -> None:
        try:
            send(*args)
        except Exception as exc:  # noqa: BLE001 - notifications never block trading.
            self._logger.warning("notification_failed", error=str(exc))

    def _journal_append(self, event_type: str, payload: dict[str, Any]) -> None:
        if self._journal is not None:
            self._journal.append(event_type, payload)

    def _finish(self, result: CycleResult, started: float, status: str) -> CycleResult:
        result.status = status
        result.elapsed_ms = (perf_counter() - started) * 1000
        self._journal_append("cycle_end", {"status": status, "elapsed_ms": result.elapsed_ms})
        return result


def _crossed_level(position: Position, price: float) -> CloseReason | None:
    if position.take_profit is None or position.stop_loss is None:
        return None
    if position.side == "LONG":
        if price >= position.take_profit:
            return "TAKE_PROFIT"
        if price <= position.stop_loss:
            return "STOP_LOSS"
    else:
        if price <= position.take_profit:
            return "TAKE_PROFIT"
        if price >= position.stop_loss:
            return "STOP_LOSS"
    return None


def _evaluation_row(evaluated: EvaluatedSignal) -> dict[str, Any]:
    return {
        "symbol": evaluated.symbol,
        "direction": evaluated.direction,
        "strategy": evaluated.signal.strategy,
        "ev_score": evaluated.ev_score,
        "kelly_score": evaluated.kelly_score,
        "net_roi": evaluated.net_roi,
        "rank_score": evaluated.rank_score,
    }


def _execution_row(result: ExecutionResult) -> dict[str, Any]:
    return {
        "success": result.success,
        "exchange": result.exchange,
        "symbol": result.symbol,
        "side": result.side,
        "quantity": result.quantity,
        "price": result.price,
        "take_profit": result.take_profit,
        "stop_loss": result.stop_loss,
        "status": result.status,
        "message": result.message,
        "order_id": result.order_id,
    }


def _position_row(position: Position) -> dict[str, Any]:
    return {
        "id": position.id,
        "symbol": position.symbol,
        "side": position.side,
        "size": position.size,
        "entry_price": position.entry_price,
        "leverage": position.leverage,
        "take_profit": position.take_profit,
        "stop_loss": position.stop_loss,
    }


def build_clients(
    settings: Settings, exchange: ExchangeName, testnet: bool
) -> dict[ExchangeName, ExchangeClient]:
    """Create the selected venue client plus any other venue with credentials."""
    clients: dict[ExchangeName, ExchangeClient] = {}
    if exchange == "bybit" or settings.bybit_api_key:
        clients["bybit"] = BybitClient(
            settings.bybit_api_key,
            settings.bybit_api_secret,
            testnet=testnet,
            timeout=settings.http_timeout_sec,
        )
    if exchange == "mexc" or settings.mexc_api_key:
        clients["mexc"] = MexcClient(
            settings.mexc_api_key, settings.mexc_api_secret, timeout=settings.http_timeout_sec
        )
    return clients


def build_engine(
    settings: Settings,
    *,
    exchange: ExchangeName | None = None,
    testnet: bool | None = None,
    interval_sec: float | None = None,
    clients: dict[ExchangeName, ExchangeClient] | None = None,
    notifier: Notifier | None = None,
) -> TradingEngine:
    """Wire every component from one settings snapshot."""
    venue: ExchangeName = exchange or settings.exchange
    taker_fee = settings.mexc_taker_fee if venue == "mexc" else settings.bybit_taker_fee
    settings.ensure_directories()

    risk = RiskPhysics(
        RiskPhysicsConfig(
            max_capital_per_trade=settings.base_capital_usdt,
            max_leverage=settings.max_leverage,
            min_risk_reward=settings.min_risk_reward,
            taker_fee=taker_fee,
            tp_atr_multiplier=settings.tp_atr_multiplier,
            sl_atr_multiplier=settings.sl_atr_multiplier,
        )
    )
    ranker = AlphaRanker(
        AlphaRankerConfig(
            min_ev_score=settings.min_ev_score,
            min_kelly_score=settings.min_kelly_score,
            taker_fee=taker_fee,
            slippage_buffer_pct=settings.slippage_buffer_pct,
            base_capital=settings.base_capital_usdt,
        )
    )
    router = ExecutionRouter(
        clients if clients is not None else build_clients(
            settings, venue, settings.testnet if testnet is None else testnet
        ),
        RouterConfig(
            exchange=venue,
            max_leverage=settings.max_leverage,
            max_capital_per_trade=settings.base_capital_usdt,
            min_capital_required=settings.min_capital_required,
        ),
        risk=risk,
    )
    if notifier is None:
        notifier = (
            TelegramNotifier(
                settings.telegram_bot_token,
                settings.telegram_chat_id,
                timeout=settings.http_timeout_sec,
            )
            if settings.telegram_enabled
            else NullNotifier()
        )
    state = BotStateStore()
    journal = JournalStore(settings.journal_dir)
    shutdown = ImmortalExit(
        router,
        state,
        notifier=notifier,
        risk=risk,
        journal=journal,
        config=ImmortalExitConfig(
            exchange=venue,
            tp_atr_multiplier=settings.tp_atr_multiplier,
            sl_atr_multiplier=settings.sl_atr_multiplier,
            max_retries=settings.shutdown_max_retries,
            retry_delay_sec=settings.shutdown_retry_delay_sec,
        ),
    )
    return TradingEngine(
        router,
        state,
        shutdown,
        ranker=ranker,
        risk=risk,
        notifier=notifier,
        journal=journal,
        config=EngineConfig(
            exchange=venue,
            symbols=tuple(settings.target_symbols),
            max_open_positions=settings.max_open_positions,
            signal_interval_sec=interval_sec or settings.signal_interval_sec,
            loop_error_backoff_sec=settings.loop_error_backoff_sec,
            kline_interval=settings.kline_interval,
            kline_limit=settings.kline_limit,
            orderbook_depth=settings.orderbook_depth,
            signal_workers=settings.signal_workers,
            whale_threshold_usd=settings.whale_threshold_usd,
        ),
    )

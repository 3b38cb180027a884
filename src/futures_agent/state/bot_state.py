"""In-process bot state: status, positions, signals, session stats and shutdown record."""

from __future__ import annotations

import copy
import threading
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Literal

from futures_agent.types import (
    ActivityEntry,
    Position,
    SessionStats,
    ShutdownState,
    Signal,
    utc_now,
)
from futures_agent.utils.logging import get_logger

BotStatus = Literal[
    "idle",
    "initializing",
    "running",
    "paused",
    "stopping",
    "error",
    "shutting_down",
    "stopped",
]
BotEventType = Literal[
    "status_changed",
    "position_opened",
    "position_closed",
    "signal_generated",
    "signal_executed",
    "error",
    "balance_updated",
]
ActivityLevel = Literal["info", "success", "warning", "error"]

MAX_ACTIVITY_LOG = 100

_EVENT_TYPES: tuple[BotEventType, ...] = (
    "status_changed",
    "position_opened",
    "position_closed",
    "signal_generated",
    "signal_executed",
    "error",
    "balance_updated",
)


@dataclass(frozen=True, slots=True)
class BotEvent:
    type: BotEventType
    data: Any
    timestamp: datetime = field(default_factory=utc_now)


BotEventListener = Callable[[BotEvent], None]


@dataclass(frozen=True, slots=True)
class TradingStats:
    total_trades: int
    winning_trades: int
    losing_trades: int
    win_rate: float
    total_pnl: float
    average_win: float
    average_loss: float
    profit_factor: float
    max_drawdown: float
    current_streak: int
    best_trade: float
    worst_trade: float


@dataclass(frozen=True, slots=True)
class SystemStatus:
    is_running: bool
    uptime_sec: float
    active_positions: int
    pending_signals: int
    last_signal_time: datetime | None
    start_time: datetime | None


@dataclass(frozen=True, slots=True)
class StateSnapshot:
    status: BotStatus
    start_time: datetime | None
    last_error: str | None
    error_count: int
    positions: list[Position]
    pending_signals: list[Signal]
    session_stats: SessionStats
    wallet_balance: float
    available_margin: float


class BotStateStore:
    """Single owner of mutable trading state.

    Every mutation runs under one re-entrant lock so read-modify-write
    sequences stay atomic when the engine fans work out to threads.
    Listener exceptions are logged and never reach the caller.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._logger = get_logger("futures_agent.state")
        self._listeners: dict[BotEventType, list[BotEventListener]] = {t: [] for t in _EVENT_TYPES}
        self._reset_fields()

    def _reset_fields(self) -> None:
        self._status: BotStatus = "idle"
        self._start_time: datetime | None = None
        self._last_error: str | None = None
        self._error_count = 0
        self._positions: dict[str, Position] = {}
        self._pending_signals: list[Signal] = []
        self._stats = SessionStats()
        self._trade_pnls: list[float] = []
        self._wallet_balance = 0.0
        self._available_margin = 0.0
        self._activity: list[ActivityEntry] = []
        self._shutdown = ShutdownState()

    def reset(self) -> None:
        with self._lock:
            self._reset_fields()

    # ---- status ----

    @property
    def status(self) -> BotStatus:
        return self._status

    def set_status(self, status: BotStatus) -> None:
        with self._lock:
            previous = self._status
            self._status = status
            if status == "running" and self._start_time is None:
                self._start_time = utc_now()
            self._log_activity("STATUS_CHANGED", {"previous": previous, "new": status})
        self._emit("status_changed", {"previous_status": previous, "new_status": status})

    def is_running(self) -> bool:
        return self._status == "running"

    def is_stopping(self) -> bool:
        return self._status == "stopping"

    def is_shutting_down(self) -> bool:
        return self._shutdown.is_shutting_down

    # ---- positions ----

    def get_active_positions(self) -> list[Position]:
        with self._lock:
            return [copy.copy(p) for p in self._positions.values()]

    def position_count(self) -> int:
        return len(self._positions)

    def get_position(self, position_id: str) -> Position | None:
        with self._lock:
            position = self._positions.get(position_id)
            return copy.copy(position) if position else None

    def get_position_by_symbol(self, symbol: str) -> Position | None:
        with self._lock:
            for position in self._positions.values():
                if position.symbol == symbol:
                    return copy.copy(position)
            return None

    def add_position(self, position: Position) -> None:
        """Track a newly opened position.

        Raises:
            ValueError: if the symbol is already tracked on the same venue.
        """
        with self._lock:
            for existing in self._positions.values():
                if existing.symbol == position.symbol and existing.exchange == position.exchange:
                    raise ValueError(
                        f"position_already_open: {position.exchange}:{position.symbol}"
                    )
            self._positions[position.id] = copy.copy(position)
            self._log_activity(
                "POSITION_OPENED",
                {
                    "symbol": position.symbol,
                    "side": position.side,
                    "size": position.size,
                    "entry_price": position.entry_price,
                },
                "success",
            )
        self._emit("position_opened", copy.copy(position))

    def update_position(self, position_id: str, **updates: Any) -> Position | None:
        with self._lock:
            position = self._positions.get(position_id)
            if position is None:
                return None
            updated = replace(position, **updates)
            self._positions[position_id] = updated
            return copy.copy(updated)

    def remove_position(self, position_id: str) -> Position | None:
        with self._lock:
            position = self._positions.pop(position_id, None)
            if position is None:
                return None
            pnl = position.realized_pnl
            self._log_activity(
                "POSITION_CLOSED",
                {"symbol": position.symbol, "side": position.side, "pnl": pnl},
                "success" if pnl and pnl > 0 else "warning",
            )
        self._emit("position_closed", copy.copy(position))
        return position

    # ---- signals ----

    def get_pending_signals(self) -> list[Signal]:
        with self._lock:
            return list(self._pending_signals)

    def add_signal(self, signal: Signal) -> None:
        with self._lock:
            self._pending_signals.append(signal)
            self._stats.total_signals += 1
            self._stats.last_signal_time = utc_now()
            self._log_activity(
                "SIGNAL_GENERATED",
                {"symbol": signal.symbol, "direction": signal.direction, "strategy": signal.strategy},
            )
        self._emit("signal_generated", signal)

    def mark_signal_executed(self, signal: Signal, details: dict[str, Any] | None = None) -> None:
        with self._lock:
            if signal in self._pending_signals:
                self._pending_signals.remove(signal)
            self._log_activity(
                "SIGNAL_EXECUTED",
                {"symbol": signal.symbol, "direction": signal.direction, **(details or {})},
                "success",
            )
        self._emit("signal_executed", {"signal": signal, **(details or {})})

    def clear_signals(self) -> None:
        with self._lock:
            self._pending_signals.clear()

    @property
    def last_signal_time(self) -> datetime | None:
        return self._stats.last_signal_time

    # ---- stats ----

    def get_session_stats(self) -> SessionStats:
        with self._lock:
            return replace(self._stats)

    def record_trade_result(self, success: bool, pnl: float, fees: float = 0.0) -> None:
        with self._lock:
            stats = self._stats
            if success:
                stats.successful_trades += 1
            else:
                stats.failed_trades += 1
            stats.executed_trades += 1
            stats.total_pnl += pnl
            stats.total_fees += fees
            self._trade_pnls.append(pnl)

            current = self._wallet_balance + stats.total_pnl
            stats.peak_balance = max(stats.peak_balance, current)
            stats.max_drawdown = max(stats.max_drawdown, stats.peak_balance - current)

    def get_trading_stats(self) -> TradingStats:
        with self._lock:
            pnls = list(self._trade_pnls)
            stats = self._stats
        wins = [p for p in pnls if p > 0]
        losses = [p for p in pnls if p <= 0]
        total = stats.successful_trades + stats.failed_trades
        gross_loss = abs(sum(losses))

        streak = 0
        for pnl in reversed(pnls):
            if streak >= 0 and pnl > 0:
                streak += 1
            elif streak <= 0 and pnl <= 0:
                streak -= 1
            else:
                break

        return TradingStats(
            total_trades=total,
            winning_trades=stats.successful_trades,
            losing_trades=stats.failed_trades,
            win_rate=stats.successful_trades / total * 100 if total else 0.0,
            total_pnl=stats.total_pnl,
            average_win=sum(wins) / len(wins) if wins else 0.0,
            average_loss=sum(losses) / len(losses) if losses else 0.0,
            profit_factor=sum(wins) / gross_loss if gross_loss else 0.0,
            max_drawdown=stats.max_drawdown,
            current_streak=streak,
            best_trade=max(pnls, default=0.0),
            worst_trade=min(pnls, default=0.0),
        )

    # ---- balances ----

    @property
    def wallet_balance(self) -> float:
        return self._wallet_balance

    def set_wallet_balance(self, balance: float) -> None:
        with self._lock:
            previous = self._wallet_balance
            self._wallet_balance = balance
            if balance > self._stats.peak_balance:
                self._stats.peak_balance = balance
        self._emit("balance_updated", {"previous_balance": previous, "new_balance": balance})

    @property
    def available_margin(self) -> float:
        return self._available_margin

    def set_available_margin(self, margin: float) -> None:
        with self._lock:
            self._available_margin = margin

    # ---- errors ----

    @property
    def last_error(self) -> str | None:
        return self._last_error

    @property
    def error_count(self) -> int:
        return self._error_count

    def set_error(self, message: str) -> None:
        with self._lock:
            self._last_error = message
            self._error_count += 1
            self._log_activity("ERROR", {"error": message}, "error")
        self._emit("error", {"error": message})

    def record_error(self, error: BaseException, context: str | None = None) -> None:
        self.set_error(f"{context}: {error}" if context else str(error))

    def clear_error(self) -> None:
        with self._lock:
            self._last_error = None

    # ---- uptime / summaries ----

    @property
    def start_time(self) -> datetime | None:
        return self._start_time

    def uptime_seconds(self) -> float:
        if self._start_time is None:
            return 0.0
        return (utc_now() - self._start_time).total_seconds()

    def uptime_formatted(self) -> str:
        seconds = int(self.uptime_seconds())
        minutes, hours, days = seconds // 60, seconds // 3600, seconds // 86400
        if days > 0:
            return f"{days}d {hours % 24}h {minutes % 60}m"
        if hours > 0:
            return f"{hours}h {minutes % 60}m {seconds % 60}s"
        if minutes > 0:
            return f"{minutes}m {seconds % 60}s"
        return f"{seconds}s"

    def get_system_status(self) -> SystemStatus:
        with self._lock:
            return SystemStatus(
                is_running=self._status == "running",
                uptime_sec=self.uptime_seconds(),
                active_positions=len(self._positions),
                pending_signals=len(self._pending_signals),
                last_signal_time=self._stats.last_signal_time,
                start_time=self._start_time,
            )

    def snapshot(self) -> StateSnapshot:
        with self._lock:
            return StateSnapshot(
                status=self._status,
                start_time=self._start_time,
                last_error=self._last_error,
                error_count=self._error_count,
                positions=self.get_active_positions(),
                pending_signals=list(self._pending_signals),
                session_stats=replace(self._stats),
                wallet_balance=self._wallet_balance,
                available_margin=self._available_margin,
            )

    def summary(self) -> dict[str, Any]:
        with self._lock:
            return {
                "status": self._status,
                "uptime": self.uptime_formatted(),
                "position_count": len(self._positions),
                "pending_signal_count": len(self._pending_signals),
                "error_count": self._error_count,
            }

    # ---- activity log ----

    def get_activity_log(self, count: int = 20) -> list[ActivityEntry]:
        with self._lock:
            return self._activity[:count]

    def clear_activity_log(self) -> None:
        with self._lock:
            self._activity.clear()

    def log_activity(
        self, event: str, details: dict[str, Any], level: ActivityLevel = "info"
    ) -> None:
        with self._lock:
            self._log_activity(event, details, level)

    def _log_activity(
        self, event: str, details: dict[str, Any], level: ActivityLevel = "info"
    ) -> None:
        entry = ActivityEntry(
            id=uuid.uuid4().hex[:12],
            timestamp=utc_now(),
            event=event,
            details=details,
            level=level,
        )
        self._activity.insert(0, entry)
        del self._activity[MAX_ACTIVITY_LOG:]

    # ---- events ----

    def subscribe(self, event_type: BotEventType, listener: BotEventListener) -> Callable[[], None]:
        """Register ``listener`` and return a callable that unregisters it."""
        with self._lock:
            self._listeners[event_type].append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners[event_type]:
                    self._listeners[event_type].remove(listener)

        return unsubscribe

    def _emit(self, event_type: BotEventType, data: Any) -> None:
        with self._lock:
            listeners = list(self._listeners[event_type])
        event = BotEvent(type=event_type, data=data)
        for listener in listeners:
            try:
                listener(event)
            except Exception as exc:  # noqa: BLE001 - listeners must not break state mutation.
                self._logger.warning("state_listener_failed", event_type=event_type, error=str(exc))

    # ---- shutdown record ----

    def get_shutdown_state(self) -> ShutdownState:
        with self._lock:
            state = self._shutdown
            return replace(
                state,
                positions_before_shutdown=list(state.positions_before_shutdown),
                positions_updated=list(state.positions_updated),
                errors=list(state.errors),
            )

    def initiate_shutdown(self, reason: str) -> None:
        with self._lock:
            self._shutdown = ShutdownState(
                is_shutting_down=True,
                shutdown_timestamp=utc_now(),
                shutdown_reason=reason,
                positions_before_shutdown=self.get_active_positions(),
            )
        self.set_status("stopping")

    def set_shutdown_positions_fetched(self, positions: list[Position]) -> None:
        with self._lock:
            self._shutdown.positions_before_shutdown = list(positions)
            self._shutdown.positions_fetched = True

    def add_shutdown_position_updated(
        self,
        position: Position,
        stop_loss: float | None = None,
        take_profit: float | None = None,
    ) -> None:
        with self._lock:
            self._shutdown.positions_updated.append(
                replace(
                    position,
                    stop_loss=stop_loss if stop_loss is not None else position.stop_loss,
                    take_profit=take_profit if take_profit is not None else position.take_profit,
                )
            )

    def add_shutdown_error(self, error: str) -> None:
        with self._lock:
            self._shutdown.errors.append(error)

    def complete_shutdown(self) -> None:
        with self._lock:
            self._shutdown.shutdown_complete = True
            self._shutdown.is_shutting_down = False
        self.set_status("idle")

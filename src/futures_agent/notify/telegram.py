"""Telegram notification channel.

Messages are queued and sent by one background worker at most 30 per second,
so callers never block on the Bot API. Delivery failures are logged only.
"""

from __future__ import annotations

import queue
import threading
import time
from typing import Protocol

import httpx

from futures_agent.state.bot_state import SystemStatus, TradingStats
from futures_agent.types import (
    CloseReason,
    EvaluatedSignal,
    ExecutionResult,
    Position,
    RiskLevels,
    utc_now,
)
from futures_agent.utils.logging import get_logger

TELEGRAM_API_URL = "https://api.telegram.org"
MAX_MESSAGES_PER_SECOND = 30
RULE = "-" * 28


class Notifier(Protocol):
    """Notification operations the engine and shutdown protocol consume."""

    def send_message(self, text: str) -> bool: ...

    def send_signal_alert(
        self, evaluated: EvaluatedSignal, levels: RiskLevels | None = None
    ) -> bool: ...

    def send_trade_alert(self, evaluated: EvaluatedSignal, result: ExecutionResult) -> bool: ...

    def send_position_closed_alert(
        self, position: Position, close_price: float, pnl: float, reason: CloseReason
    ) -> bool: ...

    def send_shutdown_alert(self, positions: list[Position]) -> bool: ...

    def send_error_alert(self, error: BaseException | str, context: str | None = None) -> bool: ...

    def flush(self, timeout: float = 5.0) -> bool: ...


def _money(value: float) -> str:
    return f"${value:,.2f}"


def format_signal_alert(evaluated: EvaluatedSignal, levels: RiskLevels | None = None) -> str:
    signal = evaluated.signal
    lines = [
        "SIGNAL DETECTED",
        RULE,
        f"Symbol: {signal.symbol}",
        f"Direction: {signal.direction}",
        f"Strategy: {signal.strategy}",
        f"Entry: {_money(signal.current_price)}",
    ]
    if levels is not None:
        lines += [f"TP: {_money(levels.take_profit_price)}", f"SL: {_money(levels.stop_loss_price)}"]
    lines += [f"EV Score: {evaluated.ev_score:.4f}", f"Kelly: {evaluated.kelly_score:.2f}", RULE]
    return "\n".join(lines)


def format_trade_alert(evaluated: EvaluatedSignal, result: ExecutionResult) -> str:
    signal = evaluated.signal
    lines = [
        "TRADE EXECUTED" if result.success else "TRADE FAILED",
        RULE,
        f"Exchange: {result.exchange}",
        f"Symbol: {signal.symbol}",
        f"Direction: {signal.direction}",
        f"Quantity: {result.quantity}",
        f"Entry: {_money(result.price or signal.current_price)}",
    ]
    if result.take_profit is not None:
        lines.append(f"TP: {_money(result.take_profit)}")
    if result.stop_loss is not None:
        lines.append(f"SL: {_money(result.stop_loss)}")
    lines += [f"EV Score: {evaluated.ev_score:.4f}", f"Kelly: {evaluated.kelly_score:.2f}"]
    if result.order_id:
        lines.append(f"Order ID: {result.order_id}")
    if not result.success:
        lines.append(f"Status: {result.status}")
        lines.append(f"Error: {result.message}")
    lines.append(RULE)
    return "\n".join(lines)


def format_position_closed_alert(
    position: Position, close_price: float, pnl: float, reason: CloseReason
) -> str:
    notional = position.entry_price * position.size
    pnl_pct = pnl / notional * 100 if notional else 0.0
    sign = "+" if pnl >= 0 else "-"
    return "\n".join(
        [
            "POSITION CLOSED",
            RULE,
            f"Symbol: {position.symbol}",
            f"Direction: {position.side}",
            f"Entry: {_money(position.entry_price)}",
            f"Exit: {_money(close_price)}",
            f"Reason: {reason.replace('_', ' ')}",
            RULE,
            f"PnL: {sign}{_money(abs(pnl))}",
            f"PnL %: {pnl_pct:+.2f}%",
            RULE,
        ]
    )


def format_shutdown_alert(positions: list[Position]) -> str:
    lines = [
        "SYSTEM SHUTDOWN ALERT",
        RULE,
        "Trading bot is shutting down",
        f"Time: {utc_now().isoformat(timespec='seconds')}",
        RULE,
        f"OPEN POSITIONS ({len(positions)})",
        RULE,
    ]
    if not positions:
        lines.append("No open positions")
    for i, p in enumerate(positions, start=1):
        pnl = p.unrealized_pnl or 0.0
        lines.append(f"{i}. {p.symbol} {p.side}")
        lines.append(f"   Entry: {_money(p.entry_price)} | Size: {p.size}")
        lines.append(f"   PnL: {pnl:+.2f}")
    lines += [RULE, "Please check your exchange for open positions!"]
    return "\n".join(lines)


def format_error_alert(error: BaseException | str, context: str | None = None) -> str:
    lines = ["ERROR ALERT", RULE, f"Time: {utc_now().isoformat(timespec='seconds')}"]
    if context:
        lines.append(f"Context: {context}")
    lines += [RULE, "Error:", str(error)[:500], RULE, "Please check logs for details"]
    return "\n".join(lines)


def format_status_update(stats: TradingStats, status: SystemStatus, uptime: str) -> str:
    return "\n".join(
        [
            "SYSTEM STATUS",
            RULE,
            f"Status: {'Running' if status.is_running else 'Stopped'}",
            f"Uptime: {uptime}",
            f"Active Positions: {status.active_positions}",
            f"Pending Signals: {status.pending_signals}",
            RULE,
            "TRADING STATS",
            RULE,
            f"Total Trades: {stats.total_trades}",
            f"Wins: {stats.winning_trades} | Losses: {stats.losing_trades}",
            f"Win Rate: {stats.win_rate:.2f}%",
            f"Total PnL: {_money(stats.total_pnl)}",
            f"Avg Win: {_money(stats.average_win)} | Avg Loss: {_money(stats.average_loss)}",
            f"Profit Factor: {stats.profit_factor:.2f}",
            f"Max Drawdown: {_money(stats.max_drawdown)}",
            f"Current Streak: {stats.current_streak:+d}",
            RULE,
        ]
    )


class TelegramNotifier:
    def __init__(
        self,
        bot_token: str,
        chat_id: str,
        *,
        timeout: float = 10.0,
        http_client: httpx.Client | None = None,
        max_per_second: int = MAX_MESSAGES_PER_SECOND,
    ) -> None:
        self._url = f"{TELEGRAM_API_URL}/bot{bot_token}/sendMessage"
        self._chat_id = chat_id
        self._http = http_client or httpx.Client(timeout=timeout)
        self._min_interval = 1.0 / max_per_second
        self._queue: queue.Queue[str] = queue.Queue()
        self._worker: threading.Thread | None = None
        self._worker_lock = threading.Lock()
        self._last_sent = 0.0
        self._logger = get_logger("futures_agent.notify.telegram")

    def send_message(self, text: str) -> bool:
        """Queue ``text`` for delivery; returns once it is enqueued."""
        self._ensure_worker()
        self._queue.put(text)
        return True

    def send_signal_alert(self, evaluated: EvaluatedSignal, levels: RiskLevels | None = None) -> bool:
        return self.send_message(format_signal_alert(evaluated, levels))

    def send_trade_alert(self, evaluated: EvaluatedSignal, result: ExecutionResult) -> bool:
        return self.send_message(format_trade_alert(evaluated, result))

    def send_position_closed_alert(
        self, position: Position, close_price: float, pnl: float, reason: CloseReason
    ) -> bool:
        return self.send_message(format_position_closed_alert(position, close_price, pnl, reason))

    def send_shutdown_alert(self, positions: list[Position]) -> bool:
        return self.send_message(format_shutdown_alert(positions))

    def send_error_alert(self, error: BaseException | str, context: str | None = None) -> bool:
        return self.send_message(format_error_alert(error, context))

    def send_status_update(self, stats: TradingStats, status: SystemStatus, uptime: str) -> bool:
        return self.send_message(format_status_update(stats, status, uptime))

    def flush(self, timeout: float = 5.0) -> bool:
        """Wait until every queued message has been attempted. False on timeout."""
        deadline = time.monotonic() + timeout
        while self._queue.unfinished_tasks:
            if time.monotonic() >= deadline:
                return False
            time.sleep(0.01)
        return True

    def close(self) -> None:
        self.flush()
        self._http.close()

    def _ensure_worker(self) -> None:
        with self._worker_lock:
            if self._worker is None or not self._worker.is_alive():
                self._worker = threading.Thread(
                    target=self._drain, name="telegram-notifier", daemon=True
                )
                self._worker.start()

    def _drain(self) -> None:
        while True:
            text = self._queue.get()
            try:
                wait = self._min_interval - (time.monotonic() - self._last_sent)
                if wait > 0:
                    time.sleep(wait)
                self._last_sent = time.monotonic()
                self._deliver(text)
            finally:
                self._queue.task_done()

    def _deliver(self, text: str) -> None:
        try:
            response = self._http.post(
                self._url,
                json={"chat_id": self._chat_id, "text": text, "disable_web_page_preview": True},
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            self._logger.warning("telegram_send_failed", error=str(exc), preview=text[:100])
            return
        self._logger.debug("telegram_message_sent", preview=text[:100])


class NullNotifier:
    """Stands in when Telegram is not configured; every send is dropped."""

    def send_message(self, text: str) -> bool:
        return False

    def send_signal_alert(self, evaluated: EvaluatedSignal, levels: RiskLevels | None = None) -> bool:
        return False

    def send_trade_alert(self, evaluated: EvaluatedSignal, result: ExecutionResult) -> bool:
        return False

    def send_position_closed_alert(
        self, position: Position, close_price: float, pnl: float, reason: CloseReason
    ) -> bool:
        return False

    def send_shutdown_alert(self, positions: list[Position]) -> bool:
        return False

    def send_error_alert(self, error: BaseException | str, context: str | None = None) -> bool:
        return False

    def send_status_update(self, stats: TradingStats, status: SystemStatus, uptime: str) -> bool:
        return False

    def flush(self, timeout: float = 5.0) -> bool:
        return True

"""Shutdown protocol that leaves every open position with venue-side TP/SL.

Once the process stops it can no longer watch prices, so on any shutdown
trigger the protocol re-prices each live position from fresh volatility and
pushes the protective levels to the venue before control returns.
"""

from __future__ import annotations

import signal as os_signal
import sys
import threading
import time
from dataclasses import dataclass, replace
from types import FrameType, TracebackType
from typing import Any

from tenacity import (
    Retrying,
    retry_if_exception,
    retry_if_exception_type,
    stop_after_attempt,
    wait_fixed,
)

from futures_agent.exchange.base import ExchangeError, VenuePosition
from futures_agent.exec.router import ExecutionRouter
from futures_agent.features.indicators import calculate_atr
from futures_agent.journal.store import JournalStore
from futures_agent.notify.telegram import NullNotifier, Notifier, RULE
from futures_agent.risk.physics import RiskPhysics
from futures_agent.state.bot_state import BotStateStore
from futures_agent.types import (
    ExchangeName,
    ExitMetadata,
    Position,
    ShutdownState,
    Signal,
    utc_now,
)
from futures_agent.utils.logging import get_logger, log_shutdown_event

MIN_EXIT_CANDLES = 15
MAX_NOTIFIED_ERRORS = 5
NOTIFIED_ERROR_CHARS = 50


@dataclass(frozen=True, slots=True)
class ImmortalExitConfig:
    exchange: ExchangeName = "bybit"
    tp_atr_multiplier: float = 2.0
    sl_atr_multiplier: float = 1.5
    max_retries: int = 3
    retry_delay_sec: float = 1.0
    kline_interval: str = "15m"
    kline_limit: int = 50
    change_threshold: float = 0.01


@dataclass(slots=True)
class ReevaluatedPosition:
    position: Position
    new_stop_loss: float
    new_take_profit: float
    old_stop_loss: float | None
    old_take_profit: float | None
    needs_update: bool
    error: str | None = None


class TpSlUpdateError(ExchangeError):
    def __init__(self, message: str, status: str) -> None:
        super().__init__(message)
        self.status = status


def _retryable(exc: BaseException) -> bool:
    return not (isinstance(exc, TpSlUpdateError) and exc.status == "NOT_SUPPORTED")


def _level_changed(old: float | None, new: float, threshold: float) -> bool:
    if not old:
        return True
    return abs(old - new) / old > threshold


class ImmortalExit:
    """Runs the shutdown sequence at most once per process."""

    def __init__(
        self,
        router: ExecutionRouter,
        state: BotStateStore,
        *,
        notifier: Notifier | None = None,
        risk: RiskPhysics | None = None,
        journal: JournalStore | None = None,
        config: ImmortalExitConfig | None = None,
        stop_event: threading.Event | None = None,
    ) -> None:
        self._router = router
        self._state = state
        self._notifier = notifier or NullNotifier()
        self._risk = risk or RiskPhysics()
        self._journal = journal
        self._config = config or ImmortalExitConfig()
        self.stop_event = stop_event or threading.Event()
        self._guard = threading.Lock()
        self._started = False
        self._requested_reason: str | None = None
        self._logger = get_logger("futures_agent.shutdown")

    @property
    def is_active(self) -> bool:
        return self._started

    @property
    def requested_reason(self) -> str | None:
        """Why a stop was requested through ``request_stop``, if it was."""
        return self._requested_reason

    def request_stop(self, reason: str) -> None:
        """Flag the stop without running the protocol.

        Safe inside a signal handler: it takes no locks, so the protocol itself
        runs later on the normal path via ``execute``.
        """
        if self._requested_reason is None:
            self._requested_reason = reason
        self.stop_event.set()

    def execute(self, reason: str = "Manual shutdown") -> ShutdownState:
        """Protect every open position, notify, and mark the shutdown complete.

        Never raises. A second call, concurrent or later, is a logged no-op.
        """
        with self._guard:
            if self._started:
                self._logger.warning("shutdown_already_in_progress", reason=reason)
                return self._state.get_shutdown_state()
            self._started = True

        started = time.monotonic()
        self.stop_event.set()
        self._state.initiate_shutdown(reason)
        log_shutdown_event(self._logger, step="initiated", reason=reason)

        try:
            positions = self.fetch_open_positions()
            self._state.set_shutdown_positions_fetched(positions)
            log_shutdown_event(self._logger, step="positions_fetched", count=len(positions))

            reevaluated = [self._reevaluate_isolated(p) for p in positions]

            updated: list[ReevaluatedPosition] = []
            for item in reevaluated:
                if not item.needs_update:
                    continue
                try:
                    self.update_position_on_exchange(
                        item.position, item.new_stop_loss, item.new_take_profit
                    )
                except Exception as exc:  # noqa: BLE001 - one position must not stop the rest.
                    item.error = str(exc)
                    self._state.add_shutdown_error(f"{item.position.symbol}: {exc}")
                    log_shutdown_event(
                        self._logger,
                        step="position_update",
                        success=False,
                        symbol=item.position.symbol,
                        error=str(exc),
                    )
                    continue
                self._state.add_shutdown_position_updated(
                    item.position, item.new_stop_loss, item.new_take_profit
                )
                updated.append(item)

            self.send_final_notification(updated)
            self._record_completion(positions, started)
        except Exception as exc:  # noqa: BLE001 - the protocol must always reach completion.
            self._logger.exception("shutdown_fatal_error", error=str(exc))
            self._state.add_shutdown_error(str(exc))
            self.send_final_notification([])
        finally:
            self._state.complete_shutdown()

        return self._state.get_shutdown_state()

    def fetch_open_positions(self) -> list[Position]:
        """Live positions from the venue, or the locally tracked ones after retries run out."""
        try:
            venue_positions = self._retrying(retry_if_exception_type(Exception))(
                self._router.get_positions, self._config.exchange
            )
        except Exception as exc:  # noqa: BLE001 - degraded connectivity falls back to local state.
            log_shutdown_event(
                self._logger, step="positions_fetch", success=False, error=str(exc), fallback="local"
            )
            return self._state.get_active_positions()
        return [self._to_position(vp, index) for index, vp in enumerate(venue_positions)]

    def reevaluate_position(self, position: Position) -> ReevaluatedPosition:
        """Recompute TP/SL from fresh 15m volatility.

        Raises:
            ValueError: when too few candles or no volatility are available.
        """
        candles = self._router.get_klines(
            position.symbol,
            self._config.kline_interval,
            self._config.kline_limit,
            self._config.exchange,
        )
        if len(candles) < MIN_EXIT_CANDLES:
            raise ValueError(f"Failed to fetch market data: {len(candles)} candles")
        atr = calculate_atr(candles, 14)
        current_price = candles[-1].close
        if atr <= 0 or current_price <= 0:
            raise ValueError("Failed to fetch market data: no volatility")

        exit_signal = Signal(
            symbol=position.symbol,
            strategy="IMMORTAL_EXIT",
            direction=position.side,
            win_probability=0.5,
            expected_move_pct=atr / current_price * 100,
            regime="RANGING",
            current_price=current_price,
            atr=atr,
            metadata=ExitMetadata(
                position_id=position.id,
                previous_take_profit=position.take_profit,
                previous_stop_loss=position.stop_loss,
            ),
        )
        levels = self._risk.calculate_tp_sl(
            exit_signal, self._config.tp_atr_multiplier, self._config.sl_atr_multiplier
        )
        threshold = self._config.change_threshold
        needs_update = _level_changed(
            position.stop_loss, levels.stop_loss_price, threshold
        ) or _level_changed(position.take_profit, levels.take_profit_price, threshold)

        return ReevaluatedPosition(
            position=replace(position, current_price=current_price),
            new_stop_loss=levels.stop_loss_price,
            new_take_profit=levels.take_profit_price,
            old_stop_loss=position.stop_loss,
            old_take_profit=position.take_profit,
            needs_update=needs_update,
        )

    def update_position_on_exchange(
        self, position: Position, stop_loss: float, take_profit: float
    ) -> None:
        def push() -> None:
            result = self._router.update_tp_sl(
                position.symbol,
                take_profit=take_profit,
                stop_loss=stop_loss,
                exchange=self._config.exchange,
            )
            if not result.success:
                raise TpSlUpdateError(result.message, result.status)

        self._retrying(retry_if_exception(_retryable))(push)
        log_shutdown_event(
            self._logger,
            step="position_updated",
            symbol=position.symbol,
            take_profit=take_profit,
            stop_loss=stop_loss,
        )

    def send_final_notification(self, updated: list[ReevaluatedPosition]) -> None:
        state = self._state.get_shutdown_state()
        lines = [
            "IMMORTAL EXIT PROTOCOL COMPLETE",
            RULE,
            f"Reason: {state.shutdown_reason}",
            RULE,
        ]
        if updated:
            lines.append(f"POSITIONS UPDATED ({len(updated)})")
            lines.append(RULE)
            for i, item in enumerate(updated, start=1):
                p = item.position
                lines.append(f"{i}. {p.symbol} {p.side}")
                lines.append(f"   Size: {p.size:.4f} | Entry: ${p.entry_price:,.2f}")
                lines.append(f"   TP: {_fmt_level(item.old_take_profit)} -> ${item.new_take_profit:,.2f}")
                lines.append(f"   SL: {_fmt_level(item.old_stop_loss)} -> ${item.new_stop_loss:,.2f}")
        elif not state.positions_before_shutdown:
            lines.append("No open positions to update")
        if state.errors:
            lines.append(RULE)
            lines.append(f"ERRORS ({len(state.errors)})")
            lines += [f"- {e[:NOTIFIED_ERROR_CHARS]}" for e in state.errors[:MAX_NOTIFIED_ERRORS]]
        lines += [RULE, "Exchange servers managing exits"]

        try:
            self._notifier.send_message("\n".join(lines))
            self._notifier.flush()
        except Exception as exc:  # noqa: BLE001 - notification is best effort.
            self._logger.warning("shutdown_notification_failed", error=str(exc))

    def bind_signals(self) -> None:
        """Route SIGINT and SIGTERM into ``request_stop`` and uncaught exceptions into ``execute``.

        The signal handler only sets the stop event; whoever owns the loop calls
        ``execute(requested_reason)`` once it has returned.
        """

        def on_signal(signum: int, frame: FrameType | None) -> None:
            self.request_stop(os_signal.Signals(signum).name)

        def on_uncaught(
            exc_type: type[BaseException],
            exc: BaseException,
            tb: TracebackType | None,
        ) -> None:
            self._logger.error("uncaught_exception", error=str(exc), exc_type=exc_type.__name__)
            self._state.log_activity("UNCAUGHT_EXCEPTION", {"error": str(exc)}, "error")
            self.execute(f"Uncaught Exception: {exc}")
            previous_hook(exc_type, exc, tb)

        def on_thread_exception(args: threading.ExceptHookArgs) -> None:
            self._logger.error("uncaught_thread_exception", error=str(args.exc_value))
            self.execute(f"Uncaught Thread Exception: {args.exc_value}")
            previous_thread_hook(args)

        previous_hook = sys.excepthook
        previous_thread_hook = threading.excepthook
        os_signal.signal(os_signal.SIGINT, on_signal)
        os_signal.signal(os_signal.SIGTERM, on_signal)
        sys.excepthook = on_uncaught
        threading.excepthook = on_thread_exception
        self._logger.info("shutdown_signals_bound")

    def _reevaluate_isolated(self, position: Position) -> ReevaluatedPosition:
        try:
            return self.reevaluate_position(position)
        except Exception as exc:  # noqa: BLE001 - per-position failures are recorded, not raised.
            self._state.add_shutdown_error(f"{position.symbol}: {exc}")
            log_shutdown_event(
                self._logger,
                step="position_reevaluate",
                success=False,
                symbol=position.symbol,
                error=str(exc),
            )
            return ReevaluatedPosition(
                position=position,
                new_stop_loss=position.stop_loss or 0.0,
                new_take_profit=position.take_profit or 0.0,
                old_stop_loss=position.stop_loss,
                old_take_profit=position.take_profit,
                needs_update=False,
                error=str(exc),
            )

    def _retrying(self, retry: Any) -> Retrying:
        return Retrying(
            retry=retry,
            stop=stop_after_attempt(self._config.max_retries),
            wait=wait_fixed(self._config.retry_delay_sec),
            reraise=True,
        )

    def _to_position(self, venue: VenuePosition, index: int) -> Position:
        # keep the local id and levels when the venue omits them
        local = self._state.get_position_by_symbol(venue.symbol)
        leverage = venue.leverage or 1
        stop_loss = venue.stop_loss
        take_profit = venue.take_profit
        if local is not None:
            stop_loss = stop_loss if stop_loss is not None else local.stop_loss
            take_profit = take_profit if take_profit is not None else local.take_profit
        return Position(
            id=local.id if local else f"{venue.symbol}-{int(time.time() * 1000)}-{index}",
            symbol=venue.symbol,
            exchange=self._config.exchange,
            side=venue.side,
            size=venue.size,
            entry_price=venue.entry_price,
            leverage=leverage,
            margin=venue.size * venue.entry_price / leverage,
            current_price=venue.entry_price,
            unrealized_pnl=venue.unrealized_pnl,
            stop_loss=stop_loss,
            take_profit=take_profit,
            opened_at=local.opened_at if local else utc_now(),
            signal_id=local.signal_id if local else None,
        )

    def _record_completion(self, positions: list[Position], started: float) -> None:
        state = self._state.get_shutdown_state()
        summary = {
            "reason": state.shutdown_reason,
            "positions": len(positions),
            "positions_updated": len(state.positions_updated),
            "errors": len(state.errors),
            "duration_sec": round(time.monotonic() - started, 3),
        }
        self._state.log_activity("IMMORTAL_EXIT_COMPLETE", summary, "warning")
        if self._journal is not None:
            self._journal.append("shutdown", summary)
        log_shutdown_event(self._logger, step="complete", **summary)


def _fmt_level(value: float | None) -> str:
    return f"${value:,.2f}" if value else "N/A"

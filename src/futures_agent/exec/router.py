"""Execution router: the single path from a sized trade idea to a venue order."""

from __future__ import annotations

import uuid
from collections.abc import Callable, Mapping
from dataclasses import dataclass

from futures_agent.exchange.base import (
    ExchangeClient,
    InstrumentInfo,
    OrderRequest,
    SupportsTradingStop,
    VenuePosition,
)
from futures_agent.features.market_math import round_to_qty_step, round_to_tick_size
from futures_agent.risk.physics import RiskPhysics
from futures_agent.types import (
    Candle,
    Direction,
    EvaluatedSignal,
    ExchangeName,
    ExecutionResult,
    OrderBook,
    PositionSizing,
    RiskLevels,
    RiskPhysicsSummary,
    Trade,
    TradeValidation,
)
from futures_agent.utils.logging import get_logger, log_order_execution, log_risk_event

MAINTENANCE_MARGIN_FACTOR = 0.9
FALLBACK_INSTRUMENT = InstrumentInfo(symbol="", tick_size=0.01, qty_step=0.001, min_notional=5.0)

_VENUE_LABELS: dict[str, str] = {"bybit": "Bybit", "mexc": "MEXC"}


@dataclass(frozen=True, slots=True)
class RouterConfig:
    exchange: ExchangeName = "bybit"
    max_leverage: int = 10
    max_capital_per_trade: float = 15.0
    min_capital_required: float = 5.0


@dataclass(frozen=True, slots=True)
class TradeRequest:
    """A trade to route. Levels and sizing are computed by the router when omitted."""

    symbol: str
    direction: Direction
    entry_price: float
    atr: float
    wallet_balance: float
    leverage: int | None = None
    levels: RiskLevels | None = None
    sizing: PositionSizing | None = None
    signal: EvaluatedSignal | None = None


def _order_side(direction: Direction) -> str:
    return "BUY" if direction == "LONG" else "SELL"


def liquidation_price(entry_price: float, direction: Direction, leverage: int) -> float:
    """Rough isolated-margin liquidation estimate."""
    if direction == "LONG":
        return entry_price * (1 - MAINTENANCE_MARGIN_FACTOR / leverage)
    return entry_price * (1 + MAINTENANCE_MARGIN_FACTOR / leverage)


class ExecutionRouter:
    """Routes orders to the configured venue and maps every outcome to ``ExecutionResult``.

    Execution calls never raise: business rejections come back as
    ``status="REJECTED"`` and venue failures as ``status="ERROR"``.
    Read-only queries (positions, balance, market data) propagate venue errors.
    """

    def __init__(
        self,
        clients: Mapping[ExchangeName, ExchangeClient],
        config: RouterConfig | None = None,
        risk: RiskPhysics | None = None,
    ) -> None:
        self._clients = dict(clients)
        self._config = config or RouterConfig()
        self._risk = risk or RiskPhysics()
        self._instruments: dict[tuple[ExchangeName, str], InstrumentInfo] = {}
        self._logger = get_logger("futures_agent.exec.router")

    @property
    def config(self) -> RouterConfig:
        return self._config

    @property
    def default_exchange(self) -> ExchangeName:
        return self._config.exchange

    def get_client(self, exchange: ExchangeName | None = None) -> ExchangeClient:
        venue = exchange or self._config.exchange
        client = self._clients.get(venue)
        if client is None:
            raise ValueError(f"{_VENUE_LABELS.get(venue, venue)} client not configured")
        return client

    # ---- instrument precision ----

    def get_instrument_info(self, symbol: str, exchange: ExchangeName | None = None) -> InstrumentInfo:
        """Cached per (venue, symbol); lookup failures fall back to permissive defaults uncached."""
        venue = exchange or self._config.exchange
        key = (venue, symbol)
        cached = self._instruments.get(key)
        if cached is not None:
            return cached
        try:
            info = self.get_client(venue).get_instrument_info(symbol)
        except Exception as exc:  # noqa: BLE001 - precision lookup degrades to defaults.
            self._logger.warning(
                "instrument_info_fallback", exchange=venue, symbol=symbol, error=str(exc)
            )
            return InstrumentInfo(
                symbol=symbol,
                tick_size=FALLBACK_INSTRUMENT.tick_size,
                qty_step=FALLBACK_INSTRUMENT.qty_step,
                min_notional=FALLBACK_INSTRUMENT.min_notional,
            )
        self._instruments[key] = info
        return info

    def initialize_cache(self, symbols: list[str], exchange: ExchangeName | None = None) -> None:
        for symbol in symbols:
            self.get_instrument_info(symbol, exchange)

    def cached_instruments(self) -> dict[tuple[ExchangeName, str], InstrumentInfo]:
        return dict(self._instruments)

    # ---- risk physics ----

    def calculate_risk_physics(
        self, request: TradeRequest, qty_step: float | None = None
    ) -> tuple[RiskLevels, PositionSizing, RiskPhysicsSummary, TradeValidation]:
        """Levels, size and validation for a request.

        Raises:
            ValueError: when the entry price or ATR cannot anchor the levels.
        """
        levels = request.levels or self._risk.calculate_levels(
            request.entry_price, request.atr, request.direction
        )
        if request.sizing is not None:
            sizing = request.sizing
        else:
            if qty_step is None:
                qty_step = self.get_instrument_info(request.symbol).qty_step
            sizing = self._risk.calculate_position_size(request.entry_price, levels, qty_step)
        leverage = request.leverage or sizing.leverage

        validation = self._risk.validate_trade(request.signal, levels, sizing)
        quantity = sizing.quantity
        position_value = quantity * request.entry_price

        cap = self._config.max_capital_per_trade
        if position_value > cap:
            quantity = cap / request.entry_price
            position_value = cap
            validation.warnings.append(f"Position size scaled down to {cap} USDT max")
        if quantity <= 0:
            validation.errors.append("Position size must be positive")
        if leverage > self._config.max_leverage:
            validation.errors.append(
                f"Leverage ({leverage}x) exceeds maximum ({self._config.max_leverage}x)"
            )

        margin = position_value / leverage if leverage > 0 else position_value
        if margin > request.wallet_balance:
            validation.errors.append(
                f"Margin required ({margin:.2f} USDT) exceeds wallet balance "
                f"({request.wallet_balance:.2f} USDT)"
            )
        validation.valid = not validation.errors

        sizing = PositionSizing(
            capital=sizing.capital,
            position_size=position_value,
            quantity=quantity,
            leverage=leverage,
        )
        summary = RiskPhysicsSummary(
            levels=levels,
            position_value=position_value,
            margin=margin,
            leverage=leverage,
            liquidation_price=liquidation_price(request.entry_price, request.direction, leverage),
            warnings=tuple(validation.warnings),
        )
        return levels, sizing, summary, validation

    # ---- execution ----

    def execute_trade(
        self,
        request: TradeRequest,
        *,
        should_abort: Callable[[], bool] | None = None,
    ) -> ExecutionResult:
        """Size, validate, round and submit one market order.

        ``should_abort`` is polled right before submission; when it answers True
        nothing is sent and the result is ``CANCELLED``.
        """
        exchange = self._config.exchange
        side = _order_side(request.direction)
        info = self.get_instrument_info(request.symbol, exchange)

        try:
            levels, sizing, summary, validation = self.calculate_risk_physics(
                request, info.qty_step
            )
        except ValueError as exc:
            return self._result(
                exchange, request.symbol, side, 0.0, "REJECTED",
                f"Risk validation failed: {exc}",
            )

        if not validation.valid:
            log_risk_event(
                self._logger,
                event_type="trade_rejected",
                action="skip",
                symbol=request.symbol,
                errors=validation.errors,
            )
            return self._result(
                exchange, request.symbol, side, sizing.quantity, "REJECTED",
                f"Risk validation failed: {', '.join(validation.errors)}",
                risk_physics=summary,
            )

        quantity = round_to_qty_step(sizing.quantity, info.qty_step, "down")
        price = round_to_tick_size(request.entry_price, info.tick_size)
        take_profit = round_to_tick_size(levels.take_profit_price, info.tick_size)
        stop_loss = round_to_tick_size(levels.stop_loss_price, info.tick_size)

        notional = quantity * price
        if notional < info.min_notional:
            return self._result(
                exchange, request.symbol, side, quantity, "REJECTED",
                f"Notional value ({notional:.2f} USDT) below minimum ({info.min_notional} USDT)",
                risk_physics=summary,
            )
        if notional < self._config.min_capital_required:
            return self._result(
                exchange, request.symbol, side, quantity, "REJECTED",
                f"Trade value ({notional:.2f} USDT) below minimum capital requirement "
                f"({self._config.min_capital_required} USDT)",
                risk_physics=summary,
            )

        label = _VENUE_LABELS[exchange]
        try:
            client = self.get_client(exchange)
            client.set_leverage(request.symbol, sizing.leverage)
            if should_abort is not None and should_abort():
                return self._result(
                    exchange, request.symbol, side, quantity, "CANCELLED",
                    "Order not submitted: shutdown in progress",
                    risk_physics=summary,
                )
            ack = client.place_order(
                OrderRequest(
                    symbol=request.symbol,
                    side=side,
                    quantity=quantity,
                    take_profit=take_profit,
                    stop_loss=stop_loss,
                    client_order_id=f"fa-{uuid.uuid4().hex[:24]}",
                )
            )
        except Exception as exc:  # noqa: BLE001 - venue failures become ERROR results.
            return self._result(
                exchange, request.symbol, side, quantity, "ERROR",
                f"{label} order error: {exc}",
                risk_physics=summary,
            )

        return self._result(
            exchange, request.symbol, side, ack.quantity, ack.status,
            f"Order placed successfully on {label}",
            success=True,
            price=ack.price or price,
            take_profit=take_profit,
            stop_loss=stop_loss,
            order_id=ack.order_id,
            order_link_id=ack.order_link_id,
            risk_physics=summary,
        )

    def close_position(
        self,
        symbol: str,
        exchange: ExchangeName | None = None,
        quantity: float | None = None,
    ) -> ExecutionResult:
        """Flatten the venue position with an opposite-side reduce-only market order."""
        venue = exchange or self._config.exchange
        try:
            client = self.get_client(venue)
            position = next((p for p in client.get_positions(symbol) if p.symbol == symbol), None)
            if position is None or position.size == 0:
                return self._result(
                    venue, symbol, "SELL", 0.0, "REJECTED", "No position found for symbol"
                )
            side = "SELL" if position.side == "LONG" else "BUY"
            close_qty = quantity or position.size
            ack = client.place_order(
                OrderRequest(symbol=symbol, side=side, quantity=close_qty, reduce_only=True)
            )
        except Exception as exc:  # noqa: BLE001 - venue failures become ERROR results.
            return self._result(
                venue, symbol, "SELL", 0.0, "ERROR", f"Position close error: {exc}"
            )
        return self._result(
            venue, symbol, side, close_qty, ack.status, "Position closed successfully",
            success=True,
            order_id=ack.order_id,
            order_link_id=ack.order_link_id,
        )

    def update_tp_sl(
        self,
        symbol: str,
        take_profit: float | None = None,
        stop_loss: float | None = None,
        exchange: ExchangeName | None = None,
    ) -> ExecutionResult:
        """Replace position TP/SL; venues without native support answer ``NOT_SUPPORTED``."""
        venue = exchange or self._config.exchange
        try:
            client = self.get_client(venue)
            if not isinstance(client, SupportsTradingStop):
                return self._result(
                    venue, symbol, "", 0.0, "NOT_SUPPORTED",
                    f"{_VENUE_LABELS[venue]} TP/SL update requires separate orders",
                    log=False,
                )
            client.set_trading_stop(symbol, take_profit=take_profit, stop_loss=stop_loss)
        except Exception as exc:  # noqa: BLE001 - venue failures become ERROR results.
            return self._result(
                venue, symbol, "", 0.0, "ERROR", f"TP/SL update error: {exc}", log=False
            )
        self._logger.info(
            "tp_sl_updated", exchange=venue, symbol=symbol, take_profit=take_profit, stop_loss=stop_loss
        )
        return self._result(
            venue, symbol, "", 0.0, "UPDATED", "TP/SL updated successfully",
            success=True,
            take_profit=take_profit,
            stop_loss=stop_loss,
            log=False,
        )

    # ---- queries ----

    def get_positions(self, exchange: ExchangeName | None = None) -> list[VenuePosition]:
        return [p for p in self.get_client(exchange).get_positions() if p.size != 0]

    def get_balance(self, exchange: ExchangeName | None = None) -> float:
        return self.get_client(exchange).get_balance()

    def get_klines(
        self, symbol: str, interval: str, limit: int, exchange: ExchangeName | None = None
    ) -> list[Candle]:
        return self.get_client(exchange).get_klines(symbol, interval, limit)

    def get_orderbook(
        self, symbol: str, depth: int, exchange: ExchangeName | None = None
    ) -> OrderBook:
        return self.get_client(exchange).get_orderbook(symbol, depth)

    def get_recent_trades(
        self, symbol: str, limit: int, exchange: ExchangeName | None = None
    ) -> list[Trade]:
        return self.get_client(exchange).get_recent_trades(symbol, limit)

    def _result(
        self,
        exchange: ExchangeName,
        symbol: str,
        side: str,
        quantity: float,
        status: str,
        message: str,
        *,
        success: bool = False,
        log: bool = True,
        **extra: object,
    ) -> ExecutionResult:
        result = ExecutionResult(
            success=success,
            exchange=exchange,
            symbol=symbol,
            side=side,
            type="MARKET",
            quantity=quantity,
            status=status,
            message=message,
            **extra,  # type: ignore[arg-type]
        )
        if log:
            log_order_execution(
                self._logger,
                exchange=exchange,
                symbol=symbol,
                side=side,
                quantity=quantity,
                price=result.price,
                order_id=result.order_id,
                status=status,
                message=message,
            )
        return result

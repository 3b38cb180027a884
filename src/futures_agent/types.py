"""Shared domain types for the futures trading agent."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Literal

Direction = Literal["LONG", "SHORT"]
ExchangeName = Literal["bybit", "mexc"]
Regime = Literal["TRENDING", "RANGING"]
VolatilityState = Literal["LOW", "NORMAL", "HIGH"]
StrategyTag = Literal["MOMENTUM", "WHALE_FLOW", "ORDER_BLOCK", "IMMORTAL_EXIT"]
PositionStatus = Literal["open", "closed", "liquidated"]
CloseReason = Literal["TAKE_PROFIT", "STOP_LOSS", "MANUAL", "SIGNAL"]


def utc_now() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True, slots=True)
class Candle:
    """One OHLCV bar. Timestamp is the bar open time in epoch milliseconds."""

    timestamp: int
    open: float
    high: float
    low: float
    close: float
    volume: float


@dataclass(frozen=True, slots=True)
class OrderBookLevel:
    price: float
    quantity: float


@dataclass(frozen=True, slots=True)
class OrderBook:
    """Top-of-book snapshot, revalidated every cycle."""

    symbol: str
    exchange: ExchangeName
    bids: list[OrderBookLevel]
    asks: list[OrderBookLevel]
    timestamp: int

    @property
    def best_bid(self) -> float | None:
        return self.bids[0].price if self.bids else None

    @property
    def best_ask(self) -> float | None:
        return self.asks[0].price if self.asks else None


@dataclass(frozen=True, slots=True)
class Trade:
    """A public trade print used by the whale and imbalance detectors."""

    price: float
    quantity: float
    side: Literal["BUY", "SELL"]
    timestamp: int

    @property
    def notional(self) -> float:
        return self.price * self.quantity


@dataclass(frozen=True, slots=True)
class RegimeMetadata:
    hurst: float
    trend_strength: float
    volatility_state: VolatilityState
    vpoc: float
    value_area_high: float
    value_area_low: float
    signal_strength: float
    kind: Literal["regime"] = "regime"


@dataclass(frozen=True, slots=True)
class WhaleFlowMetadata:
    buy_pressure: float
    sell_pressure: float
    imbalance: float
    whale_trades: int
    kind: Literal["whale_flow"] = "whale_flow"


@dataclass(frozen=True, slots=True)
class OrderBlockMetadata:
    block_type: Literal["BULLISH", "BEARISH"]
    block_low: float
    block_high: float
    block_timestamp: int
    kind: Literal["order_block"] = "order_block"


@dataclass(frozen=True, slots=True)
class ExitMetadata:
    position_id: str
    previous_take_profit: float | None
    previous_stop_loss: float | None
    kind: Literal["exit"] = "exit"


SignalMetadata = RegimeMetadata | WhaleFlowMetadata | OrderBlockMetadata | ExitMetadata


@dataclass(frozen=True, slots=True)
class Signal:
    """A candidate trade idea produced by a signal source."""

    symbol: str
    strategy: StrategyTag
    direction: Direction
    win_probability: float
    expected_move_pct: float
    regime: Regime
    current_price: float
    atr: float
    timestamp: datetime = field(default_factory=utc_now)
    metadata: SignalMetadata | None = None


@dataclass(frozen=True, slots=True)
class EvaluatedSignal:
    """A signal enriched with fee/spread-adjusted economics."""

    signal: Signal
    spread_penalty: float
    gross_roi: float
    round_trip_fees: float
    net_roi: float
    ev_score: float
    kelly_score: float
    reward_to_risk: float
    risk_pct: float

    @property
    def symbol(self) -> str:
        return self.signal.symbol

    @property
    def direction(self) -> Direction:
        return self.signal.direction

    @property
    def rank_score(self) -> float:
        return 0.6 * self.ev_score + 0.4 * (self.kelly_score * 100)


@dataclass(frozen=True, slots=True)
class RiskLevels:
    entry_price: float
    take_profit_price: float
    stop_loss_price: float
    break_even_price: float
    risk_reward_ratio: float
    atr_multiplier: float


@dataclass(frozen=True, slots=True)
class PositionSizing:
    capital: float
    position_size: float
    quantity: float
    leverage: int


@dataclass(slots=True)
class TradeValidation:
    valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class TrailingStop:
    activation_price: float
    trail_distance: float


@dataclass(slots=True)
class Position:
    """Authoritative record of a live or closed trade."""

    id: str
    symbol: str
    exchange: ExchangeName
    side: Direction
    size: float
    entry_price: float
    leverage: int
    margin: float
    current_price: float | None = None
    unrealized_pnl: float | None = None
    realized_pnl: float | None = None
    stop_loss: float | None = None
    take_profit: float | None = None
    status: PositionStatus = "open"
    opened_at: datetime = field(default_factory=utc_now)
    closed_at: datetime | None = None
    signal_id: str | None = None


@dataclass(slots=True)
class SessionStats:
    total_signals: int = 0
    executed_trades: int = 0
    successful_trades: int = 0
    failed_trades: int = 0
    total_pnl: float = 0.0
    total_fees: float = 0.0
    max_drawdown: float = 0.0
    peak_balance: float = 0.0
    last_signal_time: datetime | None = None


@dataclass(slots=True)
class ShutdownState:
    is_shutting_down: bool = False
    shutdown_timestamp: datetime | None = None
    shutdown_reason: str | None = None
    positions_before_shutdown: list[Position] = field(default_factory=list)
    positions_fetched: bool = False
    positions_updated: list[Position] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    shutdown_complete: bool = False


@dataclass(frozen=True, slots=True)
class RiskPhysicsSummary:
    """Risk figures attached to an execution result."""

    levels: RiskLevels
    position_value: float
    margin: float
    leverage: int
    liquidation_price: float
    warnings: tuple[str, ...] = ()


@dataclass(slots=True)
class ExecutionResult:
    """Uniform outcome of every router call."""

    success: bool
    exchange: ExchangeName
    symbol: str
    side: str
    type: str
    quantity: float
    status: str
    message: str
    price: float | None = None
    take_profit: float | None = None
    stop_loss: float | None = None
    order_id: str | None = None
    order_link_id: str | None = None
    risk_physics: RiskPhysicsSummary | None = None
    timestamp: datetime = field(default_factory=utc_now)


@dataclass(frozen=True, slots=True)
class ActivityEntry:
    id: str
    timestamp: datetime
    event: str
    details: dict[str, object]
    level: Literal["info", "success", "warning", "error"] = "info"


@dataclass(slots=True)
class CycleResult:
    """Outcome of one engine cycle."""

    status: str
    signals: int = 0
    evaluated: list[dict[str, object]] = field(default_factory=list)
    orders: list[dict[str, object]] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    elapsed_ms: float = 0.0

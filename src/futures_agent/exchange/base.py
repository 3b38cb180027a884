"""Venue client contract shared by the Bybit and MEXC REST clients."""

from __future__ import annotations

import hashlib
import hmac
import time
from dataclasses import dataclass
from typing import Any, Literal, Protocol, runtime_checkable

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_fixed

from futures_agent.types import Candle, Direction, ExchangeName, OrderBook, Trade
from futures_agent.utils.logging import get_logger

OrderSide = Literal["BUY", "SELL"]


class ExchangeError(Exception):
    """Base venue error."""


class ExchangeTransportError(ExchangeError):
    """Raised when the HTTP request itself fails."""


class ExchangeAPIError(ExchangeError):
    """Raised when the venue answers with an error code."""

    def __init__(self, message: str, code: int | str | None = None) -> None:
        super().__init__(message)
        self.code = code


@dataclass(frozen=True, slots=True)
class InstrumentInfo:
    symbol: str
    tick_size: float
    qty_step: float
    min_notional: float
    min_qty: float = 0.0
    max_qty: float = float("inf")


@dataclass(frozen=True, slots=True)
class OrderRequest:
    symbol: str
    side: OrderSide
    quantity: float
    order_type: Literal["MARKET"] = "MARKET"
    take_profit: float | None = None
    stop_loss: float | None = None
    reduce_only: bool = False
    client_order_id: str | None = None


@dataclass(frozen=True, slots=True)
class OrderAck:
    order_id: str
    symbol: str
    side: OrderSide
    quantity: float
    status: str
    order_link_id: str | None = None
    price: float | None = None


@dataclass(frozen=True, slots=True)
class VenuePosition:
    symbol: str
    side: Direction
    size: float
    entry_price: float
    unrealized_pnl: float = 0.0
    leverage: int = 1
    take_profit: float | None = None
    stop_loss: float | None = None


@runtime_checkable
class ExchangeClient(Protocol):
    """Operations the core consumes from every venue."""

    name: ExchangeName

    def get_klines(self, symbol: str, interval: str, limit: int) -> list[Candle]: ...

    def get_orderbook(self, symbol: str, depth: int) -> OrderBook: ...

    def get_recent_trades(self, symbol: str, limit: int) -> list[Trade]: ...

    def get_instrument_info(self, symbol: str) -> InstrumentInfo: ...

    def place_order(self, request: OrderRequest) -> OrderAck: ...

    def get_positions(self, symbol: str | None = None) -> list[VenuePosition]: ...

    def get_balance(self) -> float: ...

    def set_leverage(self, symbol: str, leverage: int) -> None: ...


@runtime_checkable
class SupportsTradingStop(Protocol):
    """Venues that can attach TP/SL to an open position in one call."""

    def set_trading_stop(
        self,
        symbol: str,
        take_profit: float | None = None,
        stop_loss: float | None = None,
    ) -> None: ...


def hmac_sha256(secret: str, payload: str) -> str:
    return hmac.new(secret.encode(), payload.encode(), hashlib.sha256).hexdigest()


def timestamp_ms() -> int:
    return int(time.time() * 1000)


def to_float(value: Any, default: float = 0.0) -> float:
    """Parse venue numeric strings, treating blanks as ``default``."""
    if value is None or value == "":
        return default
    return float(value)


class RestExchangeClient:
    """httpx transport shared by the signed venue clients.

    Subclasses implement ``_prepare`` (signing) and ``_unwrap`` (venue
    error envelope). Read-only calls go through ``_get`` and are retried on
    transport failures; writes use ``_request`` directly and are never retried.
    """

    name: ExchangeName

    def __init__(
        self,
        api_key: str,
        api_secret: str,
        *,
        base_url: str,
        timeout: float = 10.0,
        recv_window: int = 5000,
        http_client: httpx.Client | None = None,
    ) -> None:
        self._api_key = api_key
        self._api_secret = api_secret
        self._base_url = base_url.rstrip("/")
        self._recv_window = recv_window
        self._http = http_client or httpx.Client(timeout=timeout)
        self._logger = get_logger(f"futures_agent.exchange.{self.name}")

    def close(self) -> None:
        self._http.close()

    @retry(
        retry=retry_if_exception_type(ExchangeTransportError),
        wait=wait_fixed(1),
        stop=stop_after_attempt(3),
        reraise=True,
    )
    def _get(self, path: str, params: dict[str, Any] | None = None, *, signed: bool = False) -> Any:
        return self._request("GET", path, params=params, signed=signed)

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        body: dict[str, Any] | None = None,
        signed: bool = False,
    ) -> Any:
        clean_params = {k: v for k, v in (params or {}).items() if v is not None}
        clean_body = {k: v for k, v in (body or {}).items() if v is not None}
        url, headers, content = self._prepare(method, path, clean_params, clean_body, signed)
        try:
            response = self._http.request(method, url, headers=headers, content=content)
            if response.is_server_error:
                response.raise_for_status()
        except (httpx.HTTPError, httpx.TimeoutException) as exc:
            self._logger.warning("venue_request_failed", method=method, path=path, error=str(exc))
            raise ExchangeTransportError(f"{self.name} {method} {path}: {exc}") from exc
        if response.is_client_error:
            raise ExchangeAPIError(
                f"{self.name} API error: HTTP {response.status_code} - {response.text[:200]}",
                code=response.status_code,
            )
        return self._unwrap(response.json())

    def _prepare(
        self,
        method: str,
        path: str,
        params: dict[str, Any],
        body: dict[str, Any],
        signed: bool,
    ) -> tuple[str, dict[str, str], bytes | None]:
        raise NotImplementedError

    def _unwrap(self, payload: Any) -> Any:
        raise NotImplementedError

    def _require_credentials(self) -> None:
        if not self._api_key or not self._api_secret:
            raise ExchangeAPIError(f"missing_{self.name}_api_credentials")

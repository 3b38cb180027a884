"""Bybit V5 linear-perpetual REST client."""

from __future__ import annotations

import json
from decimal import Decimal
from typing import Any
from urllib.parse import urlencode

import httpx

from futures_agent.exchange.base import (
    ExchangeAPIError,
    InstrumentInfo,
    OrderAck,
    OrderRequest,
    RestExchangeClient,
    VenuePosition,
    hmac_sha256,
    timestamp_ms,
    to_float,
)
from futures_agent.types import Candle, OrderBook, OrderBookLevel, Trade

BYBIT_MAINNET_URL = "https://api.bybit.com"
BYBIT_TESTNET_URL = "https://api-testnet.bybit.com"
LEVERAGE_NOT_MODIFIED = 110043
_CATEGORY = "linear"

_INTERVAL_MAP = {
    "1m": "1",
    "3m": "3",
    "5m": "5",
    "15m": "15",
    "30m": "30",
    "1h": "60",
    "2h": "120",
    "4h": "240",
    "6h": "360",
    "12h": "720",
    "1d": "D",
    "1w": "W",
}


class BybitClient(RestExchangeClient):
    """Signed client for the operations the router and shutdown protocol use."""

    name = "bybit"

    def __init__(
        self,
        api_key: str,
        api_secret: str,
        *,
        testnet: bool = False,
        timeout: float = 10.0,
        recv_window: int = 5000,
        http_client: httpx.Client | None = None,
    ) -> None:
        super().__init__(
            api_key,
            api_secret,
            base_url=BYBIT_TESTNET_URL if testnet else BYBIT_MAINNET_URL,
            timeout=timeout,
            recv_window=recv_window,
            http_client=http_client,
        )
        self._leverage_set: dict[str, int] = {}

    # ---- market data ----

    def get_klines(self, symbol: str, interval: str, limit: int) -> list[Candle]:
        resolved = _INTERVAL_MAP.get(interval.lower())
        if resolved is None:
            raise ValueError(f"unsupported_interval: {interval}")
        result = self._get(
            "/v5/market/kline",
            {"category": _CATEGORY, "symbol": symbol, "interval": resolved, "limit": limit},
        )
        rows = result.get("list") or []
        # newest first on the wire
        return [
            Candle(
                timestamp=int(row[0]),
                open=float(row[1]),
                high=float(row[2]),
                low=float(row[3]),
                close=float(row[4]),
                volume=float(row[5]),
            )
            for row in reversed(rows)
        ]

    def get_orderbook(self, symbol: str, depth: int) -> OrderBook:
        result = self._get(
            "/v5/market/orderbook",
            {"category": _CATEGORY, "symbol": symbol, "limit": depth},
        )
        return OrderBook(
            symbol=symbol,
            exchange="bybit",
            bids=[OrderBookLevel(float(p), float(q)) for p, q in result.get("b") or []],
            asks=[OrderBookLevel(float(p), float(q)) for p, q in result.get("a") or []],
            timestamp=int(result.get("ts") or timestamp_ms()),
        )

    def get_recent_trades(self, symbol: str, limit: int) -> list[Trade]:
        result = self._get(
            "/v5/market/recent-trade",
            {"category": _CATEGORY, "symbol": symbol, "limit": limit},
        )
        trades = [
            Trade(
                price=float(row["price"]),
                quantity=float(row["size"]),
                side="BUY" if row.get("side") == "Buy" else "SELL",
                timestamp=int(row["time"]),
            )
            for row in result.get("list") or []
        ]
        trades.sort(key=lambda t: t.timestamp)
        return trades

    def get_instrument_info(self, symbol: str) -> InstrumentInfo:
        result = self._get(
            "/v5/market/instruments-info",
            {"category": _CATEGORY, "symbol": symbol},
        )
        rows = result.get("list") or []
        if not rows:
            raise ExchangeAPIError(f"bybit instrument not found: {symbol}")
        row = rows[0]
        price_filter = row.get("priceFilter") or {}
        lot_filter = row.get("lotSizeFilter") or {}
        return InstrumentInfo(
            symbol=symbol,
            tick_size=to_float(price_filter.get("tickSize"), 0.01),
            qty_step=to_float(lot_filter.get("qtyStep") or lot_filter.get("basePrecision"), 0.001),
            min_notional=to_float(
                lot_filter.get("minNotionalValue") or lot_filter.get("minOrderAmt"), 5.0
            ),
            min_qty=to_float(lot_filter.get("minOrderQty")),
            max_qty=to_float(lot_filter.get("maxOrderQty"), float("inf")),
        )

    # ---- trading ----

    def set_leverage(self, symbol: str, leverage: int) -> None:
        if self._leverage_set.get(symbol) == leverage:
            return
        try:
            self._request(
                "POST",
                "/v5/position/set-leverage",
                body={
                    "category": _CATEGORY,
                    "symbol": symbol,
                    "buyLeverage": str(leverage),
                    "sellLeverage": str(leverage),
                },
                signed=True,
            )
        except ExchangeAPIError as exc:
            if exc.code != LEVERAGE_NOT_MODIFIED:
                raise
        self._leverage_set[symbol] = leverage

    def place_order(self, request: OrderRequest) -> OrderAck:
        body: dict[str, Any] = {
            "category": _CATEGORY,
            "symbol": request.symbol,
            "side": "Buy" if request.side == "BUY" else "Sell",
            "orderType": "Market",
            "qty": _fmt(request.quantity),
            "orderLinkId": request.client_order_id,
        }
        if request.take_profit is not None:
            body["takeProfit"] = _fmt(request.take_profit)
            body["tpTriggerBy"] = "MarkPrice"
        if request.stop_loss is not None:
            body["stopLoss"] = _fmt(request.stop_loss)
            body["slTriggerBy"] = "MarkPrice"
        if request.reduce_only:
            body["reduceOnly"] = True

        result = self._request("POST", "/v5/order/create", body=body, signed=True)
        return OrderAck(
            order_id=str(result.get("orderId", "")),
            order_link_id=result.get("orderLinkId") or None,
            symbol=request.symbol,
            side=request.side,
            quantity=request.quantity,
            status="Created",
        )

    def set_trading_stop(
        self,
        symbol: str,
        take_profit: float | None = None,
        stop_loss: float | None = None,
    ) -> None:
        """Replace the position-level TP/SL, both triggered on mark price."""
        body: dict[str, Any] = {
            "category": _CATEGORY,
            "symbol": symbol,
            "tpslMode": "Full",
            "positionIdx": 0,
        }
        if take_profit is not None:
            body["takeProfit"] = _fmt(take_profit)
            body["tpTriggerBy"] = "MarkPrice"
        if stop_loss is not None:
            body["stopLoss"] = _fmt(stop_loss)
            body["slTriggerBy"] = "MarkPrice"
        self._request("POST", "/v5/position/trading-stop", body=body, signed=True)

    # ---- account ----

    def get_positions(self, symbol: str | None = None) -> list[VenuePosition]:
        params: dict[str, Any] = {"category": _CATEGORY, "symbol": symbol}
        if symbol is None:
            params["settleCoin"] = "USDT"
        result = self._get("/v5/position/list", params, signed=True)
        positions = []
        for row in result.get("list") or []:
            size = to_float(row.get("size"))
            if size == 0:
                continue
            positions.append(
                VenuePosition(
                    symbol=row["symbol"],
                    side="LONG" if row.get("side") == "Buy" else "SHORT",
                    size=size,
                    entry_price=to_float(row.get("avgPrice")),
                    unrealized_pnl=to_float(row.get("unrealisedPnl")),
                    leverage=int(to_float(row.get("leverage"), 1)),
                    take_profit=to_float(row.get("takeProfit")) or None,
                    stop_loss=to_float(row.get("stopLoss")) or None,
                )
            )
        return positions

    def get_balance(self) -> float:
        result = self._get("/v5/account/wallet-balance", {"accountType": "UNIFIED"}, signed=True)
        for account in result.get("list") or []:
            for coin in account.get("coin") or []:
                if coin.get("coin") == "USDT":
                    return to_float(coin.get("walletBalance"))
        return 0.0

    # ---- transport hooks ----

    def _prepare(
        self,
        method: str,
        path: str,
        params: dict[str, Any],
        body: dict[str, Any],
        signed: bool,
    ) -> tuple[str, dict[str, str], bytes | None]:
        query = urlencode(sorted(params.items()))
        url = f"{self._base_url}{path}" + (f"?{query}" if query else "")
        payload = json.dumps(body, separators=(",", ":")) if method != "GET" else ""
        headers = {"Content-Type": "application/json"}
        if signed:
            self._require_credentials()
            ts = str(timestamp_ms())
            recv = str(self._recv_window)
            prehash = f"{ts}{self._api_key}{recv}{query if method == 'GET' else payload}"
            headers.update(
                {
                    "X-BAPI-API-KEY": self._api_key,
                    "X-BAPI-SIGN": hmac_sha256(self._api_secret, prehash),
                    "X-BAPI-TIMESTAMP": ts,
                    "X-BAPI-RECV-WINDOW": recv,
                }
            )
        return url, headers, payload.encode() if payload else None

    def _unwrap(self, payload: Any) -> Any:
        code = payload.get("retCode")
        if code not in (0, "0"):
            raise ExchangeAPIError(
                f"Bybit API Error: {payload.get('retMsg', 'Unknown error')} (Code: {code})",
                code=int(code) if code is not None else None,
            )
        return payload.get("result") or {}


def _fmt(value: float) -> str:
    # shortest exact decimal, no exponent and no trailing zeros
    return format(Decimal(repr(value)).normalize(), "f")

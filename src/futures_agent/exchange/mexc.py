"""MEXC V3 REST client.

Every signed call carries ``timestamp``/``recvWindow`` in the query string and
an HMAC-SHA256 ``signature`` over that query. MEXC has no position-level TP/SL
endpoint, so this client deliberately does not implement ``set_trading_stop``.
"""

from __future__ import annotations

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

MEXC_BASE_URL = "https://api.mexc.com"
_OK_CODES = (0, 200, "0", "200")
_DEFAULT_STEP = 0.00000001


class MexcClient(RestExchangeClient):
    name = "mexc"

    def __init__(
        self,
        api_key: str,
        api_secret: str,
        *,
        base_url: str = MEXC_BASE_URL,
        timeout: float = 10.0,
        recv_window: int = 5000,
        http_client: httpx.Client | None = None,
    ) -> None:
        super().__init__(
            api_key,
            api_secret,
            base_url=base_url,
            timeout=timeout,
            recv_window=recv_window,
            http_client=http_client,
        )
        self._instruments: dict[str, InstrumentInfo] = {}

    def get_klines(self, symbol: str, interval: str, limit: int) -> list[Candle]:
        rows = self._get("/api/v3/klines", {"symbol": symbol, "interval": interval, "limit": limit})
        return [
            Candle(
                timestamp=int(row[0]),
                open=float(row[1]),
                high=float(row[2]),
                low=float(row[3]),
                close=float(row[4]),
                volume=float(row[5]),
            )
            for row in rows
        ]

    def get_orderbook(self, symbol: str, depth: int) -> OrderBook:
        result = self._get("/api/v3/depth", {"symbol": symbol, "limit": depth})
        return OrderBook(
            symbol=symbol,
            exchange="mexc",
            bids=[OrderBookLevel(float(p), float(q)) for p, q, *_ in result.get("bids") or []],
            asks=[OrderBookLevel(float(p), float(q)) for p, q, *_ in result.get("asks") or []],
            timestamp=int(result.get("timestamp") or timestamp_ms()),
        )

    def get_recent_trades(self, symbol: str, limit: int) -> list[Trade]:
        rows = self._get("/api/v3/trades", {"symbol": symbol, "limit": limit})
        trades = [
            Trade(
                price=float(row["price"]),
                quantity=float(row["qty"]),
                # buyer-maker means the aggressor sold
                side="SELL" if row.get("isBuyerMaker") else "BUY",
                timestamp=int(row["time"]),
            )
            for row in rows
        ]
        trades.sort(key=lambda t: t.timestamp)
        return trades

    def get_instrument_info(self, symbol: str) -> InstrumentInfo:
        cached = self._instruments.get(symbol)
        if cached is not None:
            return cached

        result = self._get("/api/v3/exchangeInfo", {"symbol": symbol})
        for row in result.get("symbols") or []:
            filters = {f.get("filterType"): f for f in row.get("filters") or []}
            price_filter = filters.get("PRICE_FILTER", {})
            lot_filter = filters.get("LOT_SIZE", {})
            notional_filter = filters.get("MIN_NOTIONAL") or filters.get("NOTIONAL") or {}
            info = InstrumentInfo(
                symbol=row["symbol"],
                tick_size=to_float(price_filter.get("tickSize"), _DEFAULT_STEP),
                qty_step=to_float(lot_filter.get("stepSize"), _DEFAULT_STEP),
                min_notional=to_float(notional_filter.get("minNotional")),
                min_qty=to_float(lot_filter.get("minQty")),
                max_qty=to_float(lot_filter.get("maxQty"), float("inf")),
            )
            self._instruments[info.symbol] = info

        if symbol not in self._instruments:
            raise ExchangeAPIError(f"mexc instrument not found: {symbol}")
        return self._instruments[symbol]

    def set_leverage(self, symbol: str, leverage: int) -> None:
        # leverage is account-side configuration on this venue
        self._logger.debug("mexc_set_leverage_skipped", symbol=symbol, leverage=leverage)

    def place_order(self, request: OrderRequest) -> OrderAck:
        params: dict[str, Any] = {
            "symbol": request.symbol,
            "side": request.side,
            "type": request.order_type,
            "quantity": request.quantity,
            "newClientOrderId": request.client_order_id,
            "takeProfitPrice": request.take_profit,
            "stopLossPrice": request.stop_loss,
        }
        result = self._request("POST", "/api/v3/order", params=params, signed=True)
        return OrderAck(
            order_id=str(result.get("orderId", "")),
            order_link_id=result.get("clientOrderId") or request.client_order_id,
            symbol=request.symbol,
            side=request.side,
            quantity=to_float(result.get("origQty"), request.quantity),
            status=str(result.get("status") or "NEW"),
            price=to_float(result.get("price")) or None,
        )

    def get_positions(self, symbol: str | None = None) -> list[VenuePosition]:
        result = self._get("/api/v3/positionRisk", {"symbol": symbol}, signed=True)
        rows = result.get("positions") if isinstance(result, dict) else result
        positions = []
        for row in rows or []:
            amount = to_float(row.get("positionAmt"))
            if amount == 0:
                continue
            positions.append(
                VenuePosition(
                    symbol=row["symbol"],
                    side="LONG" if amount > 0 else "SHORT",
                    size=abs(amount),
                    entry_price=to_float(row.get("entryPrice")),
                    unrealized_pnl=to_float(row.get("unrealizedProfit")),
                    leverage=int(to_float(row.get("leverage"), 1)),
                )
            )
        return positions

    def get_balance(self) -> float:
        result = self._get("/api/v3/account", signed=True)
        for balance in result.get("balances") or []:
            if balance.get("asset") == "USDT":
                return to_float(balance.get("free"))
        return 0.0

    def _prepare(
        self,
        method: str,
        path: str,
        params: dict[str, Any],
        body: dict[str, Any],
        signed: bool,
    ) -> tuple[str, dict[str, str], bytes | None]:
        headers = {"Content-Type": "application/json"}
        if signed:
            self._require_credentials()
            params = {**params, "timestamp": timestamp_ms(), "recvWindow": self._recv_window}
            headers["X-MEXC-APIKEY"] = self._api_key
        query = urlencode(params)
        if signed:
            query = f"{query}&signature={hmac_sha256(self._api_secret, query)}"
        url = f"{self._base_url}{path}" + (f"?{query}" if query else "")
        return url, headers, None

    def _unwrap(self, payload: Any) -> Any:
        if isinstance(payload, dict) and "code" in payload and payload["code"] not in _OK_CODES:
            raise ExchangeAPIError(
                f"MEXC API Error: {payload.get('msg') or 'Unknown error'} (Code: {payload['code']})",
                code=payload["code"],
            )
        return payload

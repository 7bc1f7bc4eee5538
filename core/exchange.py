"""
perpguard Core: Exchange Client

Capability interface consumed by the engine, plus the Binance USDT-margined
futures adapter. The engine never talks HTTP directly; everything goes
through an ``ExchangeClient``.
"""

import hashlib
import hmac
import logging
import os
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import requests

from core.exceptions import ConfigurationError, ExchangeRequestError, TransientExchangeError
from core.models import (
    AccountBalance,
    Candle,
    ExchangePosition,
    InstrumentConstraints,
    OrderResult,
    OrderStatus,
    Ticker,
)
from core.retry import NO_RETRY, RetryPolicy, retry_call

logger = logging.getLogger(__name__)

MAINNET_URL = "https://fapi.binance.com"
TESTNET_URL = "https://testnet.binancefuture.com"
QUOTE_ASSET = "USDT"

_STATUS_MAP = {
    "FILLED": OrderStatus.FILLED,
    "NEW": OrderStatus.OPEN,
    "PARTIALLY_FILLED": OrderStatus.OPEN,
    "CANCELED": OrderStatus.CANCELLED,
    "REJECTED": OrderStatus.REJECTED,
    "EXPIRED": OrderStatus.EXPIRED,
}


def map_order_status(raw: Optional[str]) -> OrderStatus:
    return _STATUS_MAP.get((raw or "").upper(), OrderStatus.UNKNOWN)


class ExchangeClient(ABC):
    """What the engine needs from a perpetual futures venue."""

    @abstractmethod
    def get_ticker(self, symbol: str) -> Ticker:
        ...

    @abstractmethod
    def get_candles(self, symbol: str, timeframe: str, limit: int) -> List[Candle]:
        ...

    @abstractmethod
    def get_account(self) -> AccountBalance:
        ...

    @abstractmethod
    def get_positions(self) -> List[ExchangePosition]:
        ...

    @abstractmethod
    def place_order(self, symbol: str, size: float, price: Optional[float] = None,
                    reduce_only: bool = False) -> OrderResult:
        """Signed ``size``: positive buys, negative sells. No price means market."""

    @abstractmethod
    def get_order(self, order_id: str, symbol: str) -> OrderResult:
        ...

    @abstractmethod
    def cancel_order(self, order_id: str, symbol: str) -> None:
        ...

    @abstractmethod
    def set_leverage(self, symbol: str, leverage: int) -> None:
        ...

    @abstractmethod
    def get_instrument_constraints(self, symbol: str) -> InstrumentConstraints:
        ...


class BinanceFuturesExchange(ExchangeClient):
    """
    Binance USDT-M futures over REST.

    Ticker, candle, account and position reads make a single attempt: the
    engines wrap them in their own ``retry_call`` budget. Order lookups,
    cancels, leverage changes and exchangeInfo are retried here on transient
    errors (timeouts, connection errors, 429, 5xx). Order placement is never
    retried: a timed-out POST may already have been accepted, and the next
    reconciliation pass picks it up.
    """

    def __init__(self, api_key: Optional[str] = None, api_secret: Optional[str] = None,
                 testnet: bool = False, timeout: float = 15.0, recv_window: int = 5000,
                 retry_policy: Optional[RetryPolicy] = None, sync_time: bool = True):
        self.api_key = api_key if api_key is not None else os.getenv("BINANCE_API_KEY", "")
        self.api_secret = api_secret if api_secret is not None else os.getenv("BINANCE_API_SECRET", "")
        if not self.api_key or not self.api_secret:
            raise ConfigurationError("BINANCE_API_KEY and BINANCE_API_SECRET must be set")

        self.testnet = testnet
        self.base_url = TESTNET_URL if testnet else MAINNET_URL
        self.timeout = timeout
        self.recv_window = recv_window
        self.retry_policy = retry_policy or RetryPolicy(attempts=3, base_delay=1.0, max_delay=3.0)
        self.time_offset_ms = 0
        self._constraints: Dict[str, InstrumentConstraints] = {}
        self._session = requests.Session()

        logger.info(f"Initialized BinanceFuturesExchange ({'testnet' if testnet else 'mainnet'})")
        if sync_time:
            try:
                self.sync_server_time()
            except (TransientExchangeError, ExchangeRequestError) as e:
                logger.warning(f"Server time sync failed, using local clock: {e}")

    # ----- transport -----

    @staticmethod
    def contract(symbol: str) -> str:
        symbol = symbol.upper()
        return symbol if symbol.endswith(QUOTE_ASSET) else f"{symbol}{QUOTE_ASSET}"

    @staticmethod
    def base_symbol(contract: str) -> str:
        return contract[: -len(QUOTE_ASSET)] if contract.endswith(QUOTE_ASSET) else contract

    def _now_ms(self) -> int:
        return int(time.time() * 1000) + self.time_offset_ms

    def _sign(self, query: str) -> str:
        return hmac.new(self.api_secret.encode("utf-8"), query.encode("utf-8"), hashlib.sha256).hexdigest()

    def _send(self, method: str, path: str, params: Optional[Dict[str, Any]] = None,
              signed: bool = False, timeout: Optional[float] = None) -> Any:
        params = {k: v for k, v in (params or {}).items() if v is not None}
        headers = {"User-Agent": "perpguard/0.1"}
        if signed:
            params["timestamp"] = self._now_ms()
            params["recvWindow"] = self.recv_window
            headers["X-MBX-APIKEY"] = self.api_key

        query = urlencode(params)
        if signed:
            query = f"{query}&signature={self._sign(query)}"

        url = f"{self.base_url}{path}"
        body = None
        if method in ("GET", "DELETE"):
            if query:
                url = f"{url}?{query}"
        else:
            body = query
            headers["Content-Type"] = "application/x-www-form-urlencoded"

        try:
            response = self._session.request(
                method, url, data=body, headers=headers, timeout=timeout or self.timeout
            )
        except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as e:
            raise TransientExchangeError(f"{method} {path}: {e}", endpoint=path) from e

        status = response.status_code
        if status == 429 or status == 418 or status >= 500:
            raise TransientExchangeError(
                f"{method} {path}: HTTP {status} {response.text[:200]}",
                endpoint=path,
                status_code=status,
            )
        if status >= 400:
            code = None
            message = response.text[:200]
            try:
                payload = response.json()
                code = payload.get("code")
                message = payload.get("msg", message)
            except ValueError:
                pass
            logger.error(f"Binance API client error on {path}: {status} {message}")
            raise ExchangeRequestError(
                f"{method} {path}: {message}", endpoint=path, status_code=status, code=code
            )
        return response.json()

    def _request(self, method: str, path: str, params: Optional[Dict[str, Any]] = None,
                 signed: bool = False, retry: bool = True) -> Any:
        policy = self.retry_policy if retry else NO_RETRY
        return retry_call(
            self._send, method, path, params, signed,
            policy=policy, description=f"{method} {path}",
        )

    def sync_server_time(self) -> int:
        local_ms = int(time.time() * 1000)
        payload = self._send("GET", "/fapi/v1/time", timeout=5.0)
        self.time_offset_ms = int(payload["serverTime"]) - local_ms
        logger.info(f"Server time synced, offset={self.time_offset_ms}ms")
        return self.time_offset_ms

    # ----- market data -----

    def get_ticker(self, symbol: str) -> Ticker:
        contract = self.contract(symbol)
        stats = self._request("GET", "/fapi/v1/ticker/24hr", {"symbol": contract}, retry=False)
        premium = self._request("GET", "/fapi/v1/premiumIndex", {"symbol": contract}, retry=False)
        return Ticker(
            symbol=symbol.upper(),
            last=float(stats.get("lastPrice") or 0),
            mark_price=float(premium.get("markPrice") or 0),
            volume_24h=float(stats.get("volume") or 0),
            quote_volume_24h=float(stats.get("quoteVolume") or 0),
            price_change_percent=float(stats.get("priceChangePercent") or 0),
            funding_rate=float(premium.get("lastFundingRate") or 0),
        )

    def get_candles(self, symbol: str, timeframe: str, limit: int) -> List[Candle]:
        rows = self._request("GET", "/fapi/v1/klines", {
            "symbol": self.contract(symbol),
            "interval": timeframe,
            "limit": limit,
        }, retry=False)
        return [
            Candle(
                open_time=int(row[0]),
                open=float(row[1]),
                high=float(row[2]),
                low=float(row[3]),
                close=float(row[4]),
                volume=float(row[5]),
                quote_volume=float(row[7]),
                trade_count=int(row[8]),
            )
            for row in rows
        ]

    def get_instrument_constraints(self, symbol: str) -> InstrumentConstraints:
        key = symbol.upper()
        if key in self._constraints:
            return self._constraints[key]

        info = self._request("GET", "/fapi/v1/exchangeInfo")
        contract = self.contract(symbol)
        for entry in info.get("symbols", []):
            if entry.get("symbol") != contract:
                continue
            lot = next((f for f in entry.get("filters", []) if f.get("filterType") == "LOT_SIZE"), {})
            constraints = InstrumentConstraints(
                symbol=key,
                step_size=float(lot.get("stepSize") or 0.001),
                min_qty=float(lot.get("minQty") or 0.001),
                max_qty=float(lot.get("maxQty") or 1_000_000),
            )
            self._constraints[key] = constraints
            return constraints
        raise ExchangeRequestError(f"Contract {contract} not listed", endpoint="/fapi/v1/exchangeInfo")

    # ----- account -----

    def get_account(self) -> AccountBalance:
        account = self._request("GET", "/fapi/v2/account", signed=True, retry=False)
        margin_balance = float(account.get("totalMarginBalance") or 0)
        return AccountBalance(
            total=margin_balance,
            available=float(account.get("availableBalance") or 0),
            unrealized_pnl=float(account.get("totalUnrealizedProfit") or 0),
            maintenance_margin=float(account.get("totalMaintMargin") or 0),
            margin_balance=margin_balance,
            initial_margin=float(account.get("totalInitialMargin") or 0),
        )

    def get_positions(self) -> List[ExchangePosition]:
        rows = self._request("GET", "/fapi/v2/positionRisk", signed=True, retry=False)
        positions = []
        for row in rows:
            size = float(row.get("positionAmt") or 0)
            if size == 0:
                continue
            positions.append(ExchangePosition(
                symbol=self.base_symbol(row["symbol"]),
                size=size,
                entry_price=float(row.get("entryPrice") or 0),
                mark_price=float(row.get("markPrice") or 0),
                leverage=int(float(row.get("leverage") or 1)),
                liquidation_price=float(row.get("liquidationPrice") or 0),
                unrealized_pnl=float(row.get("unRealizedProfit") or 0),
            ))
        return positions

    # ----- orders -----

    def _order_result(self, symbol: str, payload: Dict[str, Any], size: Optional[float] = None) -> OrderResult:
        if size is None:
            sign = 1 if payload.get("side") == "BUY" else -1
            size = sign * float(payload.get("origQty") or 0)
        return OrderResult(
            order_id=str(payload.get("orderId")),
            symbol=symbol.upper(),
            status=map_order_status(payload.get("status")),
            size=size,
            fill_price=float(payload.get("avgPrice") or 0),
            filled_qty=float(payload.get("executedQty") or 0),
        )

    def place_order(self, symbol: str, size: float, price: Optional[float] = None,
                    reduce_only: bool = False) -> OrderResult:
        params: Dict[str, Any] = {
            "symbol": self.contract(symbol),
            "side": "BUY" if size > 0 else "SELL",
            "type": "LIMIT" if price else "MARKET",
            "quantity": f"{abs(size):.8f}".rstrip("0").rstrip("."),
            "newOrderRespType": "RESULT",
        }
        if price:
            params["price"] = str(price)
            params["timeInForce"] = "GTC"
        if reduce_only:
            params["reduceOnly"] = "true"

        payload = self._request("POST", "/fapi/v1/order", params, signed=True, retry=False)
        result = self._order_result(symbol, payload, size=size)
        logger.info(
            f"Order placed {symbol} size={size} reduce_only={reduce_only} "
            f"id={result.order_id} status={result.status.value}"
        )
        return result

    def get_order(self, order_id: str, symbol: str) -> OrderResult:
        payload = self._request("GET", "/fapi/v1/order", {
            "symbol": self.contract(symbol),
            "orderId": order_id,
        }, signed=True)
        return self._order_result(symbol, payload)

    def cancel_order(self, order_id: str, symbol: str) -> None:
        self._request("DELETE", "/fapi/v1/order", {
            "symbol": self.contract(symbol),
            "orderId": order_id,
        }, signed=True)

    def set_leverage(self, symbol: str, leverage: int) -> None:
        self._request("POST", "/fapi/v1/leverage", {
            "symbol": self.contract(symbol),
            "leverage": int(leverage),
        }, signed=True)

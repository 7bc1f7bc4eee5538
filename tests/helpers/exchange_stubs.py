"""
Test helpers for engine tests.

FakeExchange is an in-memory ExchangeClient: positions move when orders
fill, fill prices can be scripted, and individual reads can be made to fail.
"""

import threading
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from ai.oracle import DecisionOracle, OracleDecision
from core.context import TradingContext
from core.exceptions import ExchangeRequestError, TransientExchangeError
from core.exchange import ExchangeClient
from core.models import (
    AccountBalance,
    Candle,
    Environment,
    ExchangePosition,
    InstrumentConstraints,
    OrderResult,
    OrderStatus,
    Ticker,
)
from core.policy import ExecutionSettings, MarketDataSettings, RiskPolicy
from infra.ledger import LedgerStore

FIXED_NOW = datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)

TIMEFRAME_SECONDS = {"1m": 60, "3m": 180, "5m": 300, "15m": 900, "30m": 1800, "1h": 3600}

FAST_EXECUTION = ExecutionSettings(
    open_settle_seconds=0.0,
    close_settle_seconds=0.0,
    order_poll_attempts=1,
    order_poll_delay_seconds=0.0,
    liquidation_poll_attempts=1,
    liquidation_poll_delay_seconds=0.0,
)


class FakeExchange(ExchangeClient):
    """
    In-memory USDT-M futures exchange.

    Attributes tests poke at directly:
        prices: last/mark price per symbol
        balance: AccountBalance returned by get_account
        fill_prices: queue of fill prices for the next orders (else current price)
        fail_reads: names that raise TransientExchangeError
            ("positions", "account", "ticker:BTC", "candles:BTC")
        reject_orders: number of upcoming orders to reject
    """

    def __init__(self, prices: Optional[Dict[str, float]] = None,
                 balance: Optional[AccountBalance] = None,
                 now: datetime = FIXED_NOW):
        self.prices: Dict[str, float] = dict(prices or {"BTC": 100.0})
        self.balance = balance or AccountBalance(total=1000.0, available=1000.0)
        self.now = now
        self.positions: Dict[str, ExchangePosition] = {}
        self.orders: Dict[str, OrderResult] = {}
        self.placed: List[Dict[str, object]] = []
        self.cancelled: List[str] = []
        self.leverage: Dict[str, int] = {}
        self.constraints: Dict[str, InstrumentConstraints] = {}
        self.fill_prices: List[float] = []
        self.fail_reads: set = set()
        self.reject_orders = 0
        self.calls: Dict[str, int] = {}
        self._next_id = 1
        self._lock = threading.Lock()

    # ----- test setup -----

    def seed_position(self, symbol: str, size: float, entry_price: float, leverage: int = 10,
                      liquidation_price: float = 0.0) -> None:
        self.positions[symbol] = ExchangePosition(
            symbol=symbol,
            size=size,
            entry_price=entry_price,
            mark_price=self.prices.get(symbol, entry_price),
            leverage=leverage,
            liquidation_price=liquidation_price,
        )

    def set_price(self, symbol: str, price: float) -> None:
        self.prices[symbol] = price

    def _count(self, name: str) -> None:
        with self._lock:
            self.calls[name] = self.calls.get(name, 0) + 1

    def _check(self, name: str) -> None:
        self._count(name)
        if name in self.fail_reads:
            raise TransientExchangeError(f"simulated failure: {name}", endpoint=name)

    # ----- ExchangeClient -----

    def get_ticker(self, symbol: str) -> Ticker:
        self._check(f"ticker:{symbol}")
        if symbol not in self.prices:
            raise ExchangeRequestError(f"unknown symbol {symbol}", endpoint="ticker", status_code=400)
        price = self.prices[symbol]
        return Ticker(symbol=symbol, last=price, mark_price=price,
                      volume_24h=1000.0, quote_volume_24h=price * 1000.0)

    def get_candles(self, symbol: str, timeframe: str, limit: int) -> List[Candle]:
        self._check(f"candles:{symbol}")
        price = self.prices[symbol]
        step_ms = TIMEFRAME_SECONDS[timeframe] * 1000
        now_ms = int(self.now.timestamp() * 1000)
        latest_open = now_ms - now_ms % step_ms
        candles = []
        for i in range(limit):
            close = price * (1 + 0.001 * ((i % 5) - 2))
            candles.append(Candle(
                open_time=latest_open - (limit - 1 - i) * step_ms,
                open=close, high=close * 1.001, low=close * 0.999, close=close,
                volume=10.0, quote_volume=close * 10.0, trade_count=5,
            ))
        # The pipeline must not rely on ordering
        return list(reversed(candles))

    def get_account(self) -> AccountBalance:
        self._check("account")
        return self.balance

    def get_positions(self) -> List[ExchangePosition]:
        self._check("positions")
        return [replace(p, mark_price=self.prices.get(s, p.mark_price)) for s, p in self.positions.items()]

    def place_order(self, symbol: str, size: float, price: Optional[float] = None,
                    reduce_only: bool = False) -> OrderResult:
        self._count("place_order")
        self.placed.append({"symbol": symbol, "size": size, "reduce_only": reduce_only})
        if self.reject_orders > 0:
            self.reject_orders -= 1
            raise ExchangeRequestError("order rejected", endpoint="/fapi/v1/order", status_code=400)

        fill = self.fill_prices.pop(0) if self.fill_prices else self.prices[symbol]
        self._apply_fill(symbol, size, fill, reduce_only)
        order_id = f"order-{self._next_id}"
        self._next_id += 1
        order = OrderResult(order_id=order_id, symbol=symbol, status=OrderStatus.FILLED,
                            size=size, fill_price=fill, filled_qty=abs(size))
        self.orders[order_id] = order
        return order

    def _apply_fill(self, symbol: str, size: float, fill: float, reduce_only: bool) -> None:
        existing = self.positions.get(symbol)
        if existing is None:
            if reduce_only:
                return
            self.positions[symbol] = ExchangePosition(
                symbol=symbol, size=size, entry_price=fill, mark_price=fill,
                leverage=self.leverage.get(symbol, 1),
            )
            return

        new_size = existing.size + size
        if reduce_only and new_size * existing.size < 0:
            new_size = 0.0
        if abs(new_size) < 1e-12:
            del self.positions[symbol]
        elif new_size * existing.size < 0:
            self.positions[symbol] = replace(existing, size=new_size, entry_price=fill)
        elif abs(new_size) > abs(existing.size):
            entry = (existing.entry_price * abs(existing.size) + fill * abs(size)) / abs(new_size)
            self.positions[symbol] = replace(existing, size=new_size, entry_price=entry)
        else:
            self.positions[symbol] = replace(existing, size=new_size)

    def get_order(self, order_id: str, symbol: str) -> OrderResult:
        self._count("get_order")
        return self.orders[order_id]

    def cancel_order(self, order_id: str, symbol: str) -> None:
        self.cancelled.append(order_id)

    def set_leverage(self, symbol: str, leverage: int) -> None:
        self.leverage[symbol] = leverage

    def get_instrument_constraints(self, symbol: str) -> InstrumentConstraints:
        return self.constraints.get(
            symbol, InstrumentConstraints(symbol=symbol, step_size=0.001, min_qty=0.001, max_qty=1_000_000.0)
        )


class BlockingOracle(DecisionOracle):
    """Oracle that never answers until ``release`` is set (or 5s pass)."""

    def __init__(self):
        self.release = threading.Event()
        self.call_count = 0

    def decide(self, snapshot):
        self.call_count += 1
        self.release.wait(timeout=5.0)
        return OracleDecision(text="too late")


def make_context(exchange: Optional[FakeExchange] = None, policy: Optional[RiskPolicy] = None,
                 ledger: Optional[LedgerStore] = None, now: datetime = FIXED_NOW,
                 execution: ExecutionSettings = FAST_EXECUTION, **kwargs) -> TradingContext:
    """TradingContext over a FakeExchange and an in-memory ledger with a fixed clock."""
    return TradingContext(
        exchange=exchange or FakeExchange(now=now),
        ledger=ledger or LedgerStore(":memory:"),
        policy=policy or RiskPolicy(),
        execution=execution,
        market_data=MarketDataSettings(
            environment=Environment.TESTNET,
            retry_base_delay_seconds=0.0,
            max_workers=4,
        ),
        clock=lambda: now,
        **kwargs,
    )


def hours_ago(hours: float, now: datetime = FIXED_NOW) -> datetime:
    return now - timedelta(hours=hours)

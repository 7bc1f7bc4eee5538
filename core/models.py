"""
perpguard Core: Domain Models

Typed records shared by market data, ledger, reconciliation, risk and
execution. Everything that used to travel around as a loose string
(side, trade type, order status) is a closed enum here.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


class Side(str, Enum):
    LONG = "long"
    SHORT = "short"

    @property
    def sign(self) -> int:
        return 1 if self is Side.LONG else -1

    @property
    def opposite(self) -> "Side":
        return Side.SHORT if self is Side.LONG else Side.LONG

    @classmethod
    def from_size(cls, size: float) -> "Side":
        return cls.LONG if size > 0 else cls.SHORT


class TradeType(str, Enum):
    OPEN = "open"
    CLOSE = "close"


class TradeStatus(str, Enum):
    FILLED = "filled"
    PENDING = "pending"
    CORRECTIVE = "corrective"  # reversal of a fill rejected by the slippage guard


class OrderStatus(str, Enum):
    OPEN = "open"
    FILLED = "filled"
    CANCELLED = "cancelled"
    REJECTED = "rejected"
    EXPIRED = "expired"
    UNKNOWN = "unknown"


class ExitReason(str, Enum):
    MAX_HOLDING = "max_holding"
    STOP_LOSS = "stop_loss"
    TRAILING_STOP = "trailing_stop"
    PEAK_DRAWDOWN = "peak_drawdown"
    ACCOUNT_DRAWDOWN = "account_drawdown"
    ACCOUNT_STOP_LOSS = "account_stop_loss"
    ACCOUNT_TAKE_PROFIT = "account_take_profit"
    ORACLE = "oracle"


class BreakerAction(str, Enum):
    NONE = "none"
    BLOCK_OPENS = "block_opens"
    CLOSE_ALL_AND_HALT = "close_all_and_halt"


class Environment(str, Enum):
    MAINNET = "mainnet"
    TESTNET = "testnet"


class DrawdownReference(str, Enum):
    PEAK = "peak"
    INITIAL = "initial"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def estimate_liquidation_price(entry_price: float, leverage: float, side: "Side") -> float:
    """Rough liquidation level, entry * (1 -/+ 0.9/leverage), for when the exchange reports none."""
    if entry_price <= 0 or leverage <= 0:
        return 0.0
    buffer = 0.9 / leverage
    if side is Side.LONG:
        return entry_price * (1 - buffer)
    return entry_price * (1 + buffer)


# ===== Exchange-facing records =====

@dataclass
class Candle:
    """OHLCV bar. open_time is epoch milliseconds."""
    open_time: int
    open: float
    high: float
    low: float
    close: float
    volume: float
    quote_volume: float = 0.0
    trade_count: int = 0

    def is_closed(self, now_ms: int, interval_ms: int = 60_000) -> bool:
        return now_ms >= self.open_time + interval_ms

    def is_active(self) -> bool:
        return self.volume > 0 and self.quote_volume > 0 and self.trade_count > 0


@dataclass
class Ticker:
    symbol: str
    last: float
    mark_price: float
    volume_24h: float = 0.0
    quote_volume_24h: float = 0.0
    price_change_percent: float = 0.0
    funding_rate: float = 0.0

    @property
    def reference_price(self) -> float:
        """Mark price when the exchange reports one, last trade otherwise."""
        return self.mark_price if self.mark_price > 0 else self.last


@dataclass
class InstrumentConstraints:
    symbol: str
    step_size: float
    min_qty: float
    max_qty: float


@dataclass
class AccountBalance:
    """
    Futures account balances as reported by the exchange.

    ``total`` is mark-to-market equity (wallet balance plus unrealized PnL).
    """
    total: float
    available: float
    unrealized_pnl: float = 0.0
    maintenance_margin: float = 0.0
    margin_balance: float = 0.0
    initial_margin: float = 0.0

    @property
    def wallet_balance(self) -> float:
        return self.total - self.unrealized_pnl


@dataclass
class ExchangePosition:
    """Exchange view of an open position. ``size`` is signed (negative = short)."""
    symbol: str
    size: float
    entry_price: float
    mark_price: float
    leverage: int
    liquidation_price: float = 0.0
    unrealized_pnl: float = 0.0

    @property
    def side(self) -> Side:
        return Side.from_size(self.size)

    @property
    def quantity(self) -> float:
        return abs(self.size)


@dataclass
class OrderResult:
    order_id: str
    symbol: str
    status: OrderStatus
    size: float  # signed, positive = buy
    fill_price: float = 0.0
    filled_qty: float = 0.0

    @property
    def is_filled(self) -> bool:
        return self.status is OrderStatus.FILLED


# ===== Ledger records =====

@dataclass
class Position:
    """Ledger position: exchange-owned fields plus locally-owned metadata."""
    symbol: str
    side: Side
    quantity: float
    entry_price: float
    current_price: float
    leverage: int
    liquidation_price: float = 0.0
    unrealized_pnl: float = 0.0
    peak_pnl_percent: float = 0.0
    opened_at: Optional[datetime] = None
    stop_loss: Optional[float] = None
    profit_target: Optional[float] = None
    entry_order_id: Optional[str] = None
    sl_order_id: Optional[str] = None
    tp_order_id: Optional[str] = None

    def __post_init__(self):
        if self.opened_at is None:
            self.opened_at = utcnow()
        if not isinstance(self.side, Side):
            self.side = Side(self.side)

    def pnl_percent(self, price: Optional[float] = None) -> float:
        """Leveraged PnL percent, sign-adjusted for side."""
        price = self.current_price if price is None else price
        if self.entry_price <= 0 or price <= 0:
            return 0.0
        change = (price - self.entry_price) / self.entry_price * 100.0
        return change * self.side.sign * self.leverage

    def holding_hours(self, now: Optional[datetime] = None) -> float:
        now = now or utcnow()
        return (now - self.opened_at).total_seconds() / 3600.0

    @property
    def notional(self) -> float:
        return self.quantity * self.current_price


@dataclass
class Trade:
    order_id: str
    symbol: str
    side: Side
    type: TradeType
    price: float
    quantity: float
    leverage: int
    fee: float
    pnl: Optional[float] = None
    status: TradeStatus = TradeStatus.FILLED
    timestamp: Optional[datetime] = None
    id: Optional[int] = None

    def __post_init__(self):
        if self.timestamp is None:
            self.timestamp = utcnow()


@dataclass
class AccountSnapshot:
    timestamp: datetime
    total_value: float
    available_cash: float
    unrealized_pnl: float
    realized_pnl: float = 0.0
    return_percent: float = 0.0


@dataclass
class DecisionRecord:
    timestamp: datetime
    iteration: int
    market_analysis: str
    decision: str
    actions_taken: str
    account_value: float
    positions_count: int


# ===== Per-cycle market view =====

@dataclass
class IndicatorSet:
    ema20: float = 0.0
    ema50: float = 0.0
    macd: float = 0.0
    rsi7: float = 50.0
    rsi14: float = 50.0
    atr3: float = 0.0
    atr14: float = 0.0
    volume: float = 0.0
    avg_volume: float = 0.0
    quote_volume: float = 0.0
    trade_count: int = 0


@dataclass
class IntradaySeries:
    mid_prices: List[float] = field(default_factory=list)
    ema20: List[float] = field(default_factory=list)
    macd: List[float] = field(default_factory=list)
    rsi7: List[float] = field(default_factory=list)
    rsi14: List[float] = field(default_factory=list)


@dataclass
class LongerTermContext:
    ema20: float = 0.0
    ema50: float = 0.0
    atr3: float = 0.0
    atr14: float = 0.0
    current_volume: float = 0.0
    avg_volume: float = 0.0
    macd: List[float] = field(default_factory=list)
    rsi14: List[float] = field(default_factory=list)


@dataclass
class MarketSnapshot:
    symbol: str
    ticker: Optional[Ticker] = None
    candles: Dict[str, List[Candle]] = field(default_factory=dict)
    indicators: Dict[str, IndicatorSet] = field(default_factory=dict)
    intraday: IntradaySeries = field(default_factory=IntradaySeries)
    context: LongerTermContext = field(default_factory=LongerTermContext)
    is_valid: bool = False
    warnings: List[str] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def last_price(self) -> float:
        if self.ticker is None:
            return 0.0
        return self.ticker.last

    @property
    def usable(self) -> bool:
        return self.error is None and self.last_price > 0

    def to_dict(self, primary_timeframe: str = "5m") -> Dict[str, Any]:
        """Compact serialization for the oracle prompt and the decision record."""
        if self.error is not None:
            return {"symbol": self.symbol, "error": self.error}
        primary = self.indicators.get(primary_timeframe, IndicatorSet())
        return {
            "symbol": self.symbol,
            "price": self.last_price,
            "mark_price": self.ticker.mark_price if self.ticker else 0.0,
            "funding_rate": self.ticker.funding_rate if self.ticker else 0.0,
            "is_valid": self.is_valid,
            "warnings": list(self.warnings),
            "indicators": _indicator_dict(primary),
            "timeframes": {tf: _indicator_dict(ind) for tf, ind in self.indicators.items()},
            "intraday": {
                "mid_prices": self.intraday.mid_prices,
                "ema20": self.intraday.ema20,
                "macd": self.intraday.macd,
                "rsi7": self.intraday.rsi7,
                "rsi14": self.intraday.rsi14,
            },
            "longer_term": {
                "ema20": self.context.ema20,
                "ema50": self.context.ema50,
                "atr3": self.context.atr3,
                "atr14": self.context.atr14,
                "current_volume": self.context.current_volume,
                "avg_volume": self.context.avg_volume,
                "macd": self.context.macd,
                "rsi14": self.context.rsi14,
            },
        }


def _indicator_dict(ind: IndicatorSet) -> Dict[str, float]:
    return {
        "ema20": round(ind.ema20, 6),
        "ema50": round(ind.ema50, 6),
        "macd": round(ind.macd, 6),
        "rsi7": round(ind.rsi7, 3),
        "rsi14": round(ind.rsi14, 3),
        "atr3": round(ind.atr3, 6),
        "atr14": round(ind.atr14, 6),
        "volume": ind.volume,
        "avg_volume": round(ind.avg_volume, 6),
    }

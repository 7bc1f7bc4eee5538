"""
perpguard Core: Policy

Immutable risk, execution and market-data settings. Built once at startup
from config/policy.yaml (plus environment and ledger overrides) and never
mutated during a cycle.
"""

from dataclasses import dataclass, replace
from typing import Optional, Tuple

from core.models import DrawdownReference, Environment

DEFAULT_SYMBOLS = ("BTC", "ETH", "SOL", "XRP", "BNB", "DOGE")


@dataclass(frozen=True)
class RiskPolicy:
    max_positions: int = 5
    max_leverage: int = 15
    min_leverage: int = 5
    trading_symbols: Tuple[str, ...] = DEFAULT_SYMBOLS
    max_holding_hours: float = 36.0
    account_max_drawdown_percent: float = 15.0
    account_force_close_drawdown_percent: float = 20.0
    drawdown_reference: DrawdownReference = DrawdownReference.PEAK
    account_stop_loss_usdt: float = 50.0
    account_take_profit_usdt: float = 10000.0
    max_exposure_multiple: float = 10.0
    # (minimum leverage, leveraged pnl % threshold), highest leverage first
    stop_loss_tiers: Tuple[Tuple[float, float], ...] = ((12, -3.0), (8, -4.0), (0, -5.0))
    # (peak pnl % reached, locked-in pnl % floor), highest peak first
    trailing_tiers: Tuple[Tuple[float, float], ...] = ((25, 15.0), (15, 8.0), (8, 3.0))
    peak_drawdown_min_peak: float = 5.0
    peak_drawdown_percent: float = 30.0

    def stop_loss_threshold(self, leverage: float) -> float:
        for min_leverage, threshold in self.stop_loss_tiers:
            if leverage >= min_leverage:
                return threshold
        return self.stop_loss_tiers[-1][1]

    def trailing_floor(self, peak_pnl_percent: float) -> Optional[float]:
        for peak_trigger, floor in self.trailing_tiers:
            if peak_pnl_percent >= peak_trigger:
                return floor
        return None

    def allows_symbol(self, symbol: str) -> bool:
        return symbol.upper() in self.trading_symbols

    def with_balance_thresholds(self, stop_loss_usdt: float, take_profit_usdt: float) -> "RiskPolicy":
        return replace(
            self,
            account_stop_loss_usdt=stop_loss_usdt,
            account_take_profit_usdt=take_profit_usdt,
        )


@dataclass(frozen=True)
class ExecutionSettings:
    fee_rate: float = 0.0005
    open_slippage_limit_percent: float = 2.0
    close_slippage_limit_percent: float = 3.0
    open_settle_seconds: float = 2.0
    close_settle_seconds: float = 0.5
    order_poll_attempts: int = 3
    order_poll_delay_seconds: float = 0.3
    liquidation_poll_attempts: int = 5
    liquidation_poll_delay_seconds: float = 1.0
    large_margin_warn_percent: float = 30.0
    close_quantity_decimals: int = 3


@dataclass(frozen=True)
class MarketDataSettings:
    environment: Environment = Environment.MAINNET
    timeframes: Tuple[Tuple[str, int], ...] = (
        ("1m", 60),
        ("3m", 60),
        ("5m", 100),
        ("15m", 96),
        ("30m", 90),
        ("1h", 120),
    )
    primary_timeframe: str = "5m"
    intraday_timeframe: str = "3m"
    context_timeframe: str = "1h"
    validation_timeframe: str = "1m"
    retry_attempts: int = 3
    retry_base_delay_seconds: float = 1.0
    max_workers: int = 8
    max_price_deviation_percent_mainnet: float = 0.5
    max_price_deviation_percent_testnet: float = 1.0
    max_candle_age_seconds_mainnet: float = 120.0
    max_candle_age_seconds_testnet: float = 180.0
    inactive_candle_window: int = 5

    @property
    def is_testnet(self) -> bool:
        return self.environment is Environment.TESTNET

    @property
    def max_price_deviation_percent(self) -> float:
        if self.is_testnet:
            return self.max_price_deviation_percent_testnet
        return self.max_price_deviation_percent_mainnet

    @property
    def max_candle_age_seconds(self) -> float:
        if self.is_testnet:
            return self.max_candle_age_seconds_testnet
        return self.max_candle_age_seconds_mainnet

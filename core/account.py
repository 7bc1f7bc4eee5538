"""
perpguard Core: Account Service

Account balances, return, Sharpe ratio and drawdown against the ledger's
account history.
"""

import logging
import math
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Sequence

from core.context import TradingContext
from core.exceptions import CriticalDataUnavailable, ExchangeError
from core.models import AccountBalance, AccountSnapshot, DrawdownReference
from core.retry import RetryPolicy, retry_call

logger = logging.getLogger(__name__)

DEFAULT_INITIAL_BALANCE = 100.0


@dataclass
class AccountInfo:
    total_value: float  # mark-to-market equity: drawdown, exposure
    wallet_balance: float  # excludes unrealized PnL: return %, USDT stop/take-profit
    available: float
    unrealized_pnl: float
    initial_balance: float
    return_percent: float
    sharpe_ratio: float


def sharpe_ratio(values: Sequence[float]) -> float:
    """
    Mean over standard deviation of successive period returns.

    0 with fewer than two values. A flat series returns 10 when the mean
    return is positive, otherwise 0.
    """
    if len(values) < 2:
        return 0.0
    returns = [
        (values[i] - values[i - 1]) / values[i - 1]
        for i in range(1, len(values))
        if values[i - 1] > 0
    ]
    if not returns:
        return 0.0
    mean = sum(returns) / len(returns)
    variance = sum((r - mean) ** 2 for r in returns) / len(returns)
    std = math.sqrt(variance)
    if std == 0:
        return 10.0 if mean > 0 else 0.0
    return mean / std


class AccountService:
    def __init__(self, ctx: TradingContext, retry_policy: Optional[RetryPolicy] = None):
        self.ctx = ctx
        self.retry_policy = retry_policy or RetryPolicy(attempts=3, base_delay=1.0)

    def fetch_balance(self) -> AccountBalance:
        try:
            return retry_call(self.ctx.exchange.get_account, policy=self.retry_policy,
                              description="get_account")
        except ExchangeError as e:
            raise CriticalDataUnavailable("account", e) from e

    def initial_balance(self) -> float:
        first = self.ctx.ledger.initial_snapshot()
        if first is None or first.total_value <= 0:
            return DEFAULT_INITIAL_BALANCE
        return first.total_value

    def fetch_account_info(self, balance: Optional[AccountBalance] = None) -> AccountInfo:
        balance = balance or self.fetch_balance()
        initial = self.initial_balance()
        wallet = balance.wallet_balance
        return AccountInfo(
            total_value=balance.total,
            wallet_balance=wallet,
            available=balance.available,
            unrealized_pnl=balance.unrealized_pnl,
            initial_balance=initial,
            return_percent=(wallet - initial) / initial * 100.0 if initial > 0 else 0.0,
            sharpe_ratio=sharpe_ratio(self.ctx.ledger.account_values()),
        )

    def drawdown_from_peak(self, current_value: float) -> float:
        peak = max(self.ctx.ledger.peak_total_value() or 0.0, current_value)
        if peak <= 0:
            return 0.0
        return max((peak - current_value) / peak * 100.0, 0.0)

    def drawdown_from_initial(self, current_value: float) -> float:
        initial = self.initial_balance()
        if initial <= 0:
            return 0.0
        return max((initial - current_value) / initial * 100.0, 0.0)

    def drawdown_percent(self, current_value: float) -> float:
        """Drawdown against the denominator the policy names."""
        if self.ctx.policy.drawdown_reference is DrawdownReference.INITIAL:
            return self.drawdown_from_initial(current_value)
        return self.drawdown_from_peak(current_value)

    def record_snapshot(self, info: AccountInfo, timestamp: Optional[datetime] = None) -> AccountSnapshot:
        snapshot = AccountSnapshot(
            timestamp=timestamp or self.ctx.now(),
            total_value=info.total_value,
            available_cash=info.available,
            unrealized_pnl=info.unrealized_pnl,
            realized_pnl=self.ctx.ledger.realized_pnl(),
            return_percent=info.return_percent,
        )
        self.ctx.ledger.append_account_snapshot(snapshot)
        return snapshot

    def initialize(self) -> Optional[AccountSnapshot]:
        """Write the first account snapshot if the history is empty."""
        if self.ctx.ledger.initial_snapshot() is not None:
            return None
        balance = self.fetch_balance()
        info = AccountInfo(
            total_value=balance.total,
            wallet_balance=balance.wallet_balance,
            available=balance.available,
            unrealized_pnl=balance.unrealized_pnl,
            initial_balance=balance.total,
            return_percent=0.0,
            sharpe_ratio=0.0,
        )
        snapshot = self.record_snapshot(info)
        logger.info(f"Initial account snapshot recorded: total={balance.total:.2f} USDT")
        return snapshot

    def history(self, limit: Optional[int] = None) -> List[float]:
        return self.ctx.ledger.account_values(limit)

"""
perpguard Core: Risk Engine

Mechanical protection that runs every cycle before the oracle is consulted:

Account level (once per cycle, first):
- drawdown >= account_max_drawdown_percent -> block new opens this cycle
- drawdown >= account_force_close_drawdown_percent -> close everything, halt
- equity <= account_stop_loss_usdt -> close everything, halt
- equity >= account_take_profit_usdt -> close everything, halt (profit halt)

Per position (first matching rule wins):
1. max holding time
2. leverage-tiered stop-loss
3. trailing floor ratcheted from the peak
4. peak drawdown protection
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from core.account import AccountService
from core.context import TradingContext
from core.execution import ExecutionEngine, ExecutionResult
from core.models import BreakerAction, ExitReason, Position
from infra.alerting import AlertSeverity

logger = logging.getLogger(__name__)

# Percent values are compared at this precision so that price-derived PnL
# such as -4.000000000000057 lands on the intended boundary.
PNL_PRECISION = 6


@dataclass
class PositionRiskDecision:
    symbol: str
    pnl_percent: float
    peak_pnl_percent: float
    holding_hours: float
    close: bool = False
    reason: Optional[ExitReason] = None
    detail: str = ""


@dataclass
class CircuitBreakerResult:
    action: BreakerAction
    drawdown_percent: float
    total_value: float
    reason: Optional[ExitReason] = None
    message: str = ""

    @property
    def halt(self) -> bool:
        return self.action is BreakerAction.CLOSE_ALL_AND_HALT

    @property
    def blocks_opens(self) -> bool:
        return self.action is not BreakerAction.NONE


@dataclass
class RiskEnforcementReport:
    breaker: CircuitBreakerResult
    decisions: List[PositionRiskDecision] = field(default_factory=list)
    closed: List[ExecutionResult] = field(default_factory=list)
    failed: List[ExecutionResult] = field(default_factory=list)

    @property
    def halt(self) -> bool:
        return self.breaker.halt


class RiskEngine:
    def __init__(self, ctx: TradingContext, execution: ExecutionEngine,
                 account: Optional[AccountService] = None):
        self.ctx = ctx
        self.execution = execution
        self.account = account or execution.account

    # ===== per position =====

    def evaluate_position(self, position: Position, now: Optional[datetime] = None) -> PositionRiskDecision:
        """
        Apply the per-position rules. Persists a new peak before evaluating.

        The trailing floor is derived from the stored peak, so once a tier is
        reached it stays in force for the life of the position.
        """
        policy = self.ctx.policy
        now = now or self.ctx.now()
        priced = position.current_price > 0 and position.entry_price > 0
        pnl = round(position.pnl_percent(), PNL_PRECISION) if priced else 0.0

        if priced and pnl > position.peak_pnl_percent:
            self.ctx.ledger.update_peak(position.symbol, pnl)
            position.peak_pnl_percent = pnl
        peak = position.peak_pnl_percent
        hours = position.holding_hours(now)

        decision = PositionRiskDecision(
            symbol=position.symbol,
            pnl_percent=pnl,
            peak_pnl_percent=peak,
            holding_hours=hours,
        )

        if hours >= policy.max_holding_hours:
            decision.close = True
            decision.reason = ExitReason.MAX_HOLDING
            decision.detail = f"held {hours:.2f}h >= {policy.max_holding_hours}h"
            return decision

        if not priced:
            logger.warning(
                f"{position.symbol}: no usable price (entry={position.entry_price}, "
                f"current={position.current_price}); price rules skipped this cycle"
            )
            return decision

        threshold = policy.stop_loss_threshold(position.leverage)
        if pnl <= threshold:
            decision.close = True
            decision.reason = ExitReason.STOP_LOSS
            decision.detail = f"pnl {pnl:.2f}% <= {threshold}% at {position.leverage}x"
            return decision

        floor = policy.trailing_floor(peak)
        if floor is not None and pnl < floor:
            decision.close = True
            decision.reason = ExitReason.TRAILING_STOP
            decision.detail = f"pnl {pnl:.2f}% fell below trailing floor {floor}% (peak {peak:.2f}%)"
            return decision

        if peak > policy.peak_drawdown_min_peak:
            giveback = round((peak - pnl) / peak * 100.0, PNL_PRECISION)
            if giveback >= policy.peak_drawdown_percent:
                decision.close = True
                decision.reason = ExitReason.PEAK_DRAWDOWN
                decision.detail = f"gave back {giveback:.1f}% of peak {peak:.2f}%"
                return decision

        return decision

    # ===== account =====

    def evaluate_account(self, total_value: float, wallet_balance: Optional[float] = None) -> CircuitBreakerResult:
        """
        Drawdown tiers use equity (``total_value``). The USDT stop-loss and
        take-profit lines use the wallet balance, which excludes unrealized PnL.
        """
        policy = self.ctx.policy
        wallet = total_value if wallet_balance is None else wallet_balance
        drawdown = round(self.account.drawdown_percent(total_value), PNL_PRECISION)

        def result(action: BreakerAction, reason: Optional[ExitReason] = None, message: str = ""):
            return CircuitBreakerResult(action, drawdown, total_value, reason, message)

        if drawdown >= policy.account_force_close_drawdown_percent:
            return result(
                BreakerAction.CLOSE_ALL_AND_HALT, ExitReason.ACCOUNT_DRAWDOWN,
                f"account drawdown {drawdown:.2f}% >= {policy.account_force_close_drawdown_percent}%",
            )
        if wallet <= policy.account_stop_loss_usdt:
            return result(
                BreakerAction.CLOSE_ALL_AND_HALT, ExitReason.ACCOUNT_STOP_LOSS,
                f"wallet balance {wallet:.2f} <= stop-loss {policy.account_stop_loss_usdt} USDT",
            )
        if wallet >= policy.account_take_profit_usdt:
            return result(
                BreakerAction.CLOSE_ALL_AND_HALT, ExitReason.ACCOUNT_TAKE_PROFIT,
                f"wallet balance {wallet:.2f} >= take-profit {policy.account_take_profit_usdt} USDT",
            )
        if drawdown >= policy.account_max_drawdown_percent:
            return result(
                BreakerAction.BLOCK_OPENS, ExitReason.ACCOUNT_DRAWDOWN,
                f"account drawdown {drawdown:.2f}% >= {policy.account_max_drawdown_percent}%",
            )
        return result(BreakerAction.NONE)

    # ===== enforcement =====

    def enforce(self, positions: List[Position], total_value: float,
                now: Optional[datetime] = None,
                wallet_balance: Optional[float] = None) -> RiskEnforcementReport:
        """Account breaker first, then per-position rules. Forced closes run here."""
        breaker = self.evaluate_account(total_value, wallet_balance)
        report = RiskEnforcementReport(breaker=breaker)
        if self.ctx.metrics is not None:
            self.ctx.metrics.record_account(total_value, breaker.drawdown_percent)

        if breaker.blocks_opens:
            self.execution.block_opens(breaker.message)
            if self.ctx.metrics is not None:
                self.ctx.metrics.record_breaker_trip(breaker.action.value)

        if breaker.halt:
            logger.critical("=" * 80)
            logger.critical(f"ACCOUNT CIRCUIT BREAKER: {breaker.message}")
            logger.critical(f"Closing {len(positions)} position(s) and halting")
            logger.critical("=" * 80)
            severity = AlertSeverity.WARNING if breaker.reason is ExitReason.ACCOUNT_TAKE_PROFIT else AlertSeverity.CRITICAL
            self.ctx.alert(severity, "Account circuit breaker tripped", breaker.message,
                           {"drawdown_percent": breaker.drawdown_percent, "total_value": total_value})
            for position in positions:
                self._force_close(position, breaker.reason, report)
            return report

        for position in positions:
            decision = self.evaluate_position(position, now)
            report.decisions.append(decision)
            if decision.close:
                logger.warning(f"Risk rule {decision.reason.value} closing {position.symbol}: {decision.detail}")
                self._force_close(position, decision.reason, report)
        return report

    def _force_close(self, position: Position, reason: ExitReason, report: RiskEnforcementReport) -> None:
        result = self.execution.close(position.symbol, 100, reason)
        if result.success:
            self.ctx.ledger.delete_position(position.symbol)
            report.closed.append(result)
            if self.ctx.metrics is not None:
                self.ctx.metrics.record_forced_close(reason.value)
            return
        report.failed.append(result)
        logger.error(f"Forced close of {position.symbol} ({reason.value}) failed: {result.error}")
        self.ctx.alert(
            AlertSeverity.CRITICAL,
            "Forced close failed",
            f"{position.symbol} ({reason.value}): {result.error}",
        )

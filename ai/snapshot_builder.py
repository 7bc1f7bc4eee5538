"""
Snapshot Builder - Construct the decision context handed to the oracle.

Builds a JSON-serializable snapshot containing:
- Per-symbol price, multi-timeframe indicators, intraday series, funding
- Account equity, available margin, return and Sharpe ratio
- Open positions with leveraged PnL, peak and holding time
- Recent trades and the previous decision
- Risk guardrails the execution engine will enforce anyway
"""

import logging
from datetime import datetime
from typing import Any

from core.account import AccountInfo
from core.models import DecisionRecord, MarketSnapshot, Position, Trade
from core.policy import RiskPolicy

logger = logging.getLogger(__name__)


# ─── Snapshot Builder ──────────────────────────────────────────────────────

def build_oracle_snapshot(
    market: dict[str, MarketSnapshot],
    account: AccountInfo,
    positions: list[Position],
    policy: RiskPolicy,
    iteration: int,
    started_at: datetime,
    now: datetime,
    recent_trades: list[Trade] | None = None,
    last_decision: DecisionRecord | None = None,
    primary_timeframe: str = "5m",
) -> dict[str, Any]:
    """
    Build the oracle snapshot for one cycle.

    Symbols without a usable price are left out of ``market`` entirely.

    Returns:
        Structured snapshot dict ready for the oracle
    """
    usable = {s: snap for s, snap in market.items() if snap.usable}
    skipped = sorted(set(market) - set(usable))
    if skipped:
        logger.info(f"Oracle snapshot excludes unusable symbols: {skipped}")

    return {
        "timestamp": now.isoformat(),
        "iteration": iteration,
        "minutes_elapsed": int((now - started_at).total_seconds() // 60),
        "market": {s: snap.to_dict(primary_timeframe) for s, snap in usable.items()},
        "account": _format_account(account),
        "positions": _format_positions(positions, now),
        "positions_count": len(positions),
        "recent_trades": _format_trades(recent_trades or []),
        "last_decision": _format_last_decision(last_decision),
        "guardrails": _format_guardrails(policy),
    }


def _format_account(account: AccountInfo) -> dict[str, Any]:
    return {
        "total_value": round(account.total_value, 4),
        "available": round(account.available, 4),
        "unrealized_pnl": round(account.unrealized_pnl, 4),
        "initial_balance": round(account.initial_balance, 4),
        "return_percent": round(account.return_percent, 4),
        "sharpe_ratio": round(account.sharpe_ratio, 4),
    }


def _format_positions(positions: list[Position], now: datetime) -> list[dict[str, Any]]:
    """
    Format open positions for the oracle.

    pnl_percent is leveraged, the same number the risk rules look at.
    """
    formatted = []
    for p in positions:
        formatted.append({
            "symbol": p.symbol,
            "side": p.side.value,
            "quantity": p.quantity,
            "entry_price": p.entry_price,
            "current_price": p.current_price,
            "liquidation_price": p.liquidation_price,
            "leverage": p.leverage,
            "unrealized_pnl": round(p.unrealized_pnl, 4),
            "pnl_percent": round(p.pnl_percent(), 4),
            "peak_pnl_percent": round(p.peak_pnl_percent, 4),
            "holding_hours": round(p.holding_hours(now), 2),
            "stop_loss": p.stop_loss,
            "profit_target": p.profit_target,
        })
    return formatted


def _format_trades(trades: list[Trade]) -> list[dict[str, Any]]:
    return [
        {
            "symbol": t.symbol,
            "side": t.side.value,
            "type": t.type.value,
            "price": t.price,
            "quantity": t.quantity,
            "leverage": t.leverage,
            "fee": round(t.fee, 6),
            "pnl": round(t.pnl, 6) if t.pnl is not None else None,
            "status": t.status.value,
            "timestamp": t.timestamp.isoformat(),
        }
        for t in trades
    ]


def _format_last_decision(record: DecisionRecord | None) -> dict[str, Any] | None:
    if record is None:
        return None
    return {
        "timestamp": record.timestamp.isoformat(),
        "iteration": record.iteration,
        "decision": record.decision[:2000],
        "account_value": record.account_value,
    }


def _format_guardrails(policy: RiskPolicy) -> dict[str, Any]:
    """
    Guardrails the oracle should plan around.

    The execution and risk engines enforce these regardless of what the
    oracle asks for.
    """
    return {
        "trading_symbols": list(policy.trading_symbols),
        "max_positions": policy.max_positions,
        "leverage_range": [policy.min_leverage, policy.max_leverage],
        "max_holding_hours": policy.max_holding_hours,
        "account_max_drawdown_percent": policy.account_max_drawdown_percent,
        "stop_loss_tiers": [list(t) for t in policy.stop_loss_tiers],
        "trailing_tiers": [list(t) for t in policy.trailing_tiers],
        "peak_drawdown_percent": policy.peak_drawdown_percent,
        "max_exposure_multiple": policy.max_exposure_multiple,
    }

"""Close every open position and reset the ledger.

Usage:
    python scripts/close_and_reset.py --config-dir config --yes

Closes each non-zero exchange position with a reduce-only market order
through the execution engine, wipes all ledger tables, and records a fresh
initial account snapshot so drawdown and return restart from the current
balance. Balance thresholds in system_config are written back unless
--drop-config is given.
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path
from typing import List

import yaml

from core.account import AccountService
from core.context import TradingContext
from core.exchange import BinanceFuturesExchange
from core.execution import ExecutionEngine, ExecutionResult
from core.models import Environment
from infra.ledger import LedgerStore
from tools.config_validator import (
    STOP_LOSS_CONFIG_KEY,
    TAKE_PROFIT_CONFIG_KEY,
    apply_app_env_overrides,
    build_execution_settings,
    build_market_data_settings,
    build_risk_policy,
)

logger = logging.getLogger("close_and_reset")


def close_all_and_reset(ctx: TradingContext, keep_config: bool = True) -> List[ExecutionResult]:
    """Close all exchange positions, clear the ledger, seed a new history."""
    account = AccountService(ctx)
    executor = ExecutionEngine(ctx, account)

    results = []
    for pos in ctx.exchange.get_positions():
        if pos.quantity <= 0:
            continue
        result = executor.close(pos.symbol, 100)
        results.append(result)
        if result.success:
            logger.info(f"Closed {pos.symbol}: pnl={result.pnl:+.4f}")
        else:
            logger.error(f"Failed to close {pos.symbol}: {result.error}")

    saved = {}
    if keep_config:
        for key in (STOP_LOSS_CONFIG_KEY, TAKE_PROFIT_CONFIG_KEY):
            value = ctx.ledger.get_config(key)
            if value is not None:
                saved[key] = value

    ctx.ledger.reset()
    for key, value in saved.items():
        ctx.ledger.set_config(key, value)

    remaining = [p.symbol for p in ctx.exchange.get_positions() if p.quantity > 0]
    if remaining:
        logger.warning(f"Positions still open after close: {remaining}; next reconciliation will restore them")

    account.initialize()
    return results


def main(argv: List[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Close all positions and reset the perpguard ledger")
    parser.add_argument("--config-dir", default="config")
    parser.add_argument("--drop-config", action="store_true", help="Also clear stored balance thresholds")
    parser.add_argument("--yes", action="store_true", help="Skip the confirmation prompt")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    config_dir = Path(args.config_dir)
    with open(config_dir / "app.yaml") as f:
        app_config = yaml.safe_load(f) or {}
    with open(config_dir / "policy.yaml") as f:
        policy_config = yaml.safe_load(f) or {}
    app = apply_app_env_overrides(app_config)
    testnet = app.app.mode == "TESTNET"

    if not args.yes:
        answer = input(f"Close ALL positions on {'testnet' if testnet else 'MAINNET'} and wipe "
                       f"{app.ledger.path}? [y/N] ")
        if answer.strip().lower() != "y":
            print("Aborted.")
            return 1

    ctx = TradingContext(
        exchange=BinanceFuturesExchange(
            api_key=os.getenv("BINANCE_API_KEY", ""),
            api_secret=os.getenv("BINANCE_API_SECRET", ""),
            testnet=testnet,
            timeout=app.exchange.timeout_seconds,
        ),
        ledger=LedgerStore(app.ledger.path),
        policy=build_risk_policy(policy_config),
        execution=build_execution_settings(policy_config),
        market_data=build_market_data_settings(
            policy_config, Environment.TESTNET if testnet else Environment.MAINNET
        ),
    )
    try:
        results = close_all_and_reset(ctx, keep_config=not args.drop_config)
    finally:
        ctx.ledger.close()

    failed = [r for r in results if not r.success]
    print(f"Closed {len(results) - len(failed)}/{len(results)} position(s); ledger reset.")
    return 1 if failed else 0


if __name__ == "__main__":
    sys.exit(main())

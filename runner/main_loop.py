"""
perpguard Runner: Main Loop

Orchestrates the trading cycle.

Flow:
1. Collect multi-timeframe market data (abort if no symbol is usable)
2. Fetch account and positions concurrently, append account snapshot
3. Reconcile ledger positions against the exchange
4. Risk engine: account circuit breaker, then per-position rules
5. Reconcile again
6. Consult the decision oracle and dispatch its tool calls
7. Final reconciliation, persist decision record, audit
"""

import json
import logging
import os
import signal
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

from ai.oracle import DecisionOracle, consult_oracle, create_decision_oracle
from ai.snapshot_builder import build_oracle_snapshot
from ai.tools import ToolDispatcher
from core.account import AccountInfo, AccountService
from core.audit_log import AuditLogger
from core.context import TradingContext
from core.exceptions import ConfigurationError, CriticalDataUnavailable, OracleUnavailable
from core.exchange import BinanceFuturesExchange
from core.execution import ExecutionEngine, ExecutionResult
from core.market_data import MarketDataPipeline, usable_symbols
from core.models import AccountBalance, DecisionRecord, Environment, ExchangePosition, MarketSnapshot
from core.reconciliation import ReconciliationEngine
from core.retry import RetryPolicy
from core.risk import RiskEngine
from infra.alerting import AlertService, AlertSeverity
from infra.ledger import LedgerStore
from infra.metrics import CycleStats, MetricsRecorder

logger = logging.getLogger(__name__)

HALT_EXIT_CODE = 2


@dataclass
class CycleOutcome:
    iteration: int
    status: str = "running"  # completed | halted | aborted | error | skipped
    usable_symbols: List[str] = field(default_factory=list)
    abort_reason: Optional[str] = None
    account_value: Optional[float] = None
    drawdown_percent: Optional[float] = None
    breaker_action: Optional[str] = None
    forced_closes: List[ExecutionResult] = field(default_factory=list)
    oracle_actions: List[Dict[str, Any]] = field(default_factory=list)
    decision: Optional[DecisionRecord] = None

    @property
    def halted(self) -> bool:
        return self.status == "halted"


class TradingLoop:
    """
    Main trading loop orchestrator.

    Responsibilities:
    - Run one cycle at a time (overlapping triggers are skipped)
    - Coordinate market data, reconciliation, risk, oracle and execution
    - Persist decision records and audit every cycle
    - Signal halt when an account circuit breaker closes everything
    """

    def __init__(self, ctx: TradingContext, oracle: DecisionOracle, mode: str = "TESTNET",
                 oracle_timeout_s: float = 120.0, recent_trades: int = 10,
                 interval_seconds: float = 180.0, audit: Optional[AuditLogger] = None,
                 retry_policy: Optional[RetryPolicy] = None):
        self.ctx = ctx
        self.oracle = oracle
        self.mode = mode
        self.oracle_timeout_s = oracle_timeout_s
        self.recent_trades = recent_trades
        self.interval_seconds = interval_seconds
        self.audit = audit
        self.metrics = ctx.metrics
        self.instance_lock = None

        self.account = AccountService(ctx, retry_policy)
        self.market_data = MarketDataPipeline(ctx)
        self.reconciliation = ReconciliationEngine(ctx, retry_policy)
        self.executor = ExecutionEngine(ctx, self.account, retry_policy)
        self.risk_engine = RiskEngine(ctx, self.executor, self.account)
        self.dispatcher = ToolDispatcher(self.executor)

        self.iteration = 0
        self.started_at = ctx.now()
        self.halted = False
        self._running = True
        self._cycle_lock = threading.Lock()
        self._stage_timings: Dict[str, float] = {}

    # ===== construction from config =====

    @classmethod
    def from_config(cls, config_dir: str = "config",
                    env: Optional[Mapping[str, str]] = None) -> "TradingLoop":
        """Validate config, configure logging and build every collaborator."""
        from tools.config_validator import (
            apply_app_env_overrides,
            apply_ledger_overrides,
            build_execution_settings,
            build_market_data_settings,
            build_risk_policy,
            load_yaml_file,
            validate_all_configs,
        )

        env = os.environ if env is None else env
        config_path = Path(config_dir)
        validation_errors = validate_all_configs(config_dir)
        if validation_errors:
            logger.error("=" * 80)
            logger.error("CONFIGURATION VALIDATION FAILED")
            logger.error("=" * 80)
            for idx, error in enumerate(validation_errors, start=1):
                lines = str(error).splitlines()
                if lines:
                    logger.error(f"{idx:>2}. {lines[0]}")
            logger.error("=" * 80)
            raise ValueError(f"Invalid configuration: {len(validation_errors)} error(s) found")

        app_config = load_yaml_file(config_path / "app.yaml")
        policy_config = load_yaml_file(config_path / "policy.yaml")
        app = apply_app_env_overrides(app_config, env)

        log_file = app.logging.file
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        logging.basicConfig(
            level=getattr(logging, app.logging.level),
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
            handlers=[logging.FileHandler(log_file), logging.StreamHandler()],
        )
        logger.info(f"Starting perpguard in mode={app.app.mode}")

        # Only one process may trade the account; the lock sits beside its ledger
        from infra.instance_lock import check_single_instance
        lock_dir = Path(app.ledger.path).parent
        instance_lock = check_single_instance("perpguard", lock_dir=str(lock_dir))
        if not instance_lock:
            logger.error("=" * 80)
            logger.error("ANOTHER INSTANCE IS ALREADY RUNNING")
            logger.error(f"If you're sure no other instance is running, remove {lock_dir / 'perpguard.pid'}")
            logger.error("=" * 80)
            raise RuntimeError("Another perpguard instance is already running")
        logger.info("✅ Single-instance lock acquired")

        monitoring = app.monitoring
        metrics = MetricsRecorder(enabled=monitoring.metrics_enabled, port=monitoring.metrics_port)
        metrics.start()
        alerts = AlertService.from_config(monitoring.alerts_enabled, monitoring.alerts)
        if alerts.is_enabled():
            logger.info(f"Alerting enabled (min_severity={monitoring.alerts.get('min_severity', 'warning')})")

        try:
            ledger = LedgerStore(app.ledger.path)
        except Exception as e:
            instance_lock.release()
            raise ConfigurationError(f"Ledger unavailable at {app.ledger.path}: {e}") from e

        testnet = app.app.mode == "TESTNET"
        exchange = BinanceFuturesExchange(
            api_key=env.get("BINANCE_API_KEY", ""),
            api_secret=env.get("BINANCE_API_SECRET", ""),
            testnet=testnet,
            timeout=app.exchange.timeout_seconds,
            recv_window=app.exchange.recv_window_ms,
            retry_policy=RetryPolicy(
                attempts=app.exchange.retry_attempts,
                base_delay=app.exchange.retry_base_delay_seconds,
                max_delay=app.exchange.retry_max_delay_seconds,
            ),
            sync_time=app.exchange.sync_time,
        )

        policy = build_risk_policy(policy_config, env)
        policy = apply_ledger_overrides(policy, ledger, app.ledger.sync_config_on_startup)
        environment = Environment.TESTNET if testnet else Environment.MAINNET

        ctx = TradingContext(
            exchange=exchange,
            ledger=ledger,
            policy=policy,
            execution=build_execution_settings(policy_config),
            market_data=build_market_data_settings(policy_config, environment),
            alerts=alerts,
            metrics=metrics,
        )

        oracle_cfg = app.oracle
        if oracle_cfg.provider == "openrouter":
            api_key = env.get("OPENROUTER_API_KEY") or env.get("OPENAI_API_KEY")
        else:
            api_key = env.get("OPENAI_API_KEY")
        oracle = create_decision_oracle(
            model=oracle_cfg.model,
            api_key=api_key,
            base_url=oracle_cfg.base_url if oracle_cfg.provider == "openrouter" else None,
            timeout_s=oracle_cfg.timeout_seconds,
            max_tokens=oracle_cfg.max_tokens,
            temperature=oracle_cfg.temperature,
        )

        loop = cls(
            ctx,
            oracle,
            mode=app.app.mode,
            oracle_timeout_s=oracle_cfg.timeout_seconds,
            recent_trades=oracle_cfg.recent_trades,
            interval_seconds=app.loop.interval_minutes * 60.0,
            audit=AuditLogger(audit_file=log_file.replace(".log", "_audit.jsonl")),
        )
        loop.instance_lock = instance_lock
        logger.info(
            f"Initialized TradingLoop in {loop.mode} mode: symbols={list(policy.trading_symbols)} "
            f"max_positions={policy.max_positions} leverage={policy.min_leverage}-{policy.max_leverage}x"
        )
        return loop

    # ===== lifecycle =====

    def initialize(self) -> None:
        """Seed account history and sync the ledger before the first cycle."""
        try:
            self.account.initialize()
            self.reconciliation.reconcile_positions()
        except CriticalDataUnavailable as e:
            logger.warning(f"Startup sync incomplete ({e.source} unavailable); first cycle will retry")

    def _handle_stop(self, *_):
        logger.info("Stop signal received; finishing current cycle")
        self._running = False

    def close(self) -> None:
        if self.instance_lock is not None:
            self.instance_lock.release()
            self.instance_lock = None
        self.ctx.ledger.close()

    # ===== helpers =====

    @contextmanager
    def _stage_timer(self, stage: str):
        start = time.perf_counter()
        try:
            yield
        finally:
            duration = max(time.perf_counter() - start, 0.0)
            self._stage_timings[stage] = duration
            if self.metrics is not None:
                self.metrics.record_stage_duration(stage, duration)

    def _fetch_account_and_positions(self) -> Tuple[AccountBalance, List[ExchangePosition]]:
        """Both reads run concurrently; either failing aborts the cycle."""
        with ThreadPoolExecutor(max_workers=2, thread_name_prefix="account") as pool:
            balance_future = pool.submit(self.account.fetch_balance)
            positions_future = pool.submit(self.reconciliation.fetch_exchange_positions)
            balance_error = balance_future.exception()
            positions_error = positions_future.exception()
        if balance_error is not None:
            raise balance_error
        if positions_error is not None:
            raise positions_error
        return balance_future.result(), positions_future.result()

    def _safe_reconcile(self, stage: str) -> None:
        try:
            with self._stage_timer(stage):
                self.reconciliation.reconcile_positions()
        except Exception as e:
            logger.error(f"Best-effort reconciliation failed: {e}")

    def _refresh_account_info(self, fallback: AccountInfo) -> AccountInfo:
        try:
            return self.account.fetch_account_info()
        except CriticalDataUnavailable as e:
            logger.warning(f"Account refresh failed ({e}); using start-of-cycle values")
            return fallback

    def _market_analysis(self, market: Dict[str, MarketSnapshot], usable: List[str]) -> str:
        """Full per-symbol snapshot (indicators, series, warnings) as stored with the decision."""
        primary = self.ctx.market_data.primary_timeframe
        return json.dumps({
            "usable_symbols": usable,
            "symbols": {symbol: snap.to_dict(primary) for symbol, snap in market.items()},
        }, default=str)

    # ===== cycle =====

    def run_cycle(self) -> CycleOutcome:
        """
        Execute one trading cycle.

        Returns immediately with status "skipped" if a cycle is already in
        flight. Any exception -> error status, best-effort reconcile, audit.
        """
        if not self._cycle_lock.acquire(blocking=False):
            logger.warning("Previous cycle still running; skipping this trigger")
            return CycleOutcome(iteration=self.iteration, status="skipped")
        try:
            return self._run_cycle_locked()
        finally:
            self._cycle_lock.release()

    def _run_cycle_locked(self) -> CycleOutcome:
        self.iteration += 1
        outcome = CycleOutcome(iteration=self.iteration)
        cycle_started = self.ctx.now()
        start = time.perf_counter()
        self._stage_timings = {}
        logger.info("=" * 80)
        logger.info(f"CYCLE {self.iteration} START: {cycle_started.isoformat()}")
        logger.info("=" * 80)

        self.executor.begin_cycle()
        try:
            self._execute_cycle(outcome, cycle_started)
        except CriticalDataUnavailable as e:
            logger.error(f"Cycle aborted: {e.source} unavailable ({e.original})")
            outcome.status = "aborted"
            outcome.abort_reason = f"{e.source} unavailable"
            self._safe_reconcile("reconcile_recovery")
        except Exception as e:
            logger.exception(f"Cycle {self.iteration} failed: {e}")
            outcome.status = "error"
            outcome.abort_reason = str(e)
            self._safe_reconcile("reconcile_recovery")
            self.ctx.alert(AlertSeverity.WARNING, "Trading cycle failed", f"{type(e).__name__}: {e}")
        finally:
            self._finish_cycle(outcome, cycle_started, time.perf_counter() - start)
        return outcome

    def _execute_cycle(self, outcome: CycleOutcome, cycle_started: datetime) -> None:
        policy = self.ctx.policy

        with self._stage_timer("market_data"):
            market = self.market_data.collect_market_data(list(policy.trading_symbols))
        outcome.usable_symbols = usable_symbols(market)
        if not outcome.usable_symbols:
            logger.error("No usable market data for any symbol; aborting cycle before risk and execution")
            outcome.status = "aborted"
            outcome.abort_reason = "no usable market data"
            return

        with self._stage_timer("account_snapshot"):
            balance, raw_positions = self._fetch_account_and_positions()
            info = self.account.fetch_account_info(balance)
            self.account.record_snapshot(info, cycle_started)
        outcome.account_value = info.total_value

        with self._stage_timer("reconcile"):
            self.reconciliation.reconcile_positions(raw_positions)

        with self._stage_timer("risk"):
            report = self.risk_engine.enforce(self.ctx.ledger.get_positions(), info.total_value, cycle_started,
                                              wallet_balance=info.wallet_balance)
        outcome.drawdown_percent = report.breaker.drawdown_percent
        outcome.breaker_action = report.breaker.action.value
        outcome.forced_closes = report.closed + report.failed
        if report.halt:
            self.halted = True

        with self._stage_timer("reconcile_post_risk"):
            self.reconciliation.reconcile_positions()

        info = self._refresh_account_info(info)
        positions = self.ctx.ledger.get_positions()
        snapshot = build_oracle_snapshot(
            market,
            info,
            positions,
            policy,
            iteration=self.iteration,
            started_at=self.started_at,
            now=self.ctx.now(),
            recent_trades=self.ctx.ledger.recent_trades(self.recent_trades),
            last_decision=self.ctx.ledger.latest_decision(),
            primary_timeframe=self.ctx.market_data.primary_timeframe,
        )

        with self._stage_timer("oracle"):
            try:
                decision = consult_oracle(self.oracle, snapshot, self.oracle_timeout_s)
            except OracleUnavailable as e:
                logger.warning(f"No decision this cycle: {e}")
                decision_text = f"No decision: {e}"
                actions: List[Dict[str, Any]] = []
            else:
                decision_text = decision.text
                actions = self.dispatcher.dispatch_all(decision.tool_invocations)
        outcome.oracle_actions = actions

        with self._stage_timer("reconcile_final"):
            self.reconciliation.reconcile_positions()

        record = DecisionRecord(
            timestamp=cycle_started,
            iteration=self.iteration,
            market_analysis=self._market_analysis(market, outcome.usable_symbols),
            decision=decision_text,
            actions_taken=json.dumps(actions, default=str),
            account_value=info.total_value,
            positions_count=self.ctx.ledger.count_positions(),
        )
        self.ctx.ledger.insert_decision(record)
        outcome.decision = record
        outcome.status = "halted" if self.halted else "completed"

    def _finish_cycle(self, outcome: CycleOutcome, cycle_started: datetime, duration: float) -> None:
        if self.metrics is not None:
            self.metrics.observe_cycle(CycleStats(
                status=outcome.status,
                usable_symbols=len(outcome.usable_symbols),
                forced_closes=len(outcome.forced_closes),
                oracle_actions=len(outcome.oracle_actions),
                duration_seconds=duration,
            ))
        if self.audit is not None:
            self.audit.log_cycle(
                ts=cycle_started,
                iteration=outcome.iteration,
                mode=self.mode,
                status=outcome.status,
                usable_symbols=outcome.usable_symbols,
                abort_reason=outcome.abort_reason,
                account_value=outcome.account_value,
                drawdown_percent=outcome.drawdown_percent,
                breaker_action=outcome.breaker_action,
                forced_closes=outcome.forced_closes,
                oracle_actions=outcome.oracle_actions,
                positions_count=outcome.decision.positions_count if outcome.decision else None,
                stage_latencies=dict(self._stage_timings),
            )
        ordered = ", ".join(f"{stage}={secs:.3f}s" for stage, secs in self._stage_timings.items())
        logger.info(f"Latency summary [{outcome.status}]: total={duration:.3f}s | {ordered}")
        logger.info("=" * 80)
        logger.info(
            f"CYCLE {outcome.iteration} END: status={outcome.status} "
            f"forced_closes={len(outcome.forced_closes)} oracle_actions={len(outcome.oracle_actions)}"
        )
        logger.info("=" * 80)

    # ===== scheduling =====

    def _signal_halt(self) -> None:
        logger.critical("=" * 80)
        logger.critical("TRADING HALTED by account circuit breaker; exiting run loop")
        logger.critical("=" * 80)
        self.ctx.alert(AlertSeverity.CRITICAL, "Trading halted", "Account circuit breaker closed all positions")

    def run_forever(self, interval_seconds: Optional[float] = None) -> int:
        """
        Run cycles on a fixed period, first one immediately.

        Returns:
            0 after a stop signal, HALT_EXIT_CODE after a circuit-breaker halt
        """
        interval = max(float(interval_seconds or self.interval_seconds), 1.0)
        signal.signal(signal.SIGINT, self._handle_stop)
        signal.signal(signal.SIGTERM, self._handle_stop)
        logger.info(f"Starting continuous loop (interval={interval:.0f}s)")

        while self._running:
            start = time.monotonic()
            self.run_cycle()
            if self.halted:
                self._signal_halt()
                return HALT_EXIT_CODE
            elapsed = time.monotonic() - start
            sleep_for = max(interval - elapsed, 1.0)
            if elapsed > interval:
                logger.warning(f"Cycle took {elapsed:.1f}s, longer than the {interval:.0f}s interval")
            logger.info(f"Cycle took {elapsed:.2f}s, sleeping {sleep_for:.2f}s")
            time.sleep(sleep_for)

        logger.info("Trading loop stopped cleanly.")
        return 0


def main():
    """Entry point"""
    import argparse
    import sys

    parser = argparse.ArgumentParser(description="perpguard perpetual futures trading bot")
    parser.add_argument("--once", action="store_true", help="Run one cycle and exit")
    parser.add_argument("--interval", type=float, default=None,
                        help="Seconds between cycles (default: loop.interval_minutes from app.yaml)")
    parser.add_argument("--config-dir", default="config", help="Config directory")

    args = parser.parse_args()

    # Logging is configured in from_config
    loop = TradingLoop.from_config(config_dir=args.config_dir)
    try:
        loop.initialize()
        if args.once:
            outcome = loop.run_cycle()
            code = HALT_EXIT_CODE if outcome.halted else 0
        else:
            code = loop.run_forever(interval_seconds=args.interval)
    finally:
        loop.close()
    sys.exit(code)


if __name__ == "__main__":
    main()

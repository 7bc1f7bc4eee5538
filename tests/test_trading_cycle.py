"""
Tests for the TradingLoop cycle orchestration.

Each cycle runs against a FakeExchange and an in-memory ledger; the oracle
is a MockDecisionOracle or a BlockingOracle.
"""

import json
import os
from datetime import timedelta
from pathlib import Path
from unittest.mock import patch

import pytest
import yaml

from ai.oracle import MockDecisionOracle, OracleDecision
from ai.tools import CLOSE_POSITION, OPEN_POSITION, ToolInvocation
from core.audit_log import AuditLogger
from core.models import AccountBalance, AccountSnapshot
from core.policy import RiskPolicy
from core.retry import NO_RETRY
from infra.metrics import MetricsRecorder
from runner.main_loop import HALT_EXIT_CODE, TradingLoop
from tests.helpers import FIXED_NOW, BlockingOracle, make_context

SYMBOLS = ("BTC", "ETH")


def _open(symbol="BTC", side="long", leverage=10, margin=50.0):
    return ToolInvocation(OPEN_POSITION, {"symbol": symbol, "side": side, "leverage": leverage,
                                          "margin_usdt": margin})


@pytest.fixture
def cycle_ctx(exchange):
    ctx = make_context(exchange, policy=RiskPolicy(trading_symbols=SYMBOLS), metrics=MetricsRecorder())
    yield ctx
    ctx.ledger.close()


def _loop(ctx, oracle=None, tmp_path=None, **kwargs):
    audit = AuditLogger(audit_file=str(tmp_path / "audit.jsonl")) if tmp_path is not None else None
    return TradingLoop(ctx, oracle or MockDecisionOracle(), retry_policy=NO_RETRY, audit=audit, **kwargs)


def _seed_history(ctx, value):
    ctx.ledger.append_account_snapshot(AccountSnapshot(
        timestamp=FIXED_NOW - timedelta(hours=2), total_value=value,
        available_cash=value, unrealized_pnl=0.0,
    ))


class TestCompletedCycle:
    def test_oracle_open_is_executed_and_recorded(self, cycle_ctx, exchange, tmp_path):
        oracle = MockDecisionOracle(OracleDecision(text="Going long BTC", tool_invocations=[_open()]))
        loop = _loop(cycle_ctx, oracle, tmp_path)

        outcome = loop.run_cycle()

        assert outcome.status == "completed"
        assert outcome.usable_symbols == ["BTC", "ETH"]
        assert outcome.oracle_actions[0]["success"] is True
        assert exchange.positions["BTC"].size == 5.0
        assert cycle_ctx.ledger.get_position("BTC") is not None

        record = cycle_ctx.ledger.latest_decision()
        assert record.iteration == 1
        assert record.decision == "Going long BTC"
        assert record.positions_count == 1
        assert json.loads(record.actions_taken)[0]["tool"] == OPEN_POSITION
        assert json.loads(record.market_analysis)["usable_symbols"] == ["BTC", "ETH"]

        snapshot = oracle.snapshots[0]
        assert snapshot["iteration"] == 1
        assert set(snapshot["market"]) == {"BTC", "ETH"}
        assert snapshot["account"]["total_value"] == 1000.0

    def test_cycle_appends_account_snapshot(self, cycle_ctx):
        _loop(cycle_ctx).run_cycle()
        assert cycle_ctx.ledger.account_values() == [1000.0]

    def test_decision_record_keeps_market_snapshot(self, cycle_ctx):
        _loop(cycle_ctx).run_cycle()

        analysis = json.loads(cycle_ctx.ledger.latest_decision().market_analysis)
        btc = analysis["symbols"]["BTC"]
        assert btc["price"] == 100.0
        assert {"ema20", "macd", "rsi7", "rsi14", "atr14"} <= set(btc["indicators"])
        assert set(btc["timeframes"]) == {tf for tf, _ in cycle_ctx.market_data.timeframes}
        assert btc["intraday"]["mid_prices"]
        assert "atr3" in btc["longer_term"]

    def test_second_cycle_sees_previous_decision(self, cycle_ctx):
        oracle = MockDecisionOracle(OracleDecision(text="hold"))
        loop = _loop(cycle_ctx, oracle)
        loop.run_cycle()
        loop.run_cycle()
        assert oracle.snapshots[1]["last_decision"]["iteration"] == 1
        assert loop.iteration == 2

    def test_discretionary_close(self, cycle_ctx, exchange):
        exchange.seed_position("ETH", 1.0, 50.0)
        oracle = MockDecisionOracle(OracleDecision(
            text="Taking profit", tool_invocations=[ToolInvocation(CLOSE_POSITION, {"symbol": "ETH"})],
        ))
        outcome = _loop(cycle_ctx, oracle).run_cycle()
        assert outcome.oracle_actions[0]["success"] is True
        assert exchange.positions == {}
        assert cycle_ctx.ledger.count_positions() == 0

    def test_audit_and_metrics(self, cycle_ctx, tmp_path):
        loop = _loop(cycle_ctx, tmp_path=tmp_path)
        loop.run_cycle()

        entry = loop.audit.get_recent_cycles(1)[0]
        assert entry["status"] == "completed"
        assert entry["iteration"] == 1
        assert "oracle" in entry["stage_latencies"]
        assert cycle_ctx.metrics.sample("perpguard_cycle_total", {"status": "completed"}) == 1.0
        assert cycle_ctx.metrics.last_cycle().usable_symbols == 2


class TestRiskInCycle:
    def test_force_close_drawdown_closes_all_and_halts(self, cycle_ctx, exchange, tmp_path):
        _seed_history(cycle_ctx, 1000.0)
        exchange.seed_position("BTC", 1.0, 100.0)
        exchange.seed_position("ETH", -2.0, 50.0)
        exchange.balance = AccountBalance(total=800.0, available=700.0)
        oracle = MockDecisionOracle(OracleDecision(text="Buy the dip", tool_invocations=[_open()]))
        loop = _loop(cycle_ctx, oracle, tmp_path)

        outcome = loop.run_cycle()

        assert outcome.status == "halted"
        assert outcome.halted and loop.halted
        assert outcome.drawdown_percent == pytest.approx(20.0)
        assert outcome.breaker_action == "close_all_and_halt"
        assert sorted(r.symbol for r in outcome.forced_closes) == ["BTC", "ETH"]
        assert all(r.success for r in outcome.forced_closes)
        assert exchange.positions == {}
        assert cycle_ctx.ledger.count_positions() == 0

        rejected = outcome.oracle_actions[0]
        assert rejected["success"] is False
        assert "blocked" in rejected["error"]
        assert cycle_ctx.metrics.sample(
            "perpguard_forced_close_total", {"reason": "account_drawdown"}
        ) == 2.0
        assert loop.audit.get_recent_cycles(1)[0]["status"] == "halted"

    def test_blocked_opens_reset_next_cycle(self, cycle_ctx, exchange):
        _seed_history(cycle_ctx, 1000.0)
        exchange.balance = AccountBalance(total=850.0, available=850.0)
        oracle = MockDecisionOracle(OracleDecision(text="try", tool_invocations=[_open()]))
        loop = _loop(cycle_ctx, oracle)

        first = loop.run_cycle()
        assert first.status == "completed"
        assert first.breaker_action == "block_opens"
        assert first.oracle_actions[0]["success"] is False

        # fresh history: drawdown restarts from the current balance
        cycle_ctx.ledger.reset()
        second = loop.run_cycle()
        assert second.breaker_action == "none"
        assert second.oracle_actions[0]["success"] is True

    def test_stop_loss_runs_before_oracle(self, cycle_ctx, exchange):
        exchange.seed_position("BTC", 1.0, 100.0, leverage=10)
        exchange.set_price("BTC", 99.0)
        oracle = MockDecisionOracle()

        outcome = _loop(cycle_ctx, oracle).run_cycle()

        assert [r.symbol for r in outcome.forced_closes] == ["BTC"]
        assert oracle.snapshots[0]["positions"] == []


class TestAbortedCycles:
    def test_no_usable_market_data_aborts_before_risk(self, cycle_ctx, exchange):
        exchange.fail_reads.update({"ticker:BTC", "ticker:ETH"})
        exchange.seed_position("BTC", 1.0, 100.0)
        oracle = MockDecisionOracle()

        outcome = _loop(cycle_ctx, oracle).run_cycle()

        assert outcome.status == "aborted"
        assert outcome.abort_reason == "no usable market data"
        assert oracle.call_count == 0
        assert exchange.placed == []
        assert cycle_ctx.ledger.count_decisions() == 0
        assert cycle_ctx.ledger.account_values() == []

    def test_account_unavailable_aborts(self, cycle_ctx, exchange):
        exchange.fail_reads.add("account")
        oracle = MockDecisionOracle()

        outcome = _loop(cycle_ctx, oracle).run_cycle()

        assert outcome.status == "aborted"
        assert outcome.abort_reason == "account unavailable"
        assert oracle.call_count == 0

    def test_unexpected_error_is_contained(self, cycle_ctx):
        loop = _loop(cycle_ctx)
        with patch.object(loop.risk_engine, "enforce", side_effect=RuntimeError("boom")):
            outcome = loop.run_cycle()
        assert outcome.status == "error"
        assert outcome.abort_reason == "boom"
        # The loop is still usable afterwards
        assert loop.run_cycle().status == "completed"


class TestOracleFailures:
    def test_timeout_records_no_decision(self, cycle_ctx, exchange):
        oracle = BlockingOracle()
        loop = _loop(cycle_ctx, oracle, oracle_timeout_s=0.05)
        try:
            outcome = loop.run_cycle()
        finally:
            oracle.release.set()

        assert outcome.status == "completed"
        assert outcome.oracle_actions == []
        record = cycle_ctx.ledger.latest_decision()
        assert record.decision.startswith("No decision:")
        assert json.loads(record.actions_taken) == []
        assert exchange.placed == []


class TestScheduling:
    def test_overlapping_trigger_is_skipped(self, cycle_ctx):
        oracle = MockDecisionOracle()
        loop = _loop(cycle_ctx, oracle)
        loop._cycle_lock.acquire()
        try:
            outcome = loop.run_cycle()
        finally:
            loop._cycle_lock.release()

        assert outcome.status == "skipped"
        assert loop.iteration == 0
        assert oracle.call_count == 0

    def test_run_forever_exits_with_halt_code(self, cycle_ctx, exchange):
        _seed_history(cycle_ctx, 1000.0)
        exchange.balance = AccountBalance(total=700.0, available=700.0)
        loop = _loop(cycle_ctx)
        with patch("signal.signal"), patch("time.sleep") as mock_sleep:
            code = loop.run_forever(interval_seconds=60)
        assert code == HALT_EXIT_CODE
        mock_sleep.assert_not_called()

    def test_run_forever_stops_on_signal(self, cycle_ctx):
        loop = _loop(cycle_ctx)

        def stop_after_first(_seconds):
            loop._handle_stop()

        with patch("signal.signal"), patch("time.sleep", side_effect=stop_after_first):
            code = loop.run_forever(interval_seconds=60)
        assert code == 0
        assert loop.iteration == 1

    def test_initialize_seeds_history_and_ledger(self, cycle_ctx, exchange):
        exchange.seed_position("BTC", 1.0, 100.0)
        loop = _loop(cycle_ctx)
        loop.initialize()
        loop.initialize()
        assert cycle_ctx.ledger.account_values() == [1000.0]
        assert cycle_ctx.ledger.count_positions() == 1

    def test_invalid_config_refuses_to_start(self, tmp_path):
        (tmp_path / "app.yaml").write_text("app:\n  mode: PAPER\n")
        (tmp_path / "policy.yaml").write_text("{}\n")
        with pytest.raises(ValueError):
            TradingLoop.from_config(config_dir=str(tmp_path), env={})

    def test_instance_lock_lives_beside_ledger(self, tmp_path):
        shipped = Path(__file__).resolve().parents[1] / "config"
        app = yaml.safe_load((shipped / "app.yaml").read_text())
        app["ledger"]["path"] = str(tmp_path / "state" / "perpguard.db")
        app["logging"]["file"] = str(tmp_path / "logs" / "perpguard.log")
        config_dir = tmp_path / "config"
        config_dir.mkdir()
        (config_dir / "app.yaml").write_text(yaml.safe_dump(app))
        (config_dir / "policy.yaml").write_text((shipped / "policy.yaml").read_text())

        # a live process (our parent) already holds the lock
        lock_file = tmp_path / "state" / "perpguard.pid"
        lock_file.parent.mkdir()
        lock_file.write_text(json.dumps({"pid": os.getppid()}))

        with pytest.raises(RuntimeError, match="already running"):
            TradingLoop.from_config(config_dir=str(config_dir), env={})
        assert json.loads(lock_file.read_text())["pid"] == os.getppid()

"""
Tests for the decision oracle, its tool dispatch and the snapshot it sees.
"""

import json
import time
from datetime import timedelta
from types import SimpleNamespace
from unittest.mock import Mock, patch

import pytest

from ai.oracle import (
    LLMDecisionOracle,
    MockDecisionOracle,
    OracleDecision,
    consult_oracle,
    create_decision_oracle,
)
from ai.snapshot_builder import build_oracle_snapshot
from ai.tools import CLOSE_POSITION, OPEN_POSITION, TOOL_SCHEMAS, ToolDispatcher, ToolInvocation
from core.account import AccountInfo
from core.exceptions import ConfigurationError, OracleUnavailable
from core.execution import ExecutionEngine, ExecutionResult
from core.models import (
    DecisionRecord,
    ExitReason,
    MarketSnapshot,
    Position,
    Side,
    Ticker,
    Trade,
    TradeType,
)
from core.policy import RiskPolicy
from tests.helpers import FIXED_NOW, BlockingOracle, hours_ago


def _tool_call(name, arguments):
    return SimpleNamespace(function=SimpleNamespace(name=name, arguments=arguments))


def _completion(content, tool_calls=None):
    message = SimpleNamespace(content=content, tool_calls=tool_calls)
    return SimpleNamespace(choices=[SimpleNamespace(message=message)])


@pytest.fixture
def llm_oracle():
    with patch("openai.OpenAI") as mock_openai:
        oracle = LLMDecisionOracle(model="test-model", api_key="sk-test", base_url="https://example.invalid")
    mock_openai.assert_called_once_with(api_key="sk-test", base_url="https://example.invalid", timeout=120.0)
    return oracle


class TestLLMDecisionOracle:
    def test_parses_tool_calls_in_order(self, llm_oracle):
        llm_oracle.client.chat.completions.create.return_value = _completion(
            "  BTC breaking out; trimming ETH.  ",
            [
                _tool_call(OPEN_POSITION, json.dumps({"symbol": "BTC", "side": "long", "leverage": 10,
                                                      "margin_usdt": 50})),
                _tool_call(CLOSE_POSITION, json.dumps({"symbol": "ETH", "percentage": 50})),
            ],
        )

        decision = llm_oracle.decide({"iteration": 1})

        assert decision.text == "BTC breaking out; trimming ETH."
        assert [i.name for i in decision.tool_invocations] == [OPEN_POSITION, CLOSE_POSITION]
        assert decision.tool_invocations[1].arguments == {"symbol": "ETH", "percentage": 50}

        kwargs = llm_oracle.client.chat.completions.create.call_args.kwargs
        assert kwargs["model"] == "test-model"
        assert kwargs["tools"] == TOOL_SCHEMAS
        assert json.loads(kwargs["messages"][1]["content"]) == {"iteration": 1}

    def test_drops_malformed_arguments(self, llm_oracle):
        llm_oracle.client.chat.completions.create.return_value = _completion(
            "hmm",
            [_tool_call(OPEN_POSITION, "{not json"), _tool_call(CLOSE_POSITION, "[1, 2]")],
        )
        assert llm_oracle.decide({}).tool_invocations == []

    def test_no_tool_calls_means_hold(self, llm_oracle):
        llm_oracle.client.chat.completions.create.return_value = _completion("Holding.", None)
        decision = llm_oracle.decide({})
        assert decision.text == "Holding."
        assert decision.tool_invocations == []

    def test_transport_error_is_unavailable(self, llm_oracle):
        llm_oracle.client.chat.completions.create.side_effect = RuntimeError("502 bad gateway")
        with pytest.raises(OracleUnavailable):
            llm_oracle.decide({})

    def test_empty_choices_is_unavailable(self, llm_oracle):
        llm_oracle.client.chat.completions.create.return_value = SimpleNamespace(choices=[])
        with pytest.raises(OracleUnavailable):
            llm_oracle.decide({})


class TestConsultOracle:
    def test_returns_decision(self):
        oracle = MockDecisionOracle(OracleDecision(text="hold"))
        assert consult_oracle(oracle, {"a": 1}, timeout_s=5).text == "hold"
        assert oracle.snapshots == [{"a": 1}]

    def test_timeout_raises_unavailable(self):
        oracle = BlockingOracle()
        start = time.monotonic()
        try:
            with pytest.raises(OracleUnavailable):
                consult_oracle(oracle, {}, timeout_s=0.05)
        finally:
            oracle.release.set()
        assert time.monotonic() - start < 2.0

    def test_oracle_errors_propagate(self):
        oracle = MockDecisionOracle(error=OracleUnavailable("down"))
        with pytest.raises(OracleUnavailable):
            consult_oracle(oracle, {}, timeout_s=5)


def test_factory_requires_api_key():
    with pytest.raises(ConfigurationError):
        create_decision_oracle(model="m", api_key=None)


class TestToolDispatcher:
    @pytest.fixture
    def execution(self):
        execution = Mock(spec=ExecutionEngine)
        execution.open.return_value = ExecutionResult(success=True, symbol="BTC", side=Side.LONG,
                                                      quantity=5.0, price=100.0, leverage=10)
        execution.close.return_value = ExecutionResult(success=True, symbol="ETH", pnl=1.5)
        return execution

    def test_open_maps_arguments(self, execution):
        outcome = ToolDispatcher(execution).dispatch(ToolInvocation(OPEN_POSITION, {
            "symbol": "BTC", "side": "LONG", "leverage": 10, "margin_usdt": 50,
            "stop_loss": 95.0, "take_profit": 120.0,
        }))

        execution.open.assert_called_once_with(
            symbol="BTC", side="long", leverage=10, margin_usdt=50,
            stop_loss=95.0, profit_target=120.0,
        )
        assert outcome["success"] is True
        assert outcome["tool"] == OPEN_POSITION
        assert outcome["quantity"] == 5.0

    def test_close_defaults_to_full(self, execution):
        ToolDispatcher(execution).dispatch(ToolInvocation(CLOSE_POSITION, {"symbol": "ETH"}))
        execution.close.assert_called_once_with(symbol="ETH", percentage=100, reason=ExitReason.ORACLE)

    def test_unknown_tool_is_rejected(self, execution):
        outcome = ToolDispatcher(execution).dispatch(ToolInvocation("withdraw_funds", {"symbol": "btc"}))
        assert outcome["success"] is False
        assert "unknown tool" in outcome["error"]
        assert outcome["symbol"] == "BTC"
        execution.open.assert_not_called()
        execution.close.assert_not_called()

    def test_missing_argument_is_rejected(self, execution):
        outcome = ToolDispatcher(execution).dispatch(ToolInvocation(OPEN_POSITION, {"symbol": "BTC"}))
        assert outcome["success"] is False
        assert "missing argument" in outcome["error"]

    def test_dispatch_all_preserves_order(self, execution):
        outcomes = ToolDispatcher(execution).dispatch_all([
            ToolInvocation(CLOSE_POSITION, {"symbol": "ETH"}),
            ToolInvocation("nope", {}),
            ToolInvocation(OPEN_POSITION, {"symbol": "BTC", "side": "long", "leverage": 10, "margin_usdt": 50}),
        ])
        assert [o["tool"] for o in outcomes] == [CLOSE_POSITION, "nope", OPEN_POSITION]
        assert [o["success"] for o in outcomes] == [True, False, True]

    def test_engine_limits_still_apply(self, ctx, exchange):
        dispatcher = ToolDispatcher(ExecutionEngine(ctx))
        outcome = dispatcher.dispatch(ToolInvocation(OPEN_POSITION, {
            "symbol": "BTC", "side": "long", "leverage": 50, "margin_usdt": 50,
        }))
        assert outcome["success"] is False
        assert "outside" in outcome["error"]
        assert exchange.placed == []


class TestSnapshotBuilder:
    def _market(self):
        good = MarketSnapshot(symbol="BTC", ticker=Ticker("BTC", last=100.0, mark_price=100.0), is_valid=True)
        bad = MarketSnapshot(symbol="ETH", error="ticker: timeout")
        return {"BTC": good, "ETH": bad}

    def _account(self):
        return AccountInfo(total_value=1050.0, wallet_balance=1040.0, available=900.0, unrealized_pnl=10.0,
                           initial_balance=1000.0, return_percent=5.0, sharpe_ratio=0.8)

    def test_snapshot_contents(self):
        position = Position(symbol="BTC", side=Side.LONG, quantity=1.0, entry_price=100.0,
                            current_price=101.0, leverage=10, peak_pnl_percent=12.0,
                            opened_at=hours_ago(3))
        trade = Trade(order_id="1", symbol="BTC", side=Side.LONG, type=TradeType.OPEN, price=100.0,
                      quantity=1.0, leverage=10, fee=0.05, timestamp=hours_ago(3))
        last = DecisionRecord(timestamp=hours_ago(0.05), iteration=4, market_analysis="{}",
                              decision="x" * 5000, actions_taken="[]", account_value=1040.0,
                              positions_count=1)

        snapshot = build_oracle_snapshot(
            self._market(), self._account(), [position], RiskPolicy(), iteration=5,
            started_at=FIXED_NOW - timedelta(minutes=15), now=FIXED_NOW,
            recent_trades=[trade], last_decision=last,
        )

        assert list(snapshot["market"]) == ["BTC"]
        assert snapshot["minutes_elapsed"] == 15
        assert snapshot["account"]["return_percent"] == 5.0
        assert snapshot["positions_count"] == 1
        assert snapshot["positions"][0]["pnl_percent"] == pytest.approx(10.0)
        assert snapshot["positions"][0]["holding_hours"] == 3.0
        assert snapshot["recent_trades"][0]["type"] == "open"
        assert len(snapshot["last_decision"]["decision"]) == 2000
        assert snapshot["guardrails"]["leverage_range"] == [5, 15]
        json.dumps(snapshot)

    def test_first_cycle_has_no_history(self):
        snapshot = build_oracle_snapshot(
            self._market(), self._account(), [], RiskPolicy(), iteration=1,
            started_at=FIXED_NOW, now=FIXED_NOW,
        )
        assert snapshot["recent_trades"] == []
        assert snapshot["last_decision"] is None
        assert snapshot["positions"] == []

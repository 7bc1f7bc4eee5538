"""
Tests for configuration validation.

Validates that config_validator correctly identifies invalid configs,
accepts valid configs, and builds runtime settings with overrides.
"""
from pathlib import Path

import pytest
import yaml

from core.exceptions import ConfigurationError
from core.models import DrawdownReference, Environment
from infra.ledger import LedgerStore
from tools.config_validator import (
    STOP_LOSS_CONFIG_KEY,
    TAKE_PROFIT_CONFIG_KEY,
    AppSchema,
    PolicySchema,
    apply_app_env_overrides,
    apply_ledger_overrides,
    build_execution_settings,
    build_market_data_settings,
    build_risk_policy,
    validate_all_configs,
    validate_policy,
)

REPO_CONFIG = Path(__file__).resolve().parent.parent / "config"


def _write(tmp_path, app=None, policy=None):
    (tmp_path / "app.yaml").write_text(yaml.safe_dump(app if app is not None else {}))
    (tmp_path / "policy.yaml").write_text(yaml.safe_dump(policy if policy is not None else {}))
    return tmp_path


@pytest.fixture
def ledger():
    store = LedgerStore(":memory:")
    yield store
    store.close()


class TestShippedConfig:
    def test_repository_config_is_valid(self):
        assert validate_all_configs(str(REPO_CONFIG)) == []

    def test_empty_files_fall_back_to_defaults(self, tmp_path):
        assert validate_all_configs(str(_write(tmp_path))) == []


class TestPolicyValidation:
    def test_min_leverage_above_max(self, tmp_path):
        _write(tmp_path, policy={"risk": {"min_leverage": 20, "max_leverage": 10}})
        errors = validate_policy(tmp_path)
        assert any("min_leverage" in e for e in errors)

    def test_drawdown_thresholds_out_of_order(self, tmp_path):
        _write(tmp_path, policy={"risk": {"account_max_drawdown_percent": 25,
                                          "account_force_close_drawdown_percent": 20}})
        assert validate_policy(tmp_path)

    def test_positive_stop_loss_threshold_rejected(self, tmp_path):
        _write(tmp_path, policy={"risk": {"stop_loss_tiers": [[10, 2.0]]}})
        errors = validate_policy(tmp_path)
        assert any("stop_loss_tiers" in e for e in errors)

    def test_trailing_floor_above_trigger_rejected(self, tmp_path):
        _write(tmp_path, policy={"risk": {"trailing_tiers": [[10, 12.0]]}})
        assert validate_policy(tmp_path)

    def test_unknown_named_timeframe(self, tmp_path):
        _write(tmp_path, policy={"market_data": {"timeframes": {"5m": 100}, "primary_timeframe": "5m"}})
        errors = validate_policy(tmp_path)
        assert any("not listed in timeframes" in e for e in errors)

    def test_tiers_are_sorted_descending(self):
        schema = PolicySchema(risk={"stop_loss_tiers": [[0, -5.0], [12, -3.0], [8, -4.0]]})
        assert [t[0] for t in schema.risk.stop_loss_tiers] == [12, 8, 0]

    def test_missing_file(self, tmp_path):
        errors = validate_policy(tmp_path)
        assert errors and "not found" in errors[0]

    def test_malformed_yaml(self, tmp_path):
        (tmp_path / "policy.yaml").write_text("risk:\n  max_positions: [1, 2\n")
        errors = validate_policy(tmp_path)
        assert errors and "Invalid YAML" in errors[0]


class TestSanityChecks:
    def test_trailing_floor_below_stop_loss(self, tmp_path):
        _write(tmp_path, policy={"risk": {"trailing_tiers": [[8, -6.0]]}})
        errors = validate_all_configs(str(tmp_path))
        assert any("trailing floor" in e for e in errors)

    def test_close_slippage_past_liquidation(self, tmp_path):
        _write(tmp_path, policy={
            "risk": {"max_leverage": 50},
            "execution": {"close_slippage_limit_percent": 3.0},
        })
        errors = validate_all_configs(str(tmp_path))
        assert any("past liquidation" in e for e in errors)


class TestAppOverrides:
    def test_defaults(self):
        app = apply_app_env_overrides({}, env={})
        assert isinstance(app, AppSchema)
        assert app.app.mode == "TESTNET"
        assert app.loop.interval_minutes == 3.0
        assert app.ledger.sync_config_on_startup is False

    def test_environment_wins(self):
        app = apply_app_env_overrides(
            {"app": {"mode": "testnet"}, "loop": {"interval_minutes": 5}},
            env={
                "BINANCE_USE_TESTNET": "false",
                "TRADING_INTERVAL_MINUTES": "1",
                "AI_MODEL_NAME": "openai/gpt-4o",
                "LEDGER_PATH": "/tmp/ledger.db",
                "SYNC_CONFIG_ON_STARTUP": "true",
            },
        )
        assert app.app.mode == "LIVE"
        assert app.loop.interval_minutes == 1.0
        assert app.oracle.model == "openai/gpt-4o"
        assert app.ledger.path == "/tmp/ledger.db"
        assert app.ledger.sync_config_on_startup is True

    def test_invalid_override_is_configuration_error(self):
        with pytest.raises(ConfigurationError):
            apply_app_env_overrides({}, env={"TRADING_INTERVAL_MINUTES": "soon"})


class TestRuntimeSettings:
    def test_risk_policy_from_yaml_and_env(self):
        policy = build_risk_policy(
            {"risk": {"max_positions": 3, "drawdown_reference": "initial"}},
            env={"MAX_LEVERAGE": "10", "TRADING_SYMBOLS": "btc, eth ,"},
        )
        assert policy.max_positions == 3
        assert policy.max_leverage == 10
        assert policy.trading_symbols == ("BTC", "ETH")
        assert policy.drawdown_reference is DrawdownReference.INITIAL
        assert policy.stop_loss_threshold(10) == -4.0

    def test_invalid_env_override(self):
        with pytest.raises(ConfigurationError):
            build_risk_policy({}, env={"MAX_LEVERAGE": "2", "MAX_POSITIONS": "0"})

    def test_execution_and_market_data_settings(self):
        execution = build_execution_settings({"execution": {"fee_rate": 0.0004}})
        assert execution.fee_rate == 0.0004
        assert execution.close_slippage_limit_percent == 3.0

        market = build_market_data_settings({}, Environment.TESTNET)
        assert market.is_testnet
        assert dict(market.timeframes)["5m"] == 100
        assert market.max_candle_age_seconds == 180.0


class TestLedgerOverrides:
    def test_ledger_values_take_precedence(self, ledger):
        ledger.set_config(STOP_LOSS_CONFIG_KEY, "80")
        ledger.set_config(TAKE_PROFIT_CONFIG_KEY, "5000")
        policy = apply_ledger_overrides(build_risk_policy({}, env={}), ledger, sync_on_startup=False)
        assert policy.account_stop_loss_usdt == 80.0
        assert policy.account_take_profit_usdt == 5000.0

    def test_sync_writes_configured_values(self, ledger):
        ledger.set_config(STOP_LOSS_CONFIG_KEY, "80")
        policy = apply_ledger_overrides(build_risk_policy({}, env={}), ledger, sync_on_startup=True)
        assert policy.account_stop_loss_usdt == 50.0
        assert ledger.get_config(STOP_LOSS_CONFIG_KEY) == "50.0"
        assert ledger.get_config(TAKE_PROFIT_CONFIG_KEY) == "10000.0"

    def test_non_numeric_values_ignored(self, ledger):
        ledger.set_config(STOP_LOSS_CONFIG_KEY, "lots")
        policy = apply_ledger_overrides(build_risk_policy({}, env={}), ledger, sync_on_startup=False)
        assert policy.account_stop_loss_usdt == 50.0

    def test_inconsistent_ledger_thresholds(self, ledger):
        ledger.set_config(STOP_LOSS_CONFIG_KEY, "20000")
        with pytest.raises(ConfigurationError):
            apply_ledger_overrides(build_risk_policy({}, env={}), ledger, sync_on_startup=False)

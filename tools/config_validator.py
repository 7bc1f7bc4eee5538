"""
Configuration Validation Module

Validates app.yaml and policy.yaml against Pydantic schemas and builds the
immutable runtime settings (RiskPolicy, ExecutionSettings, MarketDataSettings)
from them, applying environment overrides on the way.

Usage:
    from tools.config_validator import validate_all_configs

    errors = validate_all_configs("config")
    if errors:
        for error in errors:
            print(f"ERROR: {error}")
        sys.exit(1)
"""
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Literal, Mapping, Optional, Tuple

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from core.exceptions import ConfigurationError
from core.models import DrawdownReference, Environment
from core.policy import ExecutionSettings, MarketDataSettings, RiskPolicy

logger = logging.getLogger(__name__)

STOP_LOSS_CONFIG_KEY = "account_stop_loss_usdt"
TAKE_PROFIT_CONFIG_KEY = "account_take_profit_usdt"


# ===== App Schema =====
class AppSection(BaseModel):
    mode: Literal["LIVE", "TESTNET"] = Field(default="TESTNET", description="LIVE trades mainnet")

    @field_validator("mode", mode="before")
    @classmethod
    def upper_mode(cls, v: Any) -> Any:
        return v.upper() if isinstance(v, str) else v


class ExchangeConfig(BaseModel):
    """Binance USDT-M futures connection"""
    timeout_seconds: float = Field(default=15.0, gt=0, description="Per-request HTTP timeout")
    recv_window_ms: int = Field(default=5000, gt=0, le=60000, description="Signed request window")
    retry_attempts: int = Field(default=3, ge=1, description="Total attempts for read calls")
    retry_base_delay_seconds: float = Field(default=1.0, ge=0)
    retry_max_delay_seconds: float = Field(default=3.0, ge=0)
    sync_time: bool = Field(default=True, description="Sync server time offset on startup")


class LoopConfig(BaseModel):
    interval_minutes: float = Field(default=3.0, gt=0, description="Minutes between cycle starts")


class LedgerConfig(BaseModel):
    path: str = Field(default="data/perpguard.db", min_length=1)
    sync_config_on_startup: bool = Field(
        default=False, description="Write balance thresholds to the ledger instead of reading them"
    )


class OracleConfig(BaseModel):
    provider: Literal["openai", "openrouter"] = "openrouter"
    model: str = Field(default="deepseek/deepseek-chat", min_length=1)
    base_url: Optional[str] = Field(default="https://openrouter.ai/api/v1")
    timeout_seconds: float = Field(default=120.0, gt=0, description="Hard limit per consultation")
    max_tokens: int = Field(default=4000, gt=0)
    temperature: float = Field(default=0.3, ge=0, le=2)
    recent_trades: int = Field(default=10, ge=0, description="Trades included in the snapshot")


class LoggingConfig(BaseModel):
    level: str = Field(default="INFO", pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")
    file: str = Field(default="logs/perpguard.log", min_length=1)

    @field_validator("level", mode="before")
    @classmethod
    def upper_level(cls, v: Any) -> Any:
        return v.upper() if isinstance(v, str) else v


class MonitoringConfig(BaseModel):
    metrics_enabled: bool = False
    metrics_port: int = Field(default=9090, gt=0, lt=65536)
    alerts_enabled: bool = False
    alerts: Dict[str, Any] = Field(default_factory=dict)


class AppSchema(BaseModel):
    """Complete app configuration schema"""
    app: AppSection = Field(default_factory=AppSection)
    exchange: ExchangeConfig = Field(default_factory=ExchangeConfig)
    loop: LoopConfig = Field(default_factory=LoopConfig)
    ledger: LedgerConfig = Field(default_factory=LedgerConfig)
    oracle: OracleConfig = Field(default_factory=OracleConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)


# ===== Policy Schema =====
class RiskConfig(BaseModel):
    """Risk management parameters"""
    max_positions: int = Field(default=5, gt=0, description="Max concurrently open positions")
    min_leverage: int = Field(default=5, ge=1)
    max_leverage: int = Field(default=15, ge=1, le=125)
    trading_symbols: List[str] = Field(default_factory=lambda: ["BTC", "ETH", "SOL", "XRP", "BNB", "DOGE"],
                                       min_length=1)
    max_holding_hours: float = Field(default=36.0, gt=0)
    account_max_drawdown_percent: float = Field(default=15.0, gt=0, le=100, description="Blocks new opens")
    account_force_close_drawdown_percent: float = Field(default=20.0, gt=0, le=100, description="Close all and halt")
    drawdown_reference: Literal["peak", "initial"] = "peak"
    account_stop_loss_usdt: float = Field(default=50.0, ge=0)
    account_take_profit_usdt: float = Field(default=10000.0, gt=0)
    max_exposure_multiple: float = Field(default=10.0, gt=0)
    stop_loss_tiers: List[Tuple[float, float]] = Field(
        default_factory=lambda: [(12, -3.0), (8, -4.0), (0, -5.0)],
        description="(min leverage, leveraged pnl % threshold)",
    )
    trailing_tiers: List[Tuple[float, float]] = Field(
        default_factory=lambda: [(25, 15.0), (15, 8.0), (8, 3.0)],
        description="(peak pnl % reached, pnl % floor)",
    )
    peak_drawdown_min_peak: float = Field(default=5.0, ge=0)
    peak_drawdown_percent: float = Field(default=30.0, gt=0, le=100)

    @field_validator("trading_symbols")
    @classmethod
    def normalize_symbols(cls, v: List[str]) -> List[str]:
        symbols = [s.strip().upper() for s in v if s and s.strip()]
        if not symbols:
            raise ValueError("at least one trading symbol is required")
        return symbols

    @field_validator("stop_loss_tiers")
    @classmethod
    def validate_stop_loss_tiers(cls, v: List[Tuple[float, float]]) -> List[Tuple[float, float]]:
        """Thresholds must be negative; sorted highest leverage first"""
        if not v:
            raise ValueError("at least one stop-loss tier is required")
        for min_leverage, threshold in v:
            if threshold >= 0:
                raise ValueError(f"stop-loss threshold must be negative, got {threshold} at {min_leverage}x")
        return sorted(v, key=lambda t: t[0], reverse=True)

    @field_validator("trailing_tiers")
    @classmethod
    def validate_trailing_tiers(cls, v: List[Tuple[float, float]]) -> List[Tuple[float, float]]:
        """Each floor must sit below its trigger; sorted highest trigger first"""
        for trigger, floor in v:
            if floor >= trigger:
                raise ValueError(f"trailing floor {floor} must be below its peak trigger {trigger}")
        return sorted(v, key=lambda t: t[0], reverse=True)

    @model_validator(mode="after")
    def validate_ranges(self) -> "RiskConfig":
        if self.min_leverage > self.max_leverage:
            raise ValueError(f"min_leverage {self.min_leverage} exceeds max_leverage {self.max_leverage}")
        if self.account_max_drawdown_percent > self.account_force_close_drawdown_percent:
            raise ValueError("account_max_drawdown_percent must not exceed account_force_close_drawdown_percent")
        if self.account_stop_loss_usdt >= self.account_take_profit_usdt:
            raise ValueError("account_stop_loss_usdt must be below account_take_profit_usdt")
        return self


class ExecutionConfig(BaseModel):
    """Order execution parameters"""
    fee_rate: float = Field(default=0.0005, ge=0, lt=0.01, description="Taker fee per leg")
    open_slippage_limit_percent: float = Field(default=2.0, gt=0)
    close_slippage_limit_percent: float = Field(default=3.0, gt=0)
    open_settle_seconds: float = Field(default=2.0, ge=0)
    close_settle_seconds: float = Field(default=0.5, ge=0)
    order_poll_attempts: int = Field(default=3, ge=1)
    order_poll_delay_seconds: float = Field(default=0.3, ge=0)
    liquidation_poll_attempts: int = Field(default=5, ge=0)
    liquidation_poll_delay_seconds: float = Field(default=1.0, ge=0)
    large_margin_warn_percent: float = Field(default=30.0, gt=0, le=100)
    close_quantity_decimals: int = Field(default=3, ge=0, le=8)


class MarketDataConfig(BaseModel):
    """Market data collection and validation parameters"""
    timeframes: Dict[str, int] = Field(
        default_factory=lambda: {"1m": 60, "3m": 60, "5m": 100, "15m": 96, "30m": 90, "1h": 120},
        description="Timeframe -> candle limit",
    )
    primary_timeframe: str = "5m"
    intraday_timeframe: str = "3m"
    context_timeframe: str = "1h"
    validation_timeframe: str = "1m"
    retry_attempts: int = Field(default=3, ge=1)
    retry_base_delay_seconds: float = Field(default=1.0, ge=0)
    max_workers: int = Field(default=8, ge=1)
    max_price_deviation_percent_mainnet: float = Field(default=0.5, gt=0)
    max_price_deviation_percent_testnet: float = Field(default=1.0, gt=0)
    max_candle_age_seconds_mainnet: float = Field(default=120.0, gt=0)
    max_candle_age_seconds_testnet: float = Field(default=180.0, gt=0)
    inactive_candle_window: int = Field(default=5, ge=1)

    @field_validator("timeframes")
    @classmethod
    def validate_limits(cls, v: Dict[str, int]) -> Dict[str, int]:
        for tf, limit in v.items():
            if limit <= 0 or limit > 1500:
                raise ValueError(f"candle limit for {tf} must be within 1..1500, got {limit}")
        return v

    @model_validator(mode="after")
    def validate_named_timeframes(self) -> "MarketDataConfig":
        for name in ("primary_timeframe", "intraday_timeframe", "context_timeframe", "validation_timeframe"):
            tf = getattr(self, name)
            if tf not in self.timeframes:
                raise ValueError(f"{name} '{tf}' is not listed in timeframes")
        return self


class PolicySchema(BaseModel):
    """Complete policy configuration schema"""
    risk: RiskConfig = Field(default_factory=RiskConfig)
    execution: ExecutionConfig = Field(default_factory=ExecutionConfig)
    market_data: MarketDataConfig = Field(default_factory=MarketDataConfig)


# ===== Validation Functions =====
def _format_yaml_error(file_path: Path, error: yaml.YAMLError) -> str:
    """Return enriched message with line/column context for YAML errors."""
    message = f"Malformed YAML in {file_path}: {error}"
    mark = getattr(error, "problem_mark", None)
    if mark is None or getattr(mark, "line", None) is None:
        return message

    line, column = mark.line, mark.column
    try:
        raw_lines = file_path.read_text().splitlines()
    except OSError:
        return f"Malformed YAML in {file_path}: line {line + 1}, column {column + 1}"

    snippet = "\n".join(
        f"{'▶' if idx == line else ' '} {idx + 1:04d} | {raw_lines[idx]}"
        for idx in range(max(line - 2, 0), min(line + 3, len(raw_lines)))
    )
    problem = getattr(error, "problem", str(error))
    return (
        f"Malformed YAML in {file_path}: line {line + 1}, column {column + 1}: {problem}\n"
        f"Context:\n{snippet}"
    )


def load_yaml_file(file_path: Path) -> Dict[str, Any]:
    """
    Load YAML file and return as dict.

    Raises:
        FileNotFoundError: If file doesn't exist
        yaml.YAMLError: If YAML is malformed
    """
    if not file_path.exists():
        raise FileNotFoundError(f"Config file not found: {file_path}")

    with open(file_path, "r") as f:
        try:
            return yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise yaml.YAMLError(_format_yaml_error(file_path, e))


def _validate_file(config_dir: Path, filename: str, schema: type) -> List[str]:
    errors = []
    try:
        config = load_yaml_file(config_dir / filename)
        schema(**config)
        logger.info(f"✅ {filename} validation passed")
    except FileNotFoundError as e:
        errors.append(f"{filename}: {e}")
    except yaml.YAMLError as e:
        errors.append(f"{filename}: Invalid YAML - {e}")
    except ValidationError as e:
        for error in e.errors():
            field = " -> ".join(str(loc) for loc in error["loc"])
            errors.append(f"{filename}: {field}: {error['msg']}")
    except TypeError as e:
        errors.append(f"{filename}: top level must be a mapping ({e})")
    return errors


def validate_app(config_dir: Path) -> List[str]:
    """Validate app.yaml against schema."""
    return _validate_file(config_dir, "app.yaml", AppSchema)


def validate_policy(config_dir: Path) -> List[str]:
    """Validate policy.yaml against schema."""
    return _validate_file(config_dir, "policy.yaml", PolicySchema)


def validate_sanity_checks(config_dir: Path) -> List[str]:
    """
    Logical consistency checks the schemas cannot express on their own.

    Detects:
    - A trailing floor that sits at or below the loosest stop-loss threshold
    - A close slippage limit that would accept a fill past liquidation at max leverage
    """
    errors = []
    policy = PolicySchema(**load_yaml_file(config_dir / "policy.yaml"))
    risk = policy.risk

    loosest_stop = min(threshold for _, threshold in risk.stop_loss_tiers)
    for trigger, floor in risk.trailing_tiers:
        if floor <= loosest_stop:
            errors.append(
                f"UNSAFE: trailing floor {floor}% (peak {trigger}%) is at or below the "
                f"stop-loss threshold {loosest_stop}%"
            )

    execution = policy.execution
    max_lev = risk.max_leverage
    if execution.close_slippage_limit_percent * max_lev > 100:
        errors.append(
            f"UNSAFE: close slippage limit {execution.close_slippage_limit_percent}% at "
            f"{max_lev}x would accept a fill past liquidation"
        )
    return errors


def validate_all_configs(config_dir: str = "config") -> List[str]:
    """
    Validate all configuration files.

    Performs:
    1. Schema validation (Pydantic type checks)
    2. Sanity checks (logical consistency)

    Returns:
        List of all error messages (empty if all valid)
    """
    config_path = Path(config_dir)

    all_errors = []
    all_errors.extend(validate_app(config_path))
    all_errors.extend(validate_policy(config_path))

    if not all_errors:
        all_errors.extend(validate_sanity_checks(config_path))

    if not all_errors:
        logger.info("✅ All config files validated successfully")
    else:
        logger.error(f"❌ {len(all_errors)} validation error(s) found")

    return all_errors


# ===== Runtime Settings =====
_RISK_ENV_OVERRIDES = {
    "MAX_POSITIONS": "max_positions",
    "MAX_LEVERAGE": "max_leverage",
    "MAX_HOLDING_HOURS": "max_holding_hours",
    "ACCOUNT_MAX_DRAWDOWN_PERCENT": "account_max_drawdown_percent",
    "ACCOUNT_STOP_LOSS_USDT": "account_stop_loss_usdt",
    "ACCOUNT_TAKE_PROFIT_USDT": "account_take_profit_usdt",
}

_TRUTHY = {"1", "true", "yes", "on"}


def env_flag(value: Optional[str]) -> Optional[bool]:
    if value is None or value.strip() == "":
        return None
    return value.strip().lower() in _TRUTHY


def apply_app_env_overrides(app_config: Dict[str, Any], env: Optional[Mapping[str, str]] = None) -> AppSchema:
    """Merge environment overrides into app.yaml and validate the result."""
    env = os.environ if env is None else env
    merged = {k: dict(v or {}) for k, v in (app_config or {}).items()}

    testnet = env_flag(env.get("BINANCE_USE_TESTNET"))
    if testnet is not None:
        merged.setdefault("app", {})["mode"] = "TESTNET" if testnet else "LIVE"
    if env.get("TRADING_INTERVAL_MINUTES"):
        merged.setdefault("loop", {})["interval_minutes"] = env["TRADING_INTERVAL_MINUTES"]
    if env.get("AI_MODEL_NAME"):
        merged.setdefault("oracle", {})["model"] = env["AI_MODEL_NAME"]
    if env.get("LEDGER_PATH"):
        merged.setdefault("ledger", {})["path"] = env["LEDGER_PATH"]
    sync = env_flag(env.get("SYNC_CONFIG_ON_STARTUP"))
    if sync is not None:
        merged.setdefault("ledger", {})["sync_config_on_startup"] = sync

    try:
        return AppSchema(**merged)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid app settings after environment overrides: {e}") from e


def build_risk_policy(policy_config: Dict[str, Any], env: Optional[Mapping[str, str]] = None) -> RiskPolicy:
    """Build RiskPolicy from policy.yaml 'risk' plus environment overrides."""
    env = os.environ if env is None else env
    risk = dict((policy_config or {}).get("risk") or {})

    for var, key in _RISK_ENV_OVERRIDES.items():
        if env.get(var):
            risk[key] = env[var]
    if env.get("TRADING_SYMBOLS"):
        risk["trading_symbols"] = env["TRADING_SYMBOLS"].split(",")

    try:
        cfg = RiskConfig(**risk)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid risk settings after environment overrides: {e}") from e

    return RiskPolicy(
        max_positions=cfg.max_positions,
        max_leverage=cfg.max_leverage,
        min_leverage=cfg.min_leverage,
        trading_symbols=tuple(cfg.trading_symbols),
        max_holding_hours=cfg.max_holding_hours,
        account_max_drawdown_percent=cfg.account_max_drawdown_percent,
        account_force_close_drawdown_percent=cfg.account_force_close_drawdown_percent,
        drawdown_reference=DrawdownReference(cfg.drawdown_reference),
        account_stop_loss_usdt=cfg.account_stop_loss_usdt,
        account_take_profit_usdt=cfg.account_take_profit_usdt,
        max_exposure_multiple=cfg.max_exposure_multiple,
        stop_loss_tiers=tuple(tuple(t) for t in cfg.stop_loss_tiers),
        trailing_tiers=tuple(tuple(t) for t in cfg.trailing_tiers),
        peak_drawdown_min_peak=cfg.peak_drawdown_min_peak,
        peak_drawdown_percent=cfg.peak_drawdown_percent,
    )


def build_execution_settings(policy_config: Dict[str, Any]) -> ExecutionSettings:
    cfg = ExecutionConfig(**((policy_config or {}).get("execution") or {}))
    return ExecutionSettings(**cfg.model_dump())


def build_market_data_settings(policy_config: Dict[str, Any], environment: Environment) -> MarketDataSettings:
    cfg = MarketDataConfig(**((policy_config or {}).get("market_data") or {}))
    values = cfg.model_dump()
    values["timeframes"] = tuple(values["timeframes"].items())
    return MarketDataSettings(environment=environment, **values)


def apply_ledger_overrides(policy: RiskPolicy, ledger: Any, sync_on_startup: bool) -> RiskPolicy:
    """
    Reconcile balance thresholds with the ledger's system_config table.

    With ``sync_on_startup`` the configured values are written to the ledger.
    Otherwise values stored in the ledger take precedence over file and
    environment.
    """
    if sync_on_startup:
        ledger.set_config(STOP_LOSS_CONFIG_KEY, policy.account_stop_loss_usdt)
        ledger.set_config(TAKE_PROFIT_CONFIG_KEY, policy.account_take_profit_usdt)
        logger.info(
            f"Synced balance thresholds to ledger: stop-loss={policy.account_stop_loss_usdt} "
            f"take-profit={policy.account_take_profit_usdt}"
        )
        return policy

    stop_loss = policy.account_stop_loss_usdt
    take_profit = policy.account_take_profit_usdt
    for key, current in ((STOP_LOSS_CONFIG_KEY, stop_loss), (TAKE_PROFIT_CONFIG_KEY, take_profit)):
        raw = ledger.get_config(key)
        if raw is None:
            continue
        try:
            value = float(raw)
        except ValueError:
            logger.warning(f"Ignoring non-numeric ledger config {key}={raw!r}")
            continue
        if value != current:
            logger.info(f"Ledger override {key}: {current} -> {value}")
        if key == STOP_LOSS_CONFIG_KEY:
            stop_loss = value
        else:
            take_profit = value

    if stop_loss >= take_profit:
        raise ConfigurationError(
            f"Ledger thresholds are inconsistent: stop-loss {stop_loss} >= take-profit {take_profit}"
        )
    return policy.with_balance_thresholds(stop_loss, take_profit)


if __name__ == "__main__":
    """Run validation from command line"""
    import sys

    logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")

    config_dir = sys.argv[1] if len(sys.argv) > 1 else "config"

    errors = validate_all_configs(config_dir)

    if errors:
        print("\n❌ Configuration Validation Failed:\n")
        for error in errors:
            print(f"  • {error}")
        print()
        sys.exit(1)
    else:
        print("\n✅ All configuration files are valid!\n")
        sys.exit(0)

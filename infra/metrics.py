"""Prometheus metrics for the trading cycle, risk enforcement and execution."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Summary, start_http_server

logger = logging.getLogger(__name__)


@dataclass
class CycleStats:
    status: str
    usable_symbols: int
    forced_closes: int
    oracle_actions: int
    duration_seconds: float


class MetricsRecorder:
    """
    Expose cycle stats via Prometheus.

    Singleton so the runner and engines share one registry. Metrics live in a
    private ``CollectorRegistry``; recording always works, the HTTP exporter
    only starts when enabled.
    """
    _instance: Optional["MetricsRecorder"] = None
    _initialized: bool = False

    def __new__(cls, enabled: bool = False, port: int = 9100):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self, enabled: bool = False, port: int = 9100) -> None:
        if self.__class__._initialized:
            return
        self.__class__._initialized = True

        self._enabled = bool(enabled)
        self._port = port
        self._started = False
        self._last_cycle_stats: Optional[CycleStats] = None
        self._last_stage_durations: Dict[str, float] = {}

        self.registry = CollectorRegistry()
        self._cycle_summary = Summary(
            "perpguard_cycle_duration_seconds",
            "Duration of a full trading cycle",
            registry=self.registry,
        )
        self._cycle_counter = Counter(
            "perpguard_cycle_total",
            "Trading cycles by status",
            labelnames=("status",),
            registry=self.registry,
        )
        self._stage_summary = Summary(
            "perpguard_stage_duration_seconds",
            "Duration of cycle stages",
            labelnames=("stage",),
            registry=self.registry,
        )
        self._forced_close_counter = Counter(
            "perpguard_forced_close_total",
            "Positions closed by the risk engine, by rule",
            labelnames=("reason",),
            registry=self.registry,
        )
        self._rollback_counter = Counter(
            "perpguard_slippage_rollback_total",
            "Slippage guard reversals by outcome",
            labelnames=("outcome",),
            registry=self.registry,
        )
        self._breaker_counter = Counter(
            "perpguard_circuit_breaker_trips_total",
            "Account circuit breaker trips by action",
            labelnames=("action",),
            registry=self.registry,
        )
        self._positions_gauge = Gauge(
            "perpguard_open_positions",
            "Open positions after reconciliation",
            registry=self.registry,
        )
        self._account_value_gauge = Gauge(
            "perpguard_account_value_usdt",
            "Account equity in USDT",
            registry=self.registry,
        )
        self._drawdown_gauge = Gauge(
            "perpguard_account_drawdown_percent",
            "Account drawdown against the configured reference",
            registry=self.registry,
        )

    @classmethod
    def _reset_for_testing(cls) -> None:
        """Drop the singleton. Only call from test fixtures."""
        cls._instance = None
        cls._initialized = False

    def is_enabled(self) -> bool:
        return self._enabled

    def start(self) -> None:
        if not self._enabled or self._started:
            return
        try:
            start_http_server(self._port, registry=self.registry)
        except OSError as exc:
            logger.error("Failed to start metrics exporter on port %s: %s", self._port, exc)
            return
        self._started = True
        logger.info("Prometheus metrics exporter listening on 0.0.0.0:%s", self._port)

    def observe_cycle(self, stats: CycleStats) -> None:
        self._last_cycle_stats = stats
        self._cycle_summary.observe(max(stats.duration_seconds, 0.0))
        self._cycle_counter.labels(status=stats.status).inc()

    def record_stage_duration(self, stage: str, duration: float) -> None:
        self._last_stage_durations[stage] = duration
        self._stage_summary.labels(stage=stage).observe(max(duration, 0.0))

    def record_forced_close(self, reason: str) -> None:
        self._forced_close_counter.labels(reason=reason).inc()

    def record_rollback(self, outcome: str) -> None:
        self._rollback_counter.labels(outcome=outcome).inc()

    def record_breaker_trip(self, action: str) -> None:
        self._breaker_counter.labels(action=action).inc()

    def record_open_positions(self, count: int) -> None:
        self._positions_gauge.set(count)

    def record_account(self, total_value: float, drawdown_percent: float) -> None:
        self._account_value_gauge.set(total_value)
        self._drawdown_gauge.set(drawdown_percent)

    def last_cycle(self) -> Optional[CycleStats]:
        return self._last_cycle_stats

    def stage_snapshot(self) -> Dict[str, float]:
        return dict(self._last_stage_durations)

    def sample(self, name: str, labels: Optional[Dict[str, str]] = None) -> Optional[float]:
        return self.registry.get_sample_value(name, labels or {})

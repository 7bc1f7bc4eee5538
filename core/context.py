"""
perpguard Core: Trading Context

Explicit bundle of the collaborators every engine needs. Built once by the
runner and passed into each engine's constructor; nothing reaches for a
module-level client or database handle.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from core.exchange import ExchangeClient
from core.models import utcnow
from core.policy import ExecutionSettings, MarketDataSettings, RiskPolicy
from infra.alerting import AlertService, AlertSeverity
from infra.ledger import LedgerStore
from infra.metrics import MetricsRecorder


@dataclass
class TradingContext:
    exchange: ExchangeClient
    ledger: LedgerStore
    policy: RiskPolicy
    execution: ExecutionSettings = field(default_factory=ExecutionSettings)
    market_data: MarketDataSettings = field(default_factory=MarketDataSettings)
    alerts: Optional[AlertService] = None
    metrics: Optional[MetricsRecorder] = None
    clock: Callable[[], datetime] = utcnow

    def now(self) -> datetime:
        return self.clock()

    def alert(self, severity: AlertSeverity, title: str, message: str,
              context: Optional[Dict[str, Any]] = None) -> None:
        if self.alerts is not None:
            self.alerts.notify(severity, title, message, context)

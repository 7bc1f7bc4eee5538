"""Persistence and operational plumbing: ledger, alerts, metrics, process lock."""

from .alerting import AlertService, AlertSeverity  # noqa: F401
from .instance_lock import SingleInstanceLock, check_single_instance  # noqa: F401
from .ledger import LedgerStore  # noqa: F401
from .metrics import CycleStats, MetricsRecorder  # noqa: F401

__all__ = [
    "AlertService",
    "AlertSeverity",
    "CycleStats",
    "LedgerStore",
    "MetricsRecorder",
    "SingleInstanceLock",
    "check_single_instance",
]

"""Webhook alerts for halts, circuit breakers and unresolved rollbacks."""

from __future__ import annotations

import hashlib
import json
import logging
import os
import socket
import time
import urllib.error
import urllib.request
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Deque, Dict, Optional

logger = logging.getLogger(__name__)

SENT_HISTORY = 100


class AlertSeverity(Enum):
    INFO = 10
    WARNING = 20
    CRITICAL = 30

    @classmethod
    def parse(cls, value: Optional[str], default: "AlertSeverity" = None) -> "AlertSeverity":
        """Case-insensitive name lookup; unknown or empty names give ``default``."""
        fallback = default or cls.WARNING
        if not value:
            return fallback
        return cls.__members__.get(value.strip().upper(), fallback)


@dataclass
class AlertConfig:
    enabled: bool = False
    webhook_url: Optional[str] = None
    min_severity: AlertSeverity = AlertSeverity.WARNING
    dry_run: bool = False
    timeout: float = 5.0
    dedupe_seconds: float = 60.0

    @classmethod
    def from_mapping(cls, enabled: bool, raw: Dict[str, Any]) -> "AlertConfig":
        """Build from the ``monitoring.alerts`` section; the URL may come from the environment."""
        url = os.path.expandvars(raw.get("webhook_url") or "")
        if not url or "${" in url:
            url = os.getenv(raw.get("webhook_env", "ALERT_WEBHOOK_URL"), "")
        return cls(
            enabled=enabled,
            webhook_url=url or None,
            min_severity=AlertSeverity.parse(raw.get("min_severity")),
            dry_run=bool(raw.get("dry_run", False)),
            timeout=float(raw.get("timeout_seconds", 5.0)),
            dedupe_seconds=float(raw.get("dedupe_seconds", 60.0)),
        )


@dataclass
class Alert:
    severity: AlertSeverity
    title: str
    message: str
    context: Dict[str, Any] = field(default_factory=dict)

    @property
    def fingerprint(self) -> str:
        key = f"{self.severity.name}|{self.title}|{self.message}"
        return hashlib.sha256(key.encode("utf-8")).hexdigest()[:16]

    def render(self) -> str:
        parts = [f"[{self.severity.name}] {self.title}"]
        if self.message:
            parts.append(self.message)
        if self.context:
            parts.append("context=" + json.dumps(self.context, sort_keys=True, default=str))
        return " | ".join(parts)


class AlertService:
    """
    Post alerts to a Slack-style webhook as ``{"text": ...}``.

    An alert with the same severity, title and message as one sent less than
    ``dedupe_seconds`` ago is dropped. Dry-run only logs. Delivery problems
    are logged and reported through the return value of ``notify``.
    """

    def __init__(self, config: AlertConfig) -> None:
        self._config = config
        self._enabled = config.enabled and bool(config.webhook_url or config.dry_run)
        if config.enabled and not self._enabled:
            logger.warning("Alerting enabled but no webhook URL set; alerts disabled")
        self._sent_at: Dict[str, float] = {}
        # Most recent payloads handed to the webhook (or the log in dry-run)
        self.sent: Deque[Dict[str, Any]] = deque(maxlen=SENT_HISTORY)

    @classmethod
    def from_config(cls, enabled: bool, raw_config: Optional[Dict[str, Any]]) -> "AlertService":
        return cls(AlertConfig.from_mapping(enabled, raw_config or {}))

    def is_enabled(self) -> bool:
        return self._enabled

    def _is_duplicate(self, alert: Alert) -> bool:
        now = time.monotonic()
        window = self._config.dedupe_seconds
        expired = [key for key, sent_at in self._sent_at.items() if now - sent_at >= window]
        for key in expired:
            del self._sent_at[key]
        last = self._sent_at.get(alert.fingerprint)
        if last is not None and now - last < window:
            return True
        self._sent_at[alert.fingerprint] = now
        return False

    def notify(
        self,
        severity: AlertSeverity,
        title: str,
        message: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> bool:
        if not self._enabled or severity.value < self._config.min_severity.value:
            return False

        alert = Alert(severity, title, message, dict(context or {}))
        if self._is_duplicate(alert):
            logger.debug(f"Duplicate alert suppressed: {title} ({alert.fingerprint})")
            return False

        payload = {"text": alert.render()}
        self.sent.append(payload)
        if self._config.dry_run:
            logger.info(f"[ALERT dry-run] {payload['text']}")
            return True
        return self._post(payload, title)

    def _post(self, payload: Dict[str, Any], title: str) -> bool:
        request = urllib.request.Request(
            self._config.webhook_url,
            data=json.dumps(payload).encode("utf-8"),
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=self._config.timeout) as response:
                status = getattr(response, "status", 200)
        except (urllib.error.URLError, socket.timeout) as exc:
            logger.error(f"Alert '{title}' not delivered: {exc}")
            return False
        if status >= 300:
            logger.error(f"Alert '{title}' rejected by webhook: HTTP {status}")
            return False
        return True


__all__ = ["Alert", "AlertConfig", "AlertService", "AlertSeverity"]

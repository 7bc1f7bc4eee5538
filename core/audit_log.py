"""
perpguard Core: Audit Logger

Append-only JSONL trail with one line per trading cycle: what the cycle saw
(usable symbols, account value, drawdown), what risk enforcement did
(breaker action, forced closes) and what the oracle asked for.
"""

import json
import logging
import threading
from collections import deque
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

logger = logging.getLogger(__name__)

DEFAULT_AUDIT_FILE = "logs/audit.jsonl"

RESULT_FIELDS = ("tool", "symbol", "side", "order_id", "quantity", "price", "pnl",
                 "success", "error", "rollback")


def _rounded(value: Optional[float]) -> Optional[float]:
    return None if value is None else round(value, 4)


def summarize_result(result: Any) -> Dict[str, Any]:
    """Reduce an ExecutionResult or tool-dispatch dict to the audited fields."""
    if hasattr(result, "to_dict"):
        data = result.to_dict()
    elif isinstance(result, dict):
        data = result
    else:
        return {"raw": str(result)}
    return {key: data[key] for key in RESULT_FIELDS if key in data}


class AuditLogger:
    """
    Cycle audit trail.

    Writes never raise: a full disk or a permissions problem is logged and
    the cycle carries on.
    """

    def __init__(self, audit_file: Optional[str] = None):
        self.audit_file = Path(audit_file or DEFAULT_AUDIT_FILE)
        self.audit_file.parent.mkdir(parents=True, exist_ok=True)
        self._write_lock = threading.Lock()
        logger.info(f"Cycle audit trail: {self.audit_file}")

    def log_cycle(self,
                  ts: datetime,
                  iteration: int,
                  mode: str,
                  status: str,
                  usable_symbols: Optional[List[str]] = None,
                  abort_reason: Optional[str] = None,
                  account_value: Optional[float] = None,
                  drawdown_percent: Optional[float] = None,
                  breaker_action: Optional[str] = None,
                  forced_closes: Optional[List[Any]] = None,
                  oracle_actions: Optional[List[Dict[str, Any]]] = None,
                  positions_count: Optional[int] = None,
                  stage_latencies: Optional[Dict[str, float]] = None) -> None:
        """
        Append one cycle.

        ``status`` is completed, aborted, halted, error or skipped.
        ``forced_closes`` are the risk engine's ExecutionResults and
        ``oracle_actions`` the tool dispatch results.
        """
        entry: Dict[str, Any] = {
            "timestamp": ts.isoformat(),
            "iteration": iteration,
            "mode": mode,
            "status": status,
            "abort_reason": abort_reason,
            "usable_symbols": list(usable_symbols or []),
            "account_value": _rounded(account_value),
            "drawdown_percent": _rounded(drawdown_percent),
            "breaker_action": breaker_action,
            "positions_count": positions_count,
            "forced_closes": [summarize_result(r) for r in forced_closes or []],
            "oracle_actions": [summarize_result(r) for r in oracle_actions or []],
        }
        if stage_latencies:
            entry["stage_latencies"] = {stage: round(secs, 4) for stage, secs in stage_latencies.items()}
        self._append(entry)

    def _append(self, entry: Dict[str, Any]) -> None:
        line = json.dumps(entry, default=str)
        try:
            with self._write_lock, self.audit_file.open("a", encoding="utf-8") as f:
                f.write(line + "\n")
        except OSError as e:
            logger.error(f"Audit write failed for cycle {entry.get('iteration')}: {e}")
            return
        logger.debug(f"Audited cycle {entry['iteration']}: status={entry['status']}")

    def iter_entries(self) -> Iterator[Dict[str, Any]]:
        """Entries oldest first; corrupt lines are skipped."""
        try:
            with self.audit_file.open("r", encoding="utf-8") as f:
                for line in f:
                    try:
                        yield json.loads(line)
                    except json.JSONDecodeError:
                        continue
        except FileNotFoundError:
            return
        except OSError as e:
            logger.error(f"Failed to read audit trail: {e}")

    def get_recent_cycles(self, n: int = 10) -> List[Dict[str, Any]]:
        """The ``n`` most recent cycles, newest first."""
        recent = deque(self.iter_entries(), maxlen=n)
        return list(reversed(recent))

"""
Process lock for the trading loop.

Two bot processes on one account would each reconcile, enforce risk and
trade against the same positions. The runner takes this PID-file lock at
startup; the in-process cycle lock in the runner only serializes cycles
inside a single process.

The lock file holds a small JSON record (pid, host, acquired_at). It is
created with O_EXCL so two processes racing for a free lock cannot both win.
"""

import atexit
import json
import logging
import os
import socket
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


class SingleInstanceLock:
    """
    PID-file lock. A lock left behind by a dead process is taken over.

    Usage:
        with SingleInstanceLock("perpguard", lock_dir="data"):
            loop.run_forever()
    """

    def __init__(self, name: str, lock_dir: str = "data"):
        self.name = name
        self.lock_file = Path(lock_dir) / f"{name}.pid"
        self.lock_file.parent.mkdir(parents=True, exist_ok=True)
        self.acquired = False
        atexit.register(self.release)

    @staticmethod
    def _is_process_running(pid: int) -> bool:
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            # Exists but owned by another user
            return True
        except OSError:
            return False
        return True

    def holder(self) -> Optional[Dict[str, Any]]:
        """Record of the current holder, or None if the file is missing or unreadable."""
        try:
            raw = self.lock_file.read_text().strip()
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.warning(f"Cannot read lock file {self.lock_file}: {e}")
            return None
        try:
            record = json.loads(raw)
        except json.JSONDecodeError:
            record = None
        if isinstance(record, dict) and isinstance(record.get("pid"), int):
            return record
        # Bare PID files from older runs
        if raw.isdigit():
            return {"pid": int(raw)}
        return None

    def _create(self) -> bool:
        record = {
            "pid": os.getpid(),
            "host": socket.gethostname(),
            "acquired_at": datetime.now(timezone.utc).isoformat(),
        }
        try:
            fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        with os.fdopen(fd, "w") as f:
            json.dump(record, f)
        return True

    def acquire(self) -> bool:
        if self.acquired:
            return True

        holder = self.holder()
        if holder is not None:
            pid = holder["pid"]
            if pid != os.getpid() and self._is_process_running(pid):
                logger.error(
                    f"Another instance holds {self.lock_file} "
                    f"(PID={pid}, since {holder.get('acquired_at', 'unknown')})"
                )
                return False
            logger.warning(f"Taking over stale lock {self.lock_file} (PID={pid} not running)")
        elif self.lock_file.exists():
            logger.warning(f"Unreadable lock file {self.lock_file}, replacing it")
        self.lock_file.unlink(missing_ok=True)

        try:
            created = self._create()
        except OSError as e:
            logger.error(f"Failed to create lock file {self.lock_file}: {e}")
            return False
        if not created:
            logger.error(f"Lost the race for {self.lock_file} to another process")
            return False

        self.acquired = True
        logger.info(f"Lock acquired: {self.lock_file} (PID={os.getpid()})")
        return True

    def release(self) -> None:
        if not self.acquired:
            return
        self.acquired = False
        holder = self.holder()
        if holder is not None and holder["pid"] != os.getpid():
            logger.warning(f"Lock {self.lock_file} now held by PID={holder['pid']}; leaving it")
            return
        try:
            self.lock_file.unlink(missing_ok=True)
        except OSError as e:
            logger.warning(f"Failed to remove lock file {self.lock_file}: {e}")
            return
        logger.info(f"Lock released: {self.lock_file}")

    def __enter__(self) -> "SingleInstanceLock":
        if not self.acquire():
            raise RuntimeError(f"{self.name} is already running ({self.lock_file})")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()
        return False


def check_single_instance(name: str = "perpguard", lock_dir: str = "data") -> Optional[SingleInstanceLock]:
    """Return the acquired lock, or None when another live process holds it."""
    lock = SingleInstanceLock(name, lock_dir)
    return lock if lock.acquire() else None

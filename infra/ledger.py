"""
perpguard Infra: Ledger Store

SQLite-backed local ledger: positions (a cache of exchange truth enriched
with local metadata), immutable trades, the append-only account history,
oracle decision records and persisted config overrides.
"""

import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple

from core.models import (
    AccountSnapshot,
    DecisionRecord,
    Position,
    Side,
    Trade,
    TradeStatus,
    TradeType,
)

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS positions (
    symbol TEXT PRIMARY KEY,
    quantity REAL NOT NULL,
    entry_price REAL NOT NULL,
    current_price REAL NOT NULL,
    liquidation_price REAL NOT NULL DEFAULT 0,
    unrealized_pnl REAL NOT NULL DEFAULT 0,
    leverage INTEGER NOT NULL,
    side TEXT NOT NULL,
    stop_loss REAL,
    profit_target REAL,
    peak_pnl_percent REAL NOT NULL DEFAULT 0,
    opened_at TEXT NOT NULL,
    entry_order_id TEXT,
    sl_order_id TEXT,
    tp_order_id TEXT
);

CREATE TABLE IF NOT EXISTS trades (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    order_id TEXT NOT NULL,
    symbol TEXT NOT NULL,
    side TEXT NOT NULL,
    type TEXT NOT NULL,
    price REAL NOT NULL,
    quantity REAL NOT NULL,
    leverage INTEGER NOT NULL,
    pnl REAL,
    fee REAL NOT NULL,
    timestamp TEXT NOT NULL,
    status TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS account_history (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp TEXT NOT NULL,
    total_value REAL NOT NULL,
    available_cash REAL NOT NULL,
    unrealized_pnl REAL NOT NULL,
    realized_pnl REAL NOT NULL,
    return_percent REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS agent_decisions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp TEXT NOT NULL,
    iteration INTEGER NOT NULL,
    market_analysis TEXT NOT NULL,
    decision TEXT NOT NULL,
    actions_taken TEXT NOT NULL,
    account_value REAL NOT NULL,
    positions_count INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS system_config (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_trades_symbol ON trades(symbol);
CREATE INDEX IF NOT EXISTS idx_trades_timestamp ON trades(timestamp);
"""

_POSITION_COLUMNS = (
    "symbol", "quantity", "entry_price", "current_price", "liquidation_price",
    "unrealized_pnl", "leverage", "side", "stop_loss", "profit_target",
    "peak_pnl_percent", "opened_at", "entry_order_id", "sl_order_id", "tp_order_id",
)


def _iso(ts: datetime) -> str:
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.isoformat()


def _parse_ts(value: str) -> datetime:
    ts = datetime.fromisoformat(value)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


class LedgerStore:
    """
    Thread-safe wrapper around one SQLite connection.

    Use ``":memory:"`` as the path for an ephemeral ledger (tests, dry runs).
    """

    def __init__(self, db_path: str = "data/perpguard.db"):
        self.db_path = db_path
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(db_path, check_same_thread=False, isolation_level=None)
        self._conn.row_factory = sqlite3.Row
        self._conn.executescript(SCHEMA)
        logger.info(f"Initialized LedgerStore at {db_path}")

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """All-or-nothing block. Nested use joins the outer transaction."""
        with self._lock:
            if self._conn.in_transaction:
                yield self._conn
                return
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                yield self._conn
            except Exception:
                self._conn.execute("ROLLBACK")
                raise
            self._conn.execute("COMMIT")

    def _query(self, sql: str, params: Iterable[Any] = ()) -> List[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(sql, tuple(params)).fetchall()

    # ===== positions =====

    @staticmethod
    def _row_to_position(row: sqlite3.Row) -> Position:
        return Position(
            symbol=row["symbol"],
            side=Side(row["side"]),
            quantity=row["quantity"],
            entry_price=row["entry_price"],
            current_price=row["current_price"],
            leverage=int(row["leverage"]),
            liquidation_price=row["liquidation_price"],
            unrealized_pnl=row["unrealized_pnl"],
            peak_pnl_percent=row["peak_pnl_percent"],
            opened_at=_parse_ts(row["opened_at"]),
            stop_loss=row["stop_loss"],
            profit_target=row["profit_target"],
            entry_order_id=row["entry_order_id"],
            sl_order_id=row["sl_order_id"],
            tp_order_id=row["tp_order_id"],
        )

    @staticmethod
    def _position_values(position: Position) -> Tuple[Any, ...]:
        return (
            position.symbol,
            position.quantity,
            position.entry_price,
            position.current_price,
            position.liquidation_price,
            position.unrealized_pnl,
            int(position.leverage),
            position.side.value,
            position.stop_loss,
            position.profit_target,
            position.peak_pnl_percent,
            _iso(position.opened_at),
            position.entry_order_id,
            position.sl_order_id,
            position.tp_order_id,
        )

    def get_positions(self) -> List[Position]:
        rows = self._query("SELECT * FROM positions ORDER BY symbol")
        return [self._row_to_position(r) for r in rows]

    def get_position(self, symbol: str) -> Optional[Position]:
        rows = self._query("SELECT * FROM positions WHERE symbol = ?", (symbol,))
        return self._row_to_position(rows[0]) if rows else None

    def count_positions(self) -> int:
        return int(self._query("SELECT COUNT(*) AS n FROM positions")[0]["n"])

    def upsert_position(self, position: Position) -> None:
        placeholders = ", ".join("?" for _ in _POSITION_COLUMNS)
        updates = ", ".join(f"{c} = excluded.{c}" for c in _POSITION_COLUMNS if c != "symbol")
        sql = (
            f"INSERT INTO positions ({', '.join(_POSITION_COLUMNS)}) VALUES ({placeholders}) "
            f"ON CONFLICT(symbol) DO UPDATE SET {updates}"
        )
        with self.transaction() as conn:
            conn.execute(sql, self._position_values(position))

    def delete_position(self, symbol: str) -> bool:
        with self.transaction() as conn:
            cursor = conn.execute("DELETE FROM positions WHERE symbol = ?", (symbol,))
            return cursor.rowcount > 0

    def replace_positions(self, positions: List[Position]) -> Dict[str, List[str]]:
        """
        Make the positions table hold exactly ``positions``.

        One transaction: rows for absent symbols are deleted, the rest are
        upserted. Returns the symbols inserted, updated and removed.
        """
        wanted = {p.symbol: p for p in positions}
        with self.transaction() as conn:
            existing = {r["symbol"] for r in conn.execute("SELECT symbol FROM positions").fetchall()}
            removed = sorted(existing - set(wanted))
            for symbol in removed:
                conn.execute("DELETE FROM positions WHERE symbol = ?", (symbol,))
            for position in wanted.values():
                self.upsert_position(position)
        return {
            "inserted": sorted(set(wanted) - existing),
            "updated": sorted(set(wanted) & existing),
            "removed": removed,
        }

    def update_peak(self, symbol: str, peak_pnl_percent: float) -> None:
        """Ratchet the stored peak upward; never lowers it."""
        with self.transaction() as conn:
            conn.execute(
                "UPDATE positions SET peak_pnl_percent = ? WHERE symbol = ? AND peak_pnl_percent < ?",
                (peak_pnl_percent, symbol, peak_pnl_percent),
            )

    # ===== trades =====

    def insert_trade(self, trade: Trade) -> int:
        with self.transaction() as conn:
            cursor = conn.execute(
                "INSERT INTO trades (order_id, symbol, side, type, price, quantity, leverage, pnl, fee, timestamp, status) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    trade.order_id,
                    trade.symbol,
                    trade.side.value,
                    trade.type.value,
                    trade.price,
                    trade.quantity,
                    int(trade.leverage),
                    trade.pnl,
                    trade.fee,
                    _iso(trade.timestamp),
                    trade.status.value,
                ),
            )
            trade.id = cursor.lastrowid
            return trade.id

    def recent_trades(self, limit: int = 10, symbol: Optional[str] = None) -> List[Trade]:
        if symbol:
            rows = self._query(
                "SELECT * FROM trades WHERE symbol = ? ORDER BY id DESC LIMIT ?", (symbol, limit)
            )
        else:
            rows = self._query("SELECT * FROM trades ORDER BY id DESC LIMIT ?", (limit,))
        return [
            Trade(
                id=r["id"],
                order_id=r["order_id"],
                symbol=r["symbol"],
                side=Side(r["side"]),
                type=TradeType(r["type"]),
                price=r["price"],
                quantity=r["quantity"],
                leverage=int(r["leverage"]),
                pnl=r["pnl"],
                fee=r["fee"],
                timestamp=_parse_ts(r["timestamp"]),
                status=TradeStatus(r["status"]),
            )
            for r in rows
        ]

    def realized_pnl(self) -> float:
        rows = self._query("SELECT COALESCE(SUM(pnl), 0) AS total FROM trades WHERE type = ?", (TradeType.CLOSE.value,))
        return float(rows[0]["total"])

    # ===== account history =====

    def append_account_snapshot(self, snapshot: AccountSnapshot) -> None:
        with self.transaction() as conn:
            conn.execute(
                "INSERT INTO account_history (timestamp, total_value, available_cash, unrealized_pnl, realized_pnl, return_percent) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (
                    _iso(snapshot.timestamp),
                    snapshot.total_value,
                    snapshot.available_cash,
                    snapshot.unrealized_pnl,
                    snapshot.realized_pnl,
                    snapshot.return_percent,
                ),
            )

    @staticmethod
    def _row_to_snapshot(row: sqlite3.Row) -> AccountSnapshot:
        return AccountSnapshot(
            timestamp=_parse_ts(row["timestamp"]),
            total_value=row["total_value"],
            available_cash=row["available_cash"],
            unrealized_pnl=row["unrealized_pnl"],
            realized_pnl=row["realized_pnl"],
            return_percent=row["return_percent"],
        )

    def initial_snapshot(self) -> Optional[AccountSnapshot]:
        rows = self._query("SELECT * FROM account_history ORDER BY id ASC LIMIT 1")
        return self._row_to_snapshot(rows[0]) if rows else None

    def latest_snapshot(self) -> Optional[AccountSnapshot]:
        rows = self._query("SELECT * FROM account_history ORDER BY id DESC LIMIT 1")
        return self._row_to_snapshot(rows[0]) if rows else None

    def peak_total_value(self) -> Optional[float]:
        rows = self._query("SELECT MAX(total_value) AS peak FROM account_history")
        peak = rows[0]["peak"]
        return float(peak) if peak is not None else None

    def account_values(self, limit: Optional[int] = None) -> List[float]:
        """Total values in chronological order (optionally only the last ``limit``)."""
        if limit:
            rows = self._query(
                "SELECT total_value FROM (SELECT id, total_value FROM account_history ORDER BY id DESC LIMIT ?) "
                "ORDER BY id ASC",
                (limit,),
            )
        else:
            rows = self._query("SELECT total_value FROM account_history ORDER BY id ASC")
        return [float(r["total_value"]) for r in rows]

    # ===== decisions =====

    def insert_decision(self, record: DecisionRecord) -> None:
        with self.transaction() as conn:
            conn.execute(
                "INSERT INTO agent_decisions (timestamp, iteration, market_analysis, decision, actions_taken, account_value, positions_count) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (
                    _iso(record.timestamp),
                    record.iteration,
                    record.market_analysis,
                    record.decision,
                    record.actions_taken,
                    record.account_value,
                    record.positions_count,
                ),
            )

    def latest_decision(self) -> Optional[DecisionRecord]:
        rows = self._query("SELECT * FROM agent_decisions ORDER BY id DESC LIMIT 1")
        if not rows:
            return None
        r = rows[0]
        return DecisionRecord(
            timestamp=_parse_ts(r["timestamp"]),
            iteration=r["iteration"],
            market_analysis=r["market_analysis"],
            decision=r["decision"],
            actions_taken=r["actions_taken"],
            account_value=r["account_value"],
            positions_count=r["positions_count"],
        )

    def count_decisions(self) -> int:
        return int(self._query("SELECT COUNT(*) AS n FROM agent_decisions")[0]["n"])

    # ===== system config =====

    def get_config(self, key: str) -> Optional[str]:
        rows = self._query("SELECT value FROM system_config WHERE key = ?", (key,))
        return rows[0]["value"] if rows else None

    def set_config(self, key: str, value: Any) -> None:
        with self.transaction() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO system_config (key, value, updated_at) VALUES (?, ?, ?)",
                (key, str(value), _iso(datetime.now(timezone.utc))),
            )

    def reset(self) -> None:
        """Wipe every table. Used by the operator close-and-reset script."""
        with self.transaction() as conn:
            for table in ("positions", "trades", "account_history", "agent_decisions", "system_config"):
                conn.execute(f"DELETE FROM {table}")
        logger.warning("Ledger reset: all tables cleared")

from __future__ import annotations

import asyncio
import json
import sqlite3
import time
from pathlib import Path
from typing import Any

import structlog

from guardian.errors import StoreWriteFailure
from guardian.history import summarize
from guardian.models import (
    CheckResult,
    Outcome,
    Status,
    TransactionState,
    TransactionType,
)


logger = structlog.get_logger(__name__)

SCHEMA_VERSION = 2
DEFAULT_SUMMARY_WINDOW_SECONDS = 86400.0

_TRANSACTION_TYPES = tuple(t.value for t in TransactionType)


def _utc_ts() -> float:
    return float(time.time())


def _json_dumps(obj: Any) -> str:
    return json.dumps(obj, ensure_ascii=False, sort_keys=True)


def _json_loads(s: Any) -> Any:
    if s is None:
        return None
    if isinstance(s, (dict, list)):
        return s
    try:
        return json.loads(str(s))
    except ValueError:
        return None


def _connect(path: str) -> sqlite3.Connection:
    p = str(path or "").strip()
    if not p:
        raise ValueError("Missing db_path")
    if p != ":memory:":
        Path(p).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(p, timeout=30, isolation_level=None, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA busy_timeout = 5000;")
    # WAL lets readers run alongside appends without seeing partial rows.
    conn.execute("PRAGMA journal_mode = WAL;")
    conn.execute("PRAGMA synchronous = FULL;")
    return conn


def ensure_schema(db_path: str) -> None:
    conn = _connect(db_path)
    try:
        _ensure_schema_conn(conn)
    finally:
        conn.close()


def _schema_version(conn: sqlite3.Connection) -> int:
    conn.execute("CREATE TABLE IF NOT EXISTS schema_meta (k TEXT PRIMARY KEY, v TEXT NOT NULL);")
    row = conn.execute("SELECT v FROM schema_meta WHERE k='version'").fetchone()
    return int(row["v"]) if row and row["v"] else 0


def _ensure_schema_conn(conn: sqlite3.Connection) -> None:
    if _schema_version(conn) >= SCHEMA_VERSION:
        return

    conn.execute("BEGIN IMMEDIATE;")
    try:
        # Re-read under the write lock: another worker may have migrated meanwhile.
        cur = _schema_version(conn)
        if cur < 1:
            _apply_v1(conn)
        if cur < 2:
            _apply_v2(conn)
        if cur > SCHEMA_VERSION:
            raise RuntimeError(f"Unsupported schema version cur={cur} target={SCHEMA_VERSION}")
        conn.execute("INSERT OR REPLACE INTO schema_meta (k, v) VALUES ('version', ?)", (str(SCHEMA_VERSION),))
        conn.execute("COMMIT;")
    except Exception:
        conn.execute("ROLLBACK;")
        raise


def _column_exists(conn: sqlite3.Connection, table: str, column: str) -> bool:
    rows = conn.execute(f"PRAGMA table_info({table});").fetchall()
    return any(str(r["name"]) == str(column) for r in rows)


def _apply_v1(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS synthetic_transactions (
          id TEXT PRIMARY KEY,
          transaction_type TEXT NOT NULL,
          target TEXT NOT NULL,
          timeout_seconds REAL,
          max_retries INTEGER,
          retry_delay_seconds REAL,
          enabled INTEGER NOT NULL DEFAULT 1,
          options_json TEXT NOT NULL DEFAULT '{}',
          created_at_ts REAL NOT NULL,
          updated_at_ts REAL NOT NULL
        );
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS check_results (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          transaction_id TEXT NOT NULL,
          started_at_ts REAL NOT NULL,
          duration_ms REAL NOT NULL,
          outcome TEXT NOT NULL CHECK (outcome IN ('success', 'failure', 'timeout')),
          attempt INTEGER NOT NULL,
          detail TEXT NOT NULL DEFAULT '',
          data_json TEXT NOT NULL DEFAULT '{}'
        );
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS transaction_state (
          transaction_id TEXT PRIMARY KEY,
          status TEXT NOT NULL DEFAULT 'healthy' CHECK (status IN ('healthy', 'degraded', 'down')),
          consecutive_failures INTEGER NOT NULL DEFAULT 0,
          last_change_at_ts REAL,
          updated_at_ts REAL NOT NULL
        );
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_check_results_tx_started ON check_results(transaction_id, started_at_ts);")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_check_results_started ON check_results(started_at_ts);")


def _apply_v2(conn: sqlite3.Connection) -> None:
    """
    v2 restricts transaction_type to the known probe kinds and adds check_interval (default 300s).
    """
    allowed = ", ".join(f"'{t}'" for t in _TRANSACTION_TYPES)
    for event in ("INSERT", "UPDATE"):
        conn.execute(
            f"""
            CREATE TRIGGER IF NOT EXISTS trg_synthetic_transactions_type_{event.lower()}
            BEFORE {event} ON synthetic_transactions
            WHEN NEW.transaction_type NOT IN ({allowed})
            BEGIN
              SELECT RAISE(ABORT, 'invalid transaction_type');
            END;
            """
        )
    if not _column_exists(conn, "synthetic_transactions", "check_interval"):
        conn.execute("ALTER TABLE synthetic_transactions ADD COLUMN check_interval INTEGER NOT NULL DEFAULT 300;")


def _row_to_result(row: sqlite3.Row) -> CheckResult:
    return CheckResult(
        transaction_id=str(row["transaction_id"]),
        started_at=float(row["started_at_ts"]),
        duration_ms=float(row["duration_ms"]),
        outcome=Outcome(str(row["outcome"])),
        attempt=int(row["attempt"]),
        detail=str(row["detail"] or ""),
        data=_json_loads(row["data_json"]) or {},
    )


def _row_to_state(row: sqlite3.Row) -> TransactionState:
    return TransactionState(
        transaction_id=str(row["transaction_id"]),
        status=Status(str(row["status"])),
        consecutive_failures=int(row["consecutive_failures"] or 0),
        last_change_at=float(row["last_change_at_ts"]) if row["last_change_at_ts"] is not None else None,
    )


def append_result(db_path: str, result: CheckResult) -> int:
    """
    Insert one result. The insert is its own transaction and is committed before returning.
    """
    try:
        conn = _connect(db_path)
    except (sqlite3.Error, OSError) as exc:
        raise StoreWriteFailure(f"connect_failed: {exc}") from exc
    try:
        _ensure_schema_conn(conn)
        cur = conn.execute(
            """
            INSERT INTO check_results (transaction_id, started_at_ts, duration_ms, outcome, attempt, detail, data_json)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                result.transaction_id,
                float(result.started_at),
                float(result.duration_ms),
                Outcome(result.outcome).value,
                int(result.attempt),
                str(result.detail or ""),
                _json_dumps(result.data or {}),
            ),
        )
        return int(cur.lastrowid or 0)
    except sqlite3.Error as exc:
        raise StoreWriteFailure(f"append_failed: {exc}") from exc
    finally:
        conn.close()


def query_results(
    db_path: str,
    *,
    transaction_id: str,
    since: float | None = None,
    until: float | None = None,
    limit: int | None = None,
) -> list[CheckResult]:
    """
    Results for one transaction with since <= started_at < until, oldest first.
    """
    clauses = ["transaction_id=?"]
    params: list[Any] = [transaction_id]
    if since is not None:
        clauses.append("started_at_ts >= ?")
        params.append(float(since))
    if until is not None:
        clauses.append("started_at_ts < ?")
        params.append(float(until))
    sql = f"SELECT * FROM check_results WHERE {' AND '.join(clauses)} ORDER BY started_at_ts ASC, id ASC"
    if limit is not None:
        sql += " LIMIT ?"
        params.append(max(1, int(limit)))

    conn = _connect(db_path)
    try:
        _ensure_schema_conn(conn)
        rows = conn.execute(sql, params).fetchall()
        return [_row_to_result(r) for r in rows]
    finally:
        conn.close()


def latest_result(db_path: str, *, transaction_id: str) -> CheckResult | None:
    conn = _connect(db_path)
    try:
        _ensure_schema_conn(conn)
        row = conn.execute(
            "SELECT * FROM check_results WHERE transaction_id=? ORDER BY started_at_ts DESC, id DESC LIMIT 1",
            (transaction_id,),
        ).fetchone()
        return _row_to_result(row) if row else None
    finally:
        conn.close()


def prune_results(db_path: str, *, before_ts: float) -> int:
    """Delete results that started before the cutoff. Returns the number of rows removed."""
    conn = _connect(db_path)
    try:
        _ensure_schema_conn(conn)
        cur = conn.execute("DELETE FROM check_results WHERE started_at_ts < ?", (float(before_ts),))
        return int(cur.rowcount or 0)
    finally:
        conn.close()


def save_state(db_path: str, state: TransactionState) -> None:
    try:
        conn = _connect(db_path)
    except (sqlite3.Error, OSError) as exc:
        raise StoreWriteFailure(f"connect_failed: {exc}") from exc
    try:
        _ensure_schema_conn(conn)
        conn.execute(
            """
            INSERT INTO transaction_state (transaction_id, status, consecutive_failures, last_change_at_ts, updated_at_ts)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(transaction_id) DO UPDATE SET
              status=excluded.status,
              consecutive_failures=excluded.consecutive_failures,
              last_change_at_ts=excluded.last_change_at_ts,
              updated_at_ts=excluded.updated_at_ts
            """,
            (
                state.transaction_id,
                Status(state.status).value,
                int(state.consecutive_failures),
                state.last_change_at,
                _utc_ts(),
            ),
        )
    except sqlite3.Error as exc:
        raise StoreWriteFailure(f"save_state_failed: {exc}") from exc
    finally:
        conn.close()


def load_states(db_path: str) -> dict[str, TransactionState]:
    conn = _connect(db_path)
    try:
        _ensure_schema_conn(conn)
        rows = conn.execute("SELECT * FROM transaction_state ORDER BY transaction_id ASC").fetchall()
        return {str(r["transaction_id"]): _row_to_state(r) for r in rows}
    finally:
        conn.close()


def upsert_transaction(db_path: str, definition: dict[str, Any]) -> None:
    """
    Persist a raw transaction definition. An omitted check_interval leaves the column default (300s) in place.
    """
    tx_id = str(definition.get("id") or "").strip()
    if not tx_id:
        raise StoreWriteFailure("missing_transaction_id")
    core = {"id", "type", "target", "check_interval", "timeout", "max_retries", "retry_delay", "enabled"}
    options = {k: v for k, v in definition.items() if k not in core}
    now = _utc_ts()

    columns = [
        "id",
        "transaction_type",
        "target",
        "timeout_seconds",
        "max_retries",
        "retry_delay_seconds",
        "enabled",
        "options_json",
        "created_at_ts",
        "updated_at_ts",
    ]
    values: list[Any] = [
        tx_id,
        str(definition.get("type") or "").strip().lower(),
        str(definition.get("target") or "").strip(),
        definition.get("timeout"),
        definition.get("max_retries"),
        definition.get("retry_delay"),
        1 if definition.get("enabled", True) else 0,
        _json_dumps(options),
        now,
        now,
    ]
    if definition.get("check_interval") is not None:
        columns.append("check_interval")
        values.append(int(definition["check_interval"]))

    updates = ", ".join(f"{c}=excluded.{c}" for c in columns if c not in {"id", "created_at_ts"})
    sql = (
        f"INSERT INTO synthetic_transactions ({', '.join(columns)}) VALUES ({', '.join('?' for _ in columns)}) "
        f"ON CONFLICT(id) DO UPDATE SET {updates}"
    )

    try:
        conn = _connect(db_path)
    except (sqlite3.Error, OSError) as exc:
        raise StoreWriteFailure(f"connect_failed: {exc}") from exc
    try:
        _ensure_schema_conn(conn)
        conn.execute(sql, values)
    except sqlite3.Error as exc:
        raise StoreWriteFailure(f"upsert_transaction_failed: {exc}") from exc
    finally:
        conn.close()


def list_transaction_definitions(db_path: str) -> list[dict[str, Any]]:
    """Stored definitions as raw dicts, in the same shape as the YAML `transactions` entries."""
    conn = _connect(db_path)
    try:
        _ensure_schema_conn(conn)
        rows = conn.execute("SELECT * FROM synthetic_transactions ORDER BY created_at_ts ASC, id ASC").fetchall()
    finally:
        conn.close()

    out: list[dict[str, Any]] = []
    for r in rows:
        options = _json_loads(r["options_json"]) or {}
        defn: dict[str, Any] = dict(options) if isinstance(options, dict) else {}
        defn.update(
            {
                "id": str(r["id"]),
                "type": str(r["transaction_type"]),
                "target": str(r["target"]),
                "check_interval": int(r["check_interval"]) if r["check_interval"] is not None else None,
                "enabled": bool(int(r["enabled"] if r["enabled"] is not None else 1)),
            }
        )
        if r["timeout_seconds"] is not None:
            defn["timeout"] = float(r["timeout_seconds"])
        if r["max_retries"] is not None:
            defn["max_retries"] = int(r["max_retries"])
        if r["retry_delay_seconds"] is not None:
            defn["retry_delay"] = float(r["retry_delay_seconds"])
        out.append(defn)
    return out


def status_summary(
    db_path: str, *, window_seconds: float = DEFAULT_SUMMARY_WINDOW_SECONDS, now_ts: float | None = None
) -> dict[str, Any]:
    """
    Lightweight summary intended for dashboards: current state, the latest result and
    availability / error rate / latency over the trailing window, per transaction.
    """
    now = float(now_ts) if now_ts is not None else _utc_ts()
    since = now - max(0.0, float(window_seconds))
    conn = _connect(db_path)
    try:
        _ensure_schema_conn(conn)
        rows = conn.execute(
            """
            SELECT
              s.transaction_id AS transaction_id,
              s.status AS status,
              s.consecutive_failures AS consecutive_failures,
              s.last_change_at_ts AS last_change_at_ts,
              r.outcome AS last_outcome,
              r.started_at_ts AS last_started_at_ts,
              r.duration_ms AS last_duration_ms,
              r.detail AS last_detail
            FROM transaction_state s
            LEFT JOIN check_results r ON r.id = (
              SELECT r2.id FROM check_results r2
              WHERE r2.transaction_id=s.transaction_id
              ORDER BY r2.started_at_ts DESC, r2.id DESC LIMIT 1
            )
            ORDER BY s.transaction_id ASC
            """
        ).fetchall()
        items = [dict(r) for r in rows]
        for item in items:
            recent = conn.execute(
                """
                SELECT * FROM check_results
                WHERE transaction_id=? AND started_at_ts >= ? AND started_at_ts < ?
                ORDER BY started_at_ts ASC, id ASC
                """,
                (item["transaction_id"], since, now),
            ).fetchall()
            item["window"] = summarize([_row_to_result(r) for r in recent])
    finally:
        conn.close()

    return {
        "window_seconds": float(window_seconds),
        "total_transactions": len(items),
        "degraded": sum(1 for t in items if t["status"] == Status.DEGRADED.value),
        "down": sum(1 for t in items if t["status"] == Status.DOWN.value),
        "transactions": items,
    }


class ResultStore:
    """
    Async facade over the sqlite helpers. Every call runs in a worker thread on its own connection,
    so appends from many transactions never block the event loop or each other's readers.
    """

    def __init__(self, db_path: str) -> None:
        self.db_path = str(db_path)

    async def initialize(self) -> None:
        await asyncio.to_thread(ensure_schema, self.db_path)

    async def append(self, result: CheckResult) -> int:
        return await asyncio.to_thread(append_result, self.db_path, result)

    async def query(
        self,
        transaction_id: str,
        since: float | None = None,
        until: float | None = None,
        *,
        limit: int | None = None,
    ) -> list[CheckResult]:
        return await asyncio.to_thread(
            query_results, self.db_path, transaction_id=transaction_id, since=since, until=until, limit=limit
        )

    async def latest(self, transaction_id: str) -> CheckResult | None:
        return await asyncio.to_thread(latest_result, self.db_path, transaction_id=transaction_id)

    async def prune(self, older_than: float) -> int:
        removed = await asyncio.to_thread(prune_results, self.db_path, before_ts=older_than)
        logger.info("Pruned check results", removed=removed, before_ts=round(float(older_than), 3))
        return removed

    async def prune_retention(self, retention_days: float, *, now_ts: float | None = None) -> int:
        now = float(now_ts) if now_ts is not None else _utc_ts()
        return await self.prune(now - max(0.0, float(retention_days)) * 86400.0)

    async def save_state(self, state: TransactionState) -> None:
        await asyncio.to_thread(save_state, self.db_path, state)

    async def load_states(self) -> dict[str, TransactionState]:
        return await asyncio.to_thread(load_states, self.db_path)

    async def upsert_transaction(self, definition: dict[str, Any]) -> None:
        await asyncio.to_thread(upsert_transaction, self.db_path, definition)

    async def list_transaction_definitions(self) -> list[dict[str, Any]]:
        return await asyncio.to_thread(list_transaction_definitions, self.db_path)

    async def status_summary(
        self, *, window_seconds: float = DEFAULT_SUMMARY_WINDOW_SECONDS, now_ts: float | None = None
    ) -> dict[str, Any]:
        return await asyncio.to_thread(status_summary, self.db_path, window_seconds=window_seconds, now_ts=now_ts)

from __future__ import annotations

import asyncio
import sqlite3
import time
from pathlib import Path

import pytest

from guardian.errors import StoreWriteFailure
from guardian.models import CheckResult, Outcome, Status, TransactionState
from guardian.store import (
    SCHEMA_VERSION,
    ResultStore,
    append_result,
    ensure_schema,
    list_transaction_definitions,
    prune_results,
    query_results,
    upsert_transaction,
)


DAY = 86400.0


def _result(tx_id: str, ts: float, outcome: Outcome = Outcome.SUCCESS, **kw) -> CheckResult:
    return CheckResult(
        transaction_id=tx_id,
        started_at=ts,
        duration_ms=kw.pop("duration_ms", 12.5),
        outcome=outcome,
        attempt=kw.pop("attempt", 1),
        detail=kw.pop("detail", "ok"),
        data=kw.pop("data", {}),
    )


def test_schema_is_created_and_versioned(tmp_path: Path) -> None:
    db = str(tmp_path / "g.db")
    ensure_schema(db)
    ensure_schema(db)
    conn = sqlite3.connect(db)
    try:
        version = conn.execute("SELECT v FROM schema_meta WHERE k='version'").fetchone()[0]
        cols = [r[1] for r in conn.execute("PRAGMA table_info(synthetic_transactions)").fetchall()]
    finally:
        conn.close()
    assert int(version) == SCHEMA_VERSION
    assert "check_interval" in cols


def test_append_then_query_round_trip(tmp_path: Path) -> None:
    db = str(tmp_path / "g.db")
    original = _result(
        "t1",
        1_700_000_000.25,
        Outcome.TIMEOUT,
        duration_ms=10_000.5,
        attempt=2,
        detail="timeout after 10s",
        data={"status_code": None, "final_url": "https://svc.example/"},
    )
    append_result(db, original)
    got = query_results(db, transaction_id="t1", since=1_700_000_000.0, until=1_700_000_001.0)
    assert got == [original]


def test_query_is_chronological_and_range_bounded(tmp_path: Path) -> None:
    db = str(tmp_path / "g.db")
    for ts in (30.0, 10.0, 20.0, 40.0):
        append_result(db, _result("t1", ts))
    append_result(db, _result("other", 25.0))

    assert [r.started_at for r in query_results(db, transaction_id="t1")] == [10.0, 20.0, 30.0, 40.0]
    assert [r.started_at for r in query_results(db, transaction_id="t1", since=20.0, until=40.0)] == [20.0, 30.0]
    assert query_results(db, transaction_id="missing") == []


def test_prune_removes_only_older_results_and_is_idempotent(tmp_path: Path) -> None:
    db = str(tmp_path / "g.db")
    now = time.time()
    cutoff = now - 365 * DAY
    append_result(db, _result("t1", cutoff - 10 * DAY))
    append_result(db, _result("t1", cutoff - 1.0))
    append_result(db, _result("t2", cutoff - 400 * DAY))
    kept = [_result("t1", cutoff + 1.0), _result("t1", now - 60.0)]
    for r in kept:
        append_result(db, r)

    assert prune_results(db, before_ts=cutoff) == 3
    assert prune_results(db, before_ts=cutoff) == 0
    assert query_results(db, transaction_id="t1") == kept
    assert query_results(db, transaction_id="t2") == []


def test_invalid_transaction_type_is_rejected(tmp_path: Path) -> None:
    db = str(tmp_path / "g.db")
    with pytest.raises(StoreWriteFailure):
        upsert_transaction(db, {"id": "x", "type": "ftp", "target": "https://svc.example/"})


def test_stored_transaction_without_interval_gets_column_default(tmp_path: Path) -> None:
    db = str(tmp_path / "g.db")
    upsert_transaction(db, {"id": "a", "type": "api", "target": "https://svc.example/a", "timeout": 10})
    upsert_transaction(
        db,
        {"id": "b", "type": "content", "target": "https://svc.example/b", "check_interval": 90, "required_text": ["hi"]},
    )
    by_id = {d["id"]: d for d in list_transaction_definitions(db)}
    assert by_id["a"]["check_interval"] == 300
    assert by_id["a"]["timeout"] == 10.0
    assert "max_retries" not in by_id["a"]
    assert by_id["b"]["check_interval"] == 90
    assert by_id["b"]["required_text"] == ["hi"]

    upsert_transaction(db, {"id": "b", "type": "content", "target": "https://svc.example/b2", "check_interval": 120})
    by_id = {d["id"]: d for d in list_transaction_definitions(db)}
    assert by_id["b"]["target"] == "https://svc.example/b2"
    assert by_id["b"]["check_interval"] == 120


def test_append_failure_raises_store_write_failure(tmp_path: Path) -> None:
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("x", encoding="utf-8")
    with pytest.raises(StoreWriteFailure):
        append_result(str(blocker / "g.db"), _result("t1", 1.0))


@pytest.mark.asyncio
async def test_async_store_concurrent_appends_and_state(tmp_path: Path) -> None:
    store = ResultStore(str(tmp_path / "g.db"))
    await store.initialize()

    await asyncio.gather(*(store.append(_result(f"t{i % 5}", float(i))) for i in range(50)))
    counts = [len(await store.query(f"t{i}")) for i in range(5)]
    assert counts == [10] * 5

    latest = await store.latest("t0")
    assert latest is not None and latest.started_at == 45.0

    await store.save_state(TransactionState("t0", Status.DOWN, 3, 44.0))
    await store.save_state(TransactionState("t1", Status.HEALTHY, 0, None))
    states = await store.load_states()
    assert states["t0"] == TransactionState("t0", Status.DOWN, 3, 44.0)

    summary = await store.status_summary()
    assert summary["total_transactions"] == 2
    assert summary["down"] == 1
    row = next(t for t in summary["transactions"] if t["transaction_id"] == "t0")
    assert row["last_started_at_ts"] == 45.0


@pytest.mark.asyncio
async def test_prune_retention_uses_days(tmp_path: Path) -> None:
    store = ResultStore(str(tmp_path / "g.db"))
    now = 1_000 * DAY
    await store.append(_result("t1", now - 366 * DAY))
    await store.append(_result("t1", now - 364 * DAY))
    assert await store.prune_retention(365, now_ts=now) == 1
    assert [r.started_at for r in await store.query("t1")] == [now - 364 * DAY]


@pytest.mark.asyncio
async def test_status_summary_includes_window_statistics(tmp_path: Path) -> None:
    store = ResultStore(str(tmp_path / "g.db"))
    now = 10 * DAY
    await store.append(_result("t1", now - 2 * DAY, Outcome.FAILURE))
    await store.append(_result("t1", now - 300.0, duration_ms=100.0))
    await store.append(_result("t1", now - 200.0, Outcome.TIMEOUT, duration_ms=30_000.0))
    await store.append(_result("t1", now - 100.0, duration_ms=300.0))
    await store.save_state(TransactionState("t1", Status.DEGRADED, 1, now - 200.0))

    summary = await store.status_summary(window_seconds=DAY, now_ts=now)
    (row,) = summary["transactions"]
    assert summary["window_seconds"] == DAY
    assert row["window"]["total"] == 3
    assert row["window"]["ok"] == 2
    assert row["window"]["timeouts"] == 1
    assert row["window"]["p95_ms"] == 300.0
    assert row["last_outcome"] == "success"

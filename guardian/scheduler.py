"""Periodic scheduling of synthetic transactions."""

from __future__ import annotations

import asyncio
import sqlite3
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable, Iterable, Optional

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from guardian.alerts import AlertEvaluator
from guardian.config import MonitoringDefaults
from guardian.errors import ConfigurationError, StoreWriteFailure
from guardian.models import CheckResult, RunState, SyntheticTransaction
from guardian.retry import RetryCoordinator
from guardian.store import ResultStore


logger = structlog.get_logger(__name__)

PRUNE_JOB_ID = "guardian:prune"

Sleep = Callable[[float], Awaitable[None]]


def _job_id(transaction_id: str) -> str:
    return f"guardian:tx:{transaction_id}"


@dataclass
class SystemHealth:
    """Health of the monitor itself, kept apart from per-transaction alerting."""

    store_degraded: bool = False
    store_write_failures: int = 0
    last_store_error: Optional[str] = None
    last_store_failure_at: Optional[float] = None

    def mark_store_failure(self, error: str) -> None:
        if not self.store_degraded:
            logger.error("Result store degraded; probing continues", error=error)
        self.store_degraded = True
        self.store_write_failures += 1
        self.last_store_error = error
        self.last_store_failure_at = time.time()

    def mark_store_ok(self) -> None:
        if self.store_degraded:
            logger.info("Result store recovered", failed_writes=self.store_write_failures)
        self.store_degraded = False


class TransactionScheduler:
    """
    Triggers one check per transaction every check_interval seconds using APScheduler.

    Ticks are measured from the start of the previous tick. Each transaction has at most one run
    in flight: a tick that arrives while a run is still going marks the transaction overdue and is
    skipped, never queued.
    """

    def __init__(
        self,
        coordinator: RetryCoordinator,
        store: ResultStore,
        evaluator: AlertEvaluator,
        *,
        defaults: MonitoringDefaults | None = None,
        scheduler: AsyncIOScheduler | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.coordinator = coordinator
        self.store = store
        self.evaluator = evaluator
        self.defaults = defaults or MonitoringDefaults()
        self.scheduler = scheduler or AsyncIOScheduler(timezone=timezone.utc)
        self._sleep = sleep

        self.system_health = SystemHealth()
        self.excluded: dict[str, str] = {}
        self.skipped_runs: dict[str, int] = {}
        self._transactions: dict[str, SyntheticTransaction] = {}
        self._run_state: dict[str, RunState] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._recording: set[str] = set()
        self.running = False
        self._stopping = False

    # --- transaction set -------------------------------------------------

    def load(self, transactions: Iterable[SyntheticTransaction], errors: Iterable[ConfigurationError] = ()) -> None:
        for exc in errors:
            self.excluded[str(exc.transaction_id or "?")] = str(exc)
        for tx in transactions:
            try:
                self.add_transaction(tx)
            except ConfigurationError as exc:
                self.excluded[tx.id] = str(exc)
                logger.error("Transaction excluded from scheduling", transaction_id=tx.id, error=str(exc))

    def add_transaction(self, tx: SyntheticTransaction) -> None:
        if int(tx.check_interval) <= 0:
            raise ConfigurationError("check_interval must be positive", transaction_id=tx.id)
        if not tx.enabled:
            logger.info("Transaction disabled; not scheduled", transaction_id=tx.id)
            self.remove_transaction(tx.id)
            return
        if tx.has_scheduling_risk:
            logger.warning(
                "Scheduling risk: interval shorter than worst-case probe time",
                transaction_id=tx.id,
                check_interval=tx.check_interval,
                worst_case_seconds=tx.worst_case_seconds,
            )

        self._transactions[tx.id] = tx
        self._run_state.setdefault(tx.id, RunState.IDLE)
        self.skipped_runs.setdefault(tx.id, 0)
        self.excluded.pop(tx.id, None)

        self.scheduler.add_job(
            self.tick,
            trigger=IntervalTrigger(seconds=int(tx.check_interval)),
            args=[tx.id],
            id=_job_id(tx.id),
            name=f"check {tx.id}",
            replace_existing=True,
            coalesce=True,
            max_instances=1,
            misfire_grace_time=None,
            next_run_time=datetime.now(timezone.utc),
        )
        logger.info(
            "Scheduled transaction",
            transaction_id=tx.id,
            tx_type=tx.type.value,
            interval_seconds=tx.check_interval,
        )

    def remove_transaction(self, transaction_id: str) -> bool:
        """Stop scheduling a transaction. A run already in flight is allowed to finish."""
        existed = self._transactions.pop(transaction_id, None) is not None
        if self.scheduler.get_job(_job_id(transaction_id)) is not None:
            self.scheduler.remove_job(_job_id(transaction_id))
        self.evaluator.forget(transaction_id)
        if transaction_id not in self._tasks:
            self._run_state.pop(transaction_id, None)
        return existed

    def transactions(self) -> list[SyntheticTransaction]:
        return list(self._transactions.values())

    def run_state(self, transaction_id: str) -> RunState:
        return self._run_state.get(transaction_id, RunState.IDLE)

    def in_flight(self) -> list[str]:
        return [tx_id for tx_id, task in self._tasks.items() if not task.done()]

    # --- running checks ---------------------------------------------------

    async def tick(self, transaction_id: str) -> bool:
        """
        Interval elapsed for one transaction. Returns True if a run was started.
        """
        tx = self._transactions.get(transaction_id)
        if tx is None or self._stopping:
            return False

        state = self._run_state.get(transaction_id, RunState.IDLE)
        if state != RunState.IDLE:
            self._run_state[transaction_id] = RunState.OVERDUE
            self.skipped_runs[transaction_id] = self.skipped_runs.get(transaction_id, 0) + 1
            logger.warning(
                "Transaction overdue; previous run still in flight, skipping",
                transaction_id=transaction_id,
                skipped_runs=self.skipped_runs[transaction_id],
            )
            return False

        self._run_state[transaction_id] = RunState.RUNNING
        self._tasks[transaction_id] = asyncio.create_task(self._run(tx), name=f"guardian-check:{transaction_id}")
        return True

    async def run_now(self, transaction_id: str) -> bool:
        return await self.tick(transaction_id)

    async def run_all_once(self) -> None:
        """Start one run for every scheduled transaction and wait for all of them."""
        for tx_id in list(self._transactions):
            await self.tick(tx_id)
        await self.wait_idle()

    async def wait_idle(self, timeout: float | None = None) -> bool:
        tasks = [t for t in self._tasks.values() if not t.done()]
        if not tasks:
            return True
        _done, pending = await asyncio.wait(tasks, timeout=timeout)
        return not pending

    async def _run(self, tx: SyntheticTransaction) -> None:
        try:
            try:
                outcome = await self.coordinator.run(tx)
            except asyncio.CancelledError:
                logger.warning("Run abandoned before completion; nothing recorded", transaction_id=tx.id)
                raise

            # Once the probe has finished, the append and the evaluation always complete together.
            self._recording.add(tx.id)
            record = asyncio.ensure_future(self._record(outcome.result))
            try:
                await asyncio.shield(record)
            except asyncio.CancelledError:
                await record
                raise
        except Exception:
            logger.exception("Run failed unexpectedly", transaction_id=tx.id)
        finally:
            self._recording.discard(tx.id)
            self._tasks.pop(tx.id, None)
            if tx.id in self._transactions:
                self._run_state[tx.id] = RunState.IDLE
            else:
                self._run_state.pop(tx.id, None)

    async def _record(self, result: CheckResult) -> None:
        retries = max(0, int(self.defaults.store_write_retries))
        delay = max(0.0, float(self.defaults.store_write_backoff_seconds))
        for attempt in range(retries + 1):
            try:
                await self.store.append(result)
                self.system_health.mark_store_ok()
                break
            except StoreWriteFailure as exc:
                if attempt >= retries:
                    self.system_health.mark_store_failure(str(exc))
                    logger.error(
                        "Dropping check result after repeated store failures",
                        transaction_id=result.transaction_id,
                        attempts=attempt + 1,
                        error=str(exc),
                    )
                    break
                logger.warning(
                    "Result append failed; retrying",
                    transaction_id=result.transaction_id,
                    attempt=attempt + 1,
                    backoff_seconds=delay,
                    error=str(exc),
                )
                await self._sleep(delay)
                delay *= 2

        # Evaluated even when the append failed so outages are never masked by store trouble.
        await self.evaluator.on_result(result)

    # --- retention --------------------------------------------------------

    async def prune_once(self, *, now_ts: float | None = None) -> int:
        try:
            return await self.store.prune_retention(self.defaults.metric_retention_days, now_ts=now_ts)
        except sqlite3.Error as exc:
            logger.error("Retention pruning failed", error=str(exc))
            return 0

    # --- lifecycle --------------------------------------------------------

    async def start(self) -> None:
        if self.running:
            logger.warning("Scheduler already running")
            return
        self.scheduler.add_job(
            self.prune_once,
            trigger=IntervalTrigger(seconds=int(self.defaults.prune_interval_seconds)),
            id=PRUNE_JOB_ID,
            name="prune check results",
            replace_existing=True,
            coalesce=True,
            max_instances=1,
        )
        self._stopping = False
        self.scheduler.start()
        self.running = True
        logger.info(
            "Transaction scheduler started",
            transactions=len(self._transactions),
            excluded=len(self.excluded),
        )

    async def stop(self, grace_seconds: float | None = None) -> None:
        """
        Stop ticking, give in-flight runs the grace period, then abandon runs still probing.
        Abandoned runs write no result. A run whose probe already finished completes its append
        and evaluation, so the store and the transaction state stay consistent.
        """
        grace = float(self.defaults.shutdown_grace_seconds if grace_seconds is None else grace_seconds)
        self._stopping = True
        if self.running:
            self.scheduler.shutdown(wait=False)
            self.running = False

        tasks = [t for t in self._tasks.values() if not t.done()]
        if tasks:
            logger.info("Waiting for in-flight runs", count=len(tasks), grace_seconds=grace)
            _done, pending = await asyncio.wait(tasks, timeout=max(0.0, grace))
            if pending:
                probing = [t for tx_id, t in self._tasks.items() if t in pending and tx_id not in self._recording]
                logger.warning(
                    "Abandoning in-flight runs after grace period",
                    abandoned=len(probing),
                    finishing=len(pending) - len(probing),
                )
                for task in probing:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)
        logger.info("Transaction scheduler stopped")

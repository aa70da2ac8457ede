from __future__ import annotations

import asyncio
import time
from typing import Callable

import structlog

from guardian.errors import StoreWriteFailure
from guardian.models import (
    DEFAULT_DOWN_AFTER_FAILURES,
    CheckResult,
    Status,
    StatusEvent,
    TransactionState,
)
from guardian.notify import Notifier
from guardian.store import ResultStore


logger = structlog.get_logger(__name__)


def evaluate_transition(
    state: TransactionState,
    result: CheckResult,
    *,
    down_after_failures: int,
    now_ts: float,
) -> tuple[TransactionState, StatusEvent | None]:
    """
    Returns (next_state, event_or_None).

    success: failures reset; anything but healthy recovers to healthy.
    failure/timeout: healthy -> degraded on the first failure; -> down once the streak reaches
    down_after_failures. Staying in down emits nothing.
    """
    down_after_failures = max(1, int(down_after_failures))
    prev = state.status

    if result.ok:
        failures = 0
        nxt = Status.HEALTHY
    else:
        failures = int(state.consecutive_failures) + 1
        if failures >= down_after_failures:
            nxt = Status.DOWN
        elif prev == Status.HEALTHY:
            nxt = Status.DEGRADED
        else:
            nxt = prev

    if nxt == prev:
        return (
            TransactionState(
                transaction_id=state.transaction_id,
                status=prev,
                consecutive_failures=failures,
                last_change_at=state.last_change_at,
            ),
            None,
        )

    event = StatusEvent(
        transaction_id=state.transaction_id,
        old_status=prev,
        new_status=nxt,
        timestamp=float(now_ts),
        last_result_detail=str(result.detail or ""),
    )
    return (
        TransactionState(
            transaction_id=state.transaction_id,
            status=nxt,
            consecutive_failures=failures,
            last_change_at=float(now_ts),
        ),
        event,
    )


class AlertEvaluator:
    """
    Sole owner of TransactionState. Results for one transaction are applied in arrival order;
    different transactions never wait on each other.
    """

    def __init__(
        self,
        notifier: Notifier,
        *,
        down_after_failures: int = DEFAULT_DOWN_AFTER_FAILURES,
        store: ResultStore | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.notifier = notifier
        self.down_after_failures = max(1, int(down_after_failures))
        self.store = store
        self._clock = clock
        self._states: dict[str, TransactionState] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self.state_write_failures = 0

    def restore(self, states: dict[str, TransactionState]) -> None:
        self._states.update(states)

    def state(self, transaction_id: str) -> TransactionState:
        return self._states.get(transaction_id) or TransactionState(transaction_id=transaction_id)

    def states(self) -> dict[str, TransactionState]:
        return dict(self._states)

    def forget(self, transaction_id: str) -> None:
        self._states.pop(transaction_id, None)
        self._locks.pop(transaction_id, None)

    def _lock_for(self, transaction_id: str) -> asyncio.Lock:
        lock = self._locks.get(transaction_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[transaction_id] = lock
        return lock

    async def on_result(self, result: CheckResult) -> StatusEvent | None:
        tx_id = result.transaction_id
        async with self._lock_for(tx_id):
            nxt, event = evaluate_transition(
                self.state(tx_id),
                result,
                down_after_failures=self.down_after_failures,
                now_ts=float(self._clock()),
            )
            self._states[tx_id] = nxt

            if self.store is not None:
                try:
                    await self.store.save_state(nxt)
                except StoreWriteFailure as exc:
                    self.state_write_failures += 1
                    logger.error("Failed to persist transaction state", transaction_id=tx_id, error=str(exc))

            if event is None:
                return None

            logger.info(
                "Status transition",
                transaction_id=tx_id,
                old_status=event.old_status.value,
                new_status=event.new_status.value,
                consecutive_failures=nxt.consecutive_failures,
            )
            try:
                await self.notifier.notify(event)
            except Exception:
                # The transition is kept even when delivery fails.
                logger.exception("Notifier raised", transaction_id=tx_id, kind=event.kind)
            return event

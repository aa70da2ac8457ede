from __future__ import annotations

import asyncio
import dataclasses
from dataclasses import dataclass
from typing import Awaitable, Callable, Protocol

import structlog

from guardian.models import CheckResult, SyntheticTransaction


logger = structlog.get_logger(__name__)

Sleep = Callable[[float], Awaitable[None]]


class Probe(Protocol):
    async def execute(self, tx: SyntheticTransaction, *, attempt: int = 1) -> CheckResult: ...


@dataclass(frozen=True)
class RetryOutcome:
    result: CheckResult
    attempts: int


class RetryCoordinator:
    """
    Bounded retry-with-delay around a single probe attempt.

    Up to max_retries+1 attempts; retry_delay seconds between failed attempts (never after the last);
    stops at the first success. Timeouts count as failures. The delay is an asyncio sleep so other
    transactions keep running while this one waits.
    """

    def __init__(self, probe: Probe, *, sleep: Sleep = asyncio.sleep) -> None:
        self.probe = probe
        self._sleep = sleep

    async def run(self, tx: SyntheticTransaction) -> RetryOutcome:
        max_attempts = max(1, tx.max_attempts)
        attempt = 1
        result = await self._attempt(tx, attempt)
        while not result.ok and attempt < max_attempts:
            logger.debug(
                "Probe attempt failed",
                transaction_id=tx.id,
                attempt=attempt,
                max_attempts=max_attempts,
                outcome=result.outcome.value,
                detail=result.detail,
            )
            if tx.retry_delay > 0:
                await self._sleep(float(tx.retry_delay))
            attempt += 1
            result = await self._attempt(tx, attempt)

        if not result.ok:
            logger.info(
                "Probe failed after retries",
                transaction_id=tx.id,
                attempts=attempt,
                outcome=result.outcome.value,
                detail=result.detail,
            )
        return RetryOutcome(result=result, attempts=attempt)

    async def _attempt(self, tx: SyntheticTransaction, attempt: int) -> CheckResult:
        result = await self.probe.execute(tx, attempt=attempt)
        if result.attempt != attempt:
            result = dataclasses.replace(result, attempt=attempt)
        return result

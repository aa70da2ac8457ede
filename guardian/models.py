from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


DEFAULT_CHECK_INTERVAL_SECONDS = 300
DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY_SECONDS = 5.0
DEFAULT_RETENTION_DAYS = 365
DEFAULT_DOWN_AFTER_FAILURES = 3


class TransactionType(str, Enum):
    API = "api"
    CONTENT = "content"
    FORM = "form"
    NAVIGATION = "navigation"


class Outcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    TIMEOUT = "timeout"


class Status(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    DOWN = "down"


class RunState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    OVERDUE = "overdue"


@dataclass(frozen=True)
class SyntheticTransaction:
    id: str
    type: TransactionType
    target: str
    check_interval: int = DEFAULT_CHECK_INTERVAL_SECONDS
    timeout: float = DEFAULT_TIMEOUT_SECONDS
    max_retries: int = DEFAULT_MAX_RETRIES
    retry_delay: float = DEFAULT_RETRY_DELAY_SECONDS
    # Type specific probe options (expected status codes, markers, steps, ...).
    options: dict[str, Any] = field(default_factory=dict)
    enabled: bool = True

    @property
    def max_attempts(self) -> int:
        return int(self.max_retries) + 1

    @property
    def worst_case_seconds(self) -> float:
        """Upper bound of one full attempt sequence: every attempt times out."""
        return float(self.timeout) * self.max_attempts + float(self.retry_delay) * int(self.max_retries)

    @property
    def has_scheduling_risk(self) -> bool:
        return float(self.check_interval) < self.worst_case_seconds


@dataclass(frozen=True)
class CheckResult:
    transaction_id: str
    started_at: float
    duration_ms: float
    outcome: Outcome
    attempt: int
    detail: str = ""
    data: dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.outcome == Outcome.SUCCESS


@dataclass(frozen=True)
class TransactionState:
    transaction_id: str
    status: Status = Status.HEALTHY
    consecutive_failures: int = 0
    last_change_at: float | None = None


@dataclass(frozen=True)
class StatusEvent:
    transaction_id: str
    old_status: Status
    new_status: Status
    timestamp: float
    last_result_detail: str

    @property
    def kind(self) -> str:
        if self.new_status == Status.HEALTHY:
            return "recovered"
        return self.new_status.value

    def as_dict(self) -> dict[str, Any]:
        return {
            "transaction_id": self.transaction_id,
            "kind": self.kind,
            "old_status": self.old_status.value,
            "new_status": self.new_status.value,
            "timestamp": self.timestamp,
            "last_result_detail": self.last_result_detail,
        }

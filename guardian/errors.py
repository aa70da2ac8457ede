from __future__ import annotations

from typing import Any


class GuardianError(Exception):
    """Base class for all errors raised by the monitoring core."""


class ProbeTimeout(GuardianError):
    """A single probe attempt exceeded its timeout."""


class ProbeFailure(GuardianError):
    """The target answered but an assertion (status, content, step) did not hold."""

    def __init__(self, message: str, *, data: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.data = dict(data or {})


class TransportError(GuardianError):
    """Connection-level error talking to the target."""


class ConfigurationError(GuardianError):
    """A synthetic transaction definition is malformed."""

    def __init__(self, message: str, *, transaction_id: str | None = None) -> None:
        super().__init__(message)
        self.transaction_id = transaction_id

    def __str__(self) -> str:
        msg = super().__str__()
        if self.transaction_id:
            return f"{self.transaction_id}: {msg}"
        return msg


class StoreWriteFailure(GuardianError):
    """A result or state row could not be written to the result store."""

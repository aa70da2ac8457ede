from __future__ import annotations

from typing import Protocol, Sequence

import httpx
import structlog

from guardian.models import Status, StatusEvent
from guardian.settings import Capabilities


logger = structlog.get_logger(__name__)


def format_event_message(event: StatusEvent) -> str:
    """Human readable text for a status event, used by sinks that forward plain text."""
    if event.kind == "recovered":
        return "\n".join(
            [
                "Synthetic transaction RECOVERED ✅",
                f"Transaction: {event.transaction_id}",
                f"Previous status: {event.old_status.value}",
            ]
        ).strip()

    title = "DOWN ❌" if event.new_status == Status.DOWN else "DEGRADED ⚠️"
    lines = [f"Synthetic transaction {title}", f"Transaction: {event.transaction_id}"]
    if event.last_result_detail:
        lines.append(f"Last result: {event.last_result_detail[:500]}")
    return "\n".join(lines).strip()


class Notifier(Protocol):
    async def notify(self, event: StatusEvent) -> None: ...


class LogNotifier:
    """Writes every status transition to the log."""

    async def notify(self, event: StatusEvent) -> None:
        log = logger.warning if event.kind in {"down", "degraded"} else logger.info
        log(
            "Transaction status changed",
            transaction_id=event.transaction_id,
            kind=event.kind,
            old_status=event.old_status.value,
            new_status=event.new_status.value,
            detail=event.last_result_detail,
        )


class WebhookNotifier:
    """
    Hands status events to the external dispatcher over HTTP.
    Delivery (email/SMS/voice) and its retries are the dispatcher's job.
    """

    def __init__(self, http_client: httpx.AsyncClient, *, url: str, token: str = "", timeout_seconds: float = 15.0) -> None:
        self.http_client = http_client
        self.url = url
        self.token = token
        self.timeout_seconds = float(timeout_seconds)

    async def notify(self, event: StatusEvent) -> None:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        payload = {**event.as_dict(), "message": format_event_message(event)}
        resp = await self.http_client.post(self.url, json=payload, headers=headers, timeout=self.timeout_seconds)
        resp.raise_for_status()
        logger.info("Status event handed off", transaction_id=event.transaction_id, kind=event.kind, status_code=resp.status_code)


class FanoutNotifier:
    """Delivers to every sink; one failing sink does not stop the others."""

    def __init__(self, sinks: Sequence[Notifier]) -> None:
        self.sinks = list(sinks)

    async def notify(self, event: StatusEvent) -> None:
        for sink in self.sinks:
            try:
                await sink.notify(event)
            except Exception:
                logger.exception(
                    "Notification sink failed",
                    sink=type(sink).__name__,
                    transaction_id=event.transaction_id,
                    kind=event.kind,
                )


def build_notifier(capabilities: Capabilities, http_client: httpx.AsyncClient) -> Notifier:
    sinks: list[Notifier] = [LogNotifier()]
    if capabilities.webhook_enabled:
        sinks.append(WebhookNotifier(http_client, url=capabilities.webhook_url, token=capabilities.webhook_token))
    else:
        logger.warning("Webhook not configured; status events are only logged")
    return FanoutNotifier(sinks)

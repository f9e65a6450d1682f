"""Job notifications.

Every scheduled or manual job ends with one notification. The default
notifier writes it to the log; a webhook notifier POSTs the same payload as
JSON. Delivery failures are logged and never raised.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Protocol

import httpx

from floorsync.core.data_helpers import utc_now
from floorsync.core.logging import get_logger


logger = get_logger("jobs.notifications")

SERVICE_NAME = "floorsync"


def build_notification(
    job_type: str,
    status: str,
    duration_seconds: float,
    counts: dict[str, Any] | None = None,
    error: str | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    """
    Build the notification payload for a finished job.

    Args:
        job_type: daily_sync, weekly_cleanup, ...
        status: success, failure or crash
        duration_seconds: Job wall time
        counts: Job counters, included on success
        error: Error message, included on failure

    Returns:
        {type, status, duration, counts | error, timestamp, service}
    """
    payload: dict[str, Any] = {
        "type": job_type,
        "status": status,
        "duration": round(duration_seconds, 2),
        "timestamp": (now or utc_now()).isoformat(),
        "service": SERVICE_NAME,
    }
    if error is not None:
        payload["error"] = error
    else:
        payload["counts"] = counts or {}
    return payload


class Notifier(Protocol):
    async def notify(self, payload: dict[str, Any]) -> None: ...


class LogNotifier:
    """Writes notifications to the application log."""

    async def notify(self, payload: dict[str, Any]) -> None:
        if payload.get("status") == "success":
            logger.info(
                f"Job {payload.get('type')} succeeded in {payload.get('duration')}s",
                extra={"extra_fields": payload},
            )
        else:
            logger.error(
                f"Job {payload.get('type')} {payload.get('status')}: {payload.get('error')}",
                extra={"extra_fields": payload},
            )


class WebhookNotifier:
    """POSTs notifications as JSON to a webhook URL."""

    def __init__(
        self,
        url: str,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.url = url
        self.timeout = timeout
        self._transport = transport

    async def notify(self, payload: dict[str, Any]) -> None:
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self._transport
            ) as client:
                response = await client.post(self.url, json=payload)
                response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.warning(
                f"Notification webhook returned {exc.response.status_code}"
            )
        except httpx.HTTPError as exc:
            logger.warning(f"Notification webhook failed: {exc}")


class NotificationDispatcher:
    """Fans one payload out to every configured notifier."""

    def __init__(self, notifiers: list[Notifier] | None = None):
        self.notifiers: list[Notifier] = notifiers if notifiers is not None else [LogNotifier()]

    @classmethod
    def from_webhook_url(cls, url: str | None) -> "NotificationDispatcher":
        notifiers: list[Notifier] = [LogNotifier()]
        if url:
            notifiers.append(WebhookNotifier(url))
        return cls(notifiers)

    async def send(self, payload: dict[str, Any]) -> None:
        for notifier in self.notifiers:
            try:
                await notifier.notify(payload)
            except Exception:
                logger.exception(f"Notifier {type(notifier).__name__} failed")

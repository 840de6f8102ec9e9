"""
Notification dispatch contract and adapters.

The core only ever talks to a NotificationDispatcher; which sink sits behind
it (chat webhook, log only) is decided once at process start.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional, Protocol, runtime_checkable

import httpx
from pydantic import BaseModel, Field

from shared.config import PortalConfig
from shared.errors import ExternalServiceError
from shared.logging import get_logger


class Severity(str, Enum):
    """Notification severity."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


SEVERITY_ORDER = {Severity.LOW: 0, Severity.MEDIUM: 1, Severity.HIGH: 2}


class NotificationPayload(BaseModel):
    """Structured payload accepted by every dispatcher."""
    kind: str = Field(..., description="Notification type, e.g. prod_direct_change")
    title: str
    message: str
    app: str
    env: str
    action: str
    actor_id: str
    timestamp: datetime
    severity: Severity
    secret_name: Optional[str] = None
    portal_url: Optional[str] = None


@runtime_checkable
class NotificationDispatcher(Protocol):
    """Narrow interface to the notification transport."""

    async def dispatch(self, payload: NotificationPayload) -> None:
        ...


async def dispatch_best_effort(dispatcher: NotificationDispatcher, payload: NotificationPayload,
                              metrics: Any, logger: Any) -> bool:
    """Dispatch, never raising. Failures are logged and counted; returns whether it was sent."""
    try:
        await dispatcher.dispatch(payload)
    except Exception as e:
        metrics.increment_counter("notifications_total", kind=payload.kind, status="failed")
        logger.error("Failed to send notification", kind=payload.kind,
                     secret_name=payload.secret_name, error=str(e))
        return False

    metrics.increment_counter("notifications_total", kind=payload.kind, status="sent")
    return True


class LoggingNotificationDispatcher:
    """Writes notifications to the structured log only."""

    def __init__(self):
        self.logger = get_logger("notifications.log")

    async def dispatch(self, payload: NotificationPayload) -> None:
        self.logger.info(
            "Notification",
            kind=payload.kind,
            title=payload.title,
            app=payload.app,
            env=payload.env,
            severity=payload.severity.value,
        )


class WebhookNotificationDispatcher:
    """Posts notification payloads as JSON to a chat workflow webhook."""

    def __init__(self, webhook_url: str, timeout: float = 5.0, client: Optional[httpx.AsyncClient] = None):
        self.webhook_url = webhook_url
        self.timeout = timeout
        self._client = client
        self.logger = get_logger("notifications.webhook")

    async def dispatch(self, payload: NotificationPayload) -> None:
        body = payload.model_dump(mode="json")
        try:
            if self._client is not None:
                response = await self._client.post(self.webhook_url, json=body, timeout=self.timeout)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(self.webhook_url, json=body)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise ExternalServiceError("notification-webhook", str(e), {"kind": payload.kind}) from e

        self.logger.info("Webhook notification sent", kind=payload.kind, secret_name=payload.secret_name)


def build_dispatcher(config: PortalConfig) -> NotificationDispatcher:
    """Choose the dispatcher for this process from configuration."""
    if config.use_webhook_notifications and config.notification_webhook_url:
        return WebhookNotificationDispatcher(
            config.notification_webhook_url,
            timeout=config.notification_timeout_seconds,
        )
    return LoggingNotificationDispatcher()

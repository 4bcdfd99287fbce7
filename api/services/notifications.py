"""
Notification Service — in-app / push notifications to customers and field owners.

Every lifecycle message goes through a Notifier. The HTTP notifier posts JSON
to the push fan-out endpoint; failures are logged but NEVER raised.
"""

import logging
import uuid
from typing import Any, Protocol

import httpx

from config import settings

logger = logging.getLogger(__name__)

# Notification types
RECURRING_BOOKING_CREATED = "recurring_booking_created"
RECURRING_BOOKING_CHARGED = "recurring_booking_charged"
RECURRING_BOOKING_PENDING = "recurring_booking_pending"
PAYMENT_FAILED = "payment_failed"
SUBSCRIPTION_CANCELLED_PAYMENT_FAILURE = "subscription_cancelled_payment_failure"
RECURRING_BOOKING_CANCELLED = "recurring_booking_cancelled"
PAYMENT_RETRY_SUCCESS = "payment_retry_success"
SUBSCRIPTION_CANCELED = "subscription_canceled"


class Notifier(Protocol):
    async def notify(
        self,
        user_id: uuid.UUID,
        type: str,
        title: str,
        message: str,
        data: dict[str, Any] | None = None,
    ) -> None: ...


class HttpNotifier:
    """Posts notifications to the push service at ``url``."""

    def __init__(self, url: str | None = None, timeout: float = 10.0):
        self.url = url if url is not None else settings.notifications_webhook_url
        self.timeout = timeout

    async def notify(
        self,
        user_id: uuid.UUID,
        type: str,
        title: str,
        message: str,
        data: dict[str, Any] | None = None,
    ) -> None:
        if not self.url:
            logger.info("Notification (no endpoint configured): user=%s type=%s", user_id, type)
            return

        payload = {
            "user_id": str(user_id),
            "type": type,
            "title": title,
            "message": message,
            "data": data or {},
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(self.url, json=payload)
            if resp.status_code < 300:
                logger.info("Notification sent: user=%s type=%s", user_id, type)
            else:
                logger.warning(
                    "Notification failed: user=%s type=%s status=%s body=%s",
                    user_id, type, resp.status_code, resp.text[:200],
                )
        except Exception as e:
            logger.error("Notification error: user=%s type=%s error=%s", user_id, type, str(e))

# tripod/infra/notification_channels.py
"""
Outbound notification channels.

In-app notifications are always stored in Postgres; a channel mirrors them
to an external system. The only external channel is a JSON webhook (for an
operator's chat bridge or automation tool), signed with HMAC-SHA256 when a
secret is configured.

Usage:
    channel = get_notification_channel()
    await channel.send(notification)
"""
from __future__ import annotations

import abc
import hashlib
import hmac
import json
import time
from dataclasses import asdict, dataclass, field
from typing import Any

from tripod.config import settings
from tripod.infra.http_client import get_default_session
from tripod.infra.logging_config import get_logger
from tripod.infra.metrics import inc_counter

logger = get_logger(__name__)

SIGNATURE_HEADER = "X-Tripod-Signature"
TIMESTAMP_HEADER = "X-Tripod-Timestamp"


@dataclass
class OutboundNotification:
    user_id: str
    type: str
    title: str
    message: str
    link: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


class NotificationChannel(abc.ABC):
    """Abstract base class for notification channels"""

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Channel name for logging/metrics"""

    @abc.abstractmethod
    async def send(self, notification: OutboundNotification) -> bool:
        """Deliver the notification; True on success."""

    @abc.abstractmethod
    def is_configured(self) -> bool:
        """Check if channel is properly configured"""


def sign_payload(secret: str, timestamp: str, body: bytes) -> str:
    """Hex HMAC-SHA256 over ``timestamp.body``."""
    return hmac.new(secret.encode(), timestamp.encode() + b"." + body, hashlib.sha256).hexdigest()


class WebhookChannel(NotificationChannel):
    """POSTs each notification as JSON to ``operator_webhook_url``."""

    def __init__(self, url: str | None = None, secret: str | None = None):
        self._url = url if url is not None else settings.operator_webhook_url
        self._secret = secret if secret is not None else settings.operator_webhook_secret

    @property
    def name(self) -> str:
        return "webhook"

    def is_configured(self) -> bool:
        return bool(self._url)

    async def send(self, notification: OutboundNotification) -> bool:
        if not self.is_configured():
            logger.warning("Webhook channel not configured")
            return False

        body = json.dumps(asdict(notification), default=str).encode()
        headers = {"Content-Type": "application/json"}
        if self._secret:
            timestamp = str(int(time.time()))
            headers[TIMESTAMP_HEADER] = timestamp
            headers[SIGNATURE_HEADER] = sign_payload(self._secret, timestamp, body)

        try:
            session = get_default_session()
            async with session.post(self._url, data=body, headers=headers) as resp:
                if resp.status >= 300:
                    logger.error(f"Notification webhook error: status={resp.status}")
                    inc_counter("notifications_webhook_failed", status=resp.status)
                    return False
        except Exception as exc:
            logger.error(f"Notification webhook failed: {type(exc).__name__}", exc_info=True)
            inc_counter("notifications_webhook_failed", status="error")
            return False

        inc_counter("notifications_webhook_sent", type=notification.type)
        logger.info(
            f"Webhook notification sent: type={notification.type}",
            extra={"user_id": notification.user_id},
        )
        return True


class DisabledChannel(NotificationChannel):
    """Used when no external channel is configured."""

    @property
    def name(self) -> str:
        return "disabled"

    def is_configured(self) -> bool:
        return True

    async def send(self, notification: OutboundNotification) -> bool:
        logger.debug(f"External notifications disabled, skipping: type={notification.type}")
        return True


def get_notification_channel() -> NotificationChannel:
    if settings.operator_webhook_url:
        return WebhookChannel()
    return DisabledChannel()

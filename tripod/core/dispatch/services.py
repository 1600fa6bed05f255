# tripod/core/dispatch/services.py
"""
Dispatch notification services.

Every notification is stored in-app first. When an external channel is
configured it is mirrored there, through the job queue when the worker
runs, inline otherwise.
"""
from __future__ import annotations

import logging
from dataclasses import asdict
from typing import Optional

from tripod.config import settings
from tripod.core.domain import Notification
from tripod.infra.metrics import inc_counter
from tripod.infra.notification_channels import OutboundNotification, get_notification_channel
from tripod.infra.pg_job_repo_async import JOB_NOTIFY_WEBHOOK, get_job_repo
from tripod.infra.pg_notification_repo_async import get_notification_repo

logger = logging.getLogger(__name__)


async def deliver_external(notification: OutboundNotification) -> bool:
    """Send one notification through the configured external channel."""
    channel = get_notification_channel()
    logger.info(
        "Sending notification via %s: type=%s",
        channel.name, notification.type,
        extra={"user_id": notification.user_id},
    )
    result = await channel.send(notification)
    inc_counter("notifications_external", channel=channel.name, ok=result)
    return result


class DispatchNotifier:
    """Notifier used by the assignment engine and the admin services."""

    def __init__(self, *, repo=None, job_repo=None, use_queue: Optional[bool] = None):
        self._repo = repo or get_notification_repo()
        self._job_repo = job_repo
        self._use_queue = settings.job_worker_enabled if use_queue is None else use_queue

    async def notify(
        self,
        user_id: str,
        kind: str,
        title: str,
        message: str,
        *,
        link: Optional[str] = None,
    ) -> None:
        await self._repo.create(
            Notification(user_id=user_id, type=kind, title=title, message=message, link=link)
        )
        inc_counter("notifications_created", type=kind)

        if not settings.operator_webhook_url:
            return

        outbound = OutboundNotification(user_id=user_id, type=kind, title=title, message=message, link=link)
        if self._use_queue:
            job_repo = self._job_repo or get_job_repo()
            await job_repo.enqueue(JOB_NOTIFY_WEBHOOK, {"notification": asdict(outbound)}, max_attempts=3)
            return

        if not await deliver_external(outbound):
            logger.warning("External notification not delivered: type=%s", kind, extra={"user_id": user_id})

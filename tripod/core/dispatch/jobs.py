# tripod/core/dispatch/jobs.py
"""
Dispatch job handlers, executed by the in-process job worker.
"""
from __future__ import annotations

from tripod.infra.pg_job_repo_async import JOB_AUTO_ASSIGN, JOB_NOTIFY_WEBHOOK, Job


async def handle_auto_assign_request(job: Job) -> None:
    """
    Run automatic assignment for a freshly submitted service request.

    Safe to retry: a request that was assigned or locked in the meantime
    comes back as not_attempted.
    """
    from tripod.core.dispatch.engine import get_automation_engine

    request_id = job.payload["service_request_id"]
    await get_automation_engine().run_for_request(request_id)


async def handle_notify_webhook(job: Job) -> None:
    from tripod.core.dispatch.services import deliver_external
    from tripod.infra.notification_channels import OutboundNotification

    notification = OutboundNotification(**job.payload["notification"])
    if not await deliver_external(notification):
        raise RuntimeError(f"Webhook notification failed: type={notification.type}")


def register_dispatch_handlers(worker) -> None:
    worker.register(JOB_AUTO_ASSIGN, handle_auto_assign_request)
    worker.register(JOB_NOTIFY_WEBHOOK, handle_notify_webhook)

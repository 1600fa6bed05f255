# tripod/core/status.py
from __future__ import annotations

from datetime import datetime
from typing import Optional

from tripod.core.domain import INTERNAL_ROLES, JobStatus

PENDING_ASSIGNMENT = "pending-assignment"
ASSIGNED_TO_VENDOR = "assigned-to-vendor"

DISPLAY_STATUSES = (
    JobStatus.PENDING.value,
    PENDING_ASSIGNMENT,
    ASSIGNED_TO_VENDOR,
    JobStatus.IN_PROGRESS.value,
    JobStatus.CHANGE_REQUEST.value,
    JobStatus.DELIVERED.value,
    JobStatus.CANCELED.value,
)

_CLOSED_STATUSES = frozenset({JobStatus.DELIVERED.value, JobStatus.CANCELED.value})


def is_internal_view_role(role: Optional[str]) -> bool:
    return role in INTERNAL_ROLES


def get_display_status(
    status: str,
    assignee_id: Optional[str],
    vendor_assignee_id: Optional[str],
    viewer_role: Optional[str],
) -> str:
    """
    Map a stored job status to what the viewer sees.

    Internal staff see pending jobs split by assignment progress;
    everyone else sees plain "pending".
    """
    if status != JobStatus.PENDING.value:
        return status

    if not is_internal_view_role(viewer_role):
        return JobStatus.PENDING.value

    if not assignee_id and not vendor_assignee_id:
        return PENDING_ASSIGNMENT

    if not assignee_id and vendor_assignee_id:
        return ASSIGNED_TO_VENDOR

    return JobStatus.PENDING.value


def get_board_columns(viewer_role: Optional[str]) -> list[str]:
    if is_internal_view_role(viewer_role):
        return [
            PENDING_ASSIGNMENT,
            ASSIGNED_TO_VENDOR,
            JobStatus.IN_PROGRESS.value,
            JobStatus.CHANGE_REQUEST.value,
            JobStatus.DELIVERED.value,
        ]
    return [
        JobStatus.PENDING.value,
        JobStatus.IN_PROGRESS.value,
        JobStatus.CHANGE_REQUEST.value,
        JobStatus.DELIVERED.value,
    ]


def is_over_sla(due_date: Optional[datetime], status: str, now: datetime) -> bool:
    """A job is over SLA once its due date has passed and it is still open."""
    if due_date is None or status in _CLOSED_STATUSES:
        return False
    return due_date < now

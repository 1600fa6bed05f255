# tripod/core/listing.py
"""
Combined job listing: ad-hoc service requests and bundle requests filtered
by the same criteria and merged into one newest-first list.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone, tzinfo
from decimal import Decimal
from typing import Iterable, Optional

from tripod.core.domain import BundleRequest, ServiceRequest, User, UserRole
from tripod.core.status import (
    ASSIGNED_TO_VENDOR,
    PENDING_ASSIGNMENT,
    get_display_status,
    is_over_sla,
)

KIND_AD_HOC = "ad_hoc"
KIND_BUNDLE = "bundle"

_JOB_PREFIX = {KIND_AD_HOC: "A", KIND_BUNDLE: "B"}
_DISPLAY_SUB_STATUSES = frozenset({PENDING_ASSIGNMENT, ASSIGNED_TO_VENDOR})


def job_number(kind: str, job_id: str) -> str:
    """Short human job number, e.g. ``A-3F9C2`` for an ad-hoc job."""
    return f"{_JOB_PREFIX[kind]}-{job_id[:5].upper()}"


@dataclass
class RequestFilter:
    status: Optional[str] = None          # stored status or a display sub-status
    vendor_id: Optional[str] = None       # vendor user id
    service: Optional[str] = None         # "service:<id>" or "bundle:<id>"
    method: Optional[str] = None          # "ad_hoc" or "bundle"
    date_from: Optional[date] = None
    date_to: Optional[date] = None        # inclusive, to end of day
    client_ids: list[str] = field(default_factory=list)
    search: Optional[str] = None          # job number or raw id fragment
    over_sla: bool = False


@dataclass
class JobListItem:
    id: str
    kind: str
    job_number: str
    user_id: str
    status: str
    display_status: str
    priority: str
    assignee_id: Optional[str]
    vendor_assignee_id: Optional[str]
    service_id: Optional[str]
    bundle_id: Optional[str]
    customer_name: Optional[str]
    final_price: Optional[Decimal]
    due_date: Optional[datetime]
    created_at: Optional[datetime]
    over_sla: bool


def vendor_of(
    assignee_id: Optional[str],
    vendor_assignee_id: Optional[str],
    users: dict[str, User],
) -> Optional[str]:
    """Resolve the vendor responsible for a job from its assignees."""
    if vendor_assignee_id:
        return vendor_assignee_id
    if not assignee_id:
        return None
    user = users.get(assignee_id)
    if user is None:
        return None
    if user.role == UserRole.VENDOR.value:
        return user.id
    if user.role == UserRole.VENDOR_DESIGNER.value:
        return user.vendor_id
    return None


class _Matcher:
    def __init__(self, flt: RequestFilter, users: dict[str, User], viewer_role: Optional[str], tz: tzinfo):
        self.flt = flt
        self.users = users
        self.viewer_role = viewer_role
        self.start = datetime.combine(flt.date_from, time.min, tzinfo=tz) if flt.date_from else None
        self.end = datetime.combine(flt.date_to, time.max, tzinfo=tz) if flt.date_to else None
        self.search = flt.search.strip().lower() if flt.search else None

    def matches(self, kind: str, job: ServiceRequest | BundleRequest, target_id: str) -> bool:
        flt = self.flt

        if flt.status:
            if flt.status in _DISPLAY_SUB_STATUSES:
                shown = get_display_status(job.status, job.assignee_id, job.vendor_assignee_id, self.viewer_role)
                if shown != flt.status:
                    return False
            elif job.status != flt.status:
                return False

        if flt.vendor_id and vendor_of(job.assignee_id, job.vendor_assignee_id, self.users) != flt.vendor_id:
            return False

        if flt.service:
            prefix, _, wanted = flt.service.partition(":")
            expected_kind = KIND_AD_HOC if prefix == "service" else KIND_BUNDLE
            if kind != expected_kind or target_id != wanted:
                return False

        if flt.method and flt.method != kind:
            return False

        if self.start and (job.created_at is None or job.created_at < self.start):
            return False
        if self.end and (job.created_at is None or job.created_at > self.end):
            return False

        if flt.client_ids and job.user_id not in flt.client_ids:
            return False

        if self.search:
            number = job_number(kind, job.id).lower()
            if self.search not in number and self.search not in job.id.lower():
                return False

        return True


def _to_item(kind: str, job: ServiceRequest | BundleRequest, viewer_role: Optional[str], now: datetime) -> JobListItem:
    if kind == KIND_AD_HOC:
        service_id, bundle_id = job.service_id, None
        customer = job.customer_name
    else:
        service_id, bundle_id = None, job.bundle_id
        customer = (job.form_data or {}).get("customerName")
    return JobListItem(
        id=job.id,
        kind=kind,
        job_number=job_number(kind, job.id),
        user_id=job.user_id,
        status=job.status,
        display_status=get_display_status(job.status, job.assignee_id, job.vendor_assignee_id, viewer_role),
        priority=job.priority,
        assignee_id=job.assignee_id,
        vendor_assignee_id=job.vendor_assignee_id,
        service_id=service_id,
        bundle_id=bundle_id,
        customer_name=customer,
        final_price=job.final_price,
        due_date=job.due_date,
        created_at=job.created_at,
        over_sla=is_over_sla(job.due_date, job.status, now),
    )


def filter_requests(
    service_requests: Iterable[ServiceRequest],
    bundle_requests: Iterable[BundleRequest],
    flt: RequestFilter,
    *,
    users: dict[str, User] | None = None,
    viewer_role: Optional[str] = None,
    now: datetime | None = None,
    tz: tzinfo = timezone.utc,
) -> list[JobListItem]:
    """Apply ``flt`` to both job lists and return one list sorted newest first."""
    now = now or datetime.now(timezone.utc)
    matcher = _Matcher(flt, users or {}, viewer_role, tz)

    items = [
        _to_item(KIND_AD_HOC, r, viewer_role, now)
        for r in service_requests
        if matcher.matches(KIND_AD_HOC, r, r.service_id)
    ]
    items.extend(
        _to_item(KIND_BUNDLE, r, viewer_role, now)
        for r in bundle_requests
        if matcher.matches(KIND_BUNDLE, r, r.bundle_id)
    )

    if flt.over_sla:
        items = [item for item in items if item.over_sla]

    epoch = datetime.min.replace(tzinfo=timezone.utc)
    items.sort(key=lambda item: item.created_at or epoch, reverse=True)
    return items

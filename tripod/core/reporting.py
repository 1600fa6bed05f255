# tripod/core/reporting.py
"""
Dashboard arithmetic: date-range presets, comparison periods, period over
period deltas and job/financial summaries.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable, Iterable, Optional

from tripod.core.domain import BundleRequest, JobStatus, ServiceRequest
from tripod.core.status import ASSIGNED_TO_VENDOR, PENDING_ASSIGNMENT, get_display_status, is_over_sla

DATE_PRESETS = (
    "today",
    "yesterday",
    "last_7_days",
    "last_30_days",
    "last_90_days",
    "last_365_days",
    "this_month",
    "last_month",
    "this_year",
    "last_year",
    "custom",
)

_TRAILING_DAYS = {
    "last_7_days": 6,
    "last_30_days": 29,
    "last_90_days": 89,
    "last_365_days": 364,
}

_CENT = Decimal("0.01")
_TENTH = Decimal("0.1")


@dataclass(frozen=True)
class DateRange:
    start: datetime
    end: datetime


def _start_of(d: date, tz: tzinfo) -> datetime:
    return datetime.combine(d, time.min, tzinfo=tz)


def _end_of(d: date, tz: tzinfo) -> datetime:
    return datetime.combine(d, time.max, tzinfo=tz)


def _aware(value: Optional[datetime], tz: tzinfo) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=tz)
    return value


def resolve_date_range(
    preset: str,
    now: datetime,
    *,
    custom_start: Optional[datetime] = None,
    custom_end: Optional[datetime] = None,
    tz: tzinfo = timezone.utc,
) -> DateRange:
    """Turn a dashboard preset into a concrete [start, end] range; unknown presets mean this month."""
    local_now = now.astimezone(tz)
    today = local_now.date()
    month_start = _start_of(today.replace(day=1), tz)

    if preset == "today":
        return DateRange(_start_of(today, tz), _end_of(today, tz))

    if preset == "yesterday":
        yesterday = today - timedelta(days=1)
        return DateRange(_start_of(yesterday, tz), _end_of(yesterday, tz))

    if preset in _TRAILING_DAYS:
        return DateRange(_start_of(today - timedelta(days=_TRAILING_DAYS[preset]), tz), _end_of(today, tz))

    if preset == "last_month":
        last_day = today.replace(day=1) - timedelta(days=1)
        return DateRange(_start_of(last_day.replace(day=1), tz), _end_of(last_day, tz))

    if preset == "this_year":
        return DateRange(_start_of(date(today.year, 1, 1), tz), local_now)

    if preset == "last_year":
        return DateRange(_start_of(date(today.year - 1, 1, 1), tz), _end_of(date(today.year - 1, 12, 31), tz))

    if preset == "custom":
        # query strings without an offset are read in the dashboard timezone
        start = _aware(custom_start, tz) or month_start
        end = _aware(custom_end, tz) or local_now
        return DateRange(start, end)

    return DateRange(month_start, local_now)


def comparison_range(current: DateRange) -> DateRange:
    """The period of equal length that ends just before ``current`` starts."""
    duration = current.end - current.start
    end = current.start - timedelta(milliseconds=1)
    return DateRange(end - duration, end)


@dataclass(frozen=True)
class Change:
    value: Decimal
    direction: str  # "up" | "down" | "neutral"


def calculate_change(current: Decimal | int, previous: Decimal | int) -> Change:
    current = Decimal(current)
    previous = Decimal(previous)

    if previous == 0:
        if current > 0:
            return Change(Decimal("100"), "up")
        return Change(Decimal("0"), "neutral")

    change = (current - previous) / previous * 100
    if change > Decimal("0.5"):
        direction = "up"
    elif change < Decimal("-0.5"):
        direction = "down"
    else:
        direction = "neutral"
    return Change(abs(change).quantize(_TENTH, rounding=ROUND_HALF_UP), direction)


@dataclass
class JobSummary:
    total_orders: int = 0
    open_jobs: int = 0
    jobs_over_sla: int = 0
    job_counts: dict[str, int] = field(default_factory=lambda: {
        PENDING_ASSIGNMENT: 0,
        ASSIGNED_TO_VENDOR: 0,
        JobStatus.IN_PROGRESS.value: 0,
        JobStatus.CHANGE_REQUEST.value: 0,
        JobStatus.DELIVERED.value: 0,
        JobStatus.CANCELED.value: 0,
    })
    total_sales: Decimal = Decimal("0")
    vendor_cost: Decimal = Decimal("0")

    @property
    def profit(self) -> Decimal:
        return self.total_sales - self.vendor_cost

    @property
    def margin_percent(self) -> Decimal:
        if self.total_sales == 0:
            return Decimal("0")
        return (self.profit / self.total_sales * 100).quantize(_TENTH, rounding=ROUND_HALF_UP)

    @property
    def aov(self) -> Decimal:
        if self.total_orders == 0:
            return Decimal("0")
        return (self.total_sales / self.total_orders).quantize(_CENT, rounding=ROUND_HALF_UP)


def _in_range(created_at: Optional[datetime], rng: DateRange) -> bool:
    return created_at is not None and rng.start <= created_at <= rng.end


def summarize_jobs(
    service_requests: Iterable[ServiceRequest],
    bundle_requests: Iterable[BundleRequest],
    rng: DateRange,
    *,
    now: datetime,
    vendor_cost_for: Callable[[ServiceRequest | BundleRequest], Decimal] | None = None,
) -> JobSummary:
    """
    Summarize the jobs created inside ``rng``.

    Canceled jobs are counted by status but excluded from orders and sales.
    """
    summary = JobSummary()
    jobs: list[ServiceRequest | BundleRequest] = [
        *(r for r in service_requests if _in_range(r.created_at, rng)),
        *(r for r in bundle_requests if _in_range(r.created_at, rng)),
    ]

    for job in jobs:
        shown = get_display_status(job.status, job.assignee_id, job.vendor_assignee_id, "admin")
        if shown in summary.job_counts:
            summary.job_counts[shown] += 1

        if is_over_sla(job.due_date, job.status, now):
            summary.jobs_over_sla += 1

        if job.status == JobStatus.CANCELED.value:
            continue

        if job.status != JobStatus.DELIVERED.value:
            summary.open_jobs += 1

        summary.total_orders += 1
        summary.total_sales += job.final_price or Decimal("0")
        if vendor_cost_for is not None:
            summary.vendor_cost += vendor_cost_for(job)

    return summary


@dataclass
class WorkloadRow:
    user_id: str
    assigned: int = 0
    delivered: int = 0
    open: int = 0


def vendor_workload(
    service_requests: Iterable[ServiceRequest],
    rng: DateRange,
) -> list[WorkloadRow]:
    """Per-assignee job counts (vendors and designers) for jobs assigned inside ``rng``."""
    rows: dict[str, WorkloadRow] = {}

    def _bump(user_id: Optional[str], assigned_at: Optional[datetime], status: str) -> None:
        if not user_id or not _in_range(assigned_at, rng):
            return
        row = rows.setdefault(user_id, WorkloadRow(user_id=user_id))
        row.assigned += 1
        if status == JobStatus.DELIVERED.value:
            row.delivered += 1
        elif status != JobStatus.CANCELED.value:
            row.open += 1

    for r in service_requests:
        _bump(r.vendor_assignee_id, r.vendor_assigned_at, r.status)
        _bump(r.assignee_id, r.assigned_at, r.status)

    return sorted(rows.values(), key=lambda row: (-row.assigned, row.user_id))

# tripod/core/priority.py
"""
Per-client priority quotas.

A client may only flag a bounded share of their active jobs as urgent or
high.  The share is a system setting; normal and low priorities are never
limited.
"""
from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from typing import Iterable

from tripod.core.domain import Priority

DEFAULT_MAX_URGENT_PERCENT = 20
DEFAULT_MAX_HIGH_PERCENT = 30


class PriorityQuotaExceeded(Exception):
    """Raised when a job's priority would exceed the client's quota."""

    def __init__(self, priority: str, allowed: int, current: int):
        self.priority = priority
        self.allowed = allowed
        self.current = current
        super().__init__(
            f"Priority '{priority}' quota reached: {current} of {allowed} allowed active jobs"
        )


@dataclass(frozen=True)
class PriorityDistribution:
    max_urgent_percent: int = DEFAULT_MAX_URGENT_PERCENT
    max_high_percent: int = DEFAULT_MAX_HIGH_PERCENT

    def validate(self) -> None:
        if self.max_urgent_percent < 0 or self.max_high_percent < 0:
            raise ValueError("Percentages cannot be negative")
        if self.max_urgent_percent > 100 or self.max_high_percent > 100:
            raise ValueError("Percentages cannot exceed 100")
        if self.max_urgent_percent + self.max_high_percent > 100:
            raise ValueError("Combined Urgent and High percentages cannot exceed 100%")

    @property
    def normal_low_percent(self) -> int:
        return max(0, 100 - self.max_urgent_percent - self.max_high_percent)

    def percent_for(self, priority: str) -> int | None:
        if priority == Priority.URGENT.value:
            return self.max_urgent_percent
        if priority == Priority.HIGH.value:
            return self.max_high_percent
        return None


def allowed_count(total_jobs: int, percent: int) -> int:
    """Floor of the share, but at least one job whenever the share is non-zero."""
    if percent <= 0:
        return 0
    return max(1, (total_jobs * percent) // 100)


def check_priority_quota(
    priority: str,
    active_priorities: Iterable[str],
    distribution: PriorityDistribution,
) -> None:
    """
    Raise ``PriorityQuotaExceeded`` if adding one more job at ``priority``
    would break the distribution.

    ``active_priorities`` lists the priority of each of the client's
    active jobs (service and bundle requests); the new job is counted too.
    """
    percent = distribution.percent_for(priority)
    if percent is None:
        return

    counts = Counter(active_priorities)
    total_after = sum(counts.values()) + 1
    allowed = allowed_count(total_after, percent)
    current = counts.get(priority, 0)

    if current + 1 > allowed:
        raise PriorityQuotaExceeded(priority, allowed, current)


def quota_preview(active_total: int, distribution: PriorityDistribution) -> dict:
    """What a client with ``active_total`` active jobs may currently flag."""
    return {
        "active_jobs": active_total,
        "allowed_urgent": allowed_count(active_total, distribution.max_urgent_percent),
        "allowed_high": allowed_count(active_total, distribution.max_high_percent),
        "normal_low_percent": distribution.normal_low_percent,
    }

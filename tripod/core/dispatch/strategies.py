# tripod/core/dispatch/strategies.py
"""
Routing strategies used to pick one candidate out of those with capacity left.

Every strategy is deterministic for a given candidate order; callers sort
candidates before selection.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Sequence

from tripod.core.domain import RoutingStrategy


@dataclass
class Candidate:
    """A vendor or designer that still has room today."""

    user_id: str
    capacity_id: str
    daily_capacity: int
    current_load: int
    priority: int = 0
    profile_id: Optional[str] = None  # vendor profile, vendors only
    label: str = ""
    is_primary: bool = False

    @property
    def available(self) -> int:
        return self.daily_capacity - self.current_load

    def snapshot(self) -> dict:
        data = {
            "dailyCapacity": self.daily_capacity,
            "currentLoad": self.current_load,
            "availableCapacity": self.available,
        }
        if self.profile_id:
            data["vendorProfileId"] = self.profile_id
        else:
            data["userId"] = self.user_id
        return data


class RoundRobinCursor:
    """Remembers the last index handed out per routing key."""

    def __init__(self) -> None:
        self._last: dict[str, int] = {}

    def next_index(self, key: str, size: int) -> int:
        index = (self._last.get(key, -1) + 1) % size
        self._last[key] = index
        return index

    def reset(self) -> None:
        self._last.clear()


def select_candidate(
    strategy: str,
    candidates: Sequence[Candidate],
    *,
    key: str,
    cursor: RoundRobinCursor,
) -> Candidate:
    """
    Pick one candidate.

    least_loaded:   fewest assignments today, earliest wins ties
    round_robin:    rotate through the list per ``key``
    priority_first: highest capacity priority, earliest wins ties
    anything else:  first candidate
    """
    if not candidates:
        raise ValueError("select_candidate() needs at least one candidate")

    if strategy == RoutingStrategy.LEAST_LOADED.value:
        best = candidates[0]
        for candidate in candidates[1:]:
            if candidate.current_load < best.current_load:
                best = candidate
        return best

    if strategy == RoutingStrategy.ROUND_ROBIN.value:
        return candidates[cursor.next_index(key, len(candidates))]

    if strategy == RoutingStrategy.PRIORITY_FIRST.value:
        best = candidates[0]
        for candidate in candidates[1:]:
            if candidate.priority > best.priority:
                best = candidate
        return best

    return candidates[0]


def vendor_key(service_id: str) -> str:
    return f"vendor_{service_id}"


def designer_key(vendor_user_id: str) -> str:
    return f"designer_{vendor_user_id}"

# tripod/core/dispatch/engine.py
"""
Automatic assignment engine.

A new ad-hoc service request is matched against active automation rules in
priority order. The first rule that yields a vendor with capacity left wins;
``vendor_then_designer`` rules additionally pick one of that vendor's
designers. Every decision is written to the assignment log so admins can see
why a job went where it did.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta, timezone
from typing import Callable, Optional
from zoneinfo import ZoneInfo

from tripod.core.dispatch.strategies import (
    Candidate,
    RoundRobinCursor,
    designer_key,
    select_candidate,
    vendor_key,
)
from tripod.core.domain import (
    AutoAssignmentStatus,
    AutomationAssignmentLog,
    AutomationRule,
    FallbackAction,
    NotificationType,
    RoutingStrategy,
    RoutingTarget,
    RuleScope,
    ServiceRequest,
    UserRole,
)
from tripod.core.listing import KIND_AD_HOC, job_number
from tripod.core.ports import AutomationStore, Notifier
from tripod.core.pricing import vendor_has_valid_service_cost
from tripod.infra.logging_config import LogContext, get_logger
from tripod.infra.metrics import AppMetrics

logger = get_logger(__name__)

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


@dataclass
class AutomationResult:
    success: bool
    status: str
    note: str
    vendor_assignee_id: Optional[str] = None
    designer_assignee_id: Optional[str] = None
    logs: list[AutomationAssignmentLog] = field(default_factory=list)
    fallback_action: Optional[str] = None
    # set when the request was never evaluated (locked or already assigned)
    skipped: bool = False


def rule_sort_key(rule: AutomationRule) -> tuple:
    """Priority descending, client rules before global ones, then oldest first."""
    return (
        -rule.priority,
        0 if rule.scope == RuleScope.CLIENT.value else 1,
        rule.created_at or _EPOCH,
    )


def matches_criteria(request: ServiceRequest, rule: AutomationRule) -> bool:
    client_id = (rule.match_criteria or {}).get("clientId")
    return not client_id or client_id == request.user_id


class AutomationEngine:
    def __init__(
        self,
        store: AutomationStore,
        notifier: Optional[Notifier] = None,
        *,
        tz_name: str = "UTC",
        internal_vendor_profile_id: Optional[str] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._store = store
        self._notifier = notifier
        self._tz = ZoneInfo(tz_name)
        self._internal_vendor_profile_id = internal_vendor_profile_id
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._cursor = RoundRobinCursor()
        self._locks: dict[str, asyncio.Lock] = {}

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def day_bounds(self, now: datetime) -> tuple[datetime, datetime]:
        """[start, end) of the automation-timezone calendar day containing ``now``."""
        local_day = now.astimezone(self._tz).date()
        start = datetime.combine(local_day, time.min, tzinfo=self._tz)
        end = datetime.combine(local_day + timedelta(days=1), time.min, tzinfo=self._tz)
        return start, end

    def _lock_for(self, service_id: str) -> asyncio.Lock:
        lock = self._locks.get(service_id)
        if lock is None:
            lock = self._locks[service_id] = asyncio.Lock()
        return lock

    @staticmethod
    def _log(request: ServiceRequest, step: str, result: str, **kwargs) -> AutomationAssignmentLog:
        return AutomationAssignmentLog(request_id=request.id, step=step, result=result, **kwargs)

    async def _rules_for(self, request: ServiceRequest) -> list[AutomationRule]:
        rules = [
            rule
            for rule in await self._store.list_active_rules()
            if rule.is_active
            and rule.applies_to_service(request.service_id)
            and (
                rule.scope == RuleScope.GLOBAL.value
                or (rule.scope == RuleScope.CLIENT.value and rule.client_id == request.user_id)
            )
        ]
        rules.sort(key=rule_sort_key)
        return rules

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    async def process_new_service_request(self, request: ServiceRequest) -> AutomationResult:
        """Decide who should get ``request``. Nothing is persisted here."""
        if request.locked_assignment:
            return AutomationResult(
                success=False,
                status=AutoAssignmentStatus.NOT_ATTEMPTED.value,
                note="Assignment is locked - skipping automation",
                skipped=True,
            )

        if request.vendor_assignee_id or request.assignee_id:
            return AutomationResult(
                success=False,
                status=AutoAssignmentStatus.NOT_ATTEMPTED.value,
                note="Request already has an assignment - skipping automation",
                skipped=True,
            )

        logs: list[AutomationAssignmentLog] = []
        rules = await self._rules_for(request)

        if not rules:
            logs.append(self._log(
                request, "find_rules", "no_rules",
                reason="No active automation rules found for this service",
            ))
            return AutomationResult(
                success=False,
                status=AutoAssignmentStatus.NOT_ATTEMPTED.value,
                note="No active automation rules configured",
                logs=logs,
            )

        service = await self._store.get_service(request.service_id)
        service_title = service.title if service else None
        window = self.day_bounds(self._clock())
        fallback_rule: Optional[AutomationRule] = None

        for rule in rules:
            if not matches_criteria(request, rule):
                continue

            if fallback_rule is None:
                fallback_rule = rule
            logs.append(self._log(
                request, "rule_matched", "matched",
                rule_id=rule.id, reason=f"Rule '{rule.name}' matched",
            ))

            vendor = await self._select_vendor(request, rule, service_title, window, logs)
            if vendor is None:
                continue

            if rule.routing_target != RoutingTarget.VENDOR_THEN_DESIGNER.value:
                return AutomationResult(
                    success=True,
                    status=AutoAssignmentStatus.ASSIGNED.value,
                    note=f"Assigned to vendor {vendor.label} via rule '{rule.name}'",
                    vendor_assignee_id=vendor.user_id,
                    logs=logs,
                )

            designer = await self._select_designer(request, rule, vendor, window, logs)
            if designer is None:
                return AutomationResult(
                    success=True,
                    status=AutoAssignmentStatus.PARTIAL_ASSIGNED.value,
                    note=f"Assigned to vendor {vendor.label}, no designer available",
                    vendor_assignee_id=vendor.user_id,
                    logs=logs,
                )

            return AutomationResult(
                success=True,
                status=AutoAssignmentStatus.ASSIGNED.value,
                note=f"Assigned to vendor {vendor.label} and designer {designer.label} via rule '{rule.name}'",
                vendor_assignee_id=vendor.user_id,
                designer_assignee_id=designer.user_id,
                logs=logs,
            )

        if fallback_rule is None:
            logs.append(self._log(
                request, "find_rules", "no_match",
                reason="No automation rule matched request criteria",
            ))
            return AutomationResult(
                success=False,
                status=AutoAssignmentStatus.NOT_ATTEMPTED.value,
                note="No automation rule matched request criteria",
                logs=logs,
            )

        action = fallback_rule.fallback_action or FallbackAction.LEAVE_PENDING.value
        logs.append(self._log(
            request, "fallback", action,
            rule_id=fallback_rule.id,
            reason=f"No vendor available, applying fallback '{action}'",
        ))
        return AutomationResult(
            success=False,
            status=AutoAssignmentStatus.FAILED_NO_VENDOR.value,
            note="No vendors with available capacity found for this service",
            logs=logs,
            fallback_action=action,
        )

    async def _select_vendor(
        self,
        request: ServiceRequest,
        rule: AutomationRule,
        service_title: Optional[str],
        window: tuple[datetime, datetime],
        logs: list[AutomationAssignmentLog],
    ) -> Optional[Candidate]:
        capacities = [
            c for c in await self._store.list_vendor_capacities(request.service_id)
            if c.auto_assign_enabled
        ]
        if not capacities:
            logs.append(self._log(
                request, "vendor_selection", "no_candidates",
                rule_id=rule.id, reason="No vendors have capacity configured for this service",
            ))
            return None

        capacities.sort(key=lambda c: (-c.priority, c.vendor_profile_id))
        profiles = await self._store.get_vendor_profiles([c.vendor_profile_id for c in capacities])
        allowed = set(rule.allowed_vendor_ids or [])
        excluded = set(rule.excluded_vendor_ids or [])

        candidates: list[Candidate] = []
        for capacity in capacities:
            profile = profiles.get(capacity.vendor_profile_id)
            if profile is None or profile.is_deleted:
                continue
            if allowed and profile.user_id not in allowed:
                continue
            if profile.user_id in excluded:
                continue

            if service_title:
                if not vendor_has_valid_service_cost(profile, service_title, self._internal_vendor_profile_id):
                    continue
            elif profile.id != self._internal_vendor_profile_id:
                continue

            load = await self._store.count_vendor_assignments(profile.user_id, request.service_id, *window)
            candidate = Candidate(
                user_id=profile.user_id,
                capacity_id=capacity.id,
                daily_capacity=capacity.daily_capacity,
                current_load=load,
                priority=capacity.priority,
                profile_id=profile.id,
                label=profile.company_name,
            )
            if candidate.available > 0:
                candidates.append(candidate)

        if not candidates:
            logs.append(self._log(
                request, "vendor_selection", "no_capacity",
                rule_id=rule.id,
                reason="All eligible vendors are at capacity or lack pricing for this service",
                candidates_considered=[c.vendor_profile_id for c in capacities],
            ))
            return None

        strategy = rule.routing_strategy or RoutingStrategy.LEAST_LOADED.value
        chosen = select_candidate(strategy, candidates, key=vendor_key(request.service_id), cursor=self._cursor)
        logs.append(self._log(
            request, "vendor_selection", "selected",
            rule_id=rule.id,
            chosen_id=chosen.user_id,
            reason=f"Selected vendor {chosen.label} using {strategy}",
            candidates_considered=[c.profile_id for c in candidates],
            capacity_snapshot=[c.snapshot() for c in candidates],
        ))
        return chosen

    async def _select_designer(
        self,
        request: ServiceRequest,
        rule: AutomationRule,
        vendor: Candidate,
        window: tuple[datetime, datetime],
        logs: list[AutomationAssignmentLog],
    ) -> Optional[Candidate]:
        designers = [
            u for u in await self._store.list_vendor_designers(vendor.user_id)
            if u.is_active and u.role == UserRole.VENDOR_DESIGNER.value and u.vendor_id == vendor.user_id
        ]
        if not designers:
            logs.append(self._log(
                request, "designer_selection", "no_candidates",
                rule_id=rule.id, reason="No active designers found for this vendor",
            ))
            return None

        capacities = {
            c.user_id: c
            for c in await self._store.list_designer_capacities(request.service_id, [d.id for d in designers])
        }

        candidates: list[Candidate] = []
        for designer in designers:
            capacity = capacities.get(designer.id)
            if capacity is None or not capacity.auto_assign_enabled:
                continue
            load = await self._store.count_designer_assignments(designer.id, request.service_id, *window)
            candidate = Candidate(
                user_id=designer.id,
                capacity_id=capacity.id,
                daily_capacity=capacity.daily_capacity,
                current_load=load,
                priority=capacity.priority,
                label=designer.username,
                is_primary=capacity.is_primary,
            )
            if candidate.available > 0:
                candidates.append(candidate)

        if not candidates:
            logs.append(self._log(
                request, "designer_selection", "no_capacity",
                rule_id=rule.id,
                reason="All designers are at capacity",
                candidates_considered=[d.id for d in designers],
            ))
            return None

        candidates.sort(key=lambda c: (not c.is_primary, -c.priority))
        strategy = rule.routing_strategy or RoutingStrategy.LEAST_LOADED.value
        chosen = select_candidate(strategy, candidates, key=designer_key(vendor.user_id), cursor=self._cursor)
        logs.append(self._log(
            request, "designer_selection", "selected",
            rule_id=rule.id,
            chosen_id=chosen.user_id,
            reason=f"Selected designer {chosen.label} using {strategy}",
            candidates_considered=[c.user_id for c in candidates],
            capacity_snapshot=[c.snapshot() for c in candidates],
        ))
        return chosen

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    async def apply_automation_result(self, request_id: str, result: AutomationResult) -> AutomationResult:
        """
        Persist ``result`` and notify whoever it concerns.

        Returns the result that was actually stored: if the request was
        assigned or locked by someone else meanwhile, nothing is overwritten
        and a ``not_attempted`` result is returned instead.
        """
        ctx = LogContext(logger, service_request_id=request_id)

        if result.skipped:
            ctx.info("Automation skipped, stored assignment left as is: %s", result.note)
            return result

        applied = await self._store.apply_assignment(
            request_id,
            status=result.status,
            note=result.note,
            run_at=self._clock(),
            vendor_assignee_id=result.vendor_assignee_id,
            designer_assignee_id=result.designer_assignee_id,
        )

        if not applied:
            AppMetrics.assignment_conflict()
            ctx.warning("Request changed while automation was running, keeping manual state")
            result = AutomationResult(
                success=False,
                status=AutoAssignmentStatus.NOT_ATTEMPTED.value,
                note="Request was assigned or locked before automation finished",
                logs=[
                    *result.logs,
                    AutomationAssignmentLog(
                        request_id=request_id, step="apply", result="conflict",
                        reason="Request no longer unassigned and unlocked",
                    ),
                ],
            )

        if result.logs:
            await self._store.save_assignment_logs(result.logs)

        AppMetrics.automation_outcome(result.status)
        ctx.info("Automation finished: status=%s note=%s", result.status, result.note)

        if applied:
            await self._notify_outcome(request_id, result)
        return result

    async def _notify_outcome(self, request_id: str, result: AutomationResult) -> None:
        if self._notifier is None:
            return

        number = job_number(KIND_AD_HOC, request_id)
        link = f"/jobs/{request_id}"

        if result.vendor_assignee_id:
            await self._notify_safely(
                result.vendor_assignee_id,
                NotificationType.JOB_ASSIGNED_VENDOR.value,
                "New job assigned",
                f"Job {number} was automatically assigned to you",
                link,
            )
        if result.designer_assignee_id:
            await self._notify_safely(
                result.designer_assignee_id,
                NotificationType.JOB_ASSIGNED_DESIGNER.value,
                "New job assigned",
                f"Job {number} was automatically assigned to you",
                link,
            )

        if (
            result.status == AutoAssignmentStatus.FAILED_NO_VENDOR.value
            and result.fallback_action == FallbackAction.NOTIFY_ONLY.value
        ):
            for admin in await self._store.list_active_admins():
                await self._notify_safely(
                    admin.id,
                    NotificationType.AUTOMATION_FALLBACK.value,
                    "Automatic assignment failed",
                    f"Job {number} could not be assigned: {result.note}",
                    link,
                )

    async def _notify_safely(self, user_id: str, kind: str, title: str, message: str, link: str) -> None:
        # The assignment is already stored, a failed notification must not undo it
        try:
            await self._notifier.notify(user_id, kind, title, message, link=link)
        except Exception as exc:
            logger.warning("Notification %s for user %s failed (non-critical): %s", kind, user_id, exc)

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def run_for_request(self, request_id: str) -> Optional[AutomationResult]:
        """Load, evaluate and persist in one step, serialized per service."""
        request = await self._store.get_service_request(request_id)
        if request is None:
            logger.warning("Automation requested for unknown service request %s", request_id)
            return None

        async with self._lock_for(request.service_id):
            # Re-read under the lock; a concurrent run may have assigned it
            request = await self._store.get_service_request(request_id)
            if request is None:
                return None
            with AppMetrics.track_automation_time():
                result = await self.process_new_service_request(request)
            return await self.apply_automation_result(request.id, result)


_engine: Optional[AutomationEngine] = None


def get_automation_engine() -> AutomationEngine:
    """Process-wide engine wired to the Postgres store and notifier."""
    global _engine
    if _engine is None:
        from tripod.config import settings
        from tripod.core.dispatch.services import DispatchNotifier
        from tripod.infra.pg_automation_repo_async import get_automation_repo

        _engine = AutomationEngine(
            get_automation_repo(),
            DispatchNotifier(),
            tz_name=settings.automation_timezone,
            internal_vendor_profile_id=settings.internal_vendor_profile_id,
        )
    return _engine


def reset_automation_engine() -> None:
    global _engine
    _engine = None

# tripod/admin/requests.py
"""
Job lifecycle service: submission, updates, manual assignment, delivery,
change requests, cancellation and the read models built on top of them
(combined search, dashboard, pack pricing, notifications).
"""
from __future__ import annotations

from collections import Counter
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Callable, Optional
from zoneinfo import ZoneInfo

from tripod.admin.billing import get_billing_service
from tripod.admin.errors import ConflictError, NotFoundError, ValidationError
from tripod.admin.models import (
    AssignRequest,
    BundleRequestCreate,
    BundleRequestUpdate,
    ServiceRequestCreate,
    ServiceRequestUpdate,
)
from tripod.admin.service import load_priority_distribution
from tripod.config import settings
from tripod.core.coupons import CouponRejected, apply_discount, normalize_code, validate_coupon_for
from tripod.core.domain import (
    ACTIVE_JOB_STATUSES,
    AutomationAssignmentLog,
    BundleRequest,
    DiscountCoupon,
    JobStatus,
    Notification,
    NotificationType,
    ServiceRequest,
    UserRole,
)
from tripod.core.listing import KIND_AD_HOC, KIND_BUNDLE, JobListItem, RequestFilter, filter_requests, job_number
from tripod.core.pricing import calculate_bundle_price, calculate_pack_pricing, calculate_service_price
from tripod.core.priority import PriorityQuotaExceeded, check_priority_quota, quota_preview
from tripod.core.reporting import (
    calculate_change,
    comparison_range,
    resolve_date_range,
    summarize_jobs,
    vendor_workload,
)
from tripod.infra.audit_log import audit_event
from tripod.infra.logging_config import LogContext, get_logger
from tripod.infra.metrics import AppMetrics
from tripod.infra.pg_automation_repo_async import get_automation_repo
from tripod.infra.pg_billing_repo_async import CouponExhaustedError, get_billing_repo
from tripod.infra.pg_directory_repo_async import get_directory_repo
from tripod.infra.pg_job_repo_async import JOB_AUTO_ASSIGN, get_job_repo
from tripod.infra.pg_notification_repo_async import get_notification_repo
from tripod.infra.pg_request_repo_async import get_request_repo
from tripod.infra.pg_rows import RecordNotFoundError
from tripod.infra.pg_settings_repo_async import get_settings_repo

logger = get_logger(__name__)

_CLOSED_STATUSES = frozenset({JobStatus.DELIVERED.value, JobStatus.CANCELED.value})
_DESIGNER_ROLES = frozenset({
    UserRole.ADMIN.value,
    UserRole.INTERNAL_DESIGNER.value,
    UserRole.VENDOR_DESIGNER.value,
})
_DASHBOARD_METRICS = ("total_orders", "total_sales", "open_jobs", "jobs_over_sla")


class RequestService:
    """
    Orchestrates service and bundle requests.

    Auto-assignment of a new service request is queued as a background job
    when the job worker runs, and executed inline otherwise.
    """

    def __init__(
        self,
        *,
        request_repo=None,
        directory_repo=None,
        billing_repo=None,
        settings_repo=None,
        automation_repo=None,
        notification_repo=None,
        job_repo=None,
        billing=None,
        engine=None,
        notifier=None,
        use_queue: Optional[bool] = None,
        automation_enabled: Optional[bool] = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._request_repo = request_repo
        self._directory_repo = directory_repo
        self._billing_repo = billing_repo
        self._settings_repo = settings_repo
        self._automation_repo = automation_repo
        self._notification_repo = notification_repo
        self._job_repo = job_repo
        self._billing = billing
        self._engine = engine
        self._notifier = notifier
        self._use_queue = settings.job_worker_enabled if use_queue is None else use_queue
        self._automation_enabled = settings.automation_enabled if automation_enabled is None else automation_enabled
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @property
    def request_repo(self):
        if self._request_repo is None:
            self._request_repo = get_request_repo()
        return self._request_repo

    @property
    def directory_repo(self):
        if self._directory_repo is None:
            self._directory_repo = get_directory_repo()
        return self._directory_repo

    @property
    def billing_repo(self):
        if self._billing_repo is None:
            self._billing_repo = get_billing_repo()
        return self._billing_repo

    @property
    def settings_repo(self):
        if self._settings_repo is None:
            self._settings_repo = get_settings_repo()
        return self._settings_repo

    @property
    def automation_repo(self):
        if self._automation_repo is None:
            self._automation_repo = get_automation_repo()
        return self._automation_repo

    @property
    def notification_repo(self):
        if self._notification_repo is None:
            self._notification_repo = get_notification_repo()
        return self._notification_repo

    @property
    def job_repo(self):
        if self._job_repo is None:
            self._job_repo = get_job_repo()
        return self._job_repo

    @property
    def billing(self):
        if self._billing is None:
            self._billing = get_billing_service()
        return self._billing

    @property
    def engine(self):
        if self._engine is None:
            from tripod.core.dispatch.engine import get_automation_engine
            self._engine = get_automation_engine()
        return self._engine

    @property
    def notifier(self):
        if self._notifier is None:
            from tripod.core.dispatch.services import DispatchNotifier
            self._notifier = DispatchNotifier()
        return self._notifier

    # ------------------------------------------------------------------
    # Shared checks
    # ------------------------------------------------------------------

    async def _check_quota(self, user_id: str, priority: str, *, replacing: Optional[str] = None) -> None:
        """
        ``replacing`` is the current priority of an active job being
        re-prioritized; that job is not counted twice.
        """
        distribution = await load_priority_distribution(self.settings_repo)
        active = await self.request_repo.list_active_priorities(user_id)
        if replacing is not None and replacing in active:
            active.remove(replacing)
        try:
            check_priority_quota(priority, active, distribution)
        except PriorityQuotaExceeded as exc:
            raise ValidationError(str(exc))

    async def _resolve_coupon(
        self,
        code: Optional[str],
        *,
        client_id: str,
        service_id: Optional[str] = None,
        bundle_id: Optional[str] = None,
    ) -> Optional[DiscountCoupon]:
        if not code:
            return None
        coupon = await self.billing_repo.get_coupon_by_code(normalize_code(code))
        if coupon is None:
            raise ValidationError("Coupon not found")
        try:
            validate_coupon_for(
                coupon, client_id=client_id, now=self._clock(),
                service_id=service_id, bundle_id=bundle_id,
            )
        except CouponRejected as exc:
            raise ValidationError(exc.reason)
        return coupon

    async def _notify(self, user_id: Optional[str], kind: str, title: str, message: str, link: str) -> None:
        if not user_id:
            return
        try:
            await self.notifier.notify(user_id, kind, title, message, link=link)
        except Exception as exc:
            logger.warning(f"Notification {kind} to {user_id} failed: {exc}")

    # ------------------------------------------------------------------
    # Service requests
    # ------------------------------------------------------------------

    async def submit_service_request(self, req: ServiceRequestCreate) -> ServiceRequest:
        service = await self.directory_repo.get_service(req.service_id)
        if service is None:
            raise NotFoundError(f"Service '{req.service_id}' not found")
        if not service.is_active:
            raise ValidationError(f"Service '{service.title}' is not available")

        await self._check_quota(req.user_id, req.priority)

        price = calculate_service_price(
            service_title=service.title,
            pricing_structure=service.pricing_structure,
            base_price=service.base_price,
            form_data=req.form_data,
        )

        coupon = await self._resolve_coupon(req.coupon_code, client_id=req.user_id, service_id=service.id)
        discount = None
        if coupon is not None and price is not None:
            discount, price = apply_discount(coupon, price)

        coverage = await self.billing.pack_coverage(req.user_id, service.id)

        fields = {
            "user_id": req.user_id,
            "service_id": service.id,
            "status": JobStatus.PENDING.value,
            "priority": req.priority,
            "customer_name": req.customer_name,
            "notes": req.notes,
            "form_data": req.form_data,
            "final_price": price,
            "discount_coupon_id": coupon.id if coupon else None,
            "discount_amount": discount,
            "payment_intent_id": req.payment_intent_id,
            "due_date": req.due_date,
            "is_pack_covered": coverage.covered,
            "is_pack_overage": coverage.overage,
        }
        try:
            request = await self.request_repo.create_service_request(
                fields, coupon_id=coupon.id if coupon else None,
            )
        except CouponExhaustedError:
            raise ConflictError("Coupon usage limit reached")

        AppMetrics.request_submitted(KIND_AD_HOC, req.priority)
        if coupon is not None:
            AppMetrics.coupon_redeemed(KIND_AD_HOC)

        log = LogContext(logger, service_request_id=request.id, user_id=req.user_id)
        log.info(f"Service request submitted: {job_number(KIND_AD_HOC, request.id)} priority={req.priority}")

        if coverage.covered or coverage.overage:
            log.info(f"Pack {coverage.pack_id}: {coverage.used}/{coverage.included} used, "
                     f"{'covered' if coverage.covered else 'overage'}")
        request = await self.billing.record_submission_payment(KIND_AD_HOC, request)

        return await self._schedule_assignment(request)

    async def _schedule_assignment(self, request: ServiceRequest) -> ServiceRequest:
        if not self._automation_enabled:
            return request

        if self._use_queue:
            await self.job_repo.enqueue(JOB_AUTO_ASSIGN, {"service_request_id": request.id})
            return request

        try:
            await self.engine.run_for_request(request.id)
        except Exception:
            # The request is already stored; an admin can re-run automation.
            logger.error(f"Inline auto-assignment failed for {request.id}", exc_info=True)
            return request

        return await self.request_repo.get_service_request(request.id) or request

    async def get_service_request(self, request_id: str) -> ServiceRequest:
        request = await self.request_repo.get_service_request(request_id)
        if request is None:
            raise NotFoundError(f"Service request '{request_id}' not found")
        return request

    async def list_service_requests(
        self, *, user_id: Optional[str] = None, status: Optional[str] = None,
    ) -> list[ServiceRequest]:
        return await self.request_repo.list_service_requests(
            user_ids=[user_id] if user_id else None, status=status,
        )

    async def update_service_request(self, request_id: str, req: ServiceRequestUpdate) -> ServiceRequest:
        changes = req.changes()
        if not changes:
            raise ValidationError("No fields to update")

        current = await self.get_service_request(request_id)
        if "priority" in changes and changes["priority"] != current.priority:
            if current.status in ACTIVE_JOB_STATUSES:
                await self._check_quota(current.user_id, changes["priority"], replacing=current.priority)

        try:
            return await self.request_repo.update_service_request(request_id, changes)
        except RecordNotFoundError:
            raise NotFoundError(f"Service request '{request_id}' not found")

    async def _transition(self, request_id: str, fields: dict) -> ServiceRequest:
        try:
            return await self.request_repo.update_service_request(request_id, fields)
        except RecordNotFoundError:
            raise NotFoundError(f"Service request '{request_id}' not found")

    async def assign(self, request_id: str, req: AssignRequest, *, actor: Optional[str] = None) -> ServiceRequest:
        """
        Manual assignment. Locks the assignment so automation never
        overrides an admin's choice.
        """
        current = await self.get_service_request(request_id)
        if current.status in _CLOSED_STATUSES:
            raise ValidationError(f"Cannot assign a {current.status} job")

        now = self._clock()
        fields: dict = {"locked_assignment": True}

        if req.vendor_assignee_id:
            vendor = await self.directory_repo.get_user(req.vendor_assignee_id)
            if vendor is None or vendor.role != UserRole.VENDOR.value:
                raise ValidationError(f"User '{req.vendor_assignee_id}' is not a vendor")
            fields["vendor_assignee_id"] = vendor.id
            fields["vendor_assigned_at"] = now

        if req.assignee_id:
            designer = await self.directory_repo.get_user(req.assignee_id)
            if designer is None or designer.role not in _DESIGNER_ROLES:
                raise ValidationError(f"User '{req.assignee_id}' cannot be assigned as designer")
            fields["assignee_id"] = designer.id
            fields["assigned_at"] = now
            if current.status == JobStatus.PENDING.value:
                fields["status"] = JobStatus.IN_PROGRESS.value

        updated = await self._transition(request_id, fields)
        audit_event("service_request.assign", entity="service_request", entity_id=request_id, actor=actor,
                    detail=f"vendor={req.vendor_assignee_id or '-'} designer={req.assignee_id or '-'}")

        number = job_number(KIND_AD_HOC, request_id)
        link = f"/jobs/{request_id}"
        if req.vendor_assignee_id:
            await self._notify(req.vendor_assignee_id, NotificationType.JOB_ASSIGNED_VENDOR.value,
                               "New job assigned", f"Job {number} has been assigned to you.", link)
        if req.assignee_id:
            await self._notify(req.assignee_id, NotificationType.JOB_ASSIGNED_DESIGNER.value,
                               "New job assigned", f"Job {number} has been assigned to you.", link)
        return updated

    async def deliver(self, request_id: str, *, actor: Optional[str] = None) -> ServiceRequest:
        current = await self.get_service_request(request_id)
        if current.status in _CLOSED_STATUSES:
            raise ValidationError(f"Cannot deliver a {current.status} job")

        updated = await self._transition(
            request_id, {"status": JobStatus.DELIVERED.value, "delivered_at": self._clock()},
        )
        updated = await self.billing.record_delivery_payment(KIND_AD_HOC, updated, actor=actor)
        audit_event("service_request.deliver", entity="service_request", entity_id=request_id, actor=actor)
        await self._notify(current.user_id, NotificationType.JOB_DELIVERED.value, "Job delivered",
                           f"Job {job_number(KIND_AD_HOC, request_id)} has been delivered.", f"/jobs/{request_id}")
        return updated

    async def request_change(
        self, request_id: str, note: Optional[str] = None, *, actor: Optional[str] = None,
    ) -> ServiceRequest:
        current = await self.get_service_request(request_id)
        if current.status != JobStatus.DELIVERED.value:
            raise ValidationError("Changes can only be requested on delivered jobs")

        fields: dict = {"status": JobStatus.CHANGE_REQUEST.value}
        if note:
            fields["notes"] = f"{current.notes}\n\n{note}" if current.notes else note

        updated = await self._transition(request_id, fields)
        audit_event("service_request.change_request", entity="service_request", entity_id=request_id, actor=actor)
        await self._notify(
            current.assignee_id or current.vendor_assignee_id,
            NotificationType.CHANGE_REQUESTED.value,
            "Change requested",
            f"The client requested changes on job {job_number(KIND_AD_HOC, request_id)}.",
            f"/jobs/{request_id}",
        )
        return updated

    async def cancel(self, request_id: str, *, actor: Optional[str] = None) -> ServiceRequest:
        current = await self.get_service_request(request_id)
        if current.status in _CLOSED_STATUSES:
            raise ValidationError(f"Cannot cancel a {current.status} job")

        updated = await self._transition(request_id, {"status": JobStatus.CANCELED.value})
        audit_event("service_request.cancel", entity="service_request", entity_id=request_id, actor=actor)
        return updated

    async def rerun_automation(self, request_id: str) -> dict:
        """Run automatic assignment now, whatever the worker configuration."""
        await self.get_service_request(request_id)
        result = await self.engine.run_for_request(request_id)
        if result is None:
            raise NotFoundError(f"Service request '{request_id}' not found")
        audit_event("service_request.auto_assign", entity="service_request", entity_id=request_id,
                    detail=f"status={result.status}")
        return {
            "success": result.success,
            "status": result.status,
            "note": result.note,
            "vendor_assignee_id": result.vendor_assignee_id,
            "designer_assignee_id": result.designer_assignee_id,
            "fallback_action": result.fallback_action,
        }

    async def automation_logs(self, request_id: str) -> list[AutomationAssignmentLog]:
        await self.get_service_request(request_id)
        return await self.automation_repo.list_assignment_logs(request_id)

    async def priority_quota(self, user_id: str) -> dict:
        distribution = await load_priority_distribution(self.settings_repo)
        active = await self.request_repo.list_active_priorities(user_id)
        preview = quota_preview(len(active), distribution)
        counts = Counter(active)
        preview["current_urgent"] = counts.get("urgent", 0)
        preview["current_high"] = counts.get("high", 0)
        return preview

    # ------------------------------------------------------------------
    # Bundle requests
    # ------------------------------------------------------------------

    async def submit_bundle_request(self, req: BundleRequestCreate) -> BundleRequest:
        bundle = await self.directory_repo.get_bundle(req.bundle_id)
        if bundle is None:
            raise NotFoundError(f"Bundle '{req.bundle_id}' not found")
        if not bundle.is_active:
            raise ValidationError(f"Bundle '{bundle.name}' is not available")

        await self._check_quota(req.user_id, req.priority)

        price = calculate_bundle_price(bundle.items, bundle.discount_percent, bundle.final_price).final

        coupon = await self._resolve_coupon(req.coupon_code, client_id=req.user_id, bundle_id=bundle.id)
        discount = None
        if coupon is not None:
            discount, price = apply_discount(coupon, price)

        fields = {
            "user_id": req.user_id,
            "bundle_id": bundle.id,
            "status": JobStatus.PENDING.value,
            "priority": req.priority,
            "form_data": req.form_data,
            "final_price": price,
            "discount_coupon_id": coupon.id if coupon else None,
            "discount_amount": discount,
            "payment_intent_id": req.payment_intent_id,
            "due_date": req.due_date,
        }
        try:
            request = await self.request_repo.create_bundle_request(fields, coupon_id=coupon.id if coupon else None)
        except CouponExhaustedError:
            raise ConflictError("Coupon usage limit reached")

        AppMetrics.request_submitted(KIND_BUNDLE, req.priority)
        if coupon is not None:
            AppMetrics.coupon_redeemed(KIND_BUNDLE)
        logger.info(f"Bundle request submitted: {job_number(KIND_BUNDLE, request.id)}", extra={"user_id": req.user_id})
        return await self.billing.record_submission_payment(KIND_BUNDLE, request)

    async def get_bundle_request(self, request_id: str) -> BundleRequest:
        request = await self.request_repo.get_bundle_request(request_id)
        if request is None:
            raise NotFoundError(f"Bundle request '{request_id}' not found")
        return request

    async def list_bundle_requests(
        self, *, user_id: Optional[str] = None, status: Optional[str] = None,
    ) -> list[BundleRequest]:
        return await self.request_repo.list_bundle_requests(user_ids=[user_id] if user_id else None, status=status)

    async def update_bundle_request(self, request_id: str, req: BundleRequestUpdate) -> BundleRequest:
        changes = req.changes()
        if not changes:
            raise ValidationError("No fields to update")

        current = await self.get_bundle_request(request_id)
        if "priority" in changes and changes["priority"] != current.priority:
            if current.status in ACTIVE_JOB_STATUSES:
                await self._check_quota(current.user_id, changes["priority"], replacing=current.priority)

        delivering = (
            changes.get("status") == JobStatus.DELIVERED.value and current.status != JobStatus.DELIVERED.value
        )
        if delivering:
            changes.setdefault("delivered_at", self._clock())

        try:
            updated = await self.request_repo.update_bundle_request(request_id, changes)
        except RecordNotFoundError:
            raise NotFoundError(f"Bundle request '{request_id}' not found")

        if delivering:
            updated = await self.billing.record_delivery_payment(KIND_BUNDLE, updated)
        return updated

    # ------------------------------------------------------------------
    # Read models
    # ------------------------------------------------------------------

    async def search_jobs(self, flt: RequestFilter, *, viewer_role: Optional[str] = None) -> list[JobListItem]:
        client_ids = flt.client_ids or None
        service_requests = await self.request_repo.list_service_requests(user_ids=client_ids)
        bundle_requests = await self.request_repo.list_bundle_requests(user_ids=client_ids)

        users = {}
        if flt.vendor_id:
            assignee_ids = {r.assignee_id for r in [*service_requests, *bundle_requests] if r.assignee_id}
            users = await self.directory_repo.get_users_by_ids(sorted(assignee_ids))

        return filter_requests(
            service_requests,
            bundle_requests,
            flt,
            users=users,
            viewer_role=viewer_role,
            now=self._clock(),
            tz=ZoneInfo(settings.automation_timezone),
        )

    async def dashboard(
        self,
        preset: str = "this_month",
        *,
        custom_start: Optional[datetime] = None,
        custom_end: Optional[datetime] = None,
    ) -> dict:
        now = self._clock()
        current = resolve_date_range(
            preset, now, custom_start=custom_start, custom_end=custom_end,
            tz=ZoneInfo(settings.automation_timezone),
        )
        previous = comparison_range(current)

        service_requests = await self.request_repo.list_service_requests(
            created_from=previous.start, created_to=current.end,
        )
        bundle_requests = await self.request_repo.list_bundle_requests(
            created_from=previous.start, created_to=current.end,
        )

        summary = summarize_jobs(service_requests, bundle_requests, current, now=now)
        before = summarize_jobs(service_requests, bundle_requests, previous, now=now)

        changes = {}
        for metric in _DASHBOARD_METRICS:
            change = calculate_change(getattr(summary, metric), getattr(before, metric))
            changes[metric] = {"value": change.value, "direction": change.direction}

        return {
            "preset": preset,
            "range": {"start": current.start, "end": current.end},
            "comparison_range": {"start": previous.start, "end": previous.end},
            "summary": {
                "total_orders": summary.total_orders,
                "open_jobs": summary.open_jobs,
                "jobs_over_sla": summary.jobs_over_sla,
                "total_sales": summary.total_sales,
                "profit": summary.profit,
                "margin_percent": summary.margin_percent,
                "aov": summary.aov,
                "job_counts": summary.job_counts,
            },
            "changes": changes,
            "workload": [asdict(row) for row in vendor_workload(service_requests, current)],
        }

    async def pack_pricing(self, pack_id: str) -> dict:
        pack = await self.directory_repo.get_service_pack(pack_id)
        if pack is None:
            raise NotFoundError(f"Service pack '{pack_id}' not found")
        pricing = calculate_pack_pricing(pack.items, pack.price)
        return {"pack_id": pack.id, "name": pack.name, **asdict(pricing)}

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    async def list_notifications(self, user_id: str, *, unread_only: bool = False) -> list[Notification]:
        return await self.notification_repo.list_for_user(user_id, unread_only=unread_only)

    async def mark_notification_read(self, notification_id: str) -> None:
        if not await self.notification_repo.mark_read(notification_id):
            raise NotFoundError(f"Notification '{notification_id}' not found")


_svc: RequestService | None = None


def get_request_service() -> RequestService:
    global _svc
    if _svc is None:
        _svc = RequestService()
    return _svc


def reset_request_service() -> None:
    global _svc
    _svc = None

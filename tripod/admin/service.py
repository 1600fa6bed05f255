# tripod/admin/service.py
"""
Admin Application Service: the orchestration point for the back-office
configuration surfaces (automation rules, capacities, coupons, refunds,
client companies, vendor profiles, catalog and system settings).

Responsibilities:
    1. Validate requests (Pydantic models + domain rules from tripod.core)
    2. Call repositories for persistence
    3. Map repository errors to typed AdminErrors
    4. Emit audit events

The transport layer stays a thin adapter:
    parse request -> call service -> map AdminError -> return JSON.
"""
from __future__ import annotations

from dataclasses import asdict
from datetime import datetime, timezone
from typing import Callable, Optional

from tripod.admin.errors import ConflictError, NotFoundError, ValidationError
from tripod.admin.models import (
    ClientCompanyCreateRequest,
    ClientCompanyUpdateRequest,
    CouponCreateRequest,
    CouponUpdateRequest,
    CouponValidateRequest,
    CouponValidationResponse,
    DesignerCapacityCreateRequest,
    DesignerCapacityUpdateRequest,
    PriorityDistributionModel,
    RefundCreateRequest,
    RuleCreateRequest,
    RuleUpdateRequest,
    ServiceCreateRequest,
    VendorCapacityCreateRequest,
    VendorCapacityUpdateRequest,
    VendorProfileCreateRequest,
    VendorProfileUpdateRequest,
)
from tripod.core.coupons import (
    OPTION_ALL,
    OPTION_NONE,
    CouponRejected,
    apply_discount,
    generate_coupon_code,
    normalize_code,
    resolve_targets,
    validate_coupon_for,
)
from tripod.core.domain import (
    AutomationRule,
    ClientCompany,
    DesignerCapacity,
    DiscountCoupon,
    NotificationType,
    Refund,
    RefundStatus,
    RequestType,
    RuleScope,
    Service,
    UserRole,
    VendorProfile,
    VendorServiceCapacity,
)
from tripod.core.listing import KIND_AD_HOC, KIND_BUNDLE, job_number
from tripod.core.priority import DEFAULT_MAX_HIGH_PERCENT, DEFAULT_MAX_URGENT_PERCENT, PriorityDistribution
from tripod.core.refunds import (
    RefundValidationError,
    RefundableBalance,
    can_process,
    initial_status,
    refundable_balance,
    validate_refund_amount,
)
from tripod.infra.audit_log import audit_event
from tripod.infra.logging_config import get_logger
from tripod.infra.metrics import AppMetrics
from tripod.infra.payment_gateway import PaymentGatewayError, get_payment_gateway
from tripod.infra.pg_automation_repo_async import get_automation_repo
from tripod.infra.pg_billing_repo_async import get_billing_repo
from tripod.infra.pg_directory_repo_async import get_directory_repo
from tripod.infra.pg_request_repo_async import get_request_repo
from tripod.infra.pg_rows import DuplicateRecordError, RecordNotFoundError
from tripod.infra.pg_settings_repo_async import PRIORITY_DISTRIBUTION_KEY, get_settings_repo

logger = get_logger(__name__)


async def load_priority_distribution(settings_repo) -> PriorityDistribution:
    """Stored distribution, or the defaults when none was saved."""
    raw = await settings_repo.get_setting(PRIORITY_DISTRIBUTION_KEY)
    if not raw:
        return PriorityDistribution()
    return PriorityDistribution(
        max_urgent_percent=int(raw.get("max_urgent_percent", DEFAULT_MAX_URGENT_PERCENT)),
        max_high_percent=int(raw.get("max_high_percent", DEFAULT_MAX_HIGH_PERCENT)),
    )


def _coupon_option(applies: bool, target_id: Optional[str]) -> str:
    if not applies:
        return OPTION_NONE
    return target_id or OPTION_ALL


class AdminApplicationService:
    """
    Orchestrates admin-facing configuration operations.

    Stateless apart from lazily resolved repositories; safe to use as a
    singleton.
    """

    def __init__(
        self,
        *,
        automation_repo=None,
        directory_repo=None,
        billing_repo=None,
        request_repo=None,
        settings_repo=None,
        gateway=None,
        notifier=None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._automation_repo = automation_repo
        self._directory_repo = directory_repo
        self._billing_repo = billing_repo
        self._request_repo = request_repo
        self._settings_repo = settings_repo
        self._gateway = gateway
        self._notifier = notifier
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @property
    def automation_repo(self):
        if self._automation_repo is None:
            self._automation_repo = get_automation_repo()
        return self._automation_repo

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
    def request_repo(self):
        if self._request_repo is None:
            self._request_repo = get_request_repo()
        return self._request_repo

    @property
    def settings_repo(self):
        if self._settings_repo is None:
            self._settings_repo = get_settings_repo()
        return self._settings_repo

    @property
    def gateway(self):
        if self._gateway is None:
            self._gateway = get_payment_gateway()
        return self._gateway

    @property
    def notifier(self):
        if self._notifier is None:
            from tripod.core.dispatch.services import DispatchNotifier
            self._notifier = DispatchNotifier()
        return self._notifier

    # ------------------------------------------------------------------
    # Automation rules
    # ------------------------------------------------------------------

    async def list_rules(self) -> list[AutomationRule]:
        return await self.automation_repo.list_rules()

    async def create_rule(self, req: RuleCreateRequest) -> AutomationRule:
        fields = req.model_dump()
        if req.scope == RuleScope.GLOBAL.value:
            fields["client_id"] = None

        rule = await self.automation_repo.create_rule(fields)
        audit_event("automation_rule.create", entity="automation_rule", entity_id=rule.id,
                    detail=f"name={rule.name} priority={rule.priority}")
        return rule

    async def update_rule(self, rule_id: str, req: RuleUpdateRequest) -> AutomationRule:
        changes = req.changes()
        if not changes:
            raise ValidationError("No fields to update")

        existing = await self.automation_repo.get_rule(rule_id)
        if existing is None:
            raise NotFoundError(f"Automation rule '{rule_id}' not found")

        scope = changes.get("scope", existing.scope)
        client_id = changes.get("client_id", existing.client_id)
        if scope == RuleScope.CLIENT.value and not client_id:
            raise ValidationError("client_id is required for client-scoped rules")
        if scope == RuleScope.GLOBAL.value and client_id:
            changes["client_id"] = None

        try:
            rule = await self.automation_repo.update_rule(rule_id, changes)
        except RecordNotFoundError:
            raise NotFoundError(f"Automation rule '{rule_id}' not found")

        audit_event("automation_rule.update", entity="automation_rule", entity_id=rule_id,
                    detail=f"fields={sorted(changes)}")
        return rule

    async def delete_rule(self, rule_id: str) -> None:
        try:
            await self.automation_repo.delete_rule(rule_id)
        except RecordNotFoundError:
            raise NotFoundError(f"Automation rule '{rule_id}' not found")
        audit_event("automation_rule.delete", entity="automation_rule", entity_id=rule_id)

    # ------------------------------------------------------------------
    # Vendor service capacities
    # ------------------------------------------------------------------

    async def list_vendor_capacities(
        self, *, vendor_profile_id: Optional[str] = None, service_id: Optional[str] = None,
    ) -> list[VendorServiceCapacity]:
        return await self.automation_repo.list_all_vendor_capacities(
            vendor_profile_id=vendor_profile_id, service_id=service_id,
        )

    async def create_vendor_capacity(self, req: VendorCapacityCreateRequest) -> VendorServiceCapacity:
        profile = await self.directory_repo.get_vendor_profile(req.vendor_profile_id)
        if profile is None or profile.is_deleted:
            raise NotFoundError(f"Vendor profile '{req.vendor_profile_id}' not found")
        if await self.directory_repo.get_service(req.service_id) is None:
            raise NotFoundError(f"Service '{req.service_id}' not found")

        try:
            capacity = await self.automation_repo.create_vendor_capacity(req.model_dump())
        except DuplicateRecordError:
            raise ConflictError("This vendor already has a capacity for the service")

        audit_event("vendor_capacity.create", entity="vendor_capacity", entity_id=capacity.id,
                    detail=f"vendor_profile={req.vendor_profile_id} daily={req.daily_capacity}")
        return capacity

    async def update_vendor_capacity(
        self, capacity_id: str, req: VendorCapacityUpdateRequest,
    ) -> VendorServiceCapacity:
        changes = req.changes()
        if not changes:
            raise ValidationError("No fields to update")
        try:
            capacity = await self.automation_repo.update_vendor_capacity(capacity_id, changes)
        except RecordNotFoundError:
            raise NotFoundError(f"Capacity '{capacity_id}' not found")

        audit_event("vendor_capacity.update", entity="vendor_capacity", entity_id=capacity_id,
                    detail=f"fields={sorted(changes)}")
        return capacity

    async def delete_vendor_capacity(self, capacity_id: str) -> None:
        try:
            await self.automation_repo.delete_vendor_capacity(capacity_id)
        except RecordNotFoundError:
            raise NotFoundError(f"Capacity '{capacity_id}' not found")
        audit_event("vendor_capacity.delete", entity="vendor_capacity", entity_id=capacity_id)

    # ------------------------------------------------------------------
    # Designer capacities
    # ------------------------------------------------------------------

    async def list_designer_capacities(
        self, *, user_id: Optional[str] = None, service_id: Optional[str] = None,
    ) -> list[DesignerCapacity]:
        return await self.automation_repo.list_all_designer_capacities(user_id=user_id, service_id=service_id)

    async def create_designer_capacity(self, req: DesignerCapacityCreateRequest) -> DesignerCapacity:
        user = await self.directory_repo.get_user(req.user_id)
        if user is None:
            raise NotFoundError(f"User '{req.user_id}' not found")
        if user.role != UserRole.VENDOR_DESIGNER.value:
            raise ValidationError("Designer capacities can only be set for vendor designers")

        try:
            capacity = await self.automation_repo.create_designer_capacity(req.model_dump())
        except DuplicateRecordError:
            raise ConflictError("This designer already has a capacity for the service")

        audit_event("designer_capacity.create", entity="designer_capacity", entity_id=capacity.id,
                    detail=f"user={req.user_id} daily={req.daily_capacity}")
        return capacity

    async def update_designer_capacity(
        self, capacity_id: str, req: DesignerCapacityUpdateRequest,
    ) -> DesignerCapacity:
        changes = req.changes()
        if not changes:
            raise ValidationError("No fields to update")
        try:
            capacity = await self.automation_repo.update_designer_capacity(capacity_id, changes)
        except RecordNotFoundError:
            raise NotFoundError(f"Capacity '{capacity_id}' not found")

        audit_event("designer_capacity.update", entity="designer_capacity", entity_id=capacity_id,
                    detail=f"fields={sorted(changes)}")
        return capacity

    async def delete_designer_capacity(self, capacity_id: str) -> None:
        try:
            await self.automation_repo.delete_designer_capacity(capacity_id)
        except RecordNotFoundError:
            raise NotFoundError(f"Capacity '{capacity_id}' not found")
        audit_event("designer_capacity.delete", entity="designer_capacity", entity_id=capacity_id)

    # ------------------------------------------------------------------
    # Discount coupons
    # ------------------------------------------------------------------

    async def list_coupons(self) -> list[DiscountCoupon]:
        return await self.billing_repo.list_coupons()

    async def create_coupon(self, req: CouponCreateRequest) -> DiscountCoupon:
        try:
            targets = resolve_targets(req.service_option, req.bundle_option)
        except ValueError as exc:
            raise ValidationError(str(exc))

        code = normalize_code(req.code) if req.code else generate_coupon_code()
        fields = req.model_dump(exclude={"code", "service_option", "bundle_option"})
        fields.update(asdict(targets), code=code)

        try:
            coupon = await self.billing_repo.create_coupon(fields)
        except DuplicateRecordError:
            raise ConflictError(f"Coupon code '{code}' already exists")

        audit_event("coupon.create", entity="coupon", entity_id=coupon.id, detail=f"code={code}")
        return coupon

    async def update_coupon(self, coupon_id: str, req: CouponUpdateRequest) -> DiscountCoupon:
        changes = req.changes()
        if not changes:
            raise ValidationError("No fields to update")

        existing = await self.billing_repo.get_coupon(coupon_id)
        if existing is None:
            raise NotFoundError(f"Coupon '{coupon_id}' not found")

        if "service_option" in changes or "bundle_option" in changes:
            service_option = changes.pop("service_option", None) or _coupon_option(
                existing.applies_to_services, existing.service_id,
            )
            bundle_option = changes.pop("bundle_option", None) or _coupon_option(
                existing.applies_to_bundles, existing.bundle_id,
            )
            try:
                changes.update(asdict(resolve_targets(service_option, bundle_option)))
            except ValueError as exc:
                raise ValidationError(str(exc))

        discount_type = changes.get("discount_type", existing.discount_type)
        discount_value = changes.get("discount_value", existing.discount_value)
        if discount_type == "percentage" and discount_value > 100:
            raise ValidationError("Percentage discount cannot exceed 100")

        if changes.get("code"):
            changes["code"] = normalize_code(changes["code"])

        try:
            coupon = await self.billing_repo.update_coupon(coupon_id, changes)
        except RecordNotFoundError:
            raise NotFoundError(f"Coupon '{coupon_id}' not found")
        except DuplicateRecordError:
            raise ConflictError(f"Coupon code '{changes.get('code')}' already exists")

        audit_event("coupon.update", entity="coupon", entity_id=coupon_id, detail=f"fields={sorted(changes)}")
        return coupon

    async def delete_coupon(self, coupon_id: str) -> None:
        try:
            await self.billing_repo.delete_coupon(coupon_id)
        except RecordNotFoundError:
            raise NotFoundError(f"Coupon '{coupon_id}' not found")
        audit_event("coupon.delete", entity="coupon", entity_id=coupon_id)

    async def validate_coupon(self, req: CouponValidateRequest) -> CouponValidationResponse:
        """Check a code against a prospective job without redeeming it."""
        coupon = await self.billing_repo.get_coupon_by_code(normalize_code(req.code))
        if coupon is None:
            return CouponValidationResponse(valid=False, reason="Coupon not found")

        try:
            validate_coupon_for(
                coupon,
                client_id=req.client_id,
                now=self._clock(),
                service_id=req.service_id,
                bundle_id=req.bundle_id if req.service_id is None else None,
            )
        except CouponRejected as exc:
            return CouponValidationResponse(valid=False, reason=exc.reason, coupon_id=coupon.id)

        response = CouponValidationResponse(valid=True, coupon_id=coupon.id)
        if req.amount is not None:
            discount, final = apply_discount(coupon, req.amount)
            response.discount = float(discount)
            response.final_amount = float(final)
        return response

    # ------------------------------------------------------------------
    # Refunds
    # ------------------------------------------------------------------

    async def list_refunds(self, *, client_id: Optional[str] = None, status: Optional[str] = None) -> list[Refund]:
        return await self.billing_repo.list_refunds(client_id=client_id, status=status)

    async def _load_job(self, request_type: str, request_id: str):
        if request_type == RequestType.SERVICE_REQUEST.value:
            job = await self.request_repo.get_service_request(request_id)
        else:
            job = await self.request_repo.get_bundle_request(request_id)
        if job is None:
            raise NotFoundError(f"Job '{request_id}' not found")
        return job

    async def refundable_for(self, request_type: str, request_id: str) -> RefundableBalance:
        job = await self._load_job(request_type, request_id)
        refunds = await self.billing_repo.list_refunds_for_request(request_type, request_id)
        return refundable_balance(job.final_price, refunds)

    async def refundable_jobs(self, client_id: str) -> dict:
        """
        Paid jobs of a client that still have a refundable balance, split by
        job kind.
        """
        service_requests = await self.request_repo.list_service_requests(user_ids=[client_id])
        bundle_requests = await self.request_repo.list_bundle_requests(user_ids=[client_id])

        async def _rows(request_type: str, kind: str, jobs) -> list[dict]:
            rows = []
            for job in jobs:
                if not job.final_price or job.final_price <= 0:
                    continue
                refunds = await self.billing_repo.list_refunds_for_request(request_type, job.id)
                balance = refundable_balance(job.final_price, refunds)
                if balance.remaining_refundable <= 0:
                    continue
                rows.append({
                    "id": job.id,
                    "job_number": job_number(kind, job.id),
                    "status": job.status,
                    "created_at": job.created_at,
                    "final_price": balance.original_amount,
                    "total_refunded": balance.total_refunded,
                    "remaining_refundable": balance.remaining_refundable,
                })
            return rows

        return {
            "service_requests": await _rows(RequestType.SERVICE_REQUEST.value, KIND_AD_HOC, service_requests),
            "bundle_requests": await _rows(RequestType.BUNDLE_REQUEST.value, KIND_BUNDLE, bundle_requests),
        }

    async def create_refund(self, req: RefundCreateRequest) -> Refund:
        job = await self._load_job(req.request_type, req.request_id)
        refunds = await self.billing_repo.list_refunds_for_request(req.request_type, req.request_id)
        balance = refundable_balance(job.final_price, refunds)

        try:
            amount = validate_refund_amount(req.refund_type, req.refund_amount, balance.remaining_refundable)
        except RefundValidationError as exc:
            raise ValidationError(str(exc))

        status = initial_status(req.refund_type)
        is_service = req.request_type == RequestType.SERVICE_REQUEST.value
        fields = {
            "request_type": req.request_type,
            "service_request_id": req.request_id if is_service else None,
            "bundle_request_id": None if is_service else req.request_id,
            "client_id": job.user_id,
            "refund_type": req.refund_type,
            "original_amount": balance.original_amount,
            "refund_amount": amount,
            "reason": req.reason,
            "notes": req.notes,
            "status": status,
            "payment_intent_id": job.payment_intent_id,
            "requested_by": req.requested_by,
        }
        if status == RefundStatus.COMPLETED.value:
            fields["processed_by"] = req.requested_by
            fields["processed_at"] = self._clock()

        refund = await self.billing_repo.create_refund(fields)
        if status == RefundStatus.COMPLETED.value:
            AppMetrics.refund_finished(status)

        audit_event("refund.create", entity="refund", entity_id=refund.id, actor=req.requested_by,
                    detail=f"type={req.refund_type} amount={amount} status={status}")
        return refund

    async def process_refund(self, refund_id: str, *, processed_by: Optional[str] = None) -> Refund:
        """
        Send a pending refund to the payment provider.

        Provider failures are stored on the refund (status ``failed``) and
        returned, not raised.
        """
        refund = await self.billing_repo.get_refund(refund_id)
        if refund is None:
            raise NotFoundError(f"Refund '{refund_id}' not found")
        if not can_process(refund):
            raise ValidationError(f"Refund is {refund.status} ({refund.refund_type}) and cannot be processed")

        claimed = await self.billing_repo.mark_refund_processing(refund_id)
        if claimed is None:
            raise ConflictError("Refund is already being processed")

        provider_refund_id = None
        error_message = None
        if not claimed.payment_intent_id:
            error_message = "No payment recorded for this job"
        else:
            try:
                receipt = await self.gateway.refund(
                    claimed.payment_intent_id,
                    claimed.refund_amount,
                    idempotency_key=claimed.id,
                    reason=claimed.reason,
                )
                provider_refund_id = receipt.provider_refund_id
            except PaymentGatewayError as exc:
                logger.warning(f"Refund {refund_id} failed at provider: {exc}")
                error_message = str(exc)
            except Exception as exc:
                # the refund must leave "processing" whatever the provider call did
                logger.exception(f"Refund {refund_id} failed unexpectedly: {exc}")
                error_message = f"{type(exc).__name__}: {exc}"

        status = RefundStatus.FAILED.value if error_message else RefundStatus.COMPLETED.value
        finished = await self.billing_repo.finish_refund(
            refund_id,
            status=status,
            provider_refund_id=provider_refund_id,
            error_message=error_message,
            processed_by=processed_by,
        )
        AppMetrics.refund_finished(status)
        audit_event("refund.process", entity="refund", entity_id=refund_id, actor=processed_by,
                    detail=f"status={status}")

        if status == RefundStatus.COMPLETED.value:
            try:
                await self.notifier.notify(
                    finished.client_id,
                    NotificationType.REFUND_PROCESSED.value,
                    "Refund processed",
                    f"A refund of ${finished.refund_amount} has been issued.",
                    link="/billing",
                )
            except Exception as exc:
                logger.warning(f"Refund notification failed for {refund_id}: {exc}")

        return finished

    # ------------------------------------------------------------------
    # Client companies
    # ------------------------------------------------------------------

    async def list_client_companies(self) -> list[ClientCompany]:
        return await self.directory_repo.list_client_companies()

    async def get_client_company(self, company_id: str) -> ClientCompany:
        company = await self.directory_repo.get_client_company(company_id)
        if company is None or company.deleted_at is not None:
            raise NotFoundError(f"Client company '{company_id}' not found")
        return company

    async def create_client_company(self, req: ClientCompanyCreateRequest) -> ClientCompany:
        company = await self.directory_repo.create_client_company(req.model_dump())
        audit_event("client_company.create", entity="client_company", entity_id=company.id,
                    detail=f"name={company.name}")
        return company

    async def update_client_company(self, company_id: str, req: ClientCompanyUpdateRequest) -> ClientCompany:
        changes = req.changes()
        if not changes:
            raise ValidationError("No fields to update")
        try:
            company = await self.directory_repo.update_client_company(company_id, changes)
        except RecordNotFoundError:
            raise NotFoundError(f"Client company '{company_id}' not found")
        audit_event("client_company.update", entity="client_company", entity_id=company_id,
                    detail=f"fields={sorted(changes)}")
        return company

    async def delete_client_company(self, company_id: str) -> None:
        try:
            await self.directory_repo.soft_delete_client_company(company_id)
        except RecordNotFoundError:
            raise NotFoundError(f"Client company '{company_id}' not found")
        audit_event("client_company.delete", entity="client_company", entity_id=company_id)

    # ------------------------------------------------------------------
    # Vendor profiles
    # ------------------------------------------------------------------

    async def list_vendor_profiles(self, *, include_deleted: bool = False) -> list[VendorProfile]:
        return await self.directory_repo.list_vendor_profiles(include_deleted=include_deleted)

    async def get_vendor_profile(self, profile_id: str) -> VendorProfile:
        profile = await self.directory_repo.get_vendor_profile(profile_id)
        if profile is None:
            raise NotFoundError(f"Vendor profile '{profile_id}' not found")
        return profile

    async def create_vendor_profile(self, req: VendorProfileCreateRequest) -> VendorProfile:
        user = await self.directory_repo.get_user(req.user_id)
        if user is None:
            raise NotFoundError(f"User '{req.user_id}' not found")
        if user.role != UserRole.VENDOR.value:
            raise ValidationError("Vendor profiles can only be created for vendor users")

        try:
            profile = await self.directory_repo.create_vendor_profile(
                req.user_id, req.model_dump(exclude={"user_id"}),
            )
        except DuplicateRecordError:
            raise ConflictError(f"User '{req.user_id}' already has a vendor profile")

        audit_event("vendor_profile.create", entity="vendor_profile", entity_id=profile.id,
                    detail=f"company={profile.company_name}")
        return profile

    async def update_vendor_profile(self, profile_id: str, req: VendorProfileUpdateRequest) -> VendorProfile:
        changes = req.changes()
        if not changes:
            raise ValidationError("No fields to update")
        try:
            profile = await self.directory_repo.update_vendor_profile(profile_id, changes)
        except RecordNotFoundError:
            raise NotFoundError(f"Vendor profile '{profile_id}' not found")
        audit_event("vendor_profile.update", entity="vendor_profile", entity_id=profile_id,
                    detail=f"fields={sorted(changes)}")
        return profile

    async def delete_vendor_profile(self, profile_id: str) -> None:
        try:
            await self.directory_repo.soft_delete_vendor_profile(profile_id)
        except RecordNotFoundError:
            raise NotFoundError(f"Vendor profile '{profile_id}' not found")
        audit_event("vendor_profile.delete", entity="vendor_profile", entity_id=profile_id)

    # ------------------------------------------------------------------
    # Catalog
    # ------------------------------------------------------------------

    async def list_services(self, *, active_only: bool = True) -> list[Service]:
        return await self.directory_repo.list_services(active_only=active_only)

    async def get_service(self, service_id: str) -> Service:
        service = await self.directory_repo.get_service(service_id)
        if service is None:
            raise NotFoundError(f"Service '{service_id}' not found")
        return service

    async def create_service(self, req: ServiceCreateRequest) -> Service:
        service = await self.directory_repo.create_service(req.model_dump())
        audit_event("service.create", entity="service", entity_id=service.id, detail=f"title={service.title}")
        return service

    # ------------------------------------------------------------------
    # Priority distribution
    # ------------------------------------------------------------------

    async def get_priority_distribution(self) -> PriorityDistribution:
        return await load_priority_distribution(self.settings_repo)

    async def set_priority_distribution(self, req: PriorityDistributionModel) -> PriorityDistribution:
        distribution = PriorityDistribution(**req.model_dump())
        try:
            distribution.validate()
        except ValueError as exc:
            raise ValidationError(str(exc))

        await self.settings_repo.set_setting(PRIORITY_DISTRIBUTION_KEY, asdict(distribution))
        audit_event("priority_distribution.update", entity="system_setting", entity_id=PRIORITY_DISTRIBUTION_KEY,
                    detail=f"urgent={distribution.max_urgent_percent} high={distribution.max_high_percent}")
        return distribution


# ---------------------------------------------------------------------------
# Singleton
# ---------------------------------------------------------------------------

_svc: AdminApplicationService | None = None


def get_admin_service() -> AdminApplicationService:
    global _svc
    if _svc is None:
        _svc = AdminApplicationService()
    return _svc


def reset_admin_service() -> None:
    """Reset the singleton (for testing)."""
    global _svc
    _svc = None

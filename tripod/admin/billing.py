# tripod/admin/billing.py
"""
Client billing service: payment recording when jobs are submitted and
delivered, service pack subscriptions and usage, and the monthly pack
overage run.

Provider failures never change a job's workflow status. They are stored on
the payment (status ``failed``, ``failure_reason``), mirrored onto the job's
``client_payment_status`` and reported to admins; an admin retries the
payment once the card problem is fixed.
"""
from __future__ import annotations

from datetime import datetime, timezone, tzinfo
from typing import Callable, Optional, Union
from zoneinfo import ZoneInfo

from tripod.admin.errors import ConflictError, NotFoundError, ValidationError
from tripod.admin.models import PackSubscriptionCreateRequest
from tripod.config import settings
from tripod.core.billing import (
    PackCoverage,
    billing_period,
    client_status_for,
    collect_pack_overage,
    next_invoice_date,
    nothing_owed,
    pack_usage,
    period_range,
    plan_delivery_payment,
    plan_submission_payment,
    previous_billing_period,
    resolve_pack_coverage,
)
from tripod.core.domain import (
    BundleRequest,
    ClientCompany,
    ClientPaymentStatus,
    JobStatus,
    NotificationType,
    PackSubscription,
    Payment,
    PaymentConfiguration,
    PaymentStatus,
    PaymentType,
    ServiceRequest,
    UserRole,
)
from tripod.core.listing import KIND_AD_HOC, job_number
from tripod.infra.audit_log import audit_event
from tripod.infra.logging_config import LogContext, get_logger
from tripod.infra.metrics import AppMetrics
from tripod.infra.payment_gateway import PaymentGatewayError, get_payment_gateway
from tripod.infra.pg_directory_repo_async import get_directory_repo
from tripod.infra.pg_payment_repo_async import get_payment_repo
from tripod.infra.pg_request_repo_async import get_request_repo
from tripod.infra.pg_rows import DuplicateRecordError, RecordNotFoundError

logger = get_logger(__name__)

Job = Union[ServiceRequest, BundleRequest]

_CARD_PAYMENT_TYPES = frozenset({PaymentType.PAY_AS_YOU_GO.value, PaymentType.PACK_OVERAGE.value})


def _charge_key(payment: Payment) -> str:
    # one key per stored attempt: replays of an attempt stay idempotent, a retry after failure does not
    stamp = payment.updated_at or payment.created_at
    return f"{payment.id}:{int(stamp.timestamp())}" if stamp else payment.id


class BillingService:

    def __init__(
        self,
        *,
        payment_repo=None,
        request_repo=None,
        directory_repo=None,
        gateway=None,
        notifier=None,
        clock: Callable[[], datetime] | None = None,
        tz: tzinfo | None = None,
    ) -> None:
        self._payment_repo = payment_repo
        self._request_repo = request_repo
        self._directory_repo = directory_repo
        self._gateway = gateway
        self._notifier = notifier
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._tz = tz

    @property
    def payment_repo(self):
        if self._payment_repo is None:
            self._payment_repo = get_payment_repo()
        return self._payment_repo

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

    @property
    def tz(self) -> tzinfo:
        if self._tz is None:
            self._tz = ZoneInfo(settings.automation_timezone)
        return self._tz

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _company_for_user(self, user_id: str) -> Optional[ClientCompany]:
        user = await self.directory_repo.get_user(user_id)
        if user is None or not user.client_company_id:
            return None
        company = await self.directory_repo.get_client_company(user.client_company_id)
        if company is None or company.deleted_at is not None:
            return None
        return company

    async def _set_job_status(self, kind: str, job: Job, status: str) -> Job:
        if job.client_payment_status == status:
            return job
        fields = {"client_payment_status": status}
        if kind == KIND_AD_HOC:
            return await self.request_repo.update_service_request(job.id, fields)
        return await self.request_repo.update_bundle_request(job.id, fields)

    async def _sync_jobs(self, payment: Payment) -> None:
        if payment.payment_type == PaymentType.PACK_OVERAGE.value:
            if payment.status == PaymentStatus.SUCCEEDED.value:
                await self.payment_repo.mark_jobs_paid(payment.included_job_ids)
            return

        fields = {"client_payment_status": client_status_for(payment.status)}
        if payment.service_request_id:
            await self.request_repo.update_service_request(payment.service_request_id, fields)
        elif payment.bundle_request_id:
            await self.request_repo.update_bundle_request(payment.bundle_request_id, fields)

    async def _notify_failure(self, payment: Payment, company: ClientCompany, title: str) -> None:
        recipients = [admin.id for admin in await self.directory_repo.list_active_admins()]
        if company.primary_contact_id:
            recipients.append(company.primary_contact_id)
        message = f"{title} for {company.name} failed: {payment.failure_reason or 'unknown error'}"
        for user_id in recipients:
            try:
                await self.notifier.notify(
                    user_id, NotificationType.PAYMENT_FAILED.value, "Payment failed", message, link="/billing",
                )
            except Exception as exc:
                logger.warning(f"Payment failure notification to {user_id} failed: {exc}")

    async def _charge(self, payment: Payment, company: ClientCompany, description: str) -> Payment:
        """Charge the company's saved card for ``payment`` and store the outcome."""
        log = LogContext(logger, payment_id=payment.id, client_company_id=company.id)

        if not self.gateway.is_configured():
            log.warning("Payment provider not configured, payment left pending")
            return await self.payment_repo.update_payment(
                payment.id, {"status": PaymentStatus.PENDING.value,
                             "failure_reason": "Payment provider is not configured"},
            )
        if not company.stripe_customer_id or not company.default_payment_method_id:
            log.warning("No payment method on file, payment left pending")
            return await self.payment_repo.update_payment(
                payment.id, {"status": PaymentStatus.PENDING.value, "failure_reason": "No payment method on file"},
            )

        try:
            receipt = await self.gateway.charge(
                company.stripe_customer_id,
                company.default_payment_method_id,
                payment.amount,
                idempotency_key=_charge_key(payment),
                description=description,
            )
        except PaymentGatewayError as exc:
            log.warning(f"Charge failed at provider: {exc}")
            return await self.payment_repo.update_payment(
                payment.id, {"status": PaymentStatus.FAILED.value, "failure_reason": str(exc)},
            )
        except Exception as exc:
            # the payment must not stay pending whatever the provider call did
            log.exception(f"Charge failed unexpectedly: {exc}")
            return await self.payment_repo.update_payment(
                payment.id, {"status": PaymentStatus.FAILED.value,
                             "failure_reason": f"{type(exc).__name__}: {exc}"},
            )

        fields = {"provider_payment_id": receipt.provider_payment_id, "failure_reason": None}
        if receipt.succeeded:
            fields["status"] = PaymentStatus.SUCCEEDED.value
            fields["paid_at"] = self._clock()
        log.info(f"Charge {receipt.provider_payment_id} status={receipt.status}")
        return await self.payment_repo.update_payment(payment.id, fields)

    # ------------------------------------------------------------------
    # Pack coverage
    # ------------------------------------------------------------------

    async def _active_pack(self, user_id: str, now: datetime):
        subscription = await self.payment_repo.get_active_subscription(user_id, now)
        if subscription is None:
            return None, None
        pack = await self.directory_repo.get_service_pack(subscription.pack_id)
        if pack is None or not pack.is_active:
            return subscription, None
        return subscription, pack

    async def pack_coverage(self, user_id: str, service_id: str) -> PackCoverage:
        """Whether the client's next job for ``service_id`` is covered by their pack this month."""
        now = self._clock()
        _, pack = await self._active_pack(user_id, now)
        if pack is None:
            return PackCoverage.none()
        rng = period_range(billing_period(now, self.tz), self.tz)
        used = await self.payment_repo.count_pack_covered(user_id, rng.start, rng.end)
        return resolve_pack_coverage(pack, service_id, used.get(service_id, 0))

    async def pack_usage(self, user_id: str) -> dict:
        now = self._clock()
        period = billing_period(now, self.tz)
        subscription, pack = await self._active_pack(user_id, now)
        if pack is None:
            return {"user_id": user_id, "billing_period": period, "subscription_id": None, "services": []}

        rng = period_range(period, self.tz)
        used = await self.payment_repo.count_pack_covered(user_id, rng.start, rng.end)
        return {
            "user_id": user_id,
            "billing_period": period,
            "subscription_id": subscription.id,
            "pack_id": pack.id,
            "pack_name": pack.name,
            "services": pack_usage(pack, used),
        }

    async def create_pack_subscription(self, req: PackSubscriptionCreateRequest) -> PackSubscription:
        user = await self.directory_repo.get_user(req.user_id)
        if user is None:
            raise NotFoundError(f"User '{req.user_id}' not found")
        if user.role != UserRole.CLIENT.value:
            raise ValidationError("Only clients can subscribe to a service pack")

        pack = await self.directory_repo.get_service_pack(req.pack_id)
        if pack is None:
            raise NotFoundError(f"Service pack '{req.pack_id}' not found")
        if not pack.is_active:
            raise ValidationError(f"Service pack '{pack.name}' is not available")

        subscription = await self.payment_repo.create_pack_subscription({
            "user_id": user.id,
            "pack_id": pack.id,
            "start_date": req.start_date or self._clock(),
            "end_date": req.end_date,
        })
        audit_event("pack_subscription.create", entity="pack_subscription", entity_id=subscription.id,
                    detail=f"user={user.id} pack={pack.id}")
        return subscription

    async def list_pack_subscriptions(self, *, user_id: Optional[str] = None) -> list[PackSubscription]:
        return await self.payment_repo.list_pack_subscriptions(user_id=user_id)

    # ------------------------------------------------------------------
    # Payment recording
    # ------------------------------------------------------------------

    async def record_submission_payment(self, kind: str, job: Job) -> Job:
        """
        Record what a newly submitted job owes and charge pay-as-you-go
        clients upfront. Returns the job with its updated payment status.
        """
        company = await self._company_for_user(job.user_id)
        if company is None:
            logger.warning(f"No client company for user {job.user_id}, payment for {job.id} not recorded")
            return job

        pack_covered = getattr(job, "is_pack_covered", False)
        plan = plan_submission_payment(
            company.payment_configuration,
            job.final_price,
            pack_covered=pack_covered,
            pack_overage=getattr(job, "is_pack_overage", False),
            prepaid=bool(job.payment_intent_id),
        )
        if plan is None:
            if nothing_owed(job.final_price, pack_covered):
                return await self._set_job_status(kind, job, ClientPaymentStatus.NOT_REQUIRED.value)
            return job

        now = self._clock()
        succeeded = plan.status == PaymentStatus.SUCCEEDED.value
        is_service = kind == KIND_AD_HOC
        payment = await self.payment_repo.create_payment({
            "client_company_id": company.id,
            "service_request_id": job.id if is_service else None,
            "bundle_request_id": None if is_service else job.id,
            "amount": job.final_price,
            "payment_type": plan.payment_type,
            "status": plan.status,
            "provider_payment_id": job.payment_intent_id,
            "paid_at": now if succeeded else None,
        })
        if plan.charge_now:
            payment = await self._charge(payment, company, f"Job {job_number(kind, job.id)}")

        AppMetrics.payment_recorded(payment.payment_type, payment.status)
        logger.info(f"Payment {payment.id} for {job.id}: {plan.message}, status={payment.status}")
        if payment.status == PaymentStatus.FAILED.value:
            await self._notify_failure(payment, company, f"Payment for job {job_number(kind, job.id)}")

        return await self._set_job_status(kind, job, client_status_for(payment.status))

    async def record_delivery_payment(self, kind: str, job: Job, *, actor: Optional[str] = None) -> Job:
        """
        Record the invoice or royalty deduction a delivered job owes. A job
        delivered again after a change request is not billed twice.
        """
        company = await self._company_for_user(job.user_id)
        if company is None:
            return job

        plan = plan_delivery_payment(
            company.payment_configuration, job.final_price, pack_covered=getattr(job, "is_pack_covered", False),
        )
        if plan is None:
            return job
        if await self.payment_repo.list_payments(request_id=job.id):
            return job

        now = self._clock()
        succeeded = plan.status == PaymentStatus.SUCCEEDED.value
        is_service = kind == KIND_AD_HOC
        scheduled_for = None
        if plan.payment_type == PaymentType.MONTHLY_INVOICE.value:
            scheduled_for = next_invoice_date(company.invoice_day, now.astimezone(self.tz).date())

        payment = await self.payment_repo.create_payment({
            "client_company_id": company.id,
            "service_request_id": job.id if is_service else None,
            "bundle_request_id": None if is_service else job.id,
            "amount": job.final_price,
            "payment_type": plan.payment_type,
            "status": plan.status,
            "scheduled_for": scheduled_for,
            "marked_paid_by": actor if succeeded else None,
            "paid_at": now if succeeded else None,
        })
        AppMetrics.payment_recorded(payment.payment_type, payment.status)
        logger.info(f"Payment {payment.id} for {job.id}: {plan.message}")
        return await self._set_job_status(kind, job, client_status_for(payment.status))

    # ------------------------------------------------------------------
    # Payments
    # ------------------------------------------------------------------

    async def list_payments(
        self,
        *,
        client_company_id: Optional[str] = None,
        request_id: Optional[str] = None,
        status: Optional[str] = None,
    ) -> list[Payment]:
        return await self.payment_repo.list_payments(
            client_company_id=client_company_id, request_id=request_id, status=status,
        )

    async def get_payment(self, payment_id: str) -> Payment:
        payment = await self.payment_repo.get_payment(payment_id)
        if payment is None:
            raise NotFoundError(f"Payment '{payment_id}' not found")
        return payment

    async def retry_payment(self, payment_id: str, *, actor: Optional[str] = None) -> Payment:
        """Charge a pending or failed card payment again."""
        payment = await self.get_payment(payment_id)
        if payment.status == PaymentStatus.SUCCEEDED.value:
            raise ConflictError("Payment already succeeded")
        if payment.payment_type not in _CARD_PAYMENT_TYPES:
            raise ValidationError(f"{payment.payment_type} payments are not charged to a card")

        company = await self.directory_repo.get_client_company(payment.client_company_id)
        if company is None:
            raise NotFoundError(f"Client company '{payment.client_company_id}' not found")

        charged = await self._charge(payment, company, f"Payment {payment.id}")
        AppMetrics.payment_recorded(charged.payment_type, charged.status)
        await self._sync_jobs(charged)
        audit_event("payment.retry", entity="payment", entity_id=payment_id, actor=actor,
                    detail=f"status={charged.status}")
        return charged

    async def mark_payment_paid(self, payment_id: str, *, actor: Optional[str] = None) -> Payment:
        """Settle a payment collected outside the provider, e.g. a paid monthly invoice."""
        payment = await self.get_payment(payment_id)
        if payment.status == PaymentStatus.SUCCEEDED.value:
            raise ConflictError("Payment already succeeded")

        try:
            updated = await self.payment_repo.update_payment(payment_id, {
                "status": PaymentStatus.SUCCEEDED.value,
                "failure_reason": None,
                "marked_paid_by": actor,
                "paid_at": self._clock(),
            })
        except RecordNotFoundError:
            raise NotFoundError(f"Payment '{payment_id}' not found")

        AppMetrics.payment_recorded(updated.payment_type, updated.status)
        await self._sync_jobs(updated)
        audit_event("payment.mark_paid", entity="payment", entity_id=payment_id, actor=actor)
        return updated

    # ------------------------------------------------------------------
    # Monthly pack overage
    # ------------------------------------------------------------------

    async def run_pack_overage_billing(self, period: Optional[str] = None) -> dict:
        """
        Charge pay-as-you-go companies for the delivered overage jobs of one
        month (default: the month before the current one).
        """
        period = period or previous_billing_period(self._clock(), self.tz)
        try:
            rng = period_range(period, self.tz)
        except ValueError as exc:
            raise ValidationError(str(exc))

        logger.info(f"Pack overage billing started for {period}")
        results = []
        for company in await self.directory_repo.list_client_companies():
            if company.deleted_at is not None:
                continue
            if company.payment_configuration != PaymentConfiguration.PAY_AS_YOU_GO.value:
                continue
            try:
                result = await self._bill_company_overage(company, period, rng)
            except Exception as exc:
                logger.exception(f"Pack overage billing failed for {company.id}: {exc}")
                result = {"client_company_id": company.id, "company_name": company.name,
                          "success": False, "error": f"{type(exc).__name__}: {exc}"}
            if result is not None:
                results.append(result)

        succeeded = sum(1 for r in results if r["success"])
        logger.info(f"Pack overage billing for {period}: {succeeded} succeeded, {len(results) - succeeded} failed")
        return {
            "billing_period": period,
            "total_clients": len(results),
            "success_count": succeeded,
            "failed_count": len(results) - succeeded,
            "results": results,
        }

    async def _bill_company_overage(self, company: ClientCompany, period: str, rng) -> Optional[dict]:
        result = {"client_company_id": company.id, "company_name": company.name}

        existing = await self.payment_repo.get_overage_payment(company.id, period)
        if existing is not None and existing.status == PaymentStatus.SUCCEEDED.value:
            return {**result, "success": True, "payment_id": existing.id, "amount": existing.amount,
                    "already_paid": True}

        member_ids = await self.directory_repo.list_company_member_ids(company.id)
        if not member_ids:
            return None
        jobs = await self.request_repo.list_service_requests(user_ids=member_ids, status=JobStatus.DELIVERED.value)
        batch = collect_pack_overage(jobs, rng)
        if not batch:
            return None

        fields = {"amount": batch.total, "included_job_ids": batch.job_ids}
        if existing is not None:
            payment = await self.payment_repo.update_payment(existing.id, fields)
        else:
            try:
                payment = await self.payment_repo.create_payment({
                    **fields,
                    "client_company_id": company.id,
                    "payment_type": PaymentType.PACK_OVERAGE.value,
                    "status": PaymentStatus.PENDING.value,
                    "billing_period": period,
                })
            except DuplicateRecordError:
                return {**result, "success": False, "error": f"Another run is billing {period}"}

        charged = await self._charge(payment, company, f"Pack overage services for {period}")
        AppMetrics.payment_recorded(charged.payment_type, charged.status)
        await self._sync_jobs(charged)
        if charged.status == PaymentStatus.FAILED.value:
            await self._notify_failure(charged, company, f"{period} pack overage charge")

        return {
            **result,
            "success": charged.status == PaymentStatus.SUCCEEDED.value,
            "payment_id": charged.id,
            "status": charged.status,
            "amount": batch.total,
            "jobs": len(batch.job_ids),
            "error": charged.failure_reason,
        }


_svc: BillingService | None = None


def get_billing_service() -> BillingService:
    global _svc
    if _svc is None:
        _svc = BillingService()
    return _svc


def reset_billing_service() -> None:
    global _svc
    _svc = None

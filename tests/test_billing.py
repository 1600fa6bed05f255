# tests/test_billing.py
"""Tests for tripod/core/billing.py and tripod/admin/billing.py."""
from __future__ import annotations

from dataclasses import replace
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock
from zoneinfo import ZoneInfo

import pytest

from tripod.admin.billing import BillingService
from tripod.admin.errors import ConflictError, ValidationError
from tripod.admin.models import PackSubscriptionCreateRequest
from tripod.core.billing import (
    PackCoverage,
    billing_period,
    client_status_for,
    collect_pack_overage,
    next_invoice_date,
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
    PackSubscription,
    Payment,
    ServicePack,
    ServicePackItem,
    ServiceRequest,
    User,
)
from tripod.core.listing import KIND_AD_HOC, KIND_BUNDLE
from tripod.infra.payment_gateway import ChargeReceipt, PaymentGatewayError
from tripod.infra.pg_rows import DuplicateRecordError

NOW = datetime(2024, 6, 12, 15, 0, tzinfo=timezone.utc)
UTC = timezone.utc

PACK = ServicePack(
    id="pack-1", name="Starter", price=Decimal("120"),
    items=[ServicePackItem("svc-1", 3), ServicePackItem("svc-2", 1)],
)


# ============================================================================
# Pack coverage
# ============================================================================

class TestPackCoverage:
    def test_no_pack(self):
        assert resolve_pack_coverage(None, "svc-1", 0) == PackCoverage.none()

    def test_service_outside_pack(self):
        coverage = resolve_pack_coverage(PACK, "svc-9", 0)
        assert coverage.covered is False
        assert coverage.overage is False

    def test_within_quantity_is_covered(self):
        coverage = resolve_pack_coverage(PACK, "svc-1", 2)
        assert coverage.covered is True
        assert coverage.overage is False
        assert (coverage.included, coverage.used) == (3, 2)

    def test_beyond_quantity_is_overage(self):
        coverage = resolve_pack_coverage(PACK, "svc-1", 3)
        assert coverage.covered is False
        assert coverage.overage is True

    def test_usage_rows(self):
        rows = pack_usage(PACK, {"svc-1": 4})
        assert rows[0] == {"service_id": "svc-1", "included": 3, "used": 4, "remaining": 0}
        assert rows[1]["remaining"] == 1


# ============================================================================
# Payment plans
# ============================================================================

class TestPaymentPlans:
    def test_pay_as_you_go_charged_at_submission(self):
        plan = plan_submission_payment("pay_as_you_go", Decimal("50"))
        assert plan.payment_type == "pay_as_you_go"
        assert plan.status == "pending"
        assert plan.charge_now is True

    def test_checkout_payment_is_already_settled(self):
        plan = plan_submission_payment("pay_as_you_go", Decimal("50"), prepaid=True)
        assert plan.status == "succeeded"
        assert plan.charge_now is False

    @pytest.mark.parametrize("amount,flags", [
        (Decimal("0"), {}),
        (None, {}),
        (Decimal("50"), {"pack_covered": True}),
        (Decimal("50"), {"pack_overage": True}),
    ])
    def test_nothing_charged_upfront(self, amount, flags):
        assert plan_submission_payment("pay_as_you_go", amount, **flags) is None

    def test_other_configurations_pay_on_delivery(self):
        assert plan_submission_payment("monthly_payment", Decimal("50")) is None
        assert plan_submission_payment("deduct_from_royalties", Decimal("50")) is None

    def test_delivery_plans(self):
        monthly = plan_delivery_payment("monthly_payment", Decimal("50"))
        royalties = plan_delivery_payment("deduct_from_royalties", Decimal("50"))
        assert (monthly.payment_type, monthly.status) == ("monthly_invoice", "pending")
        assert (royalties.payment_type, royalties.status) == ("deduct_from_royalties", "succeeded")
        assert plan_delivery_payment("pay_as_you_go", Decimal("50")) is None
        assert plan_delivery_payment("monthly_payment", Decimal("50"), pack_covered=True) is None

    def test_client_status_mapping(self):
        assert client_status_for("succeeded") == "paid"
        assert client_status_for("failed") == "failed"
        assert client_status_for("pending") == "pending"

    def test_next_invoice_date(self):
        assert next_invoice_date(15, date(2024, 6, 12)) == date(2024, 6, 15)
        assert next_invoice_date(12, date(2024, 6, 12)) == date(2024, 7, 12)
        assert next_invoice_date(5, date(2024, 12, 20)) == date(2025, 1, 5)
        assert next_invoice_date(31, date(2024, 1, 30)) == date(2024, 2, 28)


# ============================================================================
# Billing periods & overage collection
# ============================================================================

class TestBillingPeriods:
    def test_period_in_local_time(self):
        chicago = ZoneInfo("America/Chicago")
        # 03:00 UTC on July 1st is still June 30th in Chicago
        assert billing_period(datetime(2024, 7, 1, 3, 0, tzinfo=UTC), chicago) == "2024-06"

    def test_previous_period_wraps_year(self):
        assert previous_billing_period(datetime(2024, 1, 10, tzinfo=UTC)) == "2023-12"

    def test_period_range_covers_whole_month(self):
        rng = period_range("2024-02")
        assert rng.start == datetime(2024, 2, 1, tzinfo=UTC)
        assert rng.end.date() == date(2024, 2, 29)

    @pytest.mark.parametrize("period", ["2024-13", "24-06", "", "2024/06"])
    def test_bad_period(self, period):
        with pytest.raises(ValueError):
            period_range(period)

    def test_collect_pack_overage(self):
        june = period_range("2024-06")
        in_june = datetime(2024, 6, 20, tzinfo=UTC)

        def job(job_id, **kw):
            fields = {"status": "delivered", "is_pack_overage": True, "delivered_at": in_june,
                      "final_price": Decimal("40")}
            fields.update(kw)
            return ServiceRequest(id=job_id, user_id="c1", service_id="svc-1", **fields)

        batch = collect_pack_overage([
            job("a"),
            job("b", final_price=Decimal("25.50")),
            job("paid", client_payment_status="paid"),
            job("covered", is_pack_overage=False),
            job("open", status="in-progress"),
            job("may", delivered_at=datetime(2024, 5, 31, 23, tzinfo=UTC)),
        ], june)

        assert batch.job_ids == ["a", "b"]
        assert batch.total == Decimal("65.50")
        assert bool(batch) is True

    def test_empty_batch_is_falsy(self):
        assert not collect_pack_overage([], period_range("2024-06"))


# ============================================================================
# Billing service
# ============================================================================

def _company(configuration="pay_as_you_go", **overrides) -> ClientCompany:
    fields = {
        "id": "co-1", "name": "Acme", "payment_configuration": configuration, "invoice_day": 15,
        "stripe_customer_id": "cus_1", "default_payment_method_id": "pm_1",
    }
    fields.update(overrides)
    return ClientCompany(**fields)


def _billing(company: ClientCompany | None = None, **overrides) -> BillingService:
    deps = {
        "payment_repo": AsyncMock(),
        "request_repo": AsyncMock(),
        "directory_repo": AsyncMock(),
        "gateway": MagicMock(),
        "notifier": AsyncMock(),
    }
    deps.update(overrides)
    svc = BillingService(clock=lambda: NOW, tz=UTC, **deps)

    # payments handed out by the mocked repository, by id
    stored: dict[str, Payment] = {}

    def create_payment(fields):
        stored["pay-1"] = Payment(id="pay-1", **fields)
        return stored["pay-1"]

    def update_payment(payment_id, fields):
        base = stored.get(payment_id) or svc.payment_repo.get_payment.return_value
        stored[payment_id] = replace(base, **fields)
        return stored[payment_id]

    svc.gateway.is_configured.return_value = True
    svc.gateway.charge = AsyncMock(return_value=ChargeReceipt("pi_9", "succeeded"))
    svc.directory_repo.get_user.return_value = User(
        id="client-1", username="c", role="client", client_company_id="co-1",
    )
    svc.directory_repo.get_client_company.return_value = company or _company()
    svc.directory_repo.list_active_admins.return_value = [User(id="admin-1", username="a", role="admin")]
    svc.payment_repo.create_payment.side_effect = create_payment
    svc.payment_repo.update_payment.side_effect = update_payment
    svc.payment_repo.list_payments.return_value = []
    svc.request_repo.update_service_request.side_effect = lambda rid, fields: ServiceRequest(
        id=rid, user_id="client-1", service_id="svc-1", **fields,
    )
    svc.request_repo.update_bundle_request.side_effect = lambda rid, fields: BundleRequest(
        id=rid, user_id="client-1", bundle_id="bun-1", **fields,
    )
    return svc


def _job(**overrides) -> ServiceRequest:
    fields = {"id": "req-1", "user_id": "client-1", "service_id": "svc-1", "final_price": Decimal("50.00")}
    fields.update(overrides)
    return ServiceRequest(**fields)


class TestSubmissionPayments:
    @pytest.mark.asyncio
    async def test_pay_as_you_go_charged_and_marked_paid(self):
        svc = _billing()

        job = await svc.record_submission_payment(KIND_AD_HOC, _job())

        fields = svc.payment_repo.create_payment.call_args[0][0]
        assert fields["payment_type"] == "pay_as_you_go"
        assert fields["service_request_id"] == "req-1"
        assert fields["amount"] == Decimal("50.00")
        args = svc.gateway.charge.call_args
        assert args[0][:3] == ("cus_1", "pm_1", Decimal("50.00"))
        assert args.kwargs["idempotency_key"] == "pay-1"
        last_update = svc.payment_repo.update_payment.call_args[0][1]
        assert last_update["status"] == "succeeded"
        assert last_update["provider_payment_id"] == "pi_9"
        assert job.client_payment_status == "paid"

    @pytest.mark.asyncio
    async def test_declined_card_fails_payment_not_job(self):
        svc = _billing()
        svc.gateway.charge.side_effect = PaymentGatewayError(402, "insufficient_funds", "Declined")

        job = await svc.record_submission_payment(KIND_AD_HOC, _job(status="pending"))

        last_update = svc.payment_repo.update_payment.call_args[0][1]
        assert last_update["status"] == "failed"
        assert "insufficient_funds" in last_update["failure_reason"]
        assert job.client_payment_status == "failed"
        assert job.status == "pending"
        svc.request_repo.update_service_request.assert_awaited_once_with(
            "req-1", {"client_payment_status": "failed"},
        )
        assert svc.notifier.notify.call_args[0][0] == "admin-1"

    @pytest.mark.asyncio
    async def test_unexpected_charge_error_is_stored(self):
        svc = _billing()
        svc.gateway.charge.side_effect = RuntimeError("Session is closed")

        job = await svc.record_submission_payment(KIND_AD_HOC, _job())

        last_update = svc.payment_repo.update_payment.call_args[0][1]
        assert last_update["status"] == "failed"
        assert "Session is closed" in last_update["failure_reason"]
        assert job.client_payment_status == "failed"

    @pytest.mark.asyncio
    async def test_without_payment_method_left_pending(self):
        svc = _billing(_company(default_payment_method_id=None))

        job = await svc.record_submission_payment(KIND_AD_HOC, _job())

        svc.gateway.charge.assert_not_called()
        last_update = svc.payment_repo.update_payment.call_args[0][1]
        assert last_update == {"status": "pending", "failure_reason": "No payment method on file"}
        assert job.client_payment_status == "pending"

    @pytest.mark.asyncio
    async def test_unconfigured_provider_left_pending(self):
        svc = _billing()
        svc.gateway.is_configured.return_value = False

        await svc.record_submission_payment(KIND_AD_HOC, _job())

        svc.gateway.charge.assert_not_called()
        assert svc.payment_repo.update_payment.call_args[0][1]["status"] == "pending"

    @pytest.mark.asyncio
    async def test_checkout_payment_recorded_without_charge(self):
        svc = _billing()

        job = await svc.record_submission_payment(KIND_AD_HOC, _job(payment_intent_id="pi_checkout"))

        fields = svc.payment_repo.create_payment.call_args[0][0]
        assert fields["status"] == "succeeded"
        assert fields["provider_payment_id"] == "pi_checkout"
        assert fields["paid_at"] == NOW
        svc.gateway.charge.assert_not_called()
        assert job.client_payment_status == "paid"

    @pytest.mark.asyncio
    async def test_pack_covered_job_needs_no_payment(self):
        svc = _billing()

        job = await svc.record_submission_payment(KIND_AD_HOC, _job(is_pack_covered=True))

        svc.payment_repo.create_payment.assert_not_awaited()
        assert job.client_payment_status == "not_required"

    @pytest.mark.asyncio
    async def test_overage_job_waits_for_monthly_run(self):
        svc = _billing()

        job = await svc.record_submission_payment(KIND_AD_HOC, _job(is_pack_overage=True))

        svc.payment_repo.create_payment.assert_not_awaited()
        svc.request_repo.update_service_request.assert_not_awaited()
        assert job.client_payment_status == "unpaid"

    @pytest.mark.asyncio
    async def test_monthly_client_not_charged_at_submission(self):
        svc = _billing(_company("monthly_payment"))

        job = await svc.record_submission_payment(KIND_AD_HOC, _job())

        svc.payment_repo.create_payment.assert_not_awaited()
        assert job.client_payment_status == "unpaid"

    @pytest.mark.asyncio
    async def test_bundle_payment_references_bundle(self):
        svc = _billing()
        bundle = BundleRequest(id="b-1", user_id="client-1", bundle_id="bun-1", final_price=Decimal("90"))

        job = await svc.record_submission_payment(KIND_BUNDLE, bundle)

        fields = svc.payment_repo.create_payment.call_args[0][0]
        assert fields["bundle_request_id"] == "b-1"
        assert fields["service_request_id"] is None
        assert job.client_payment_status == "paid"

    @pytest.mark.asyncio
    async def test_user_without_company_is_skipped(self):
        svc = _billing()
        svc.directory_repo.get_user.return_value = User(id="client-1", username="c", role="client")

        job = await svc.record_submission_payment(KIND_AD_HOC, _job())

        svc.payment_repo.create_payment.assert_not_awaited()
        assert job.id == "req-1"


class TestDeliveryPayments:
    @pytest.mark.asyncio
    async def test_monthly_invoice_scheduled(self):
        svc = _billing(_company("monthly_payment"))

        job = await svc.record_delivery_payment(KIND_AD_HOC, _job(status="delivered"), actor="admin-1")

        fields = svc.payment_repo.create_payment.call_args[0][0]
        assert fields["payment_type"] == "monthly_invoice"
        assert fields["status"] == "pending"
        assert fields["scheduled_for"] == date(2024, 6, 15)
        assert fields["paid_at"] is None
        assert job.client_payment_status == "pending"

    @pytest.mark.asyncio
    async def test_royalty_deduction_settled(self):
        svc = _billing(_company("deduct_from_royalties"))

        job = await svc.record_delivery_payment(KIND_AD_HOC, _job(status="delivered"), actor="admin-1")

        fields = svc.payment_repo.create_payment.call_args[0][0]
        assert fields["payment_type"] == "deduct_from_royalties"
        assert fields["status"] == "succeeded"
        assert fields["marked_paid_by"] == "admin-1"
        assert job.client_payment_status == "paid"

    @pytest.mark.asyncio
    async def test_redelivery_not_billed_twice(self):
        svc = _billing(_company("monthly_payment"))
        svc.payment_repo.list_payments.return_value = [
            Payment(id="pay-0", client_company_id="co-1", payment_type="monthly_invoice", amount=Decimal("50")),
        ]

        await svc.record_delivery_payment(KIND_AD_HOC, _job(status="delivered"))

        svc.payment_repo.create_payment.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_pay_as_you_go_has_nothing_at_delivery(self):
        svc = _billing()

        await svc.record_delivery_payment(KIND_AD_HOC, _job(status="delivered"))

        svc.payment_repo.create_payment.assert_not_awaited()


class TestPaymentActions:
    def _failed(self, **overrides) -> Payment:
        fields = {
            "id": "pay-1", "client_company_id": "co-1", "payment_type": "pay_as_you_go",
            "amount": Decimal("50"), "status": "failed", "service_request_id": "req-1",
            "updated_at": NOW - timedelta(hours=1),
        }
        fields.update(overrides)
        return Payment(**fields)

    @pytest.mark.asyncio
    async def test_retry_charges_with_fresh_key(self):
        svc = _billing()
        failed = self._failed()
        svc.payment_repo.get_payment.return_value = failed

        result = await svc.retry_payment("pay-1", actor="admin-1")

        assert result.status == "succeeded"
        key = svc.gateway.charge.call_args.kwargs["idempotency_key"]
        assert key == f"pay-1:{int(failed.updated_at.timestamp())}"
        svc.request_repo.update_service_request.assert_awaited_once_with(
            "req-1", {"client_payment_status": "paid"},
        )

    @pytest.mark.asyncio
    async def test_retry_rejects_settled_or_invoice_payments(self):
        svc = _billing()
        svc.payment_repo.get_payment.return_value = self._failed(status="succeeded")
        with pytest.raises(ConflictError):
            await svc.retry_payment("pay-1")

        svc.payment_repo.get_payment.return_value = self._failed(payment_type="monthly_invoice")
        with pytest.raises(ValidationError):
            await svc.retry_payment("pay-1")

    @pytest.mark.asyncio
    async def test_mark_invoice_paid(self):
        svc = _billing()
        svc.payment_repo.get_payment.return_value = self._failed(payment_type="monthly_invoice", status="pending")

        result = await svc.mark_payment_paid("pay-1", actor="admin-1")

        assert result.status == "succeeded"
        assert result.marked_paid_by == "admin-1"
        svc.request_repo.update_service_request.assert_awaited_once_with(
            "req-1", {"client_payment_status": "paid"},
        )


# ============================================================================
# Pack subscriptions & the overage run
# ============================================================================

class TestPackSubscriptions:
    @pytest.mark.asyncio
    async def test_coverage_counts_this_month(self):
        svc = _billing()
        svc.payment_repo.get_active_subscription.return_value = PackSubscription(
            id="sub-1", user_id="client-1", pack_id="pack-1", start_date=NOW - timedelta(days=40),
        )
        svc.directory_repo.get_service_pack.return_value = PACK
        svc.payment_repo.count_pack_covered.return_value = {"svc-1": 3}

        coverage = await svc.pack_coverage("client-1", "svc-1")

        assert coverage.overage is True
        _, start, end = svc.payment_repo.count_pack_covered.call_args[0]
        assert start == datetime(2024, 6, 1, tzinfo=UTC)
        assert end.date() == date(2024, 6, 30)

    @pytest.mark.asyncio
    async def test_no_subscription_means_no_coverage(self):
        svc = _billing()
        svc.payment_repo.get_active_subscription.return_value = None

        assert await svc.pack_coverage("client-1", "svc-1") == PackCoverage.none()
        svc.payment_repo.count_pack_covered.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_usage_report(self):
        svc = _billing()
        svc.payment_repo.get_active_subscription.return_value = PackSubscription(
            id="sub-1", user_id="client-1", pack_id="pack-1", start_date=NOW,
        )
        svc.directory_repo.get_service_pack.return_value = PACK
        svc.payment_repo.count_pack_covered.return_value = {"svc-1": 1}

        usage = await svc.pack_usage("client-1")

        assert usage["billing_period"] == "2024-06"
        assert usage["services"][0]["remaining"] == 2

    @pytest.mark.asyncio
    async def test_only_clients_subscribe(self):
        svc = _billing()
        svc.directory_repo.get_user.return_value = User(id="v1", username="v", role="vendor")

        with pytest.raises(ValidationError, match="Only clients"):
            await svc.create_pack_subscription(PackSubscriptionCreateRequest(user_id="v1", pack_id="pack-1"))

    @pytest.mark.asyncio
    async def test_subscription_starts_now_by_default(self):
        svc = _billing()
        svc.directory_repo.get_service_pack.return_value = PACK
        svc.payment_repo.create_pack_subscription.side_effect = lambda fields: PackSubscription(id="sub-1", **fields)

        sub = await svc.create_pack_subscription(PackSubscriptionCreateRequest(user_id="client-1", pack_id="pack-1"))

        assert sub.start_date == NOW
        assert sub.pack_id == "pack-1"


class TestPackOverageRun:
    def _seed(self, svc: BillingService, *companies: ClientCompany) -> None:
        svc.directory_repo.list_client_companies.return_value = list(companies)
        svc.directory_repo.list_company_member_ids.return_value = ["client-1"]
        svc.payment_repo.get_overage_payment.return_value = None
        delivered = datetime(2024, 5, 20, tzinfo=UTC)
        svc.request_repo.list_service_requests.return_value = [
            ServiceRequest(id="r1", user_id="client-1", service_id="svc-1", status="delivered",
                           is_pack_overage=True, delivered_at=delivered, final_price=Decimal("40")),
            ServiceRequest(id="r2", user_id="client-1", service_id="svc-1", status="delivered",
                           is_pack_overage=True, delivered_at=delivered, final_price=Decimal("10")),
        ]

    @pytest.mark.asyncio
    async def test_charges_last_month_overage(self):
        svc = _billing()
        self._seed(svc, _company(), _company("monthly_payment", id="co-2"))

        summary = await svc.run_pack_overage_billing()

        assert summary["billing_period"] == "2024-05"
        assert summary["success_count"] == 1
        fields = svc.payment_repo.create_payment.call_args[0][0]
        assert fields["payment_type"] == "pack_overage"
        assert fields["amount"] == Decimal("50")
        assert fields["included_job_ids"] == ["r1", "r2"]
        svc.payment_repo.mark_jobs_paid.assert_awaited_once_with(["r1", "r2"])
        svc.directory_repo.list_company_member_ids.assert_awaited_once_with("co-1")

    @pytest.mark.asyncio
    async def test_failed_charge_leaves_jobs_unpaid(self):
        svc = _billing()
        self._seed(svc, _company())
        svc.gateway.charge.side_effect = PaymentGatewayError(402, "card_declined", "Declined")

        summary = await svc.run_pack_overage_billing("2024-05")

        assert summary["failed_count"] == 1
        assert "card_declined" in summary["results"][0]["error"]
        svc.payment_repo.mark_jobs_paid.assert_not_awaited()
        svc.notifier.notify.assert_awaited()

    @pytest.mark.asyncio
    async def test_failed_period_retried_in_place(self):
        svc = _billing()
        self._seed(svc, _company())
        existing = Payment(
            id="pay-old", client_company_id="co-1", payment_type="pack_overage", amount=Decimal("40"),
            status="failed", billing_period="2024-05",
        )
        svc.payment_repo.get_overage_payment.return_value = existing
        svc.payment_repo.update_payment.side_effect = lambda pid, fields: replace(existing, **fields)

        summary = await svc.run_pack_overage_billing("2024-05")

        svc.payment_repo.create_payment.assert_not_awaited()
        assert svc.payment_repo.update_payment.call_args_list[0][0] == (
            "pay-old", {"amount": Decimal("50"), "included_job_ids": ["r1", "r2"]},
        )
        assert summary["results"][0]["payment_id"] == "pay-old"

    @pytest.mark.asyncio
    async def test_paid_period_not_charged_again(self):
        svc = _billing()
        self._seed(svc, _company())
        svc.payment_repo.get_overage_payment.return_value = Payment(
            id="pay-old", client_company_id="co-1", payment_type="pack_overage", amount=Decimal("50"),
            status="succeeded", billing_period="2024-05",
        )

        summary = await svc.run_pack_overage_billing("2024-05")

        svc.gateway.charge.assert_not_called()
        assert summary["results"][0]["already_paid"] is True

    @pytest.mark.asyncio
    async def test_concurrent_run_reported(self):
        svc = _billing()
        self._seed(svc, _company())
        svc.payment_repo.create_payment.side_effect = DuplicateRecordError("exists")

        summary = await svc.run_pack_overage_billing("2024-05")

        assert summary["results"][0]["success"] is False
        svc.gateway.charge.assert_not_called()

    @pytest.mark.asyncio
    async def test_one_company_error_does_not_stop_the_run(self):
        svc = _billing()
        self._seed(svc, _company(), _company(id="co-2"))
        svc.directory_repo.list_company_member_ids.side_effect = [RuntimeError("db hiccup"), ["client-1"]]

        summary = await svc.run_pack_overage_billing("2024-05")

        assert summary["total_clients"] == 2
        assert summary["success_count"] == 1

    @pytest.mark.asyncio
    async def test_no_overage_no_result(self):
        svc = _billing()
        self._seed(svc, _company())
        svc.request_repo.list_service_requests.return_value = []

        summary = await svc.run_pack_overage_billing("2024-05")

        assert summary["total_clients"] == 0

    @pytest.mark.asyncio
    async def test_bad_period_rejected(self):
        with pytest.raises(ValidationError):
            await _billing().run_pack_overage_billing("May 2024")

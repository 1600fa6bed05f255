# tests/test_admin_service.py
"""Tests for tripod/admin/service.py with mocked repositories."""
from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest
from pydantic import ValidationError as PydanticValidationError

from tripod.admin.errors import ConflictError, NotFoundError, ValidationError
from tripod.admin.models import (
    CouponCreateRequest,
    CouponUpdateRequest,
    CouponValidateRequest,
    DesignerCapacityCreateRequest,
    PriorityDistributionModel,
    RefundCreateRequest,
    RuleCreateRequest,
    RuleUpdateRequest,
    VendorCapacityCreateRequest,
    VendorProfileCreateRequest,
)
from tripod.admin.service import AdminApplicationService
from tripod.core.domain import (
    AutomationRule,
    BundleRequest,
    DiscountCoupon,
    Refund,
    Service,
    ServiceRequest,
    User,
    VendorProfile,
    VendorServiceCapacity,
)
from tripod.infra.payment_gateway import PaymentGatewayError, RefundReceipt
from tripod.infra.pg_rows import DuplicateRecordError, RecordNotFoundError

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def _service(**repos) -> AdminApplicationService:
    defaults = {
        "automation_repo": AsyncMock(),
        "directory_repo": AsyncMock(),
        "billing_repo": AsyncMock(),
        "request_repo": AsyncMock(),
        "settings_repo": AsyncMock(),
        "gateway": AsyncMock(),
        "notifier": AsyncMock(),
    }
    defaults.update(repos)
    return AdminApplicationService(clock=lambda: NOW, **defaults)


def _refund(**overrides) -> Refund:
    fields = {
        "id": "ref-1",
        "request_type": "service_request",
        "client_id": "client-1",
        "refund_type": "partial",
        "original_amount": Decimal("100"),
        "refund_amount": Decimal("25"),
        "reason": "late delivery",
        "service_request_id": "req-1",
        "payment_intent_id": "pi_123",
    }
    fields.update(overrides)
    return Refund(**fields)


# ============================================================================
# Automation rules
# ============================================================================

class TestRules:
    @pytest.mark.asyncio
    async def test_create_global_rule_drops_client(self):
        svc = _service()
        svc.automation_repo.create_rule.return_value = AutomationRule(id="r1", name="Default")

        await svc.create_rule(RuleCreateRequest(name="Default", client_id="stray"))

        fields = svc.automation_repo.create_rule.call_args[0][0]
        assert fields["client_id"] is None
        assert fields["routing_strategy"] == "least_loaded"

    def test_client_rule_needs_client_id(self):
        with pytest.raises(PydanticValidationError):
            RuleCreateRequest(name="VIP", scope="client")

    @pytest.mark.asyncio
    async def test_update_requires_fields(self):
        with pytest.raises(ValidationError):
            await _service().update_rule("r1", RuleUpdateRequest())

    @pytest.mark.asyncio
    async def test_update_to_client_scope_without_client(self):
        svc = _service()
        svc.automation_repo.get_rule.return_value = AutomationRule(id="r1", name="x")

        with pytest.raises(ValidationError, match="client_id"):
            await svc.update_rule("r1", RuleUpdateRequest(scope="client"))

    @pytest.mark.asyncio
    async def test_update_missing_rule(self):
        svc = _service()
        svc.automation_repo.get_rule.return_value = None

        with pytest.raises(NotFoundError):
            await svc.update_rule("r1", RuleUpdateRequest(priority=3))

    @pytest.mark.asyncio
    async def test_delete_maps_not_found(self):
        svc = _service()
        svc.automation_repo.delete_rule.side_effect = RecordNotFoundError("gone")

        with pytest.raises(NotFoundError) as exc_info:
            await svc.delete_rule("r1")
        assert exc_info.value.status_code == 404


# ============================================================================
# Capacities
# ============================================================================

class TestCapacities:
    @pytest.mark.asyncio
    async def test_vendor_capacity_needs_live_profile(self):
        svc = _service()
        svc.directory_repo.get_vendor_profile.return_value = VendorProfile(
            id="vp", user_id="u", company_name="Co", deleted_at=NOW,
        )

        with pytest.raises(NotFoundError):
            await svc.create_vendor_capacity(VendorCapacityCreateRequest(vendor_profile_id="vp", service_id="s"))

    @pytest.mark.asyncio
    async def test_vendor_capacity_duplicate_is_conflict(self):
        svc = _service()
        svc.directory_repo.get_vendor_profile.return_value = VendorProfile(id="vp", user_id="u", company_name="Co")
        svc.directory_repo.get_service.return_value = Service(id="s", title="Mockups")
        svc.automation_repo.create_vendor_capacity.side_effect = DuplicateRecordError("dup")

        with pytest.raises(ConflictError) as exc_info:
            await svc.create_vendor_capacity(
                VendorCapacityCreateRequest(vendor_profile_id="vp", service_id="s", daily_capacity=3),
            )
        assert exc_info.value.status_code == 409

    @pytest.mark.asyncio
    async def test_vendor_capacity_created(self):
        svc = _service()
        svc.directory_repo.get_vendor_profile.return_value = VendorProfile(id="vp", user_id="u", company_name="Co")
        svc.directory_repo.get_service.return_value = Service(id="s", title="Mockups")
        svc.automation_repo.create_vendor_capacity.return_value = VendorServiceCapacity(
            id="cap", vendor_profile_id="vp", service_id="s", daily_capacity=3,
        )

        capacity = await svc.create_vendor_capacity(
            VendorCapacityCreateRequest(vendor_profile_id="vp", service_id="s", daily_capacity=3),
        )
        assert capacity.id == "cap"

    @pytest.mark.asyncio
    async def test_designer_capacity_only_for_vendor_designers(self):
        svc = _service()
        svc.directory_repo.get_user.return_value = User(id="u", username="u", role="client")

        with pytest.raises(ValidationError):
            await svc.create_designer_capacity(DesignerCapacityCreateRequest(user_id="u", service_id="s"))


# ============================================================================
# Coupons
# ============================================================================

class TestCoupons:
    @pytest.mark.asyncio
    async def test_create_generates_and_normalizes(self):
        svc = _service()
        svc.billing_repo.create_coupon.side_effect = lambda fields: DiscountCoupon(id="c1", **{
            k: fields[k] for k in ("code", "discount_type", "discount_value")
        })

        generated = await svc.create_coupon(CouponCreateRequest(discount_type="amount", discount_value=Decimal("5")))
        assert len(generated.code) == 8

        named = await svc.create_coupon(CouponCreateRequest(
            code=" spring ", discount_type="percentage", discount_value=Decimal("15"),
            service_option="svc-1", bundle_option="none",
        ))
        assert named.code == "SPRING"
        fields = svc.billing_repo.create_coupon.call_args[0][0]
        assert fields["service_id"] == "svc-1"
        assert fields["applies_to_bundles"] is False
        assert "service_option" not in fields

    @pytest.mark.asyncio
    async def test_create_rejects_no_targets(self):
        with pytest.raises(ValidationError):
            await _service().create_coupon(CouponCreateRequest(
                discount_type="amount", discount_value=Decimal("5"), service_option="none", bundle_option="none",
            ))

    def test_percentage_over_100_rejected_by_model(self):
        with pytest.raises(PydanticValidationError):
            CouponCreateRequest(discount_type="percentage", discount_value=Decimal("150"))

    @pytest.mark.asyncio
    async def test_duplicate_code_is_conflict(self):
        svc = _service()
        svc.billing_repo.create_coupon.side_effect = DuplicateRecordError("dup")

        with pytest.raises(ConflictError, match="SAVE"):
            await svc.create_coupon(CouponCreateRequest(code="save", discount_type="amount", discount_value=1))

    @pytest.mark.asyncio
    async def test_update_percentage_checked_against_existing_type(self):
        svc = _service()
        svc.billing_repo.get_coupon.return_value = DiscountCoupon(
            id="c1", code="X", discount_type="percentage", discount_value=Decimal("10"),
        )

        with pytest.raises(ValidationError, match="exceed 100"):
            await svc.update_coupon("c1", CouponUpdateRequest(discount_value=Decimal("120")))

    @pytest.mark.asyncio
    async def test_validate_unknown_code(self):
        svc = _service()
        svc.billing_repo.get_coupon_by_code.return_value = None

        result = await svc.validate_coupon(CouponValidateRequest(code="nope", client_id="c", service_id="s"))

        assert result.valid is False
        assert result.reason == "Coupon not found"
        svc.billing_repo.get_coupon_by_code.assert_awaited_once_with("NOPE")

    @pytest.mark.asyncio
    async def test_validate_with_amount(self):
        svc = _service()
        svc.billing_repo.get_coupon_by_code.return_value = DiscountCoupon(
            id="c1", code="SAVE10", discount_type="percentage", discount_value=Decimal("10"), max_uses=3,
        )

        result = await svc.validate_coupon(CouponValidateRequest(
            code="save10", client_id="c", service_id="s", amount=Decimal("50"),
        ))

        assert result.valid is True
        assert result.discount == 5.0
        assert result.final_amount == 45.0

    @pytest.mark.asyncio
    async def test_validate_exhausted(self):
        svc = _service()
        svc.billing_repo.get_coupon_by_code.return_value = DiscountCoupon(
            id="c1", code="ONCE", discount_type="amount", discount_value=Decimal("5"), current_uses=1,
        )

        result = await svc.validate_coupon(CouponValidateRequest(code="ONCE", client_id="c", bundle_id="b"))

        assert result.valid is False
        assert "usage limit" in result.reason


# ============================================================================
# Refunds
# ============================================================================

class TestRefunds:
    @pytest.mark.asyncio
    async def test_partial_refund_over_balance_rejected(self):
        svc = _service()
        svc.request_repo.get_service_request.return_value = ServiceRequest(
            id="req-1", user_id="client-1", service_id="s", final_price=Decimal("100"),
        )
        svc.billing_repo.list_refunds_for_request.return_value = [_refund(status="completed", refund_amount=Decimal("90"))]

        with pytest.raises(ValidationError, match="exceeds"):
            await svc.create_refund(RefundCreateRequest(
                request_type="service_request", request_id="req-1", refund_type="partial",
                refund_amount=Decimal("20"), reason="x",
            ))

    @pytest.mark.asyncio
    async def test_manual_refund_recorded_as_completed(self):
        svc = _service()
        svc.request_repo.get_bundle_request.return_value = BundleRequest(
            id="b-1", user_id="client-1", bundle_id="bun", final_price=Decimal("60"),
        )
        svc.billing_repo.list_refunds_for_request.return_value = []
        svc.billing_repo.create_refund.return_value = _refund(status="completed", refund_type="manual")

        await svc.create_refund(RefundCreateRequest(
            request_type="bundle_request", request_id="b-1", refund_type="manual",
            refund_amount=Decimal("10"), reason="goodwill", requested_by="admin-1",
        ))

        fields = svc.billing_repo.create_refund.call_args[0][0]
        assert fields["status"] == "completed"
        assert fields["bundle_request_id"] == "b-1"
        assert fields["service_request_id"] is None
        assert fields["processed_at"] == NOW
        assert fields["processed_by"] == "admin-1"

    @pytest.mark.asyncio
    async def test_full_refund_takes_remaining(self):
        svc = _service()
        svc.request_repo.get_service_request.return_value = ServiceRequest(
            id="req-1", user_id="client-1", service_id="s", final_price=Decimal("100"), payment_intent_id="pi_1",
        )
        svc.billing_repo.list_refunds_for_request.return_value = [_refund(status="completed")]
        svc.billing_repo.create_refund.return_value = _refund()

        await svc.create_refund(RefundCreateRequest(
            request_type="service_request", request_id="req-1", refund_type="full", reason="x",
        ))

        fields = svc.billing_repo.create_refund.call_args[0][0]
        assert fields["refund_amount"] == Decimal("75")
        assert fields["status"] == "pending"
        assert fields["payment_intent_id"] == "pi_1"

    @pytest.mark.asyncio
    async def test_process_success_notifies_client(self):
        svc = _service()
        svc.billing_repo.get_refund.return_value = _refund()
        svc.billing_repo.mark_refund_processing.return_value = _refund(status="processing")
        svc.gateway.refund.return_value = RefundReceipt(provider_refund_id="re_1", status="succeeded")
        svc.billing_repo.finish_refund.return_value = _refund(status="completed", provider_refund_id="re_1")

        result = await svc.process_refund("ref-1", processed_by="admin-1")

        assert result.status == "completed"
        svc.gateway.refund.assert_awaited_once_with(
            "pi_123", Decimal("25"), idempotency_key="ref-1", reason="late delivery",
        )
        assert svc.billing_repo.finish_refund.call_args.kwargs["status"] == "completed"
        svc.notifier.notify.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_process_provider_failure_stored(self):
        svc = _service()
        svc.billing_repo.get_refund.return_value = _refund()
        svc.billing_repo.mark_refund_processing.return_value = _refund(status="processing")
        svc.gateway.refund.side_effect = PaymentGatewayError(402, "card_declined", "Card declined")
        svc.billing_repo.finish_refund.return_value = _refund(status="failed", error_message="Card declined")

        result = await svc.process_refund("ref-1")

        kwargs = svc.billing_repo.finish_refund.call_args.kwargs
        assert kwargs["status"] == "failed"
        assert "Card declined" in kwargs["error_message"]
        assert result.status == "failed"
        svc.notifier.notify.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_process_unexpected_error_still_finishes_refund(self):
        svc = _service()
        svc.billing_repo.get_refund.return_value = _refund()
        svc.billing_repo.mark_refund_processing.return_value = _refund(status="processing")
        svc.gateway.refund.side_effect = RuntimeError("Session is closed")
        svc.billing_repo.finish_refund.return_value = _refund(status="failed")

        result = await svc.process_refund("ref-1")

        kwargs = svc.billing_repo.finish_refund.call_args.kwargs
        assert kwargs["status"] == "failed"
        assert "Session is closed" in kwargs["error_message"]
        assert result.status == "failed"

    @pytest.mark.asyncio
    async def test_process_without_payment_intent_fails(self):
        svc = _service()
        svc.billing_repo.get_refund.return_value = _refund(payment_intent_id=None)
        svc.billing_repo.mark_refund_processing.return_value = _refund(status="processing", payment_intent_id=None)
        svc.billing_repo.finish_refund.return_value = _refund(status="failed")

        await svc.process_refund("ref-1")

        svc.gateway.refund.assert_not_awaited()
        assert svc.billing_repo.finish_refund.call_args.kwargs["status"] == "failed"

    @pytest.mark.asyncio
    async def test_process_rejects_completed(self):
        svc = _service()
        svc.billing_repo.get_refund.return_value = _refund(status="completed")

        with pytest.raises(ValidationError):
            await svc.process_refund("ref-1")

    @pytest.mark.asyncio
    async def test_process_claim_race_is_conflict(self):
        svc = _service()
        svc.billing_repo.get_refund.return_value = _refund()
        svc.billing_repo.mark_refund_processing.return_value = None

        with pytest.raises(ConflictError):
            await svc.process_refund("ref-1")

    @pytest.mark.asyncio
    async def test_refundable_jobs_grouped_by_kind(self):
        svc = _service()
        svc.request_repo.list_service_requests.return_value = [
            ServiceRequest(id="paid1", user_id="c", service_id="s", final_price=Decimal("40")),
            ServiceRequest(id="free1", user_id="c", service_id="s", final_price=None),
            ServiceRequest(id="done1", user_id="c", service_id="s", final_price=Decimal("10")),
        ]
        svc.request_repo.list_bundle_requests.return_value = [
            BundleRequest(id="bund1", user_id="c", bundle_id="b", final_price=Decimal("90")),
        ]

        async def _refunds(request_type, request_id):
            if request_id == "done1":
                return [_refund(refund_amount=Decimal("10"), status="completed")]
            return []

        svc.billing_repo.list_refunds_for_request.side_effect = _refunds

        result = await svc.refundable_jobs("c")

        assert [row["id"] for row in result["service_requests"]] == ["paid1"]
        assert result["service_requests"][0]["job_number"] == "A-PAID1"
        assert result["bundle_requests"][0]["remaining_refundable"] == Decimal("90")


# ============================================================================
# Directory & settings
# ============================================================================

class TestDirectoryAndSettings:
    @pytest.mark.asyncio
    async def test_vendor_profile_only_for_vendor_users(self):
        svc = _service()
        svc.directory_repo.get_user.return_value = User(id="u", username="u", role="client")

        with pytest.raises(ValidationError):
            await svc.create_vendor_profile(VendorProfileCreateRequest(user_id="u", company_name="Co"))

    @pytest.mark.asyncio
    async def test_deleted_company_is_not_found(self):
        svc = _service()
        svc.directory_repo.get_client_company.return_value = MagicMock(deleted_at=NOW)

        with pytest.raises(NotFoundError):
            await svc.get_client_company("cc-1")

    @pytest.mark.asyncio
    async def test_priority_distribution_defaults(self):
        svc = _service()
        svc.settings_repo.get_setting.return_value = None

        dist = await svc.get_priority_distribution()

        assert (dist.max_urgent_percent, dist.max_high_percent) == (20, 30)

    @pytest.mark.asyncio
    async def test_priority_distribution_saved(self):
        svc = _service()

        dist = await svc.set_priority_distribution(PriorityDistributionModel(max_urgent_percent=10, max_high_percent=25))

        assert dist.normal_low_percent == 65
        key, value = svc.settings_repo.set_setting.call_args[0]
        assert value == {"max_urgent_percent": 10, "max_high_percent": 25}

    def test_priority_distribution_sum_checked_by_model(self):
        with pytest.raises(PydanticValidationError):
            PriorityDistributionModel(max_urgent_percent=70, max_high_percent=40)

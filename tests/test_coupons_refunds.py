# tests/test_coupons_refunds.py
"""Tests for tripod/core/coupons.py and tripod/core/refunds.py."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from tripod.core.coupons import (
    CODE_ALPHABET,
    CouponRejected,
    apply_discount,
    generate_coupon_code,
    normalize_code,
    resolve_targets,
    validate_coupon_for,
)
from tripod.core.domain import DiscountCoupon, Refund
from tripod.core.refunds import (
    RefundValidationError,
    can_process,
    initial_status,
    refundable_balance,
    validate_refund_amount,
)

NOW = datetime(2024, 6, 1, tzinfo=timezone.utc)


def _coupon(**overrides) -> DiscountCoupon:
    fields = {
        "id": "c1",
        "code": "SAVE10",
        "discount_type": "percentage",
        "discount_value": Decimal("10"),
        "max_uses": 5,
    }
    fields.update(overrides)
    return DiscountCoupon(**fields)


def _refund(amount: str, status: str = "completed", refund_type: str = "partial") -> Refund:
    return Refund(
        id="r", request_type="service_request", client_id="c", refund_type=refund_type,
        original_amount=Decimal("100"), refund_amount=Decimal(amount), reason="x", status=status,
    )


# ============================================================================
# Coupons
# ============================================================================

class TestCouponTargets:
    def test_all_and_specific(self):
        targets = resolve_targets("all", "b-1")
        assert targets.applies_to_services and targets.service_id is None
        assert targets.applies_to_bundles and targets.bundle_id == "b-1"

    def test_none_side(self):
        targets = resolve_targets("s-1", "none")
        assert targets.service_id == "s-1"
        assert targets.applies_to_bundles is False

    def test_both_none_rejected(self):
        with pytest.raises(ValueError):
            resolve_targets("none", "none")


class TestCouponCodes:
    def test_generated_code(self):
        code = generate_coupon_code()
        assert len(code) == 8
        assert all(ch in CODE_ALPHABET for ch in code)

    def test_normalize(self):
        assert normalize_code("  save10 ") == "SAVE10"


class TestCouponValidation:
    def test_valid_for_service(self):
        validate_coupon_for(_coupon(), client_id="client-1", now=NOW, service_id="s-1")

    @pytest.mark.parametrize("overrides,reason", [
        ({"is_active": False}, "not active"),
        ({"valid_from": NOW + timedelta(days=1)}, "not valid yet"),
        ({"valid_to": NOW - timedelta(days=1)}, "expired"),
        ({"current_uses": 5}, "usage limit"),
        ({"client_id": "other"}, "this client"),
        ({"applies_to_services": False}, "ad-hoc services"),
        ({"service_id": "s-2"}, "this service"),
    ])
    def test_rejections_for_service(self, overrides, reason):
        with pytest.raises(CouponRejected, match=reason):
            validate_coupon_for(_coupon(**overrides), client_id="client-1", now=NOW, service_id="s-1")

    def test_bundle_restrictions(self):
        with pytest.raises(CouponRejected, match="bundles"):
            validate_coupon_for(_coupon(applies_to_bundles=False), client_id="c", now=NOW, bundle_id="b-1")
        with pytest.raises(CouponRejected, match="this bundle"):
            validate_coupon_for(_coupon(bundle_id="b-2"), client_id="c", now=NOW, bundle_id="b-1")

    def test_needs_a_target(self):
        with pytest.raises(CouponRejected):
            validate_coupon_for(_coupon(), client_id="c", now=NOW)


class TestApplyDiscount:
    def test_percentage(self):
        assert apply_discount(_coupon(), Decimal("80")) == (Decimal("8.00"), Decimal("72.00"))

    def test_fixed_amount_capped_at_price(self):
        coupon = _coupon(discount_type="amount", discount_value=Decimal("50"))
        assert apply_discount(coupon, Decimal("30")) == (Decimal("30.00"), Decimal("0.00"))


# ============================================================================
# Refunds
# ============================================================================

class TestRefundableBalance:
    def test_counts_pending_processing_and_completed(self):
        refunds = [
            _refund("10", "completed"),
            _refund("5", "pending"),
            _refund("3", "processing"),
            _refund("50", "failed"),
        ]
        balance = refundable_balance(Decimal("100"), refunds)
        assert balance.total_refunded == Decimal("18")
        assert balance.remaining_refundable == Decimal("82")

    def test_never_negative(self):
        balance = refundable_balance(Decimal("10"), [_refund("15")])
        assert balance.remaining_refundable == Decimal("0")

    def test_unpriced_job(self):
        assert refundable_balance(None, []).original_amount == Decimal("0")


class TestRefundAmount:
    def test_full_refunds_remaining(self):
        assert validate_refund_amount("full", None, Decimal("40")) == Decimal("40")

    def test_partial_within_balance(self):
        assert validate_refund_amount("partial", Decimal("15"), Decimal("40")) == Decimal("15")

    def test_partial_over_balance(self):
        with pytest.raises(RefundValidationError, match="exceeds"):
            validate_refund_amount("partial", Decimal("41"), Decimal("40"))

    def test_partial_needs_amount(self):
        with pytest.raises(RefundValidationError, match="required"):
            validate_refund_amount("manual", None, Decimal("40"))

    def test_nothing_left(self):
        with pytest.raises(RefundValidationError, match="Nothing left"):
            validate_refund_amount("full", None, Decimal("0"))

    def test_unknown_type(self):
        with pytest.raises(RefundValidationError):
            validate_refund_amount("store_credit", Decimal("1"), Decimal("40"))


class TestRefundLifecycle:
    def test_manual_refunds_complete_immediately(self):
        assert initial_status("manual") == "completed"
        assert initial_status("full") == "pending"

    def test_can_process(self):
        assert can_process(_refund("5", "pending"))
        assert not can_process(_refund("5", "completed"))
        assert not can_process(_refund("5", "pending", refund_type="manual"))

# tripod/core/coupons.py
from __future__ import annotations

import secrets
import string
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from tripod.core.domain import DiscountCoupon, DiscountType

OPTION_ALL = "all"
OPTION_NONE = "none"

CODE_ALPHABET = string.ascii_uppercase + string.digits

_CENT = Decimal("0.01")


class CouponRejected(Exception):
    """Raised when a coupon cannot be applied to a job."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)


@dataclass(frozen=True)
class CouponTargets:
    applies_to_services: bool
    service_id: Optional[str]
    applies_to_bundles: bool
    bundle_id: Optional[str]


def resolve_targets(service_option: str, bundle_option: str) -> CouponTargets:
    """
    Translate the form's "all" / "none" / <id> selectors into stored flags.

    At least one side must stay selectable.
    """
    if service_option == OPTION_NONE and bundle_option == OPTION_NONE:
        raise ValueError("At least one of Ad-hoc Services or Bundles must be selected")

    def _split(option: str) -> tuple[bool, Optional[str]]:
        if option == OPTION_NONE:
            return False, None
        if option == OPTION_ALL:
            return True, None
        return True, option

    applies_to_services, service_id = _split(service_option)
    applies_to_bundles, bundle_id = _split(bundle_option)
    return CouponTargets(applies_to_services, service_id, applies_to_bundles, bundle_id)


def generate_coupon_code(length: int = 8) -> str:
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(length))


def normalize_code(code: str) -> str:
    return code.strip().upper()


def validate_coupon_for(
    coupon: DiscountCoupon,
    *,
    client_id: str,
    now: datetime,
    service_id: Optional[str] = None,
    bundle_id: Optional[str] = None,
) -> None:
    """Raise ``CouponRejected`` unless the coupon may be used on this job."""
    if not coupon.is_active:
        raise CouponRejected("Coupon is not active")

    if coupon.valid_from and now < coupon.valid_from:
        raise CouponRejected("Coupon is not valid yet")

    if coupon.valid_to and now > coupon.valid_to:
        raise CouponRejected("Coupon has expired")

    if coupon.current_uses >= coupon.max_uses:
        raise CouponRejected("Coupon usage limit reached")

    if coupon.client_id and coupon.client_id != client_id:
        raise CouponRejected("Coupon is not available for this client")

    if service_id is not None:
        if not coupon.applies_to_services:
            raise CouponRejected("Coupon does not apply to ad-hoc services")
        if coupon.service_id and coupon.service_id != service_id:
            raise CouponRejected("Coupon does not apply to this service")
    elif bundle_id is not None:
        if not coupon.applies_to_bundles:
            raise CouponRejected("Coupon does not apply to bundles")
        if coupon.bundle_id and coupon.bundle_id != bundle_id:
            raise CouponRejected("Coupon does not apply to this bundle")
    else:
        raise CouponRejected("Coupon must be applied to a service or a bundle")


def apply_discount(coupon: DiscountCoupon, amount: Decimal) -> tuple[Decimal, Decimal]:
    """Return (discount, discounted amount); the result never goes below zero."""
    if coupon.discount_type == DiscountType.PERCENTAGE.value:
        discount = amount * coupon.discount_value / 100
    else:
        discount = coupon.discount_value

    discount = min(max(discount, Decimal("0")), amount).quantize(_CENT, rounding=ROUND_HALF_UP)
    return discount, (amount - discount).quantize(_CENT, rounding=ROUND_HALF_UP)

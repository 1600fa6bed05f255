# tripod/core/pricing.py
"""
Price arithmetic for services, bundles and monthly packs.

All amounts are ``Decimal`` rounded to cents.  Functions here are pure:
callers resolve services and items from the repositories first.
"""
from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Iterable, Optional

from tripod.core.domain import BundleItem, PricingStructure, ServicePackItem, VendorProfile

CENT = Decimal("0.01")
ZERO = Decimal("0")

STORE_CREATION_TITLE = "Store Creation"
CREATIVE_ART_TITLE = "Creative Art"

CREATIVE_ART_COMPLEXITY_PRICES: dict[str, Decimal] = {
    "Basic": Decimal("40"),
    "Standard": Decimal("60"),
    "Advanced": Decimal("80"),
    "Advance": Decimal("80"),
    "Ultimate": Decimal("100"),
}

# (min products, max products, price per item); the last tier is open-ended
STORE_CREATION_TIERS: tuple[tuple[int, Optional[int], Decimal], ...] = (
    (1, 50, Decimal("2.00")),
    (51, 75, Decimal("1.80")),
    (76, 100, Decimal("1.50")),
    (101, None, Decimal("1.10")),
)


def to_money(value: Any) -> Optional[Decimal]:
    """Parse a loose numeric value (str, int, float, Decimal) into cents, or None."""
    if value is None or value == "":
        return None
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    if not amount.is_finite():
        return None
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def calculate_store_creation_price(product_count: int | None) -> Decimal:
    if not product_count or product_count <= 0:
        return ZERO
    for low, high, per_item in STORE_CREATION_TIERS:
        if product_count >= low and (high is None or product_count <= high):
            return (per_item * product_count).quantize(CENT, rounding=ROUND_HALF_UP)
    return ZERO


def calculate_creative_art_price(complexity: str | None) -> Decimal:
    if not complexity:
        return ZERO
    return CREATIVE_ART_COMPLEXITY_PRICES.get(complexity, ZERO)


def _product_count(form_data: dict[str, Any]) -> int | None:
    raw = form_data.get("amount_of_products") or form_data.get("amountOfProducts")
    if raw is None:
        return None
    try:
        return int(raw)
    except (TypeError, ValueError):
        return None


def calculate_service_price(
    *,
    service_title: str | None,
    pricing_structure: str | None,
    base_price: Any,
    form_data: dict[str, Any] | None,
    final_price: Any = None,
) -> Optional[Decimal]:
    """
    Resolve the price of an ad-hoc job.

    Order of precedence: explicit final price, the price calculated at
    submission time (store creation is recomputed from the product
    count), complexity pricing, quantity pricing, then the service's base
    price.  Returns None when nothing yields a price.
    """
    form_data = form_data or {}

    explicit = to_money(final_price)
    if explicit is not None:
        return explicit

    calculated = to_money(form_data.get("calculatedPrice"))
    if calculated is not None and calculated > 0:
        if service_title == STORE_CREATION_TITLE:
            recalculated = calculate_store_creation_price(_product_count(form_data))
            if recalculated > 0:
                return recalculated
        return calculated

    if service_title == CREATIVE_ART_TITLE or pricing_structure == PricingStructure.COMPLEXITY.value:
        price = calculate_creative_art_price(form_data.get("complexity"))
        if price > 0:
            return price.quantize(CENT)

    if service_title == STORE_CREATION_TITLE or pricing_structure == PricingStructure.QUANTITY.value:
        price = calculate_store_creation_price(_product_count(form_data))
        if price > 0:
            return price

    return to_money(base_price)


def vendor_has_valid_service_cost(
    profile: VendorProfile,
    service_title: str,
    internal_vendor_profile_id: str | None = None,
) -> bool:
    """True when the vendor's pricing agreement has a positive cost for the service."""
    if internal_vendor_profile_id and profile.id == internal_vendor_profile_id:
        return True

    agreement = (profile.pricing_agreements or {}).get(service_title)
    if not agreement:
        return False

    if agreement.get("basePrice") is not None:
        price = to_money(agreement["basePrice"])
        return price is not None and price > 0

    for key in ("complexity", "quantity"):
        tiers = agreement.get(key)
        if tiers:
            return any((to_money(v) or ZERO) > 0 for v in tiers.values())

    return False


# ---------------------------------------------------------------------------
# Bundles & packs
# ---------------------------------------------------------------------------

@dataclass
class BundlePricing:
    subtotal: Decimal
    discount: Decimal
    final: Decimal


def calculate_bundle_price(
    items: Iterable[BundleItem],
    discount_percent: Any = None,
    final_price_override: Any = None,
) -> BundlePricing:
    subtotal = sum(
        ((item.unit_price or ZERO) * item.quantity for item in items),
        ZERO,
    ).quantize(CENT, rounding=ROUND_HALF_UP)

    percent = to_money(discount_percent) or ZERO
    discount = (subtotal * percent / 100).quantize(CENT, rounding=ROUND_HALF_UP)

    override = to_money(final_price_override)
    final = override if override is not None and override > 0 else subtotal - discount
    return BundlePricing(subtotal=subtotal, discount=discount, final=final)


@dataclass
class PackPricing:
    full_price: Decimal
    pack_price: Optional[Decimal]
    savings: Optional[Decimal]
    savings_percent: Optional[Decimal]
    is_valid_pack_price: bool
    is_overpriced: bool


def calculate_pack_pricing(items: Iterable[ServicePackItem], pack_price: Any) -> PackPricing:
    """
    Compare a monthly pack's price with buying its services one by one.

    The full price sums each service's unit price times the monthly
    quantity.  Savings are only computed for a positive pack price.
    """
    full_price = sum(
        ((item.unit_price or ZERO) * item.quantity for item in items),
        ZERO,
    ).quantize(CENT, rounding=ROUND_HALF_UP)

    price = to_money(pack_price)
    if price is None or price <= 0:
        return PackPricing(
            full_price=full_price,
            pack_price=None,
            savings=None,
            savings_percent=None,
            is_valid_pack_price=False,
            is_overpriced=False,
        )

    savings = max(ZERO, full_price - price)
    savings_percent = None
    if full_price > 0:
        savings_percent = (savings / full_price * 100).quantize(Decimal("0.1"), rounding=ROUND_HALF_UP)

    return PackPricing(
        full_price=full_price,
        pack_price=price,
        savings=savings,
        savings_percent=savings_percent,
        is_valid_pack_price=True,
        is_overpriced=full_price > 0 and price > full_price,
    )

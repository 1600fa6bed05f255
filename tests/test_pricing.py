# tests/test_pricing.py
"""Tests for tripod/core/pricing.py."""
from __future__ import annotations

from decimal import Decimal

import pytest

from tripod.core.domain import BundleItem, ServicePackItem, VendorProfile
from tripod.core.pricing import (
    calculate_bundle_price,
    calculate_creative_art_price,
    calculate_pack_pricing,
    calculate_service_price,
    calculate_store_creation_price,
    to_money,
    vendor_has_valid_service_cost,
)


class TestToMoney:
    @pytest.mark.parametrize("raw,expected", [
        ("12.345", Decimal("12.35")),
        (7, Decimal("7.00")),
        (Decimal("0.1"), Decimal("0.10")),
    ])
    def test_parses(self, raw, expected):
        assert to_money(raw) == expected

    @pytest.mark.parametrize("raw", [None, "", "abc", "NaN", "inf"])
    def test_rejects(self, raw):
        assert to_money(raw) is None


class TestStoreCreation:
    @pytest.mark.parametrize("count,expected", [
        (1, Decimal("2.00")),
        (50, Decimal("100.00")),
        (51, Decimal("91.80")),
        (75, Decimal("135.00")),
        (76, Decimal("114.00")),
        (100, Decimal("150.00")),
        (101, Decimal("111.10")),
    ])
    def test_tiers(self, count, expected):
        assert calculate_store_creation_price(count) == expected

    def test_zero_or_missing(self):
        assert calculate_store_creation_price(0) == Decimal("0")
        assert calculate_store_creation_price(None) == Decimal("0")


class TestServicePrice:
    def test_explicit_final_price_wins(self):
        price = calculate_service_price(
            service_title="Mockups", pricing_structure="single", base_price="10",
            form_data={"calculatedPrice": "99"}, final_price="42.5",
        )
        assert price == Decimal("42.50")

    def test_calculated_price_used(self):
        price = calculate_service_price(
            service_title="Mockups", pricing_structure="single", base_price="10",
            form_data={"calculatedPrice": 33},
        )
        assert price == Decimal("33.00")

    def test_store_creation_recomputed_from_product_count(self):
        price = calculate_service_price(
            service_title="Store Creation", pricing_structure="quantity", base_price=None,
            form_data={"calculatedPrice": 1, "amountOfProducts": "60"},
        )
        assert price == Decimal("108.00")

    def test_creative_art_complexity(self):
        assert calculate_creative_art_price("Ultimate") == Decimal("100")
        price = calculate_service_price(
            service_title="Creative Art", pricing_structure="single", base_price=None,
            form_data={"complexity": "Advance"},
        )
        assert price == Decimal("80.00")

    def test_quantity_structure_without_calculated_price(self):
        price = calculate_service_price(
            service_title="Listings", pricing_structure="quantity", base_price="5",
            form_data={"amount_of_products": 10},
        )
        assert price == Decimal("20.00")

    def test_falls_back_to_base_price(self):
        price = calculate_service_price(
            service_title="Mockups", pricing_structure="single", base_price="15", form_data=None,
        )
        assert price == Decimal("15.00")

    def test_nothing_priced(self):
        assert calculate_service_price(
            service_title="Mockups", pricing_structure="single", base_price=None, form_data={},
        ) is None


class TestVendorServiceCost:
    def _profile(self, agreements, profile_id="vp-1"):
        return VendorProfile(id=profile_id, user_id="u", company_name="Co", pricing_agreements=agreements)

    def test_base_price(self):
        assert vendor_has_valid_service_cost(self._profile({"Mockups": {"basePrice": "4"}}), "Mockups")
        assert not vendor_has_valid_service_cost(self._profile({"Mockups": {"basePrice": "0"}}), "Mockups")

    def test_complexity_tiers(self):
        profile = self._profile({"Creative Art": {"complexity": {"Basic": 0, "Ultimate": 12}}})
        assert vendor_has_valid_service_cost(profile, "Creative Art")

    def test_missing_agreement(self):
        assert not vendor_has_valid_service_cost(self._profile({}), "Mockups")

    def test_internal_vendor_always_valid(self):
        assert vendor_has_valid_service_cost(self._profile({}, "house"), "Mockups", "house")


class TestBundleAndPack:
    def test_bundle_discount(self):
        items = [BundleItem("s1", 2, Decimal("10")), BundleItem("s2", 1, Decimal("5"))]
        pricing = calculate_bundle_price(items, discount_percent="10")
        assert pricing.subtotal == Decimal("25.00")
        assert pricing.discount == Decimal("2.50")
        assert pricing.final == Decimal("22.50")

    def test_bundle_override(self):
        items = [BundleItem("s1", 1, Decimal("10"))]
        assert calculate_bundle_price(items, 50, final_price_override="9").final == Decimal("9.00")

    def test_pack_savings(self):
        items = [ServicePackItem("s1", 4, Decimal("25")), ServicePackItem("s2", 2, Decimal("50"))]
        pricing = calculate_pack_pricing(items, "150")
        assert pricing.full_price == Decimal("200.00")
        assert pricing.savings == Decimal("50.00")
        assert pricing.savings_percent == Decimal("25.0")
        assert pricing.is_valid_pack_price
        assert not pricing.is_overpriced

    def test_pack_overpriced(self):
        pricing = calculate_pack_pricing([ServicePackItem("s1", 1, Decimal("10"))], "12")
        assert pricing.is_overpriced
        assert pricing.savings == Decimal("0")

    def test_pack_without_price(self):
        pricing = calculate_pack_pricing([ServicePackItem("s1", 1, Decimal("10"))], None)
        assert not pricing.is_valid_pack_price
        assert pricing.savings is None

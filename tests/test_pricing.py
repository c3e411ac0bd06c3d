"""Tests for the pricing engine."""

from datetime import datetime, timedelta, timezone

import pytest

from order_service.domain import (
    Coupon,
    DiscountType,
    LineItem,
    PriceBreakdown,
    ProductSnapshot,
    ShippingMethod,
)
from order_service.errors import PriceIntegrityError
from order_service.pricing import (
    compute_pricing,
    coupon_discount,
    estimate_delivery,
    shipping_cost,
    tax_rate,
    verify_integrity,
)

EXPIRES = datetime(2099, 1, 1, tzinfo=timezone.utc)


def item(price: float, discount: float | None = None, quantity: int = 1, name: str = "Item") -> LineItem:
    return LineItem(
        product_id=f"p-{name.lower()}",
        quantity=quantity,
        unit_price=price,
        unit_discount_price=discount if discount is not None else price,
        product_snapshot=ProductSnapshot(name=name),
    )


def coupon(discount_type: DiscountType, value: float, max_discount: float | None = None) -> Coupon:
    return Coupon(
        id="c-1",
        code="TEST",
        discount_type=discount_type,
        discount_value=value,
        max_discount=max_discount,
        expires_at=EXPIRES,
    )


class TestComputePricing:

    def test_discounted_item_standard_shipping_dhaka(self, dhaka_address, settings):
        pricing = compute_pricing(
            [item(100, 80, quantity=2)], ShippingMethod.STANDARD, dhaka_address, settings=settings
        )
        assert pricing.subtotal == 160
        assert pricing.item_discount == 40
        assert pricing.coupon_discount == 0
        assert pricing.shipping_cost == 50
        assert pricing.tax == 8
        assert pricing.total == 218

    def test_is_deterministic(self, dhaka_address, settings):
        items = [item(100, 80, quantity=2), item(35.5, quantity=3, name="Pen")]
        first = compute_pricing(items, ShippingMethod.EXPRESS, dhaka_address, settings=settings)
        second = compute_pricing(items, ShippingMethod.EXPRESS, dhaka_address, settings=settings)
        assert first == second

    def test_percent_coupon_capped_by_max_discount(self, dhaka_address, settings):
        pricing = compute_pricing(
            [item(500, quantity=2)],
            ShippingMethod.STANDARD,
            dhaka_address,
            coupon(DiscountType.PERCENT, 50, max_discount=100),
            settings=settings,
        )
        assert pricing.subtotal == 1000
        assert pricing.coupon_discount == 100

    def test_flat_coupon_larger_than_subtotal_never_goes_negative(self, dhaka_address, settings):
        pricing = compute_pricing(
            [item(100, 80, quantity=2)],
            ShippingMethod.PICKUP,
            dhaka_address,
            coupon(DiscountType.FLAT, 500),
            settings=settings,
        )
        assert pricing.coupon_discount == 160
        assert pricing.total >= 0
        assert pricing.total == pytest.approx(8)

    def test_discount_never_exceeds_subtotal(self, dhaka_address, settings):
        for value in (10, 99, 100):
            pricing = compute_pricing(
                [item(20, quantity=3)],
                ShippingMethod.STANDARD,
                dhaka_address,
                coupon(DiscountType.PERCENT, value),
                settings=settings,
            )
            assert 0 <= pricing.coupon_discount <= pricing.subtotal

    def test_international_order_uses_international_rate_and_no_tax(self, dhaka_address, settings):
        address = dhaka_address.model_copy(update={"country": "India", "state": "Delhi"})
        pricing = compute_pricing([item(600)], ShippingMethod.STANDARD, address, settings=settings)
        assert pricing.shipping_cost == 200
        assert pricing.tax == 0
        assert pricing.total == 800


class TestShippingCost:

    @pytest.mark.parametrize(
        "method,subtotal,expected",
        [
            (ShippingMethod.STANDARD, 499.99, 50),
            (ShippingMethod.STANDARD, 500, 0),
            (ShippingMethod.EXPRESS, 999, 100),
            (ShippingMethod.EXPRESS, 1000, 50),
            (ShippingMethod.OVERNIGHT, 5000, 150),
            (ShippingMethod.PICKUP, 10, 0),
        ],
    )
    def test_domestic_rates(self, settings, method, subtotal, expected):
        assert shipping_cost(method, subtotal, "Bangladesh", settings) == expected

    def test_free_shipping_is_domestic_only(self, settings):
        assert shipping_cost(ShippingMethod.STANDARD, 5000, "Nepal", settings) == 200
        assert shipping_cost(ShippingMethod.EXPRESS, 5000, "Nepal", settings) == 400


class TestTaxRate:

    def test_state_rates(self, settings):
        assert tax_rate("Bangladesh", "Dhaka", settings) == 0.05
        assert tax_rate("Bangladesh", "Sylhet", settings) == 0.03

    def test_unknown_state_falls_back_to_country_default(self, settings):
        assert tax_rate("Bangladesh", "Rangpur", settings) == 0.05

    def test_unknown_country_is_untaxed(self, settings):
        assert tax_rate("Japan", "Tokyo", settings) == 0


class TestCouponDiscount:

    def test_percent_without_cap(self):
        assert coupon_discount(coupon(DiscountType.PERCENT, 10), 250) == 25

    def test_flat_under_subtotal(self):
        assert coupon_discount(coupon(DiscountType.FLAT, 30), 250) == 30

    def test_rounds_to_cents(self):
        assert coupon_discount(coupon(DiscountType.PERCENT, 10), 33.33) == 3.33


class TestVerifyIntegrity:

    def test_rejects_tampered_subtotal(self):
        items = [item(100, 80, quantity=2)]
        pricing = PriceBreakdown(subtotal=150, shipping_cost=50, tax=8, total=208)
        with pytest.raises(PriceIntegrityError):
            verify_integrity(items, pricing)

    def test_rejects_inconsistent_total(self):
        items = [item(100, 80, quantity=2)]
        pricing = PriceBreakdown(subtotal=160, shipping_cost=50, tax=8, total=200)
        with pytest.raises(PriceIntegrityError):
            verify_integrity(items, pricing)

    def test_tolerates_sub_cent_rounding(self):
        items = [item(0.1, quantity=3), item(0.2, quantity=3, name="Other")]
        pricing = PriceBreakdown(subtotal=0.9, total=0.9)
        verify_integrity(items, pricing)


def test_estimate_delivery():
    placed = datetime(2025, 1, 1, tzinfo=timezone.utc)
    assert estimate_delivery(ShippingMethod.STANDARD, placed) == placed + timedelta(days=5)
    assert estimate_delivery(ShippingMethod.OVERNIGHT, placed) == placed + timedelta(days=1)
    assert estimate_delivery(ShippingMethod.PICKUP, placed) == placed

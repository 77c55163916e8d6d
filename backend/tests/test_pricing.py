import os
import unittest
from datetime import timedelta
from decimal import Decimal

os.environ.setdefault("POSTGRES_SERVER", "localhost")
os.environ.setdefault("POSTGRES_USER", "test")
os.environ.setdefault("POSTGRES_PASSWORD", "test")
os.environ.setdefault("POSTGRES_DB", "test")

from app.core.errors import InvalidCoupon, InvalidInput  # noqa: E402
from app.models import Coupon, CouponType, get_datetime_utc  # noqa: E402
from app.services.pricing import (  # noqa: E402
    CartLine,
    FlatRateShipping,
    FreeShipping,
    PricingConfig,
    StaticRateProvider,
    allocate_discounts,
    order_discount_cap,
    price_cart,
    to_minor_units,
    to_money,
    validate_coupon,
)

D = Decimal


def line(product_id: str, vendor_id: str, price: str, quantity: int = 1) -> CartLine:
    return CartLine(
        product_id=product_id,
        vendor_id=vendor_id,
        name=product_id,
        quantity=quantity,
        unit_price=D(price),
    )


def coupon(type_: CouponType, value: str, maximum: str | None = None, **fields) -> Coupon:
    now = get_datetime_utc()
    return Coupon(
        code=fields.pop("code", "SAVE"),
        type=type_.value,
        value=D(value),
        maximum_discount=D(maximum) if maximum else None,
        minimum_amount=fields.pop("minimum_amount", D("0.00")),
        valid_from=fields.pop("valid_from", now - timedelta(days=1)),
        valid_until=fields.pop("valid_until", now + timedelta(days=1)),
        **fields,
    )


CONFIG = PricingConfig(
    tax_rate=D("0.10"),
    commission_rate=D("0.10"),
    shipping=FlatRateShipping(D("15"), D("100")),
)


class TestMoney(unittest.TestCase):
    def test_rounds_half_up(self) -> None:
        self.assertEqual(to_money("2.345"), D("2.35"))
        self.assertEqual(to_money(D("2.344")), D("2.34"))
        self.assertEqual(to_money(10), D("10.00"))

    def test_minor_units(self) -> None:
        self.assertEqual(to_minor_units(D("125.00")), 12500)
        self.assertEqual(to_minor_units(D("0.015")), 2)


class TestShipping(unittest.TestCase):
    def test_flat_rate_waived_strictly_above_threshold(self) -> None:
        policy = FlatRateShipping(D("15"), D("100"))
        self.assertEqual(policy.charge(D("100.00")), D("15.00"))
        self.assertEqual(policy.charge(D("100.01")), D("0.00"))

    def test_free_policy(self) -> None:
        self.assertEqual(FreeShipping().charge(D("5")), D("0.00"))


class TestPriceCart(unittest.TestCase):
    def test_single_vendor_checkout(self) -> None:
        quote = price_cart([line("pA", "v1", "50.00", 2)], CONFIG)

        self.assertEqual(len(quote.vendors), 1)
        vendor = quote.vendors[0]
        self.assertEqual(vendor.subtotal, D("100.00"))
        self.assertEqual(vendor.tax, D("10.00"))
        self.assertEqual(vendor.shipping, D("15.00"))
        self.assertEqual(vendor.discount, D("0.00"))
        self.assertEqual(vendor.total, D("125.00"))
        self.assertEqual(vendor.commission, D("10.00"))
        self.assertEqual(vendor.vendor_amount, D("90.00"))

    def test_two_vendors_with_capped_percentage_coupon(self) -> None:
        lines = [line("A", "v1", "60.00"), line("B", "v2", "40.00")]
        quote = price_cart(lines, CONFIG, coupon(CouponType.PERCENTAGE, "10", maximum="5"))

        first, second = quote.vendors
        self.assertEqual((first.vendor_id, second.vendor_id), ("v1", "v2"))
        self.assertEqual(first.discount, D("1.00"))
        self.assertEqual(second.discount, D("4.00"))
        self.assertLessEqual(quote.discount, D("5.00"))
        self.assertEqual(
            quote.total + quote.discount, quote.subtotal + quote.tax + quote.shipping
        )

    def test_vendor_totals_are_consistent(self) -> None:
        lines = [
            line("A", "v1", "19.99", 3),
            line("B", "v2", "0.35"),
            line("C", "v1", "5.05", 2),
        ]
        quote = price_cart(lines, CONFIG, coupon(CouponType.FIXED_AMOUNT, "7"))

        self.assertEqual([vendor.vendor_id for vendor in quote.vendors], ["v1", "v2"])
        self.assertEqual([cart_line.product_id for cart_line in quote.vendors[0].lines], ["A", "C"])
        for vendor in quote.vendors:
            self.assertEqual(
                vendor.total,
                to_money(vendor.subtotal + vendor.tax + vendor.shipping - vendor.discount),
            )
            self.assertGreaterEqual(vendor.total, D("0"))
            self.assertLessEqual(vendor.discount, vendor.subtotal)
        self.assertLessEqual(quote.discount, D("7.00"))

    def test_free_shipping_coupon_zeroes_shipping(self) -> None:
        quote = price_cart(
            [line("A", "v1", "20.00"), line("B", "v2", "30.00")],
            CONFIG,
            coupon(CouponType.FREE_SHIPPING, "0"),
        )
        self.assertEqual(quote.shipping, D("0.00"))
        self.assertEqual(quote.discount, D("0.00"))


class TestDiscountAllocation(unittest.TestCase):
    def test_fixed_amount_split_by_share(self) -> None:
        discounts, free_shipping = allocate_discounts(
            coupon(CouponType.FIXED_AMOUNT, "10"),
            D("100.00"),
            {"v1": D("75.00"), "v2": D("25.00")},
        )
        self.assertFalse(free_shipping)
        self.assertEqual(discounts, {"v1": D("7.50"), "v2": D("2.50")})

    def test_rounding_trim_keeps_sum_within_cap(self) -> None:
        discounts, _ = allocate_discounts(
            coupon(CouponType.FIXED_AMOUNT, "10"),
            D("30.00"),
            {"v1": D("10.00"), "v2": D("10.00"), "v3": D("10.00")},
        )
        # Each share rounds to 3.33, so nothing needs trimming here
        self.assertEqual(sum(discounts.values()), D("9.99"))

        discounts, _ = allocate_discounts(
            coupon(CouponType.FIXED_AMOUNT, "1"),
            D("3.00"),
            {"v1": D("1.00"), "v2": D("1.00"), "v3": D("1.00")},
        )
        self.assertLessEqual(sum(discounts.values()), D("1.00"))

    def test_discount_never_exceeds_subtotal(self) -> None:
        cap = order_discount_cap(coupon(CouponType.FIXED_AMOUNT, "500"), D("40.00"))
        self.assertEqual(cap, D("40.00"))

    def test_unknown_coupon_type_rejected(self) -> None:
        bogus = coupon(CouponType.PERCENTAGE, "10")
        bogus.type = "bogus"
        with self.assertRaises(InvalidCoupon):
            allocate_discounts(bogus, D("10"), {"v1": D("10")})


class TestValidateCoupon(unittest.TestCase):
    def test_window_is_inclusive(self) -> None:
        now = get_datetime_utc()
        validate_coupon(coupon(CouponType.PERCENTAGE, "10", valid_from=now), D("10"), now)
        validate_coupon(coupon(CouponType.PERCENTAGE, "10", valid_until=now), D("10"), now)

    def test_expired_coupon(self) -> None:
        now = get_datetime_utc()
        expired = coupon(CouponType.PERCENTAGE, "10", valid_until=now - timedelta(seconds=1))
        with self.assertRaises(InvalidCoupon):
            validate_coupon(expired, D("10"), now)

    def test_inactive_and_exhausted(self) -> None:
        with self.assertRaises(InvalidCoupon):
            validate_coupon(coupon(CouponType.PERCENTAGE, "10", is_active=False), D("10"))
        with self.assertRaises(InvalidCoupon):
            validate_coupon(
                coupon(CouponType.PERCENTAGE, "10", usage_limit=2, used_count=2), D("10")
            )

    def test_minimum_amount(self) -> None:
        limited = coupon(CouponType.FIXED_AMOUNT, "5", minimum_amount=D("50.00"))
        with self.assertRaises(InvalidCoupon) as ctx:
            validate_coupon(limited, D("49.99"))
        self.assertEqual(ctx.exception.details["minimumAmount"], "50.00")
        validate_coupon(limited, D("50.00"))


class TestRates(unittest.TestCase):
    def test_static_conversion_both_directions(self) -> None:
        rates = StaticRateProvider({("USD", "INR"): D("84")})
        self.assertEqual(rates.convert(D("125.00"), "USD", "INR"), D("10500.00"))
        self.assertEqual(rates.convert(D("84.00"), "inr", "usd"), D("1.00"))
        self.assertEqual(rates.convert(D("3.456"), "USD", "USD"), D("3.46"))

    def test_unknown_pair(self) -> None:
        with self.assertRaises(InvalidInput):
            StaticRateProvider({}).rate("USD", "EUR")


if __name__ == "__main__":
    unittest.main()

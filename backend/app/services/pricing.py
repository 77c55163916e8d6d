"""
Money & pricing

All amounts are Decimal quantized to cents with ROUND_HALF_UP (half away from
zero for the non-negative amounts the marketplace stores). Nothing here
touches the database: callers hand in products and coupons already loaded.

Per vendor v with subtotal Sv:

    tax_v        = round(Sv * tax_rate)
    shipping_v   = shipping policy (0 when a free_shipping coupon applies)
    discount_v   = coupon allocation, never above Sv
    total_v      = round(Sv + tax_v + shipping_v - discount_v)
    commission_v = round(Sv * commission_rate)
    payout_v     = Sv - commission_v
"""

from abc import ABC, abstractmethod
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from app.core.config import Settings, settings
from app.core.errors import InvalidCoupon, InvalidInput
from app.models import Coupon, CouponType, ensure_utc, get_datetime_utc

CENT = Decimal("0.01")
ZERO = Decimal("0.00")
HUNDRED = Decimal("100")


def to_money(value: Decimal | int | float | str) -> Decimal:
    """Quantize to two fractional digits, rounding half away from zero."""
    amount = value if isinstance(value, Decimal) else Decimal(str(value))
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def to_minor_units(amount: Decimal, scale: int = 100) -> int:
    """Convert a money amount to integer minor units (cents, paise)."""
    return int((to_money(amount) * scale).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


# SHIPPING POLICIES


class ShippingPolicy(ABC):
    name: str

    @abstractmethod
    def charge(self, subtotal: Decimal) -> Decimal:
        """Shipping charged on one vendor's subtotal"""


class FlatRateShipping(ShippingPolicy):
    """Flat fee, waived when the subtotal is strictly above the threshold"""

    name = "flat_rate"

    def __init__(self, flat: Decimal, free_threshold: Decimal):
        self.flat = to_money(flat)
        self.free_threshold = to_money(free_threshold)

    def charge(self, subtotal: Decimal) -> Decimal:
        return ZERO if subtotal > self.free_threshold else self.flat


class FreeShipping(ShippingPolicy):
    name = "free"

    def charge(self, subtotal: Decimal) -> Decimal:
        return ZERO


def shipping_policy_from_settings(config: Settings) -> ShippingPolicy:
    if config.SHIPPING_POLICY == FreeShipping.name:
        return FreeShipping()
    if config.SHIPPING_POLICY == FlatRateShipping.name:
        return FlatRateShipping(config.FLAT_SHIPPING, config.FREE_SHIPPING_THRESHOLD)
    raise ValueError(f"Unknown SHIPPING_POLICY {config.SHIPPING_POLICY!r}")


@dataclass(frozen=True)
class PricingConfig:
    tax_rate: Decimal
    commission_rate: Decimal
    shipping: ShippingPolicy
    currency: str = "USD"
    minor_unit_scale: int = 100

    @classmethod
    def from_settings(cls, config: Settings = settings) -> "PricingConfig":
        return cls(
            tax_rate=config.TAX_RATE,
            commission_rate=config.COMMISSION_RATE,
            shipping=shipping_policy_from_settings(config),
            currency=config.CURRENCY.upper(),
            minor_unit_scale=config.USD_TO_MINOR_UNIT_SCALE,
        )


# CURRENCY CONVERSION


class RateProvider(ABC):
    """Source of exchange rates for amounts sent to payment gateways"""

    @abstractmethod
    def rate(self, base: str, quote: str) -> Decimal:
        """Units of `quote` per unit of `base`"""

    def convert(self, amount: Decimal, base: str, quote: str) -> Decimal:
        if base.upper() == quote.upper():
            return to_money(amount)
        return to_money(amount * self.rate(base.upper(), quote.upper()))


class StaticRateProvider(RateProvider):
    """Fixed rates from configuration; no live FX"""

    def __init__(self, rates: Mapping[tuple[str, str], Decimal]):
        self._rates = {
            (base.upper(), quote.upper()): Decimal(value)
            for (base, quote), value in rates.items()
        }

    @classmethod
    def from_settings(cls, config: Settings = settings) -> "StaticRateProvider":
        return cls({("USD", "INR"): config.USD_TO_INR_RATE})

    def rate(self, base: str, quote: str) -> Decimal:
        if (base, quote) in self._rates:
            return self._rates[(base, quote)]
        if (quote, base) in self._rates:
            return Decimal(1) / self._rates[(quote, base)]
        raise InvalidInput(
            f"Unsupported currency conversion {base} -> {quote}",
            details={"base": base, "quote": quote},
        )


# CART PRICING


@dataclass
class CartLine:
    product_id: str
    vendor_id: str
    name: str
    quantity: int
    unit_price: Decimal
    variant: dict[str, Any] | None = None

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity


@dataclass
class VendorQuote:
    vendor_id: str
    lines: list[CartLine] = field(default_factory=list)
    subtotal: Decimal = ZERO
    tax: Decimal = ZERO
    shipping: Decimal = ZERO
    discount: Decimal = ZERO
    total: Decimal = ZERO
    commission: Decimal = ZERO
    vendor_amount: Decimal = ZERO


@dataclass
class CartQuote:
    vendors: list[VendorQuote]
    currency: str
    coupon_code: str | None = None

    @property
    def subtotal(self) -> Decimal:
        return sum((v.subtotal for v in self.vendors), ZERO)

    @property
    def tax(self) -> Decimal:
        return sum((v.tax for v in self.vendors), ZERO)

    @property
    def shipping(self) -> Decimal:
        return sum((v.shipping for v in self.vendors), ZERO)

    @property
    def discount(self) -> Decimal:
        return sum((v.discount for v in self.vendors), ZERO)

    @property
    def total(self) -> Decimal:
        return sum((v.total for v in self.vendors), ZERO)


def partition_by_vendor(lines: Iterable[CartLine]) -> dict[str, list[CartLine]]:
    """Group lines by vendor, keeping first-seen vendor order and line order."""
    groups: dict[str, list[CartLine]] = {}
    for line in lines:
        groups.setdefault(line.vendor_id, []).append(line)
    return groups


def validate_coupon(coupon: Coupon, subtotal: Decimal, now: datetime | None = None) -> None:
    """
    Raise InvalidCoupon unless the coupon is usable for a cart of `subtotal`.

    The validity window is inclusive at both ends.
    """
    now = now or get_datetime_utc()
    if not coupon.is_active:
        raise InvalidCoupon("Coupon is not active", details={"code": coupon.code})
    if not ensure_utc(coupon.valid_from) <= now <= ensure_utc(coupon.valid_until):
        raise InvalidCoupon(
            "Coupon is expired or not yet valid", details={"code": coupon.code}
        )
    if coupon.usage_limit is not None and coupon.used_count >= coupon.usage_limit:
        raise InvalidCoupon("Coupon usage limit reached", details={"code": coupon.code})
    if subtotal < coupon.minimum_amount:
        raise InvalidCoupon(
            f"Minimum order amount of {to_money(coupon.minimum_amount)} required",
            details={"code": coupon.code, "minimumAmount": str(coupon.minimum_amount)},
        )


def order_discount_cap(coupon: Coupon, subtotal: Decimal) -> Decimal:
    """Largest discount the whole checkout may receive from `coupon`."""
    if coupon.type == CouponType.PERCENTAGE.value:
        cap = subtotal * coupon.value / HUNDRED
    else:
        cap = Decimal(coupon.value)
    if coupon.maximum_discount is not None:
        cap = min(cap, coupon.maximum_discount)
    return to_money(max(min(cap, subtotal), ZERO))


def allocate_discounts(
    coupon: Coupon | None, subtotal: Decimal, vendor_subtotals: Mapping[str, Decimal]
) -> tuple[dict[str, Decimal], bool]:
    """
    Split a coupon across vendors.

    Returns (discount per vendor, shipping waived). After per-vendor rounding
    the largest allocation is trimmed until the sum fits the order-level cap.
    """
    discounts = {vendor_id: ZERO for vendor_id in vendor_subtotals}
    if coupon is None:
        return discounts, False
    if coupon.type == CouponType.FREE_SHIPPING.value:
        return discounts, True
    if coupon.type not in (CouponType.PERCENTAGE.value, CouponType.FIXED_AMOUNT.value):
        raise InvalidCoupon(
            f"Unsupported coupon type {coupon.type!r}", details={"code": coupon.code}
        )
    if subtotal <= ZERO:
        return discounts, False

    for vendor_id, vendor_subtotal in vendor_subtotals.items():
        if coupon.type == CouponType.PERCENTAGE.value:
            amount = vendor_subtotal * coupon.value / HUNDRED
        else:
            amount = vendor_subtotal / subtotal * coupon.value
        if coupon.maximum_discount is not None:
            amount = min(amount, coupon.maximum_discount)
        discounts[vendor_id] = to_money(min(amount, vendor_subtotal))

    excess = sum(discounts.values(), ZERO) - order_discount_cap(coupon, subtotal)
    while excess > ZERO:
        # max() keeps the first vendor on ties
        largest = max(discounts, key=lambda vendor_id: discounts[vendor_id])
        cut = min(discounts[largest], excess)
        if cut <= ZERO:
            break
        discounts[largest] -= cut
        excess -= cut

    return discounts, False


def price_cart(
    lines: Sequence[CartLine],
    config: PricingConfig,
    coupon: Coupon | None = None,
) -> CartQuote:
    """Price a cart; `coupon` must already have passed validate_coupon."""
    groups = partition_by_vendor(lines)
    vendor_subtotals = {
        vendor_id: to_money(sum((line.line_total for line in group), ZERO))
        for vendor_id, group in groups.items()
    }
    subtotal = sum(vendor_subtotals.values(), ZERO)
    discounts, free_shipping = allocate_discounts(coupon, subtotal, vendor_subtotals)

    vendors = []
    for vendor_id, group in groups.items():
        vendor_subtotal = vendor_subtotals[vendor_id]
        tax = to_money(vendor_subtotal * config.tax_rate)
        shipping = ZERO if free_shipping else to_money(config.shipping.charge(vendor_subtotal))
        discount = discounts[vendor_id]
        commission = to_money(vendor_subtotal * config.commission_rate)
        vendors.append(
            VendorQuote(
                vendor_id=vendor_id,
                lines=list(group),
                subtotal=vendor_subtotal,
                tax=tax,
                shipping=shipping,
                discount=discount,
                total=to_money(vendor_subtotal + tax + shipping - discount),
                commission=commission,
                vendor_amount=vendor_subtotal - commission,
            )
        )

    return CartQuote(
        vendors=vendors,
        currency=config.currency,
        coupon_code=coupon.code if coupon else None,
    )

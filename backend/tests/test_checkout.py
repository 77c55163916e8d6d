import re
import unittest
from datetime import timedelta
from decimal import Decimal

from factories import (
    ADDRESS,
    CUSTOMER,
    ApiHarness,
    add_coupon,
    add_product,
    make_engine,
    order_request,
    place_orders,
)
from sqlmodel import Session, func, select

from app.core.errors import (
    InactiveProduct,
    InsufficientQuantity,
    InvalidCoupon,
    InvalidInput,
    UnknownProduct,
)
from app.models import (
    Cart,
    CheckoutStatus,
    CheckoutTicket,
    Coupon,
    CouponType,
    Order,
    OutboxEvent,
    PaymentStatus,
    Product,
    get_datetime_utc,
)
from app.services.checkout_service import CheckoutService, generate_order_number
from app.services.inventory_service import InventoryLedger

D = Decimal


class CheckoutServiceTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = make_engine()
        self.session = Session(self.engine)
        add_product(self.session, "pA", "vendor-1", "50.00", quantity=5)
        add_product(self.session, "pB", "vendor-2", "40.00", quantity=5)
        add_product(self.session, "pC", "vendor-1", "60.00", quantity=5)

    def tearDown(self) -> None:
        self.session.close()

    def quantity(self, product_id: str) -> int:
        return self.session.get(Product, product_id).quantity

    def test_single_vendor_cash_on_delivery(self) -> None:
        self.session.add(Cart(user_id=CUSTOMER.id, items=[{"product": "pA", "quantity": 2}]))
        self.session.commit()

        orders = place_orders(self.session, [("pA", 2)])

        self.assertEqual(len(orders), 1)
        order = orders[0]
        self.assertEqual(order.subtotal, D("100.00"))
        self.assertEqual(order.tax, D("10.00"))
        self.assertEqual(order.shipping, D("15.00"))
        self.assertEqual(order.discount, D("0.00"))
        self.assertEqual(order.total, D("125.00"))
        self.assertEqual(order.payment_status, PaymentStatus.PENDING.value)
        self.assertEqual(order.status, "pending")
        self.assertRegex(order.order_number, r"^ORD-\d{13}-[0-9A-Z]{5}$")

        vendor_order = order.vendor_orders[0]
        self.assertEqual(vendor_order.vendor_id, "vendor-1")
        self.assertEqual(vendor_order.commission, D("10.00"))
        self.assertEqual(vendor_order.vendor_amount, D("90.00"))
        self.assertEqual([item.product_id for item in order.items], ["pA"])
        self.assertEqual(order.shipping_address["zipCode"], ADDRESS["zipCode"])
        self.assertEqual(order.billing_address, order.shipping_address)

        self.assertEqual(self.quantity("pA"), 3)
        self.assertIsNone(self.session.exec(select(Cart)).first())

        events = self.session.exec(
            select(OutboxEvent).where(OutboxEvent.event_type == "order.created")
        ).all()
        self.assertEqual(len(events), 1)
        self.assertEqual(events[0].partition_key, str(order.id))
        self.assertEqual(events[0].payload["data"]["total_amount"], "125.00")

        ticket = self.session.exec(select(CheckoutTicket)).one()
        self.assertEqual(ticket.status, CheckoutStatus.COMMITTED.value)
        self.assertEqual(ticket.order_ids, [str(order.id)])

    def test_one_order_per_vendor_slices_sum_to_cart(self) -> None:
        orders = place_orders(self.session, [("pA", 1), ("pB", 2), ("pC", 1)])

        self.assertEqual([o.vendor_orders[0].vendor_id for o in orders], ["vendor-1", "vendor-2"])
        self.assertEqual([item.product_id for item in orders[0].items], ["pA", "pC"])
        for order in orders:
            self.assertEqual(sum(vo.subtotal for vo in order.vendor_orders), order.subtotal)
            self.assertEqual(
                order.total, order.subtotal + order.tax + order.shipping - order.discount
            )
        # vendor-1 at 110.00 ships free; vendor-2 at 80.00 pays the flat rate
        self.assertEqual(orders[0].shipping, D("0.00"))
        self.assertEqual(orders[1].shipping, D("15.00"))

    def test_same_product_on_two_lines_is_checked_in_aggregate(self) -> None:
        with self.assertRaises(InsufficientQuantity) as ctx:
            place_orders(self.session, [("pA", 3), ("pA", 3)])
        self.assertEqual(ctx.exception.details["requested"], 6)
        self.assertEqual(self.quantity("pA"), 5)

    def test_insufficient_stock_leaves_nothing_behind(self) -> None:
        with self.assertRaises(InsufficientQuantity):
            place_orders(self.session, [("pB", 1), ("pA", 6)])

        self.assertEqual(self.quantity("pA"), 5)
        self.assertEqual(self.quantity("pB"), 5)
        self.assertEqual(self.session.exec(select(func.count()).select_from(Order)).one(), 0)
        self.assertEqual(
            self.session.exec(select(func.count()).select_from(OutboxEvent)).one(), 0
        )

    def test_unknown_and_inactive_products(self) -> None:
        with self.assertRaises(UnknownProduct):
            place_orders(self.session, [("nope", 1)])

        add_product(self.session, "pX", "vendor-1", "5.00", is_active=False)
        with self.assertRaises(InactiveProduct):
            place_orders(self.session, [("pX", 1)])

    def test_concurrent_decrement_compensates_earlier_lines(self) -> None:
        ledger = InventoryLedger(self.session)
        reservation = ledger.validate_and_reserve([("pA", 2), ("pB", 1)])

        # Another checkout takes the last pB between validation and commit
        with Session(self.engine) as other:
            product = other.get(Product, "pB")
            product.quantity = 0
            other.add(product)
            other.commit()

        with self.assertRaises(InsufficientQuantity) as ctx:
            ledger.commit(reservation)

        self.assertEqual(ctx.exception.details["productId"], "pB")
        self.session.expire_all()
        self.assertEqual(self.quantity("pA"), 5)
        self.assertEqual(self.quantity("pB"), 0)

    def test_untracked_product_is_not_decremented(self) -> None:
        add_product(self.session, "pD", "vendor-3", "9.99", quantity=0, track_quantity=False)

        orders = place_orders(self.session, [("pD", 4)])

        self.assertEqual(len(orders), 1)
        self.assertEqual(self.quantity("pD"), 0)

    def test_gateway_methods_are_rejected(self) -> None:
        with self.assertRaises(InvalidInput):
            CheckoutService(self.session).checkout(
                CUSTOMER, order_request([("pA", 1)], payment_method="razorpay")
            )

    def test_unknown_coupon(self) -> None:
        with self.assertRaises(InvalidCoupon):
            place_orders(self.session, [("pA", 1)], coupon_code="missing")

    def test_expired_coupon_is_rejected_at_checkout(self) -> None:
        now = get_datetime_utc()
        add_coupon(
            self.session,
            "OLD",
            CouponType.FIXED_AMOUNT,
            "5",
            valid_from=now - timedelta(days=10),
            valid_until=now - timedelta(days=1),
        )
        with self.assertRaises(InvalidCoupon):
            place_orders(self.session, [("pA", 1)], coupon_code="old")
        self.assertEqual(self.quantity("pA"), 5)

    def test_coupon_usage_is_counted_once_per_checkout(self) -> None:
        add_coupon(self.session, "FLAT10", CouponType.FIXED_AMOUNT, "10")

        orders = place_orders(self.session, [("pA", 1), ("pB", 1)], coupon_code="flat10")

        self.assertEqual(sum(order.discount for order in orders), D("10.00"))
        self.assertEqual({order.coupon_code for order in orders}, {"FLAT10"})
        coupon = self.session.exec(select(Coupon).where(Coupon.code == "FLAT10")).one()
        self.assertEqual(coupon.used_count, 1)

    def test_quote_has_no_side_effects(self) -> None:
        request = order_request([("pA", 2)])
        quote = CheckoutService(self.session).quote(request.items)

        self.assertEqual(quote.total, D("125.00"))
        self.assertEqual(self.quantity("pA"), 5)
        self.assertEqual(self.session.exec(select(func.count()).select_from(CheckoutTicket)).one(), 0)

    def test_order_numbers_are_unique(self) -> None:
        numbers = {generate_order_number() for _ in range(50)}
        self.assertEqual(len(numbers), 50)
        self.assertTrue(all(re.match(r"^ORD-\d+-[0-9A-Z]{5}$", n) for n in numbers))


class CheckoutApiTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = make_engine()
        with Session(self.engine) as session:
            add_product(session, "A", "vendor-1", "60.00")
            add_product(session, "B", "vendor-2", "40.00")
            add_coupon(session, "SAVE10", CouponType.PERCENTAGE, "10", maximum_discount="5")
        self.harness = ApiHarness(self.engine)

    def checkout_body(self, **overrides) -> dict:
        body = {
            "items": [{"product": "A", "quantity": 1}, {"product": "B", "quantity": 1}],
            "shippingAddress": ADDRESS,
            "paymentMethod": "cash_on_delivery",
            "couponCode": "save10",
        }
        body.update(overrides)
        return body

    def test_two_vendor_checkout_with_capped_coupon(self) -> None:
        client = self.harness.as_user(CUSTOMER)
        response = client.post("/api/orders", json=self.checkout_body())

        self.assertEqual(response.status_code, 201)
        body = response.json()
        self.assertEqual(body["message"], "Orders created successfully")
        orders = body["orders"]
        self.assertEqual(len(orders), 2)
        self.assertEqual([o["discount"] for o in orders], [1.0, 4.0])
        self.assertEqual([o["vendorOrders"][0]["vendor"] for o in orders], ["vendor-1", "vendor-2"])
        self.assertEqual(orders[0]["items"][0]["product"], "A")
        self.assertEqual(orders[0]["customer"], CUSTOMER.id)

        subtotal = sum(o["subtotal"] for o in orders)
        self.assertAlmostEqual(
            sum(o["total"] for o in orders) + sum(o["discount"] for o in orders),
            subtotal + sum(o["tax"] for o in orders) + sum(o["shipping"] for o in orders),
        )
        with Session(self.engine) as session:
            coupon = session.exec(select(Coupon).where(Coupon.code == "SAVE10")).one()
            self.assertEqual(coupon.used_count, 1)

    def test_validation_errors_use_error_shape(self) -> None:
        client = self.harness.as_user(CUSTOMER)
        response = client.post(
            "/api/orders",
            json=self.checkout_body(items=[{"product": "A", "quantity": 99}], couponCode=None),
        )

        self.assertEqual(response.status_code, 400)
        body = response.json()
        self.assertEqual(body["code"], "INSUFFICIENT_QUANTITY")
        self.assertFalse(body["retryable"])
        self.assertEqual(body["details"]["productId"], "A")

    def test_empty_cart_is_rejected(self) -> None:
        client = self.harness.as_user(CUSTOMER)
        response = client.post("/api/orders", json=self.checkout_body(items=[]))
        self.assertEqual(response.status_code, 422)


if __name__ == "__main__":
    unittest.main()

import os
import unittest

os.environ.setdefault("POSTGRES_SERVER", "localhost")
os.environ.setdefault("POSTGRES_USER", "test")
os.environ.setdefault("POSTGRES_PASSWORD", "test")
os.environ.setdefault("POSTGRES_DB", "test")

from app.core.errors import Precondition  # noqa: E402
from app.models import Order, OrderStatus, VendorOrder  # noqa: E402
from app.services.order_state import (  # noqa: E402
    aggregate_status,
    apply_slice_transition,
    can_transition,
)

S = OrderStatus


def make_order(*statuses: OrderStatus) -> Order:
    order = Order(
        order_number="ORD-1-ABCDE",
        customer_id="cust-1",
        payment_method="cash_on_delivery",
        shipping_address={},
        billing_address={},
    )
    order.vendor_orders = [
        VendorOrder(order_id=order.id, vendor_id=f"vendor-{i}", position=i, status=status.value)
        for i, status in enumerate(statuses)
    ]
    order.status = aggregate_status(statuses).value
    return order


class TestAggregateStatus(unittest.TestCase):
    def test_uniform_slices(self) -> None:
        for status in S:
            self.assertEqual(aggregate_status([status, status]), status)

    def test_shipped_needs_every_slice(self) -> None:
        self.assertEqual(aggregate_status([S.SHIPPED, S.DELIVERED]), S.SHIPPED)
        self.assertEqual(aggregate_status([S.SHIPPED, S.PENDING]), S.PROCESSING)
        self.assertEqual(aggregate_status([S.DELIVERED, S.CONFIRMED]), S.PROCESSING)

    def test_most_advanced_live_slice_wins(self) -> None:
        self.assertEqual(aggregate_status([S.PENDING, S.CONFIRMED]), S.CONFIRMED)
        self.assertEqual(aggregate_status([S.CANCELLED, S.CONFIRMED]), S.CONFIRMED)
        self.assertEqual(aggregate_status([S.REFUNDED, S.SHIPPED]), S.PROCESSING)

    def test_terminal_mixes(self) -> None:
        self.assertEqual(aggregate_status([S.CANCELLED, S.REFUNDED]), S.REFUNDED)
        self.assertEqual(aggregate_status([]), S.PENDING)
        self.assertEqual(aggregate_status(["delivered", "delivered"]), S.DELIVERED)


class TestTransitions(unittest.TestCase):
    def test_table(self) -> None:
        self.assertTrue(can_transition(S.PENDING, S.SHIPPED))
        self.assertTrue(can_transition(S.PROCESSING, S.CANCELLED))
        self.assertTrue(can_transition(S.DELIVERED, S.REFUNDED))
        self.assertFalse(can_transition(S.SHIPPED, S.CANCELLED))
        self.assertFalse(can_transition(S.DELIVERED, S.SHIPPED))
        self.assertFalse(can_transition(S.CANCELLED, S.PENDING))
        self.assertFalse(can_transition(S.PENDING, S.DELIVERED))

    def test_parent_follows_slices(self) -> None:
        order = make_order(S.PENDING, S.PENDING)
        first, second = order.vendor_orders
        for slice_ in (first, second):
            slice_.tracking_number = "123456789012"
            slice_.carrier = "FedEx"

        apply_slice_transition(order, first, S.SHIPPED)
        self.assertEqual(order.status, S.PROCESSING.value)
        self.assertIsNotNone(first.shipped_at)

        apply_slice_transition(order, second, S.SHIPPED)
        self.assertEqual(order.status, S.SHIPPED.value)

        apply_slice_transition(order, first, S.DELIVERED)
        self.assertEqual(order.status, S.SHIPPED.value)
        apply_slice_transition(order, second, S.DELIVERED)
        self.assertEqual(order.status, S.DELIVERED.value)
        self.assertIsNotNone(second.delivered_at)

    def test_shipping_requires_tracking(self) -> None:
        order = make_order(S.CONFIRMED)
        with self.assertRaises(Precondition):
            apply_slice_transition(order, order.vendor_orders[0], S.SHIPPED)
        self.assertEqual(order.vendor_orders[0].status, S.CONFIRMED.value)

    def test_illegal_transition_leaves_state_untouched(self) -> None:
        order = make_order(S.CANCELLED)
        with self.assertRaises(Precondition) as ctx:
            apply_slice_transition(order, order.vendor_orders[0], S.CONFIRMED)
        self.assertEqual(ctx.exception.details, {"from": "cancelled", "to": "confirmed"})
        self.assertEqual(order.status, S.CANCELLED.value)

    def test_returns_previous_status(self) -> None:
        order = make_order(S.PENDING)
        previous = apply_slice_transition(order, order.vendor_orders[0], S.CONFIRMED)
        self.assertEqual(previous, S.PENDING)
        self.assertEqual(order.status, S.CONFIRMED.value)


if __name__ == "__main__":
    unittest.main()

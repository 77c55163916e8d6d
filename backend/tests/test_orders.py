import unittest

from factories import (
    ADMIN,
    CUSTOMER,
    OTHER_CUSTOMER,
    VENDOR_1,
    VENDOR_2,
    ApiHarness,
    add_product,
    make_engine,
    place_orders,
)
from sqlmodel import Session, select

from app.models import OrderStatus, OutboxEvent, Product
from app.services.order_service import OrderService

FEDEX = {"trackingNumber": "123456789012", "carrier": "FedEx"}


class OrdersApiTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = make_engine()
        with Session(self.engine) as session:
            add_product(session, "pA", "vendor-1", "50.00", quantity=5)
            add_product(session, "pB", "vendor-2", "40.00", quantity=5)
            orders = place_orders(session, [("pA", 2)])
            self.order_id = str(orders[0].id)
        self.harness = ApiHarness(self.engine)

    def stock(self, product_id: str = "pA") -> int:
        with Session(self.engine) as session:
            return session.get(Product, product_id).quantity

    def events(self, event_type: str) -> list[OutboxEvent]:
        with Session(self.engine) as session:
            return list(
                session.exec(select(OutboxEvent).where(OutboxEvent.event_type == event_type)).all()
            )

    def set_status(self, status: str, tracking: dict | None = None, vendor=VENDOR_1):
        body = {"status": status}
        if tracking is not None:
            body["tracking"] = tracking
        return self.harness.as_user(vendor).patch(f"/api/orders/{self.order_id}/status", json=body)

    # READS

    def test_participants_can_read_the_order(self) -> None:
        for principal in (CUSTOMER, VENDOR_1, ADMIN):
            response = self.harness.as_user(principal).get(f"/api/orders/{self.order_id}")
            self.assertEqual(response.status_code, 200, principal.id)
            body = response.json()
            self.assertEqual(body["id"], self.order_id)
            self.assertEqual(len(body["vendorOrders"]), 1)
            self.assertEqual(body["items"][0]["price"], 50.0)

    def test_strangers_get_not_found(self) -> None:
        for principal in (OTHER_CUSTOMER, VENDOR_2):
            response = self.harness.as_user(principal).get(f"/api/orders/{self.order_id}")
            self.assertEqual(response.status_code, 404)
            self.assertEqual(response.json()["code"], "NOT_FOUND")

    def test_listings_are_scoped(self) -> None:
        mine = self.harness.as_user(CUSTOMER).get("/api/orders/my-orders").json()
        self.assertEqual(mine["total"], 1)
        self.assertEqual(mine["totalPages"], 1)
        self.assertEqual(mine["currentPage"], 1)

        self.assertEqual(
            self.harness.as_user(OTHER_CUSTOMER).get("/api/orders/my-orders").json()["total"], 0
        )
        self.assertEqual(
            self.harness.as_user(VENDOR_1).get("/api/orders/vendor/my-orders").json()["total"], 1
        )
        self.assertEqual(
            self.harness.as_user(VENDOR_2).get("/api/orders/vendor/my-orders").json()["total"], 0
        )

        filtered = self.harness.as_user(CUSTOMER).get(
            "/api/orders/my-orders", params={"status": "delivered"}
        )
        self.assertEqual(filtered.json()["total"], 0)

    def test_admin_listing(self) -> None:
        response = self.harness.as_user(ADMIN).get(
            "/api/orders/admin/all", params={"paymentStatus": "pending"}
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["total"], 1)

        self.assertEqual(
            self.harness.as_user(CUSTOMER).get("/api/orders/admin/all").status_code, 403
        )
        self.assertEqual(
            self.harness.as_user(CUSTOMER).get("/api/orders/vendor/my-orders").status_code, 403
        )

    def test_supported_carriers(self) -> None:
        response = self.harness.client.get("/api/orders/carriers/supported")
        self.assertEqual(response.status_code, 200)
        self.assertIn({"name": "FedEx", "code": "fedex"}, response.json())

    # CUSTOMER CANCELLATION

    def test_cancel_restores_stock(self) -> None:
        self.assertEqual(self.stock(), 3)

        response = self.harness.as_user(CUSTOMER).patch(
            f"/api/orders/{self.order_id}/cancel", json={"reason": "Changed my mind"}
        )

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["status"], "cancelled")
        self.assertEqual(body["vendorOrders"][0]["status"], "cancelled")
        self.assertEqual(self.stock(), 5)

        cancelled = self.events("order.cancelled")
        self.assertEqual(len(cancelled), 1)
        self.assertEqual(cancelled[0].payload["data"]["reason"], "Changed my mind")

        again = self.harness.as_user(CUSTOMER).patch(f"/api/orders/{self.order_id}/cancel")
        self.assertEqual(again.status_code, 400)
        self.assertEqual(again.json()["code"], "PRECONDITION_FAILED")
        self.assertEqual(self.stock(), 5)

    def test_only_the_customer_can_cancel(self) -> None:
        response = self.harness.as_user(VENDOR_1).patch(f"/api/orders/{self.order_id}/cancel")
        self.assertEqual(response.status_code, 404)

    def test_cannot_cancel_after_shipping(self) -> None:
        self.set_status("shipped", FEDEX)

        response = self.harness.as_user(CUSTOMER).patch(f"/api/orders/{self.order_id}/cancel")

        self.assertEqual(response.status_code, 400)
        self.assertEqual(self.stock(), 3)

    # VENDOR FULFILLMENT

    def test_vendor_moves_slice_forward(self) -> None:
        confirmed = self.set_status("confirmed")
        self.assertEqual(confirmed.status_code, 200)
        self.assertEqual(confirmed.json()["status"], "confirmed")

        no_tracking = self.set_status("shipped")
        self.assertEqual(no_tracking.status_code, 400)
        self.assertEqual(no_tracking.json()["code"], "PRECONDITION_FAILED")

        shipped = self.set_status("shipped", {**FEDEX, "trackingNumber": " 123456789012 "})
        self.assertEqual(shipped.status_code, 200)
        slice_ = shipped.json()["vendorOrders"][0]
        self.assertEqual(shipped.json()["status"], "shipped")
        self.assertEqual(slice_["trackingNumber"], "123456789012")
        self.assertEqual(slice_["carrier"], "FedEx")
        self.assertEqual(slice_["courierCode"], "fedex")
        self.assertIsNotNone(slice_["shippedAt"])

        changes = self.events("order.status_changed")
        self.assertEqual(
            [(e.payload["data"]["previous_status"], e.payload["data"]["status"]) for e in changes],
            [("pending", "confirmed"), ("confirmed", "shipped")],
        )

    def test_tracking_format_is_checked(self) -> None:
        response = self.set_status("shipped", {"trackingNumber": "ABC12345", "carrier": "FedEx"})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["code"], "INVALID_INPUT")

    def test_tracking_can_be_attached_without_a_transition(self) -> None:
        response = self.set_status("pending", {"trackingNumber": "1Z999AA10123456784", "carrier": "UPS"})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["vendorOrders"][0]["courierCode"], "ups")
        self.assertEqual(self.events("order.status_changed"), [])

    def test_repeating_the_current_status_is_rejected(self) -> None:
        response = self.set_status("pending")
        self.assertEqual(response.status_code, 400)

    def test_vendor_cancel_restocks(self) -> None:
        response = self.set_status("cancelled")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "cancelled")
        self.assertEqual(self.stock(), 5)

    def test_vendor_cannot_refund(self) -> None:
        self.set_status("shipped", FEDEX)
        response = self.set_status("refunded")
        self.assertEqual(response.status_code, 403)

    def test_other_vendors_and_customers_are_refused(self) -> None:
        self.assertEqual(self.set_status("confirmed", vendor=VENDOR_2).status_code, 404)
        self.assertEqual(self.set_status("confirmed", vendor=CUSTOMER).status_code, 403)


class OrderServiceRefundTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = make_engine()
        self.session = Session(self.engine)
        add_product(self.session, "pA", "vendor-1", "50.00", quantity=5)

    def tearDown(self) -> None:
        self.session.close()

    def test_refund_restocks_only_unshipped_slices(self) -> None:
        order = place_orders(self.session, [("pA", 2)])[0]
        service = OrderService(self.session)

        service.refund(order, "admin-1")
        self.session.commit()

        order = service.get(order.id)
        self.assertEqual(order.status, OrderStatus.REFUNDED.value)
        self.assertEqual(self.session.get(Product, "pA").quantity, 5)

    def test_refund_after_shipping_keeps_stock_out(self) -> None:
        order = place_orders(self.session, [("pA", 2)])[0]
        service = OrderService(self.session)
        vendor_order = order.vendor_orders[0]
        vendor_order.tracking_number = "123456789012"
        vendor_order.carrier = "FedEx"
        vendor_order.status = OrderStatus.SHIPPED.value
        self.session.add(vendor_order)
        self.session.commit()

        order = service.get(order.id)
        service.refund(order, "admin-1")
        self.session.commit()

        self.assertEqual(service.get(order.id).status, OrderStatus.REFUNDED.value)
        self.assertEqual(self.session.get(Product, "pA").quantity, 3)


if __name__ == "__main__":
    unittest.main()

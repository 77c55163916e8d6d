import tempfile
import unittest
import uuid
from pathlib import Path
from unittest import mock

from factories import (
    ADMIN,
    CUSTOMER,
    OTHER_CUSTOMER,
    VENDOR_1,
    ApiHarness,
    FakeEscrow,
    add_escrow,
    add_product,
    make_engine,
    place_orders,
)
from sqlmodel import Session, select

from app.core.config import settings
from app.core.errors import Conflict, EscrowReverted, Forbidden, InvalidInput, Precondition
from app.models import (
    Dispute,
    Escrow,
    EscrowStatus,
    Order,
    OrderStatus,
    OutboxEvent,
    PaymentStatus,
    Product,
)
from app.services.dispute_service import (
    AUTO_DISPUTE_REASON,
    DisputeService,
    ImageUpload,
    unread_count,
)

PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 32


def png(name: str = "proof.png") -> ImageUpload:
    return ImageUpload(filename=name, content_type="image/png", data=PNG)


class DisputeServiceTestCase(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.engine = make_engine()
        self.session = Session(self.engine)
        add_product(self.session, "pA", "vendor-1", "50.00", quantity=5)
        self.order = place_orders(self.session, [("pA", 2)])[0]
        self.uploads = tempfile.TemporaryDirectory()
        self.escrow = FakeEscrow()
        self.service = DisputeService(self.session, self.escrow, upload_dir=self.uploads.name)

    def tearDown(self) -> None:
        self.session.close()
        self.uploads.cleanup()

    def upload_files(self) -> list[Path]:
        return list(Path(self.uploads.name).iterdir())

    async def test_buyer_opens_dispute(self) -> None:
        dispute = await self.service.create(CUSTOMER, self.order.id, "Item arrived broken")

        self.assertEqual(dispute.buyer_id, "cust-1")
        self.assertEqual(dispute.seller_id, "vendor-1")
        self.assertEqual(dispute.raised_by_role, "buyer")
        self.assertEqual(dispute.status, "open")
        self.assertEqual([m.content for m in dispute.messages], ["Item arrived broken"])
        # No escrow for this order, so nothing goes on-chain
        self.assertEqual(self.escrow.calls, [])

        opened = self.session.exec(
            select(OutboxEvent).where(OutboxEvent.event_type == "dispute.opened")
        ).all()
        self.assertEqual(len(opened), 1)
        self.assertFalse(opened[0].payload["data"]["auto_created"])

    async def test_seller_opens_dispute_and_escrow_is_disputed(self) -> None:
        escrow = add_escrow(self.session, self.order)

        dispute = await self.service.create(VENDOR_1, self.order.id, "Buyer claims non-delivery")

        self.assertEqual(dispute.raised_by_role, "seller")
        self.assertEqual(self.escrow.calls, [("raise_dispute", "0xEscrow01", "vendor-1")])
        self.session.refresh(escrow)
        self.assertEqual(escrow.status, EscrowStatus.DISPUTED.value)
        self.assertEqual(escrow.transactions[-1]["txHash"], "0xraise1")

    async def test_escrow_failure_keeps_the_dispute(self) -> None:
        escrow = add_escrow(self.session, self.order)
        service = DisputeService(self.session, FakeEscrow(revert=True), upload_dir=self.uploads.name)

        dispute = await service.create(CUSTOMER, self.order.id, "Never arrived")

        self.assertEqual(dispute.status, "open")
        self.session.refresh(escrow)
        self.assertEqual(escrow.status, EscrowStatus.LOCKED.value)
        self.assertEqual(escrow.transactions, [])

    async def test_one_dispute_per_order(self) -> None:
        await self.service.create(CUSTOMER, self.order.id, "First")
        with self.assertRaises(Conflict):
            await self.service.create(VENDOR_1, self.order.id, "Second")

    async def test_strangers_cannot_open(self) -> None:
        with self.assertRaises(Forbidden):
            await self.service.create(OTHER_CUSTOMER, self.order.id, "Not mine")

    async def test_message_with_images(self) -> None:
        dispute = await self.service.create(CUSTOMER, self.order.id, "Scratched screen")

        message = await self.service.send_message(
            CUSTOMER, dispute.id, content="  See photos  ", images=[png(), png("side.JPG")]
        )

        self.assertEqual(message.content, "See photos")
        self.assertEqual(message.sequence, 2)
        self.assertEqual(len(message.images), 2)
        first = message.images[0]
        self.assertEqual(first["original_name"], "proof.png")
        self.assertEqual(first["mime_type"], "image/png")
        self.assertTrue(first["url"].startswith("/uploads/disputes/dispute-"))
        self.assertTrue(message.images[1]["filename"].endswith(".jpg"))
        stored = Path(self.uploads.name) / first["filename"]
        self.assertEqual(stored.read_bytes(), PNG)

    async def test_message_validation(self) -> None:
        dispute = await self.service.create(CUSTOMER, self.order.id, "Wrong size")

        with self.assertRaises(InvalidInput):
            await self.service.send_message(CUSTOMER, dispute.id, content="   ")
        with self.assertRaises(InvalidInput):
            await self.service.send_message(
                CUSTOMER,
                dispute.id,
                images=[ImageUpload(filename="notes.pdf", content_type="application/pdf", data=b"%PDF")],
            )
        with self.assertRaises(InvalidInput):
            await self.service.send_message(
                CUSTOMER, dispute.id, images=[png() for _ in range(settings.DISPUTE_MAX_IMAGES + 1)]
            )
        with self.assertRaises(Forbidden):
            await self.service.send_message(OTHER_CUSTOMER, dispute.id, content="hello")

        self.assertEqual(self.upload_files(), [])

    async def test_admin_message_puts_dispute_under_review(self) -> None:
        dispute = await self.service.create(CUSTOMER, self.order.id, "Late")

        message = await self.service.send_message(ADMIN, dispute.id, content="Looking into it")

        self.assertEqual(message.sender_role, "admin")
        dispute = self.session.get(Dispute, dispute.id)
        self.assertEqual(dispute.status, "under_review")
        self.assertEqual(dispute.assigned_admin_id, "admin-1")

    async def test_reading_marks_messages_read(self) -> None:
        dispute = await self.service.create(CUSTOMER, self.order.id, "Late")
        await self.service.send_message(CUSTOMER, dispute.id, content="Any update?")

        page = self.service.list_disputes(VENDOR_1)
        self.assertEqual(page["disputes"][0].unread_count, 2)

        access = self.service.get(VENDOR_1, dispute.id)

        self.assertEqual(access.role.value, "seller")
        self.assertEqual(unread_count(access.dispute, "vendor-1"), 0)
        readers = {read.user_id for read in access.dispute.messages[-1].reads}
        self.assertEqual(readers, {"cust-1", "vendor-1"})
        # Reading again marks nothing new
        self.assertEqual(len(self.service.get(VENDOR_1, dispute.id).dispute.messages[-1].reads), 2)

    async def test_buyer_wins_refunds_through_escrow(self) -> None:
        escrow = add_escrow(self.session, self.order)
        dispute = await self.service.create(CUSTOMER, self.order.id, "Counterfeit")

        resolved = await self.service.resolve(ADMIN, dispute.id, "buyer", "  Refund approved ")

        self.assertEqual(self.escrow.calls[-1], ("resolve", "0xEscrow01", "0xBuyer"))
        self.assertEqual(resolved.status, "resolved")
        self.assertEqual(resolved.resolution_winner, "buyer")
        self.assertEqual(resolved.resolution_notes, "Refund approved")
        self.assertEqual(
            resolved.messages[-1].content, "Dispute resolved in favor of buyer. Refund approved"
        )

        self.session.refresh(escrow)
        self.assertEqual(escrow.status, EscrowStatus.REFUNDED.value)
        self.assertEqual(
            [tx["type"] for tx in escrow.transactions], ["disputeRaised", "disputeResolved"]
        )
        order = self.session.get(Order, self.order.id)
        self.assertEqual(order.payment_status, PaymentStatus.REFUNDED.value)
        self.assertEqual(order.status, OrderStatus.REFUNDED.value)
        self.assertEqual(self.session.get(Product, "pA").quantity, 5)

    async def test_buyer_wins_from_locked_escrow(self) -> None:
        dispute = await self.service.create(CUSTOMER, self.order.id, "Never shipped")
        escrow = add_escrow(self.session, self.order, status=EscrowStatus.LOCKED)

        await self.service.resolve(ADMIN, dispute.id, "buyer")

        self.assertEqual(self.escrow.calls, [("resolve", "0xEscrow01", "0xBuyer")])
        self.session.refresh(escrow)
        self.assertEqual(escrow.status, EscrowStatus.REFUNDED.value)
        order = self.session.get(Order, self.order.id)
        self.assertEqual(order.payment_status, PaymentStatus.REFUNDED.value)
        self.assertEqual(order.status, OrderStatus.REFUNDED.value)

    async def test_seller_wins_releases_payment(self) -> None:
        escrow = add_escrow(self.session, self.order)
        dispute = await self.service.create(CUSTOMER, self.order.id, "Changed my mind")

        await self.service.resolve(ADMIN, dispute.id, "seller")

        self.assertEqual(self.escrow.calls[-1], ("resolve", "0xEscrow01", "0xSeller"))
        self.session.refresh(escrow)
        self.assertEqual(escrow.status, EscrowStatus.COMPLETE.value)
        order = self.session.get(Order, self.order.id)
        self.assertEqual(order.payment_status, PaymentStatus.PAID.value)
        self.assertEqual(order.status, OrderStatus.PENDING.value)

    async def test_reverted_resolution_changes_nothing(self) -> None:
        escrow = add_escrow(self.session, self.order, status=EscrowStatus.DISPUTED)
        dispute = await self.service.create(CUSTOMER, self.order.id, "Counterfeit")
        service = DisputeService(self.session, FakeEscrow(revert=True))

        with self.assertRaises(EscrowReverted):
            await service.resolve(ADMIN, dispute.id, "buyer")

        self.session.expire_all()
        self.assertEqual(self.session.get(Dispute, dispute.id).status, "open")
        self.assertEqual(self.session.get(Escrow, escrow.id).status, "Disputed")
        order = self.session.get(Order, self.order.id)
        self.assertEqual(order.payment_status, PaymentStatus.PENDING.value)
        self.assertEqual(self.session.get(Product, "pA").quantity, 3)

    async def test_resolution_without_escrow(self) -> None:
        dispute = await self.service.create(CUSTOMER, self.order.id, "Missing item")

        resolved = await self.service.resolve(ADMIN, dispute.id, "buyer")

        self.assertEqual(resolved.status, "resolved")
        self.assertEqual(self.escrow.calls, [])
        self.assertEqual(self.session.get(Order, self.order.id).status, OrderStatus.PENDING.value)

        with self.assertRaises(Conflict):
            await self.service.resolve(ADMIN, dispute.id, "seller")
        with self.assertRaises(Precondition):
            await self.service.send_message(CUSTOMER, dispute.id, content="But wait")
        with self.assertRaises(Precondition):
            self.service.assign_admin(ADMIN, dispute.id)

    async def test_only_admins_resolve(self) -> None:
        dispute = await self.service.create(CUSTOMER, self.order.id, "Missing item")
        with self.assertRaises(Forbidden):
            await self.service.resolve(CUSTOMER, dispute.id, "buyer")
        with self.assertRaises(InvalidInput):
            await self.service.resolve(ADMIN, dispute.id, "admin")

    async def test_close(self) -> None:
        dispute = await self.service.create(CUSTOMER, self.order.id, "Sorted it out")

        with self.assertRaises(Forbidden):
            self.service.close(VENDOR_1, dispute.id)

        closed = self.service.close(CUSTOMER, dispute.id, "Seller replaced it")
        self.assertEqual(closed.status, "closed")
        self.assertEqual(closed.messages[-1].content, "Dispute closed. Seller replaced it")

        with self.assertRaises(Conflict):
            self.service.close(CUSTOMER, dispute.id)

    async def test_auto_dispute_from_chain_state(self) -> None:
        add_escrow(self.session, self.order, status=EscrowStatus.DISPUTED)

        access = self.service.get_by_order(VENDOR_1, self.order.id)

        self.assertTrue(access.auto_created)
        self.assertEqual(access.dispute.reason, AUTO_DISPUTE_REASON)
        self.assertEqual(access.dispute.raised_by, "vendor-1")
        self.assertEqual(access.role.value, "seller")
        self.assertFalse(self.service.get_by_order(CUSTOMER, self.order.id).auto_created)


class DisputesApiTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = make_engine()
        with Session(self.engine) as session:
            add_product(session, "pA", "vendor-1", "50.00", quantity=5)
            order = place_orders(session, [("pA", 1)])[0]
            add_escrow(session, order)
            self.order_id = str(order.id)
        self.escrow = FakeEscrow()
        self.harness = ApiHarness(self.engine, escrow=self.escrow)

    def open_dispute(self) -> dict:
        response = self.harness.as_user(CUSTOMER).post(
            "/api/disputes", json={"orderId": self.order_id, "reason": "Damaged box"}
        )
        self.assertEqual(response.status_code, 201)
        return response.json()

    def test_create(self) -> None:
        body = self.open_dispute()

        self.assertEqual(body["message"], "Dispute created successfully")
        self.assertEqual(body["userRole"], "buyer")
        dispute = body["dispute"]
        self.assertEqual(dispute["order"], self.order_id)
        self.assertEqual(dispute["buyer"], "cust-1")
        self.assertEqual(dispute["seller"], "vendor-1")
        self.assertEqual(dispute["priority"], "medium")
        self.assertEqual(dispute["escrowStatus"], "Disputed")
        self.assertEqual(dispute["messages"][0]["sender"], "cust-1")

        again = self.harness.as_user(VENDOR_1).post(
            "/api/disputes", json={"orderId": self.order_id, "reason": "Me too"}
        )
        self.assertEqual(again.status_code, 409)
        self.assertEqual(again.json()["code"], "CONFLICT")

    def test_blank_reason_is_rejected(self) -> None:
        response = self.harness.as_user(CUSTOMER).post(
            "/api/disputes", json={"orderId": self.order_id, "reason": "   "}
        )
        self.assertEqual(response.status_code, 422)

    def test_chat_with_upload(self) -> None:
        dispute_id = self.open_dispute()["dispute"]["id"]

        with tempfile.TemporaryDirectory() as uploads, mock.patch.object(
            settings, "UPLOAD_DIR", uploads
        ):
            response = self.harness.as_user(VENDOR_1).post(
                f"/api/disputes/{dispute_id}/messages",
                data={"content": "Packed with care"},
                files=[("images", ("packing.png", PNG, "image/png"))],
            )
            self.assertEqual(response.status_code, 201)
            chat = response.json()["chatMessage"]
            self.assertEqual(chat["sender"], "vendor-1")
            self.assertEqual(chat["senderRole"], "seller")
            self.assertEqual(chat["images"][0]["originalName"], "packing.png")
            self.assertEqual(len(list(Path(uploads).iterdir())), 1)

        detail = self.harness.as_user(CUSTOMER).get(f"/api/disputes/{dispute_id}").json()
        self.assertEqual(len(detail["dispute"]["messages"]), 2)
        self.assertEqual(detail["dispute"]["unreadCount"], 0)
        readers = {receipt["user"] for receipt in detail["dispute"]["messages"][1]["readBy"]}
        self.assertEqual(readers, {"vendor-1", "cust-1"})

    def test_buyer_wins(self) -> None:
        dispute_id = self.open_dispute()["dispute"]["id"]

        response = self.harness.as_user(ADMIN).post(
            f"/api/disputes/{dispute_id}/resolve", json={"winner": "buyer", "notes": "Refund"}
        )

        self.assertEqual(response.status_code, 200)
        dispute = response.json()["dispute"]
        self.assertEqual(dispute["status"], "resolved")
        self.assertEqual(dispute["escrowStatus"], "Refunded")
        self.assertEqual(dispute["resolution"]["winner"], "buyer")
        self.assertEqual(dispute["resolution"]["resolvedBy"], "admin-1")

        order = self.harness.as_user(CUSTOMER).get(f"/api/orders/{self.order_id}").json()
        self.assertEqual(order["status"], "refunded")
        self.assertEqual(order["paymentStatus"], "refunded")

    def test_reverted_resolution_is_reported(self) -> None:
        dispute_id = self.open_dispute()["dispute"]["id"]
        self.escrow.revert = True

        response = self.harness.as_user(ADMIN).post(
            f"/api/disputes/{dispute_id}/resolve", json={"winner": "buyer"}
        )

        self.assertEqual(response.status_code, 502)
        self.assertEqual(response.json()["code"], "ESCROW_REVERTED")
        detail = self.harness.as_user(ADMIN).get(f"/api/disputes/{dispute_id}").json()
        self.assertEqual(detail["dispute"]["status"], "open")
        self.assertEqual(detail["dispute"]["escrowStatus"], "Disputed")

    def test_admin_only_endpoints(self) -> None:
        dispute_id = self.open_dispute()["dispute"]["id"]
        customer = self.harness.as_user(CUSTOMER)
        self.assertEqual(
            customer.post(f"/api/disputes/{dispute_id}/resolve", json={"winner": "buyer"}).status_code,
            403,
        )
        self.assertEqual(
            customer.patch(f"/api/disputes/{dispute_id}/priority", json={"priority": "high"}).status_code,
            403,
        )

        admin = self.harness.as_user(ADMIN)
        priority = admin.patch(f"/api/disputes/{dispute_id}/priority", json={"priority": "urgent"})
        self.assertEqual(priority.json()["dispute"]["priority"], "urgent")

        assigned = admin.patch(f"/api/disputes/{dispute_id}/assign", json={"adminId": "admin-7"})
        self.assertEqual(assigned.json()["dispute"]["assignedAdmin"], "admin-7")
        self.assertEqual(assigned.json()["dispute"]["status"], "under_review")

        listed = admin.get("/api/disputes", params={"priority": "urgent"}).json()
        self.assertEqual(listed["total"], 1)
        self.assertEqual(
            self.harness.as_user(OTHER_CUSTOMER).get("/api/disputes").json()["total"], 0
        )

    def test_dispute_by_order_auto_creates(self) -> None:
        with Session(self.engine) as session:
            order = session.get(Order, uuid.UUID(self.order_id))
            order.escrow.status = EscrowStatus.DISPUTED.value
            session.add(order.escrow)
            session.commit()

        first = self.harness.as_user(ADMIN).get(f"/api/disputes/order/{self.order_id}")
        self.assertEqual(first.status_code, 200)
        body = first.json()
        self.assertTrue(body["autoCreated"])
        self.assertEqual(body["message"], "Dispute auto-created from blockchain state")
        self.assertEqual(body["dispute"]["raisedBy"], "cust-1")
        self.assertEqual(body["userRole"], "admin")

        second = self.harness.as_user(CUSTOMER).get(f"/api/disputes/order/{self.order_id}").json()
        self.assertFalse(second["autoCreated"])
        self.assertEqual(second["dispute"]["id"], body["dispute"]["id"])

    def test_dispute_by_order_without_dispute(self) -> None:
        response = self.harness.as_user(CUSTOMER).get(f"/api/disputes/order/{self.order_id}")
        self.assertEqual(response.status_code, 404)
        stranger = self.harness.as_user(OTHER_CUSTOMER).get(f"/api/disputes/order/{self.order_id}")
        self.assertEqual(stranger.status_code, 403)


if __name__ == "__main__":
    unittest.main()

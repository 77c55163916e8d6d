"""
Dispute controller

One dispute per order, raised by its buyer or seller, with an append-only
chat between the parties and an admin. Resolution goes through the escrow
contract first when the order is escrowed: if the chain call fails nothing
changes locally.
"""

import math
import mimetypes
import uuid
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import selectinload
from sqlmodel import Session, col, func, or_, select

from app.clients.escrow_client import EscrowAdapter
from app.core.config import settings
from app.core.errors import (
    AppError,
    Conflict,
    EscrowReverted,
    EscrowUnavailable,
    Forbidden,
    InvalidInput,
    NotFound,
    Precondition,
)
from app.core.logging import get_logger
from app.core.metrics import disputes_total
from app.events import DisputeOpenedData, DisputeResolvedData
from app.models import (
    Dispute,
    DisputeMessage,
    DisputePriority,
    DisputeStatus,
    EscrowStatus,
    MessageRead,
    Order,
    PartyRole,
    PaymentStatus,
    Principal,
    ensure_utc,
    get_datetime_utc,
)
from app.schemas import (
    DisputeImagePublic,
    DisputeMessagePublic,
    DisputePublic,
    DisputeResolutionPublic,
)
from app.services.escrow_service import record_transaction
from app.services.order_service import OrderService, vendor_slice
from app.services.outbox_service import OutboxService

logger = get_logger(__name__)

AUTO_DISPUTE_REASON = "Dispute raised via escrow system"
AUTO_DISPUTE_MESSAGE = "Dispute raised via escrow system. Please describe the issue in detail."

FINISHED_STATUSES = frozenset({DisputeStatus.RESOLVED.value, DisputeStatus.CLOSED.value})
# Escrow states from which the contract accepts raiseDispute
DISPUTABLE_ESCROW = frozenset({EscrowStatus.LOCKED.value, EscrowStatus.RELEASE_PENDING.value})


@dataclass
class ImageUpload:
    """An uploaded attachment, already read into memory by the route"""

    filename: str
    content_type: str
    data: bytes


@dataclass
class DisputeAccess:
    dispute: Dispute
    role: PartyRole
    auto_created: bool = False


def dispute_load_options() -> list[Any]:
    return [
        selectinload(Dispute.messages).selectinload(DisputeMessage.reads),  # type: ignore[arg-type]
        selectinload(Dispute.order).selectinload(Order.escrow),  # type: ignore[arg-type]
    ]


def party_role(dispute: Dispute, principal: Principal) -> PartyRole | None:
    if dispute.buyer_id == principal.id:
        return PartyRole.BUYER
    if dispute.seller_id == principal.id:
        return PartyRole.SELLER
    if principal.is_admin:
        return PartyRole.ADMIN
    return None


def unread_count(dispute: Dispute, user_id: str) -> int:
    return sum(
        1
        for message in dispute.messages
        if not any(read.user_id == user_id for read in message.reads)
    )


def message_public(message: DisputeMessage) -> DisputeMessagePublic:
    return DisputeMessagePublic.model_validate(message)


def dispute_public(dispute: Dispute, viewer_id: str | None = None) -> DisputePublic:
    order = dispute.order
    resolution = None
    if dispute.resolution_winner and dispute.resolved_by and dispute.resolved_at:
        resolution = DisputeResolutionPublic(
            winner=dispute.resolution_winner,
            resolved_by=dispute.resolved_by,
            resolved_at=dispute.resolved_at,
            notes=dispute.resolution_notes,
        )
    return DisputePublic(
        id=dispute.id,
        order_id=dispute.order_id,
        order_number=order.order_number if order else None,
        buyer_id=dispute.buyer_id,
        seller_id=dispute.seller_id,
        raised_by=dispute.raised_by,
        raised_by_role=dispute.raised_by_role,
        reason=dispute.reason,
        status=dispute.status,
        priority=dispute.priority,
        assigned_admin_id=dispute.assigned_admin_id,
        resolution=resolution,
        messages=[message_public(message) for message in dispute.messages],
        unread_count=unread_count(dispute, viewer_id) if viewer_id else 0,
        escrow_status=order.escrow.status if order and order.escrow else None,
        last_activity_at=dispute.last_activity_at,
        created_at=dispute.created_at,
    )


class DisputeService:
    def __init__(
        self,
        session: Session,
        escrow: EscrowAdapter,
        upload_dir: str | Path | None = None,
    ):
        self.session = session
        self.escrow = escrow
        self.upload_dir = Path(upload_dir or settings.UPLOAD_DIR)
        self.orders = OrderService(session)

    # LOOKUPS

    def _load(self, dispute_id: uuid.UUID, lock: bool = False) -> Dispute:
        statement = select(Dispute).where(Dispute.id == dispute_id).options(*dispute_load_options())
        if lock:
            statement = statement.with_for_update(of=Dispute).execution_options(
                populate_existing=True
            )
        dispute = self.session.exec(statement).first()
        if dispute is None:
            raise NotFound("Dispute not found", details={"disputeId": str(dispute_id)})
        return dispute

    def _find_by_order(self, order_id: uuid.UUID) -> Dispute | None:
        return self.session.exec(
            select(Dispute).where(Dispute.order_id == order_id).options(*dispute_load_options())
        ).first()

    def _authorize(self, dispute: Dispute, principal: Principal) -> PartyRole:
        role = party_role(dispute, principal)
        if role is None:
            logger.info("dispute_access_denied", dispute_id=str(dispute.id), user_id=principal.id)
            raise Forbidden("Unauthorized", details={"disputeId": str(dispute.id)})
        return role

    def _require_admin(self, principal: Principal) -> None:
        if not principal.is_admin:
            raise Forbidden("Admin access required")

    def _append_message(
        self,
        dispute: Dispute,
        sender_id: str,
        sender_role: PartyRole | str,
        content: str,
        images: list[dict[str, Any]] | None = None,
    ) -> DisputeMessage:
        now = get_datetime_utc()
        sequence = max((message.sequence for message in dispute.messages), default=0) + 1
        message = DisputeMessage(
            dispute_id=dispute.id,
            sequence=sequence,
            sender_id=sender_id,
            sender_role=PartyRole(sender_role).value,
            content=content,
            images=images or [],
            created_at=now,
        )
        # The sender has read its own message
        message.reads = [MessageRead(message_id=message.id, user_id=sender_id, read_at=now)]
        dispute.messages.append(message)
        self._touch(dispute)
        return message

    def _touch(self, dispute: Dispute) -> None:
        now = get_datetime_utc()
        last = ensure_utc(dispute.last_activity_at)
        dispute.last_activity_at = max(now, last) if last else now
        dispute.updated_at = now

    def _mark_read(self, dispute: Dispute, user_id: str) -> int:
        now = get_datetime_utc()
        marked = 0
        for message in dispute.messages:
            if any(read.user_id == user_id for read in message.reads):
                continue
            message.reads.append(MessageRead(message_id=message.id, user_id=user_id, read_at=now))
            marked += 1
        if marked:
            try:
                self.session.commit()
            except IntegrityError:
                # Another request by the same viewer marked them first
                self.session.rollback()
                return 0
            logger.debug("dispute_messages_read", dispute_id=str(dispute.id), user_id=user_id, count=marked)
        return marked

    # COMMANDS

    async def create(self, principal: Principal, order_id: uuid.UUID, reason: str) -> Dispute:
        order = self.orders.get(order_id)
        existing = self._find_by_order(order.id)
        if existing is not None:
            raise Conflict(
                "A dispute already exists for this order",
                details={"disputeId": str(existing.id)},
            )

        if order.customer_id == principal.id:
            role = PartyRole.BUYER
        elif vendor_slice(order, principal.id) is not None:
            role = PartyRole.SELLER
        else:
            raise Forbidden("Unauthorized to raise dispute", details={"orderId": str(order_id)})

        dispute = self._open(order, principal.id, role, reason, reason, auto_created=False)
        disputes_total.labels(action="opened").inc()
        logger.info(
            "dispute_opened",
            dispute_id=str(dispute.id),
            order_id=str(order.id),
            raised_by=principal.id,
            raised_by_role=role.value,
        )

        await self._raise_on_chain(order, principal.id)
        return self._load(dispute.id)

    def _open(
        self,
        order: Order,
        raiser_id: str,
        role: PartyRole,
        reason: str,
        first_message: str,
        auto_created: bool,
    ) -> Dispute:
        seller_id = order.vendor_orders[0].vendor_id if order.vendor_orders else ""
        dispute = Dispute(
            order_id=order.id,
            buyer_id=order.customer_id,
            seller_id=seller_id,
            raised_by=raiser_id,
            raised_by_role=role.value,
            reason=reason,
        )
        dispute.messages = []
        self.session.add(dispute)
        self._append_message(dispute, raiser_id, role, first_message)

        OutboxService.create_event(
            session=self.session,
            event_type="dispute.opened",
            topic=settings.KAFKA_TOPIC_DISPUTE_EVENTS,
            event_data=DisputeOpenedData(
                dispute_id=str(dispute.id),
                order_id=str(order.id),
                buyer_id=dispute.buyer_id,
                seller_id=dispute.seller_id,
                raised_by=raiser_id,
                raised_by_role=role.value,
                reason=reason,
                auto_created=auto_created,
                opened_at=dispute.created_at,
            ),
            partition_key=str(order.id),
        )
        try:
            self.session.commit()
        except IntegrityError as e:
            self.session.rollback()
            logger.info("dispute_create_race", order_id=str(order.id))
            raise Conflict(
                "A dispute already exists for this order", details={"orderId": str(order.id)}
            ) from e
        return dispute

    async def _raise_on_chain(self, order: Order, actor_id: str) -> None:
        """Mirror a new dispute on the escrow contract; failures are left for reconciliation"""
        self.session.refresh(order)
        escrow = order.escrow
        if escrow is None or not escrow.address or not self.escrow.is_initialized():
            return
        if escrow.status not in DISPUTABLE_ESCROW:
            return
        try:
            receipt = await self.escrow.raise_dispute(escrow.address, actor_id)
        except (EscrowUnavailable, EscrowReverted) as e:
            logger.warning(
                "escrow_raise_dispute_failed",
                order_id=str(order.id),
                escrow_address=escrow.address,
                error_type=type(e).__name__,
                error_message=e.message,
            )
            return
        record_transaction(
            escrow, "disputeRaised", receipt.tx_hash, receipt.block_number, by=actor_id
        )
        escrow.status = EscrowStatus.DISPUTED.value
        self.session.add(escrow)
        self.session.commit()
        logger.info(
            "escrow_dispute_raised",
            order_id=str(order.id),
            escrow_address=escrow.address,
            tx_hash=receipt.tx_hash,
        )

    def ensure_dispute(self, order: Order, viewer: Principal) -> Dispute | None:
        """
        The order's dispute, opening one when the escrow was disputed on-chain
        without a local chat. Returns None when there is nothing to show.
        """
        existing = self._find_by_order(order.id)
        if existing is not None:
            return existing
        if order.escrow is None or order.escrow.status != EscrowStatus.DISPUTED.value:
            return None

        if viewer.id == order.customer_id:
            raiser_id, role = viewer.id, PartyRole.BUYER
        elif vendor_slice(order, viewer.id) is not None:
            raiser_id, role = viewer.id, PartyRole.SELLER
        else:
            # An admin looking first: attribute the dispute to the buyer
            raiser_id, role = order.customer_id, PartyRole.BUYER

        try:
            dispute = self._open(
                order, raiser_id, role, AUTO_DISPUTE_REASON, AUTO_DISPUTE_MESSAGE, auto_created=True
            )
        except Conflict:
            return self._find_by_order(order.id)
        disputes_total.labels(action="auto_opened").inc()
        logger.info(
            "dispute_auto_opened",
            dispute_id=str(dispute.id),
            order_id=str(order.id),
            raised_by=raiser_id,
            viewer_id=viewer.id,
        )
        return self._load(dispute.id)

    # READS

    def get(self, principal: Principal, dispute_id: uuid.UUID) -> DisputeAccess:
        dispute = self._load(dispute_id)
        role = self._authorize(dispute, principal)
        if self._mark_read(dispute, principal.id):
            dispute = self._load(dispute_id)
        return DisputeAccess(dispute=dispute, role=role)

    def get_by_order(self, principal: Principal, order_id: uuid.UUID) -> DisputeAccess:
        order = self.orders.get(order_id)
        if not (
            principal.is_admin
            or order.customer_id == principal.id
            or vendor_slice(order, principal.id) is not None
        ):
            raise Forbidden("Unauthorized", details={"orderId": str(order_id)})

        existed = self._find_by_order(order.id) is not None
        dispute = self.ensure_dispute(order, principal)
        if dispute is None:
            raise NotFound("No dispute found for this order", details={"orderId": str(order_id)})

        role = self._authorize(dispute, principal)
        if self._mark_read(dispute, principal.id):
            dispute = self._load(dispute.id)
        return DisputeAccess(dispute=dispute, role=role, auto_created=not existed)

    def list_disputes(
        self,
        principal: Principal,
        status: DisputeStatus | None = None,
        priority: DisputePriority | None = None,
        page: int = 1,
        limit: int = 10,
    ) -> dict[str, Any]:
        """Admins see every dispute; everyone else only the ones they are party to"""
        page = max(page, 1)
        limit = min(max(limit, 1), 100)
        conditions = []
        if principal.is_admin:
            if priority is not None:
                conditions.append(Dispute.priority == priority.value)
        else:
            conditions.append(
                or_(Dispute.buyer_id == principal.id, Dispute.seller_id == principal.id)
            )
        if status is not None:
            conditions.append(Dispute.status == status.value)

        total = self.session.exec(
            select(func.count()).select_from(Dispute).where(*conditions)
        ).one()
        disputes = self.session.exec(
            select(Dispute)
            .where(*conditions)
            .options(*dispute_load_options())
            .order_by(col(Dispute.last_activity_at).desc())
            .offset((page - 1) * limit)
            .limit(limit)
        ).all()
        return {
            "disputes": [dispute_public(dispute, principal.id) for dispute in disputes],
            "total_pages": math.ceil(total / limit) if total else 0,
            "current_page": page,
            "total": total,
        }

    # CHAT

    async def send_message(
        self,
        principal: Principal,
        dispute_id: uuid.UUID,
        content: str | None = None,
        images: list[ImageUpload] | None = None,
    ) -> DisputeMessage:
        dispute = self._load(dispute_id, lock=True)
        role = self._authorize(dispute, principal)
        if dispute.status in FINISHED_STATUSES:
            raise Precondition(
                "Cannot send messages to a resolved dispute",
                details={"status": dispute.status},
            )

        content = (content or "").strip()
        images = images or []
        if not content and not images:
            raise InvalidInput("Message must have content or images")
        self._validate_images(images)

        stored = self._store_images(images)
        try:
            message = self._append_message(
                dispute, principal.id, role, content, [image.model_dump(mode="json") for image in stored]
            )
            if role == PartyRole.ADMIN and dispute.status == DisputeStatus.OPEN.value:
                dispute.status = DisputeStatus.UNDER_REVIEW.value
                if not dispute.assigned_admin_id:
                    dispute.assigned_admin_id = principal.id
            self.session.add(dispute)
            self.session.commit()
        except IntegrityError as e:
            self.session.rollback()
            self._discard_images(stored)
            raise Conflict("Concurrent message, retry", details={"disputeId": str(dispute_id)}) from e
        except Exception:
            self.session.rollback()
            self._discard_images(stored)
            raise

        disputes_total.labels(action="message").inc()
        logger.info(
            "dispute_message_sent",
            dispute_id=str(dispute_id),
            sender_id=principal.id,
            sender_role=role.value,
            images=len(stored),
            status=dispute.status,
        )
        self.session.refresh(message)
        return message

    def _validate_images(self, images: list[ImageUpload]) -> None:
        if len(images) > settings.DISPUTE_MAX_IMAGES:
            raise InvalidInput(
                f"At most {settings.DISPUTE_MAX_IMAGES} images per message",
                details={"images": len(images)},
            )
        for image in images:
            if not image.content_type.startswith("image/"):
                raise InvalidInput(
                    "Only image files are allowed",
                    details={"filename": image.filename, "contentType": image.content_type},
                )
            if len(image.data) > settings.DISPUTE_IMAGE_MAX_BYTES:
                raise InvalidInput(
                    "Image too large",
                    details={"filename": image.filename, "maxBytes": settings.DISPUTE_IMAGE_MAX_BYTES},
                )

    def _store_images(self, images: list[ImageUpload]) -> list[DisputeImagePublic]:
        if not images:
            return []
        self.upload_dir.mkdir(parents=True, exist_ok=True)
        now = get_datetime_utc()
        stored = []
        for image in images:
            extension = Path(image.filename).suffix.lower() or (
                mimetypes.guess_extension(image.content_type) or ""
            )
            name = f"dispute-{uuid.uuid4().hex}{extension}"
            (self.upload_dir / name).write_bytes(image.data)
            stored.append(
                DisputeImagePublic(
                    filename=name,
                    original_name=image.filename,
                    mime_type=image.content_type,
                    size=len(image.data),
                    url=f"/uploads/disputes/{name}",
                    uploaded_at=now,
                    expires_at=now + timedelta(days=settings.DISPUTE_IMAGE_TTL_DAYS),
                )
            )
        return stored

    def _discard_images(self, stored: list[DisputeImagePublic]) -> None:
        for image in stored:
            (self.upload_dir / image.filename).unlink(missing_ok=True)

    # ADMIN

    async def resolve(
        self, principal: Principal, dispute_id: uuid.UUID, winner: str, notes: str = ""
    ) -> Dispute:
        self._require_admin(principal)
        winner_role = PartyRole(winner)
        if winner_role == PartyRole.ADMIN:
            raise InvalidInput("Winner must be 'buyer' or 'seller'")

        dispute = self._load(dispute_id, lock=True)
        if dispute.status in FINISHED_STATUSES:
            raise Conflict("Dispute is already resolved", details={"status": dispute.status})
        order = self.orders.get(dispute.order_id, lock=True)

        escrow = order.escrow
        receipt = None
        if escrow is not None and escrow.address:
            if not self.escrow.is_initialized():
                self.session.rollback()
                raise EscrowUnavailable("Escrow service is not initialized")
            winner_address = (
                escrow.buyer_address if winner_role == PartyRole.BUYER else escrow.seller_address
            )
            try:
                receipt = await self.escrow.resolve(escrow.address, winner_address)
            except AppError as e:
                self.session.rollback()
                logger.error(
                    "escrow_resolve_failed",
                    dispute_id=str(dispute_id),
                    escrow_address=escrow.address,
                    error_type=type(e).__name__,
                    error_message=e.message,
                )
                raise

            escrow.status = (
                EscrowStatus.COMPLETE.value
                if winner_role == PartyRole.SELLER
                else EscrowStatus.REFUNDED.value
            )
            record_transaction(
                escrow, "disputeResolved", receipt.tx_hash, receipt.block_number, winner=winner
            )
            self.session.add(escrow)
            if winner_role == PartyRole.SELLER:
                order.payment_status = PaymentStatus.PAID.value
            else:
                order.payment_status = PaymentStatus.REFUNDED.value
                self.orders.refund(order, principal.id)
            self.session.add(order)

        now = get_datetime_utc()
        notes = (notes or "").strip()
        self._append_message(
            dispute,
            principal.id,
            PartyRole.ADMIN,
            f"Dispute resolved in favor of {winner}. {notes}".strip(),
        )
        dispute.status = DisputeStatus.RESOLVED.value
        dispute.resolution_winner = winner
        dispute.resolved_by = principal.id
        dispute.resolved_at = now
        dispute.resolution_notes = notes or None
        self.session.add(dispute)

        OutboxService.create_event(
            session=self.session,
            event_type="dispute.resolved",
            topic=settings.KAFKA_TOPIC_DISPUTE_EVENTS,
            event_data=DisputeResolvedData(
                dispute_id=str(dispute.id),
                order_id=str(order.id),
                winner=winner,
                resolved_by=principal.id,
                escrow_status=escrow.status if escrow is not None else None,
                escrow_tx_hash=receipt.tx_hash if receipt else None,
                resolved_at=now,
            ),
            partition_key=str(order.id),
        )
        self.session.commit()

        disputes_total.labels(action="resolved").inc()
        logger.info(
            "dispute_resolved",
            dispute_id=str(dispute_id),
            order_id=str(order.id),
            winner=winner,
            resolved_by=principal.id,
            escrow_tx_hash=receipt.tx_hash if receipt else None,
        )
        return self._load(dispute_id)

    def close(self, principal: Principal, dispute_id: uuid.UUID, reason: str = "") -> Dispute:
        dispute = self._load(dispute_id, lock=True)
        if dispute.raised_by != principal.id and not principal.is_admin:
            raise Forbidden("Unauthorized to close this dispute")
        if dispute.status in FINISHED_STATUSES:
            raise Conflict("Dispute is already closed", details={"status": dispute.status})

        role = PartyRole.ADMIN if principal.is_admin else PartyRole(dispute.raised_by_role)
        self._append_message(
            dispute, principal.id, role, f"Dispute closed. {(reason or '').strip()}".strip()
        )
        dispute.status = DisputeStatus.CLOSED.value
        self.session.add(dispute)
        self.session.commit()

        disputes_total.labels(action="closed").inc()
        logger.info("dispute_closed", dispute_id=str(dispute_id), closed_by=principal.id)
        return self._load(dispute_id)

    def update_priority(
        self, principal: Principal, dispute_id: uuid.UUID, priority: DisputePriority
    ) -> Dispute:
        self._require_admin(principal)
        dispute = self._load(dispute_id, lock=True)
        dispute.priority = priority.value
        dispute.updated_at = get_datetime_utc()
        self.session.add(dispute)
        self.session.commit()
        logger.info("dispute_priority_updated", dispute_id=str(dispute_id), priority=priority.value)
        return self._load(dispute_id)

    def assign_admin(
        self, principal: Principal, dispute_id: uuid.UUID, admin_id: str | None = None
    ) -> Dispute:
        self._require_admin(principal)
        dispute = self._load(dispute_id, lock=True)
        if dispute.status in FINISHED_STATUSES:
            raise Precondition(
                "Cannot assign a finished dispute", details={"status": dispute.status}
            )
        dispute.assigned_admin_id = admin_id or principal.id
        dispute.status = DisputeStatus.UNDER_REVIEW.value
        self._touch(dispute)
        self.session.add(dispute)
        self.session.commit()
        logger.info(
            "dispute_admin_assigned",
            dispute_id=str(dispute_id),
            assigned_admin_id=dispute.assigned_admin_id,
        )
        return self._load(dispute_id)

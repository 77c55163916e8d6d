"""
Escrow mirror

Keeps the local Escrow row in step with the contract. Transitions the
contract can make:

    Locked         -> ReleasePending | Disputed
    ReleasePending -> Complete | Disputed
    Disputed       -> Complete | Refunded

Every applied transaction is appended to escrow.transactions; a tx_hash that
is already there is a no-op, so redelivered chain events are harmless.
"""

from datetime import datetime
from typing import Any

from sqlalchemy.orm import selectinload
from sqlmodel import Session, select

from app.core.logging import get_logger
from app.events import EscrowChainEventData
from app.models import (
    Escrow,
    EscrowStatus,
    Order,
    PaymentStatus,
    VendorOrder,
    get_datetime_utc,
)
from app.services.order_service import OrderService

logger = get_logger(__name__)

ESCROW_TRANSITIONS: dict[EscrowStatus, frozenset[EscrowStatus]] = {
    EscrowStatus.LOCKED: frozenset({EscrowStatus.RELEASE_PENDING, EscrowStatus.DISPUTED}),
    EscrowStatus.RELEASE_PENDING: frozenset({EscrowStatus.COMPLETE, EscrowStatus.DISPUTED}),
    EscrowStatus.DISPUTED: frozenset({EscrowStatus.COMPLETE, EscrowStatus.REFUNDED}),
    EscrowStatus.COMPLETE: frozenset(),
    EscrowStatus.REFUNDED: frozenset(),
}


def has_transaction(escrow: Escrow, tx_hash: str) -> bool:
    return any(tx.get("txHash") == tx_hash for tx in escrow.transactions)


def record_transaction(
    escrow: Escrow,
    type_: str,
    tx_hash: str,
    block_number: int | None = None,
    timestamp: datetime | None = None,
    **extra: Any,
) -> None:
    entry = {
        "type": type_,
        "txHash": tx_hash,
        "blockNumber": block_number,
        "timestamp": (timestamp or get_datetime_utc()).isoformat(),
    }
    entry.update({key: value for key, value in extra.items() if value is not None})
    # Reassign so the JSON column is flagged dirty
    escrow.transactions = [*escrow.transactions, entry]
    escrow.updated_at = get_datetime_utc()


class EscrowService:
    def __init__(self, session: Session):
        self.session = session

    def find(self, address: str) -> Escrow | None:
        return self.session.exec(
            select(Escrow)
            .where(Escrow.address == address)
            .options(
                selectinload(Escrow.order)  # type: ignore[arg-type]
                .selectinload(Order.vendor_orders)  # type: ignore[arg-type]
                .selectinload(VendorOrder.items)  # type: ignore[arg-type]
            )
            .with_for_update(of=Escrow)
            .execution_options(populate_existing=True)
        ).first()

    def apply_chain_event(self, event: EscrowChainEventData) -> bool:
        """
        Mirror one confirmed contract transition and commit.

        Returns False when the event was a duplicate, referenced an unknown
        escrow, or described a transition the contract cannot make.
        """
        escrow = self.find(event.escrow_address)
        if escrow is None:
            logger.warning(
                "escrow_event_unknown_escrow",
                escrow_address=event.escrow_address,
                tx_hash=event.tx_hash,
            )
            return False
        if has_transaction(escrow, event.tx_hash):
            logger.info("escrow_event_duplicate", escrow_address=escrow.address, tx_hash=event.tx_hash)
            return False

        try:
            target = EscrowStatus(event.status)
        except ValueError:
            logger.warning(
                "escrow_event_unknown_status", escrow_address=escrow.address, status=event.status
            )
            return False

        current = EscrowStatus(escrow.status)
        if target != current and target not in ESCROW_TRANSITIONS[current]:
            logger.warning(
                "escrow_event_illegal_transition",
                escrow_address=escrow.address,
                from_status=current.value,
                to_status=target.value,
                tx_hash=event.tx_hash,
            )
            return False

        record_transaction(
            escrow,
            event.type,
            event.tx_hash,
            event.block_number,
            timestamp=event.occurred_at,
            by=event.by,
            winner=event.winner,
        )
        escrow.status = target.value
        if target != current and escrow.order is not None:
            self._settle(escrow.order, target, actor_id=event.by or "escrow")

        self.session.add(escrow)
        self.session.commit()
        logger.info(
            "escrow_event_applied",
            escrow_address=escrow.address,
            order_id=str(escrow.order_id),
            from_status=current.value,
            to_status=target.value,
            tx_hash=event.tx_hash,
        )
        return True

    def _settle(self, order: Order, status: EscrowStatus, actor_id: str) -> None:
        if status == EscrowStatus.COMPLETE:
            order.payment_status = PaymentStatus.PAID.value
        elif status == EscrowStatus.REFUNDED:
            order.payment_status = PaymentStatus.REFUNDED.value
            OrderService(self.session).refund(order, actor_id)
        order.updated_at = get_datetime_utc()
        self.session.add(order)

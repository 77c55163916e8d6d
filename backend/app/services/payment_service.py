"""
Payment service - checkout ticket lookup keyed by gateway intent id
"""

from sqlmodel import Session, col, select

from app.core.errors import Forbidden, UnknownIntent
from app.core.logging import get_logger
from app.models import CheckoutTicket, Order, Principal

logger = get_logger(__name__)


class PaymentService:
    def __init__(self, session: Session):
        self.session = session

    def get_ticket(
        self, intent_id: str, principal: Principal | None = None, lock: bool = False
    ) -> CheckoutTicket:
        """
        Load the checkout ticket for `intent_id`.

        With lock=True the row is selected FOR UPDATE and refreshed from the
        database, which serializes concurrent callbacks for the same intent.
        """
        statement = select(CheckoutTicket).where(CheckoutTicket.intent_id == intent_id)
        if lock:
            statement = statement.with_for_update().execution_options(
                populate_existing=True
            )
        ticket = self.session.exec(statement).first()
        if ticket is None:
            logger.warning("checkout_ticket_not_found", intent_id=intent_id)
            raise UnknownIntent(
                "Unknown payment intent", details={"intentId": intent_id}
            )
        if principal is not None and ticket.customer_id != principal.id:
            logger.warning(
                "checkout_ticket_owner_mismatch",
                intent_id=intent_id,
                user_id=principal.id,
            )
            raise Forbidden("Payment intent belongs to another customer")
        return ticket

    def orders_for_intent(self, intent_id: str) -> list[Order]:
        """Orders already materialized for an intent, in creation order"""
        return list(
            self.session.exec(
                select(Order)
                .where(Order.gateway_order_id == intent_id)
                .order_by(col(Order.created_at), col(Order.order_number))
            ).all()
        )

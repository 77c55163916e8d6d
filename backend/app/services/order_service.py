"""
Order service - listings, participant reads and fulfillment commands

Every mutation goes through app.services.order_state so the parent status is
always the aggregate of its slices, and writes its outbox event in the same
transaction.
"""

import math
import uuid
from typing import Any

from sqlalchemy import delete
from sqlalchemy.orm import selectinload
from sqlmodel import Session, col, func, select

from app.core.config import settings
from app.core.errors import Forbidden, NotFound, Precondition
from app.core.logging import get_logger
from app.core.metrics import order_transitions_total
from app.events import OrderCancelledData, OrderItemData, OrderStatusChangedData
from app.models import (
    Order,
    OrderStatus,
    Principal,
    TrackingEvent,
    UserRole,
    VendorOrder,
    get_datetime_utc,
)
from app.schemas import TrackingInput
from app.services.inventory_service import InventoryLedger
from app.services.order_state import (
    CUSTOMER_CANCELLABLE,
    SHIPPED_STATUSES,
    TERMINAL_STATUSES,
    apply_slice_transition,
    recompute_order_status,
)
from app.services.outbox_service import OutboxService
from app.services.tracking_service import courier_code_for, validate_tracking_number

logger = get_logger(__name__)

MAX_PAGE_SIZE = 100


def order_load_options() -> list[Any]:
    """Eager loads so an order is always read together with its slices"""
    return [
        selectinload(Order.items),  # type: ignore[arg-type]
        selectinload(Order.vendor_orders).selectinload(VendorOrder.items),  # type: ignore[arg-type]
        selectinload(Order.vendor_orders).selectinload(VendorOrder.tracking_events),  # type: ignore[arg-type]
        selectinload(Order.escrow),  # type: ignore[arg-type]
    ]


def vendor_slice(order: Order, vendor_id: str) -> VendorOrder | None:
    return next((vo for vo in order.vendor_orders if vo.vendor_id == vendor_id), None)


class OrderService:
    def __init__(self, session: Session):
        self.session = session
        self.inventory = InventoryLedger(session)

    # READS

    def _paginate(self, statement: Any, count_statement: Any, page: int, limit: int) -> dict[str, Any]:
        page = max(page, 1)
        limit = min(max(limit, 1), MAX_PAGE_SIZE)
        total = self.session.exec(count_statement).one()
        orders = self.session.exec(
            statement.options(*order_load_options())
            .order_by(col(Order.created_at).desc())
            .offset((page - 1) * limit)
            .limit(limit)
        ).all()
        logger.debug("orders_page_loaded", page=page, limit=limit, total=total, returned=len(orders))
        return {
            "orders": list(orders),
            "total_pages": math.ceil(total / limit) if total else 0,
            "current_page": page,
            "total": total,
        }

    def list_customer_orders(
        self, principal: Principal, page: int = 1, limit: int = 10, status: OrderStatus | None = None
    ) -> dict[str, Any]:
        conditions = [Order.customer_id == principal.id]
        if status is not None:
            conditions.append(Order.status == status.value)
        return self._paginate(
            select(Order).where(*conditions),
            select(func.count()).select_from(Order).where(*conditions),
            page,
            limit,
        )

    def list_vendor_orders(
        self, principal: Principal, page: int = 1, limit: int = 10, status: OrderStatus | None = None
    ) -> dict[str, Any]:
        slices = select(VendorOrder.order_id).where(VendorOrder.vendor_id == principal.id)
        if status is not None:
            slices = slices.where(VendorOrder.status == status.value)
        condition = col(Order.id).in_(slices)
        return self._paginate(
            select(Order).where(condition),
            select(func.count()).select_from(Order).where(condition),
            page,
            limit,
        )

    def list_all_orders(
        self,
        page: int = 1,
        limit: int = 20,
        status: OrderStatus | None = None,
        payment_status: str | None = None,
    ) -> dict[str, Any]:
        conditions = []
        if status is not None:
            conditions.append(Order.status == status.value)
        if payment_status:
            conditions.append(Order.payment_status == payment_status)
        return self._paginate(
            select(Order).where(*conditions),
            select(func.count()).select_from(Order).where(*conditions),
            page,
            limit,
        )

    def get(self, order_id: uuid.UUID, lock: bool = False) -> Order:
        statement = select(Order).where(Order.id == order_id).options(*order_load_options())
        if lock:
            statement = statement.with_for_update(of=Order).execution_options(
                populate_existing=True
            )
        order = self.session.exec(statement).first()
        if order is None:
            raise NotFound("Order not found", details={"orderId": str(order_id)})
        return order

    def get_for_participant(
        self, principal: Principal, order_id: uuid.UUID, lock: bool = False
    ) -> Order:
        """The order, if `principal` is its customer, one of its vendors, or an admin"""
        order = self.get(order_id, lock=lock)
        if principal.role == UserRole.ADMIN:
            return order
        if order.customer_id == principal.id or vendor_slice(order, principal.id):
            return order
        logger.info("order_access_denied", order_id=str(order_id), user_id=principal.id)
        raise NotFound("Order not found", details={"orderId": str(order_id)})

    # COMMANDS

    def cancel_by_customer(
        self, principal: Principal, order_id: uuid.UUID, reason: str | None = None
    ) -> Order:
        order = self.get(order_id, lock=True)
        if order.customer_id != principal.id:
            raise NotFound("Order not found", details={"orderId": str(order_id)})
        if OrderStatus(order.status) not in CUSTOMER_CANCELLABLE:
            raise Precondition(
                "Order cannot be cancelled at this stage",
                details={"status": order.status},
            )

        restocked = []
        for vendor_order in order.vendor_orders:
            if vendor_order.status == OrderStatus.CANCELLED.value:
                continue
            apply_slice_transition(order, vendor_order, OrderStatus.CANCELLED)
            restocked.extend((item.product_id, item.quantity) for item in vendor_order.items)
        self.inventory.restore(restocked)

        OutboxService.create_event(
            session=self.session,
            event_type="order.cancelled",
            topic=settings.KAFKA_TOPIC_ORDER_CANCELLED,
            event_data=OrderCancelledData(
                order_id=str(order.id),
                order_number=order.order_number,
                customer_id=order.customer_id,
                status=order.status,
                reason=reason,
                restocked=[
                    OrderItemData(
                        product_id=item.product_id,
                        quantity=item.quantity,
                        unit_price=item.unit_price,
                    )
                    for item in order.items
                ],
                cancelled_at=get_datetime_utc(),
            ),
            partition_key=str(order.id),
        )
        self.session.add(order)
        self.session.commit()

        logger.info(
            "order_cancelled",
            order_id=str(order.id),
            customer_id=principal.id,
            reason=reason,
            restocked_lines=len(restocked),
        )
        return self.get(order.id)

    def update_slice_status(
        self,
        principal: Principal,
        order_id: uuid.UUID,
        status: OrderStatus,
        tracking: TrackingInput | None = None,
    ) -> Order:
        """Vendor command on its own slice: tracking details and/or a transition."""
        order = self.get(order_id, lock=True)
        vendor_order = vendor_slice(order, principal.id)
        if vendor_order is None:
            raise NotFound("Order not found or unauthorized", details={"orderId": str(order_id)})
        if status == OrderStatus.REFUNDED:
            raise Forbidden("Refunds are issued through dispute resolution")

        if tracking is not None:
            self._attach_tracking(vendor_order, tracking)

        previous = OrderStatus(vendor_order.status)
        if status == previous and tracking is None:
            raise Precondition(
                f"Order is already {status.value}", details={"status": status.value}
            )
        if status != previous:
            apply_slice_transition(order, vendor_order, status)
            if status == OrderStatus.CANCELLED:
                self.inventory.restore(
                    (item.product_id, item.quantity) for item in vendor_order.items
                )
            self._stage_status_event(order, vendor_order, previous, principal.id)

        self.session.add(vendor_order)
        self.session.add(order)
        self.session.commit()

        logger.info(
            "vendor_order_updated",
            order_id=str(order.id),
            vendor_id=principal.id,
            from_status=previous.value,
            to_status=status.value,
            tracking_number=vendor_order.tracking_number,
        )
        return self.get(order.id)

    def _attach_tracking(self, vendor_order: VendorOrder, tracking: TrackingInput) -> None:
        courier_code = courier_code_for(tracking.carrier)
        tracking_number = validate_tracking_number(tracking.tracking_number, tracking.carrier)
        if vendor_order.tracking_number != tracking_number:
            # A new number starts a fresh history
            self.session.exec(
                delete(TrackingEvent).where(col(TrackingEvent.vendor_order_id) == vendor_order.id)
            )
            self.session.expire(vendor_order, ["tracking_events"])
            vendor_order.tracking_updated_at = None
        vendor_order.tracking_number = tracking_number
        vendor_order.carrier = tracking.carrier.strip()
        vendor_order.courier_code = courier_code
        vendor_order.tracking_url = tracking.tracking_url
        vendor_order.tracking_validated_at = get_datetime_utc()

    def refund(self, order: Order, actor_id: str) -> None:
        """
        Refund every live slice of `order` (buyer won a dispute).

        Slices that never shipped are forced to refunded and their stock is
        restored; shipped and delivered slices take the regular transition.
        The caller commits.
        """
        restocked = []
        for vendor_order in order.vendor_orders:
            previous = OrderStatus(vendor_order.status)
            if previous in TERMINAL_STATUSES:
                continue
            if previous in SHIPPED_STATUSES:
                apply_slice_transition(order, vendor_order, OrderStatus.REFUNDED)
            else:
                vendor_order.status = OrderStatus.REFUNDED.value
                vendor_order.updated_at = get_datetime_utc()
                order_transitions_total.labels(
                    from_status=previous.value, to_status=OrderStatus.REFUNDED.value
                ).inc()
                restocked.extend((item.product_id, item.quantity) for item in vendor_order.items)
            self._stage_status_event(order, vendor_order, previous, actor_id)
        recompute_order_status(order)
        if restocked:
            self.inventory.restore(restocked)
        self.session.add(order)
        logger.info("order_refunded", order_id=str(order.id), restocked_lines=len(restocked))

    def _stage_status_event(
        self, order: Order, vendor_order: VendorOrder, previous: OrderStatus, actor_id: str
    ) -> None:
        OutboxService.create_event(
            session=self.session,
            event_type="order.status_changed",
            topic=settings.KAFKA_TOPIC_ORDER_STATUS_CHANGED,
            event_data=OrderStatusChangedData(
                order_id=str(order.id),
                order_number=order.order_number,
                vendor_order_id=str(vendor_order.id),
                vendor_id=vendor_order.vendor_id,
                previous_status=previous.value,
                status=vendor_order.status,
                order_status=order.status,
                payment_status=order.payment_status,
                changed_by=actor_id,
                tracking_number=vendor_order.tracking_number,
                carrier=vendor_order.carrier,
                changed_at=get_datetime_utc(),
            ),
            partition_key=str(order.id),
        )

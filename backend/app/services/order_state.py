"""
Order state machine

Each vendor slice moves forward through

    pending -> confirmed -> processing -> shipped -> delivered

with cancelled reachable before shipping and refunded after it. The parent
order's status is never set directly: it is recomputed from the slices after
every slice mutation.
"""

from collections.abc import Iterable

from app.core.errors import Precondition
from app.core.logging import get_logger
from app.core.metrics import order_transitions_total
from app.models import Order, OrderStatus, VendorOrder, get_datetime_utc

logger = get_logger(__name__)

ALLOWED_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset(
        {OrderStatus.CONFIRMED, OrderStatus.PROCESSING, OrderStatus.SHIPPED, OrderStatus.CANCELLED}
    ),
    OrderStatus.CONFIRMED: frozenset(
        {OrderStatus.PROCESSING, OrderStatus.SHIPPED, OrderStatus.CANCELLED}
    ),
    OrderStatus.PROCESSING: frozenset({OrderStatus.SHIPPED, OrderStatus.CANCELLED}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED, OrderStatus.REFUNDED}),
    OrderStatus.DELIVERED: frozenset({OrderStatus.REFUNDED}),
    OrderStatus.CANCELLED: frozenset(),
    OrderStatus.REFUNDED: frozenset(),
}

TERMINAL_STATUSES = frozenset({OrderStatus.CANCELLED, OrderStatus.REFUNDED})
SHIPPED_STATUSES = frozenset({OrderStatus.SHIPPED, OrderStatus.DELIVERED})

# Progress rank for the non-terminal states
PROGRESS = {
    OrderStatus.PENDING: 0,
    OrderStatus.CONFIRMED: 1,
    OrderStatus.PROCESSING: 2,
    OrderStatus.SHIPPED: 3,
    OrderStatus.DELIVERED: 4,
}

CUSTOMER_CANCELLABLE = frozenset({OrderStatus.PENDING, OrderStatus.CONFIRMED})
VENDOR_CANCELLABLE = frozenset(
    {OrderStatus.PENDING, OrderStatus.CONFIRMED, OrderStatus.PROCESSING}
)


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def ensure_transition(slice_: VendorOrder, target: OrderStatus) -> None:
    current = OrderStatus(slice_.status)
    if not can_transition(current, target):
        raise Precondition(
            f"Cannot change order status from {current.value} to {target.value}",
            details={"from": current.value, "to": target.value},
        )
    if target == OrderStatus.SHIPPED and not (slice_.tracking_number and slice_.carrier):
        raise Precondition(
            "Tracking number and carrier are required to ship",
            details={"vendorOrderId": str(slice_.id)},
        )


def aggregate_status(statuses: Iterable[OrderStatus | str]) -> OrderStatus:
    """
    Parent order status as a pure function of the slice statuses.

    all delivered -> delivered; all shipped/delivered -> shipped;
    all cancelled -> cancelled; all refunded -> refunded. Otherwise the most
    advanced live slice wins, clamped to processing so a partially shipped
    order is never reported as shipped.
    """
    values = [OrderStatus(status) for status in statuses]
    if not values:
        return OrderStatus.PENDING

    if all(status == OrderStatus.DELIVERED for status in values):
        return OrderStatus.DELIVERED
    if all(status in SHIPPED_STATUSES for status in values):
        return OrderStatus.SHIPPED
    if all(status == OrderStatus.CANCELLED for status in values):
        return OrderStatus.CANCELLED
    if all(status == OrderStatus.REFUNDED for status in values):
        return OrderStatus.REFUNDED

    live = [status for status in values if status not in TERMINAL_STATUSES]
    if not live:
        # Mixed cancelled and refunded
        if OrderStatus.REFUNDED in values:
            return OrderStatus.REFUNDED
        return OrderStatus.CANCELLED

    most_advanced = max(live, key=PROGRESS.__getitem__)
    if PROGRESS[most_advanced] > PROGRESS[OrderStatus.PROCESSING]:
        return OrderStatus.PROCESSING
    return most_advanced


def recompute_order_status(order: Order) -> OrderStatus:
    status = aggregate_status(slice_.status for slice_ in order.vendor_orders)
    if order.status != status.value:
        logger.debug(
            "order_status_recomputed",
            order_id=str(order.id),
            previous_status=order.status,
            status=status.value,
        )
        order.status = status.value
    order.updated_at = get_datetime_utc()
    return status


def apply_slice_transition(order: Order, slice_: VendorOrder, target: OrderStatus) -> OrderStatus:
    """
    Move one slice to `target` and recompute the parent.

    Returns the slice's previous status. Raises Precondition for transitions
    the table does not allow.
    """
    previous = OrderStatus(slice_.status)
    ensure_transition(slice_, target)

    now = get_datetime_utc()
    slice_.status = target.value
    slice_.updated_at = now
    if target == OrderStatus.SHIPPED and slice_.shipped_at is None:
        slice_.shipped_at = now
    if target == OrderStatus.DELIVERED:
        slice_.delivered_at = now

    recompute_order_status(order)
    order_transitions_total.labels(from_status=previous.value, to_status=target.value).inc()
    logger.info(
        "vendor_order_transitioned",
        order_id=str(order.id),
        vendor_order_id=str(slice_.id),
        vendor_id=slice_.vendor_id,
        from_status=previous.value,
        to_status=target.value,
        order_status=order.status,
    )
    return previous

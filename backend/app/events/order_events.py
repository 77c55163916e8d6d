"""
Order event schemas

Money is carried as Decimal and dumped as a string so consumers never see
binary floating point.
"""

from datetime import datetime
from decimal import Decimal

from pydantic import Field

from app.events.base import BaseEventData


class OrderItemData(BaseEventData):
    product_id: str
    quantity: int = Field(gt=0)
    unit_price: Decimal


class OrderCreatedData(BaseEventData):
    """Order materialized from a checkout (one event per vendor order)"""

    order_id: str
    order_number: str
    customer_id: str
    vendor_id: str
    status: str = "pending"
    payment_status: str
    payment_method: str
    checkout_intent_id: str
    subtotal: Decimal
    discount: Decimal
    total_amount: Decimal
    commission: Decimal
    currency: str = "USD"
    coupon_code: str | None = None
    items: list[OrderItemData]
    created_at: datetime


class OrderStatusChangedData(BaseEventData):
    """A vendor slice moved; carries the recomputed parent status"""

    order_id: str
    order_number: str
    vendor_order_id: str
    vendor_id: str
    previous_status: str
    status: str
    order_status: str
    payment_status: str
    changed_by: str
    tracking_number: str | None = None
    carrier: str | None = None
    changed_at: datetime


class OrderCancelledData(BaseEventData):
    """Customer cancellation of a whole order"""

    order_id: str
    order_number: str
    customer_id: str
    status: str = "cancelled"
    reason: str | None = None
    restocked: list[OrderItemData] = []
    cancelled_at: datetime

"""
Request and response bodies for the HTTP API

Wire names are camelCase (shippingAddress, orderNumber, vendorOrders, ...);
Python attributes stay snake_case. Money is carried as Decimal internally and
rendered as a JSON number.
"""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Annotated, Any, Literal

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    PlainSerializer,
    field_validator,
)
from pydantic.alias_generators import to_camel

from app.models import DisputePriority, OrderStatus, PaymentMethod

Money = Annotated[
    Decimal, PlainSerializer(float, return_type=float, when_used="json")
]


class APIModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


# CHECKOUT REQUESTS


class Address(APIModel):
    name: str = Field(min_length=1)
    street: str = Field(min_length=1)
    city: str = Field(min_length=1)
    state: str | None = None
    zip_code: str = Field(min_length=1)
    country: str | None = None
    phone: str | None = None


class CartItemIn(APIModel):
    product_id: str = Field(alias="product", min_length=1)
    quantity: int = Field(ge=1)
    variant: dict[str, Any] | None = None


class CheckoutRequest(APIModel):
    """Cart submitted to open a gateway payment intent"""

    items: list[CartItemIn] = Field(min_length=1)
    shipping_address: Address
    billing_address: Address | None = None
    coupon_code: str | None = None
    notes: str | None = Field(default=None, max_length=500)
    currency: str | None = Field(default=None, min_length=3, max_length=3)

    @field_validator("coupon_code")
    @classmethod
    def normalize_coupon(cls, value: str | None) -> str | None:
        if value is None or not value.strip():
            return None
        return value.strip().upper()


class OrderCreate(CheckoutRequest):
    """POST /orders body; online gateway methods go through their own routes"""

    payment_method: PaymentMethod


class PaymentIntentPublic(APIModel):
    id: str
    amount: int
    currency: str
    receipt: str
    status: str | None = None
    key_id: str | None = None


class RazorpayVerifyRequest(BaseModel):
    """Razorpay checkout callback; the gateway defines these snake_case names"""

    model_config = ConfigDict(populate_by_name=True)

    razorpay_order_id: str = Field(min_length=1)
    razorpay_payment_id: str = Field(min_length=1)
    razorpay_signature: str = ""
    # Accepted for client compatibility; the stored checkout ticket is authoritative
    order_data: dict[str, Any] | None = Field(default=None, alias="orderData")


# ORDER RESPONSES


class OrderItemPublic(APIModel):
    id: uuid.UUID
    product_id: str = Field(serialization_alias="product")
    vendor_id: str = Field(serialization_alias="vendor")
    name: str
    quantity: int
    unit_price: Money = Field(serialization_alias="price")
    variant: dict[str, Any] | None = None


class TrackingEventPublic(APIModel):
    timestamp: datetime = Field(validation_alias=AliasChoices("occurred_at", "timestamp"))
    location: str
    status: str
    description: str


class VendorOrderPublic(APIModel):
    id: uuid.UUID
    vendor_id: str = Field(serialization_alias="vendor")
    status: OrderStatus
    subtotal: Money
    commission: Money
    vendor_amount: Money
    items: list[OrderItemPublic] = []
    carrier: str | None = None
    tracking_number: str | None = None
    courier_code: str | None = None
    tracking_url: str | None = None
    tracking_updated_at: datetime | None = None
    tracking_history: list[TrackingEventPublic] = Field(
        default=[], validation_alias=AliasChoices("tracking_events", "tracking_history")
    )
    shipped_at: datetime | None = None
    delivered_at: datetime | None = None


class EscrowPublic(APIModel):
    address: str
    status: str
    buyer_address: str
    seller_address: str
    amount: Money
    transactions: list[dict[str, Any]] = []


class OrderPublic(APIModel):
    id: uuid.UUID
    order_number: str
    customer_id: str = Field(serialization_alias="customer")
    status: OrderStatus
    payment_status: str
    payment_method: str
    payment_gateway: str | None = None
    gateway_order_id: str | None = None
    gateway_payment_id: str | None = None
    subtotal: Money
    tax: Money
    shipping: Money
    discount: Money
    total: Money
    currency: str
    coupon_code: str | None = None
    shipping_address: dict[str, Any]
    billing_address: dict[str, Any]
    notes: str | None = None
    items: list[OrderItemPublic] = []
    vendor_orders: list[VendorOrderPublic] = []
    escrow: EscrowPublic | None = None
    created_at: datetime
    updated_at: datetime


class OrdersPublic(APIModel):
    message: str | None = None
    orders: list[OrderPublic]


class OrdersPage(APIModel):
    orders: list[OrderPublic]
    total_pages: int
    current_page: int
    total: int


# ORDER COMMANDS


class TrackingInput(APIModel):
    tracking_number: str = Field(min_length=1)
    carrier: str = Field(min_length=1)
    tracking_url: str | None = None


class OrderStatusUpdate(APIModel):
    status: OrderStatus
    tracking: TrackingInput | None = None


class OrderCancel(APIModel):
    reason: str | None = Field(default=None, max_length=500)


# TRACKING


class CarrierPublic(APIModel):
    name: str
    code: str


class SliceTrackingPublic(APIModel):
    vendor_order_id: uuid.UUID
    vendor_id: str
    status: OrderStatus
    carrier: str | None
    tracking_number: str
    courier_code: str | None
    tracking_history: list[TrackingEventPublic]
    last_updated: datetime | None
    is_delivered: bool
    is_mock_data: bool


class OrderTrackingPublic(APIModel):
    order_id: uuid.UUID
    order_status: OrderStatus
    is_mock_data: bool
    shipments: list[SliceTrackingPublic]


# DISPUTES


class DisputeCreate(APIModel):
    order_id: uuid.UUID
    reason: str = Field(min_length=1, max_length=1000)

    @field_validator("reason")
    @classmethod
    def strip_reason(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Reason must not be blank")
        return value


class DisputeResolve(APIModel):
    winner: Literal["buyer", "seller"]
    notes: str = Field(default="", max_length=1000)


class DisputeClose(APIModel):
    reason: str = Field(default="", max_length=1000)


class DisputePriorityUpdate(APIModel):
    priority: DisputePriority


class DisputeAssign(APIModel):
    admin_id: str | None = None


class DisputeImagePublic(APIModel):
    filename: str
    original_name: str
    mime_type: str
    size: int
    url: str
    uploaded_at: datetime
    expires_at: datetime


class ReadReceiptPublic(APIModel):
    user_id: str = Field(serialization_alias="user")
    read_at: datetime


class DisputeMessagePublic(APIModel):
    id: uuid.UUID
    sender_id: str = Field(serialization_alias="sender")
    sender_role: str
    content: str
    images: list[DisputeImagePublic] = []
    read_by: list[ReadReceiptPublic] = Field(
        default=[], validation_alias=AliasChoices("reads", "read_by")
    )
    created_at: datetime


class DisputeResolutionPublic(APIModel):
    winner: str
    resolved_by: str
    resolved_at: datetime
    notes: str | None = None


class DisputePublic(APIModel):
    id: uuid.UUID
    order_id: uuid.UUID = Field(serialization_alias="order")
    order_number: str | None = None
    buyer_id: str = Field(serialization_alias="buyer")
    seller_id: str = Field(serialization_alias="seller")
    raised_by: str
    raised_by_role: str
    reason: str
    status: str
    priority: str
    assigned_admin_id: str | None = Field(default=None, serialization_alias="assignedAdmin")
    resolution: DisputeResolutionPublic | None = None
    messages: list[DisputeMessagePublic] = []
    unread_count: int = 0
    escrow_status: str | None = None
    last_activity_at: datetime
    created_at: datetime


class DisputesPage(APIModel):
    disputes: list[DisputePublic]
    total_pages: int
    current_page: int
    total: int


class DisputeDetail(APIModel):
    message: str | None = None
    dispute: DisputePublic
    user_role: str | None = None
    auto_created: bool = False


class ChatMessageCreated(APIModel):
    message: str = "Message sent successfully"
    chat_message: DisputeMessagePublic

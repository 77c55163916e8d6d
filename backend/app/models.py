import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from sqlalchemy import JSON, DateTime, Index, UniqueConstraint
from sqlmodel import Column, Field, Relationship, SQLModel, String


def get_datetime_utc() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes read back from drivers that drop tzinfo"""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def money_field(default: Decimal | None = Decimal("0.00"), **kwargs: Any) -> Any:
    return Field(default=default, max_digits=12, decimal_places=2, **kwargs)


# ENUMS


class OrderStatus(str, Enum):
    """Vendor slice and parent order lifecycle states"""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


class PaymentMethod(str, Enum):
    CREDIT_CARD = "credit_card"
    DEBIT_CARD = "debit_card"
    PAYPAL = "paypal"
    STRIPE = "stripe"
    RAZORPAY = "razorpay"
    BANK_TRANSFER = "bank_transfer"
    CASH_ON_DELIVERY = "cash_on_delivery"


# Methods settled through a gateway callback rather than at order creation
GATEWAY_METHODS = frozenset({PaymentMethod.RAZORPAY, PaymentMethod.PAYPAL})


class CouponType(str, Enum):
    PERCENTAGE = "percentage"
    FIXED_AMOUNT = "fixed_amount"
    FREE_SHIPPING = "free_shipping"


class CheckoutStatus(str, Enum):
    """Write-ahead checkout ticket states"""

    PENDING = "pending"  # Intent created, awaiting payment callback
    COMMITTED = "committed"  # Orders materialized
    FAILED = "failed"  # Materialization rolled back; may be re-driven


class EscrowStatus(str, Enum):
    LOCKED = "Locked"
    RELEASE_PENDING = "ReleasePending"
    DISPUTED = "Disputed"
    COMPLETE = "Complete"
    REFUNDED = "Refunded"


class DisputeStatus(str, Enum):
    OPEN = "open"
    UNDER_REVIEW = "under_review"
    RESOLVED = "resolved"
    CLOSED = "closed"


class DisputePriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class PartyRole(str, Enum):
    """Role of a participant inside a dispute"""

    BUYER = "buyer"
    SELLER = "seller"
    ADMIN = "admin"


class UserRole(str, Enum):
    """Role attached to an authenticated principal"""

    CUSTOMER = "customer"
    VENDOR = "vendor"
    ADMIN = "admin"


class Principal(SQLModel):
    """Authenticated caller as resolved from a bearer token (cached in Redis)"""

    id: str
    role: UserRole = UserRole.CUSTOMER
    name: str | None = None
    email: str | None = None
    wallet_address: str | None = None

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN


# CATALOG READ MODEL


class Product(SQLModel, table=True):
    """Stock-keeping view of a catalog product (catalog CRUD lives elsewhere)"""

    __tablename__ = "products"

    id: str = Field(primary_key=True)
    vendor_id: str = Field(index=True)
    name: str
    price: Decimal = money_field()
    is_active: bool = Field(default=True)
    track_quantity: bool = Field(default=True)
    quantity: int = Field(default=0, ge=0)
    updated_at: datetime = Field(
        default_factory=get_datetime_utc, sa_type=DateTime(timezone=True)
    )


class Coupon(SQLModel, table=True):
    __tablename__ = "coupons"

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    code: str = Field(index=True, unique=True)
    type: str = Field(sa_column=Column(String, nullable=False))
    value: Decimal = money_field()
    maximum_discount: Decimal | None = money_field(default=None)
    minimum_amount: Decimal = money_field()
    valid_from: datetime = Field(sa_type=DateTime(timezone=True))
    valid_until: datetime = Field(sa_type=DateTime(timezone=True))
    usage_limit: int | None = Field(default=None)
    used_count: int = Field(default=0)
    is_active: bool = Field(default=True)


class Cart(SQLModel, table=True):
    __tablename__ = "carts"

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    user_id: str = Field(index=True, unique=True)
    items: list[dict[str, Any]] = Field(
        default_factory=list, sa_column=Column(JSON, nullable=False)
    )
    updated_at: datetime = Field(
        default_factory=get_datetime_utc, sa_type=DateTime(timezone=True)
    )


# CHECKOUT


class CheckoutTicket(SQLModel, table=True):
    """
    Write-ahead record of a checkout attempt, keyed by the gateway intent id.

    The payload is the cart request captured when the intent was opened; the
    payment callback materializes orders from it, never from client input.
    """

    __tablename__ = "checkout_tickets"

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    intent_id: str = Field(index=True, unique=True)
    gateway: str
    customer_id: str = Field(index=True)
    status: str = Field(
        default=CheckoutStatus.PENDING.value,
        sa_column=Column(String, nullable=False, index=True),
    )
    amount_minor: int
    currency: str = Field(max_length=3)
    total: Decimal = money_field()
    payload: dict[str, Any] = Field(sa_column=Column(JSON, nullable=False))
    order_ids: list[str] = Field(
        default_factory=list, sa_column=Column(JSON, nullable=False)
    )
    capture_id: str | None = Field(default=None)
    last_error: str | None = Field(default=None)
    created_at: datetime = Field(
        default_factory=get_datetime_utc, sa_type=DateTime(timezone=True)
    )
    updated_at: datetime = Field(
        default_factory=get_datetime_utc, sa_type=DateTime(timezone=True)
    )
    committed_at: datetime | None = Field(
        default=None, sa_type=DateTime(timezone=True)
    )


# ORDERS


class Order(SQLModel, table=True):
    """Order aggregate root: one per vendor per checkout"""

    __tablename__ = "orders"
    __table_args__ = (
        Index("ix_orders_customer_created", "customer_id", "created_at"),
    )

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    order_number: str = Field(index=True, unique=True)
    customer_id: str = Field(index=True)
    status: str = Field(
        default=OrderStatus.PENDING.value,
        sa_column=Column(String, nullable=False, index=True),
    )
    payment_status: str = Field(default=PaymentStatus.PENDING.value)
    payment_method: str
    payment_gateway: str | None = Field(default=None)
    gateway_order_id: str | None = Field(default=None, index=True)
    gateway_payment_id: str | None = Field(default=None)
    checkout_ticket_id: uuid.UUID | None = Field(
        default=None, foreign_key="checkout_tickets.id", index=True
    )

    subtotal: Decimal = money_field()
    tax: Decimal = money_field()
    shipping: Decimal = money_field()
    discount: Decimal = money_field()
    total: Decimal = money_field()
    currency: str = Field(default="USD", max_length=3)
    coupon_code: str | None = Field(default=None)

    shipping_address: dict[str, Any] = Field(sa_column=Column(JSON, nullable=False))
    billing_address: dict[str, Any] = Field(sa_column=Column(JSON, nullable=False))
    notes: str | None = Field(default=None)

    created_at: datetime = Field(
        default_factory=get_datetime_utc, sa_type=DateTime(timezone=True)
    )
    updated_at: datetime = Field(
        default_factory=get_datetime_utc, sa_type=DateTime(timezone=True)
    )

    items: list["OrderItem"] = Relationship(
        back_populates="order",
        sa_relationship_kwargs={"order_by": "OrderItem.position"},
    )
    vendor_orders: list["VendorOrder"] = Relationship(
        back_populates="order",
        sa_relationship_kwargs={"order_by": "VendorOrder.position"},
    )
    escrow: Optional["Escrow"] = Relationship(
        back_populates="order", sa_relationship_kwargs={"uselist": False}
    )


class VendorOrder(SQLModel, table=True):
    """Per-vendor slice of an order with its own fulfillment state"""

    __tablename__ = "vendor_orders"
    __table_args__ = (
        Index("ix_vendor_orders_vendor_created", "vendor_id", "created_at"),
    )

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    order_id: uuid.UUID = Field(foreign_key="orders.id", nullable=False, index=True)
    vendor_id: str = Field(index=True)
    position: int = Field(default=0)
    status: str = Field(
        default=OrderStatus.PENDING.value,
        sa_column=Column(String, nullable=False, index=True),
    )
    subtotal: Decimal = money_field()
    commission: Decimal = money_field()
    vendor_amount: Decimal = money_field()

    # Shipment tracking
    carrier: str | None = Field(default=None)
    tracking_number: str | None = Field(default=None)
    courier_code: str | None = Field(default=None)
    tracking_url: str | None = Field(default=None)
    tracking_validated_at: datetime | None = Field(
        default=None, sa_type=DateTime(timezone=True)
    )
    tracking_updated_at: datetime | None = Field(
        default=None, sa_type=DateTime(timezone=True)
    )

    shipped_at: datetime | None = Field(default=None, sa_type=DateTime(timezone=True))
    delivered_at: datetime | None = Field(
        default=None, sa_type=DateTime(timezone=True)
    )
    created_at: datetime = Field(
        default_factory=get_datetime_utc, sa_type=DateTime(timezone=True)
    )
    updated_at: datetime = Field(
        default_factory=get_datetime_utc, sa_type=DateTime(timezone=True)
    )

    order: Order | None = Relationship(back_populates="vendor_orders")
    items: list["OrderItem"] = Relationship(
        back_populates="vendor_order",
        sa_relationship_kwargs={"order_by": "OrderItem.position"},
    )
    tracking_events: list["TrackingEvent"] = Relationship(
        back_populates="vendor_order",
        sa_relationship_kwargs={"order_by": "TrackingEvent.occurred_at.desc()"},
    )


class OrderItem(SQLModel, table=True):
    __tablename__ = "order_items"

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    order_id: uuid.UUID = Field(foreign_key="orders.id", nullable=False, index=True)
    vendor_order_id: uuid.UUID = Field(
        foreign_key="vendor_orders.id", nullable=False, index=True
    )
    position: int = Field(default=0)
    product_id: str = Field(index=True)
    vendor_id: str
    name: str
    quantity: int = Field(ge=1)
    unit_price: Decimal = money_field()
    variant: dict[str, Any] | None = Field(default=None, sa_column=Column(JSON))

    order: Order | None = Relationship(back_populates="items")
    vendor_order: VendorOrder | None = Relationship(back_populates="items")


class TrackingEvent(SQLModel, table=True):
    """Normalized carrier scan merged into a slice's tracking history"""

    __tablename__ = "tracking_events"
    __table_args__ = (
        UniqueConstraint(
            "vendor_order_id", "occurred_at", "status", name="uq_tracking_event"
        ),
    )

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    vendor_order_id: uuid.UUID = Field(foreign_key="vendor_orders.id", nullable=False)
    occurred_at: datetime = Field(sa_type=DateTime(timezone=True))
    location: str = Field(default="")
    status: str
    description: str = Field(default="")
    raw_data: dict[str, Any] | None = Field(default=None, sa_column=Column(JSON))
    created_at: datetime = Field(
        default_factory=get_datetime_utc, sa_type=DateTime(timezone=True)
    )

    vendor_order: VendorOrder | None = Relationship(back_populates="tracking_events")


class Escrow(SQLModel, table=True):
    """Local mirror of the on-chain escrow that holds an order's funds"""

    __tablename__ = "escrows"

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    order_id: uuid.UUID = Field(foreign_key="orders.id", unique=True, nullable=False)
    address: str = Field(index=True)
    status: str = Field(default=EscrowStatus.LOCKED.value)
    buyer_address: str
    seller_address: str
    amount: Decimal = money_field()
    transactions: list[dict[str, Any]] = Field(
        default_factory=list, sa_column=Column(JSON, nullable=False)
    )
    created_at: datetime = Field(
        default_factory=get_datetime_utc, sa_type=DateTime(timezone=True)
    )
    updated_at: datetime = Field(
        default_factory=get_datetime_utc, sa_type=DateTime(timezone=True)
    )

    order: Order | None = Relationship(back_populates="escrow")


# DISPUTES


class Dispute(SQLModel, table=True):
    __tablename__ = "disputes"

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    order_id: uuid.UUID = Field(foreign_key="orders.id", unique=True, nullable=False)
    buyer_id: str = Field(index=True)
    seller_id: str = Field(index=True)
    raised_by: str
    raised_by_role: str
    reason: str = Field(max_length=1000)
    status: str = Field(
        default=DisputeStatus.OPEN.value,
        sa_column=Column(String, nullable=False, index=True),
    )
    priority: str = Field(default=DisputePriority.MEDIUM.value)
    assigned_admin_id: str | None = Field(default=None, index=True)

    resolution_winner: str | None = Field(default=None)
    resolved_by: str | None = Field(default=None)
    resolved_at: datetime | None = Field(default=None, sa_type=DateTime(timezone=True))
    resolution_notes: str | None = Field(default=None)

    last_activity_at: datetime = Field(
        default_factory=get_datetime_utc, sa_type=DateTime(timezone=True)
    )
    created_at: datetime = Field(
        default_factory=get_datetime_utc, sa_type=DateTime(timezone=True)
    )
    updated_at: datetime = Field(
        default_factory=get_datetime_utc, sa_type=DateTime(timezone=True)
    )

    order: Order | None = Relationship()
    messages: list["DisputeMessage"] = Relationship(
        back_populates="dispute",
        sa_relationship_kwargs={"order_by": "DisputeMessage.sequence"},
    )


class DisputeMessage(SQLModel, table=True):
    """Append-only chat entry; never edited or deleted"""

    __tablename__ = "dispute_messages"
    __table_args__ = (
        UniqueConstraint("dispute_id", "sequence", name="uq_dispute_message_sequence"),
    )

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    dispute_id: uuid.UUID = Field(foreign_key="disputes.id", nullable=False, index=True)
    sequence: int
    sender_id: str
    sender_role: str
    content: str = Field(default="")
    images: list[dict[str, Any]] = Field(
        default_factory=list, sa_column=Column(JSON, nullable=False)
    )
    created_at: datetime = Field(
        default_factory=get_datetime_utc, sa_type=DateTime(timezone=True)
    )

    dispute: Dispute | None = Relationship(back_populates="messages")
    reads: list["MessageRead"] = Relationship(back_populates="message")


class MessageRead(SQLModel, table=True):
    """Read receipt; rows are only ever inserted"""

    __tablename__ = "message_reads"
    __table_args__ = (
        UniqueConstraint("message_id", "user_id", name="uq_message_read"),
    )

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    message_id: uuid.UUID = Field(foreign_key="dispute_messages.id", nullable=False)
    user_id: str = Field(index=True)
    read_at: datetime = Field(
        default_factory=get_datetime_utc, sa_type=DateTime(timezone=True)
    )

    message: DisputeMessage | None = Relationship(back_populates="reads")


# OUTBOX PATTERN


class OutboxEvent(SQLModel, table=True):
    """
    Outbox table for transactional event publishing
    Events are written here atomically with DB changes, then published by worker
    """

    __tablename__ = "outbox_events"

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    event_id: str = Field(index=True, unique=True)
    event_type: str = Field(index=True)
    topic: str = Field(index=True)
    partition_key: str | None = Field(default=None)
    payload: dict[str, Any] = Field(sa_column=Column(JSON))

    # Trace context captured when the event was written
    trace_id: str | None = Field(default=None, max_length=32, index=True)
    span_id: str | None = Field(default=None, max_length=16)
    parent_span_id: str | None = Field(default=None, max_length=16)

    # Status tracking
    published: bool = Field(default=False, index=True)
    published_at: datetime | None = Field(default=None, sa_type=DateTime(timezone=True))
    attempts: int = Field(default=0)
    last_error: str | None = Field(default=None)

    created_at: datetime = Field(
        default_factory=get_datetime_utc, sa_type=DateTime(timezone=True)
    )
    updated_at: datetime = Field(
        default_factory=get_datetime_utc, sa_type=DateTime(timezone=True)
    )

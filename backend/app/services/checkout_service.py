"""
Checkout engine

cart -> validated -> priced -> paid -> one order per vendor

Gateway checkouts are a two-step saga around a write-ahead CheckoutTicket:

1. open_intent: price the cart, open the gateway intent, store a pending
   ticket keyed by the intent id with the cart request as payload.
2. complete_payment: authenticate the callback, lock the ticket row and
   materialize the orders from the stored payload in one transaction.
   A committed ticket short-circuits to the orders it produced, so the
   callback may be replayed any number of times.

Offline methods (cash on delivery, bank transfer, cards) skip step 1 and
materialize straight away with payment pending.

If materialization fails the transaction is rolled back and the ticket is
marked failed in a separate commit; a later callback for the same intent
re-drives it.
"""

import secrets
import string
import time
from dataclasses import dataclass

from sqlalchemy import delete
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, col, select

from app.clients.payment_gateway import PaymentGateway, PaymentIntent, VerifiedPayment
from app.core.config import settings
from app.core.errors import AppError, Internal, InvalidCoupon, InvalidInput, Precondition, UnknownIntent
from app.core.logging import get_logger
from app.core.metrics import (
    checkout_duration_seconds,
    checkouts_total,
    payment_intents_total,
    payment_verifications_total,
)
from app.events import OrderCreatedData, OrderItemData
from app.models import (
    GATEWAY_METHODS,
    Cart,
    CheckoutStatus,
    CheckoutTicket,
    Coupon,
    Order,
    OrderItem,
    OrderStatus,
    PaymentStatus,
    Principal,
    VendorOrder,
    get_datetime_utc,
)
from app.schemas import CartItemIn, CheckoutRequest, OrderCreate
from app.services.inventory_service import InventoryLedger, Reservation
from app.services.outbox_service import OutboxService
from app.services.payment_service import PaymentService
from app.services.pricing import (
    CartLine,
    CartQuote,
    PricingConfig,
    RateProvider,
    StaticRateProvider,
    VendorQuote,
    price_cart,
    to_minor_units,
    validate_coupon,
)

logger = get_logger(__name__)

ORDER_NUMBER_ALPHABET = string.digits + string.ascii_uppercase


def unix_millis() -> int:
    return int(time.time() * 1000)


def generate_order_number() -> str:
    """ORD-<unix millis>-<5 upper-case base-36 chars>"""
    suffix = "".join(secrets.choice(ORDER_NUMBER_ALPHABET) for _ in range(5))
    return f"ORD-{unix_millis()}-{suffix}"


@dataclass
class PricedCart:
    quote: CartQuote
    reservation: Reservation
    coupon: Coupon | None


@dataclass
class PaymentOutcome:
    payment_status: PaymentStatus
    payment_method: str
    gateway: str | None = None
    gateway_order_id: str | None = None
    gateway_payment_id: str | None = None


class CheckoutService:
    def __init__(
        self,
        session: Session,
        pricing: PricingConfig | None = None,
        rates: RateProvider | None = None,
    ):
        self.session = session
        self.pricing = pricing or PricingConfig.from_settings(settings)
        self.rates = rates or StaticRateProvider.from_settings(settings)
        self.inventory = InventoryLedger(session)
        self.payments = PaymentService(session)

    # PRICING

    def quote(self, items: list[CartItemIn], coupon_code: str | None = None) -> CartQuote:
        """Price a cart without side effects."""
        return self._price(items, coupon_code).quote

    def _load_coupon(self, code: str, lock: bool = False) -> Coupon:
        statement = select(Coupon).where(Coupon.code == code.upper())
        if lock:
            statement = statement.with_for_update().execution_options(populate_existing=True)
        coupon = self.session.exec(statement).first()
        if coupon is None:
            raise InvalidCoupon("Invalid coupon code", details={"code": code.upper()})
        return coupon

    def _price(
        self, items: list[CartItemIn], coupon_code: str | None, lock_coupon: bool = False
    ) -> PricedCart:
        if not items:
            raise InvalidInput("No items provided")

        reservation = self.inventory.validate_and_reserve(
            (item.product_id, item.quantity) for item in items
        )
        lines = []
        for item in items:
            product = reservation.products[item.product_id]
            lines.append(
                CartLine(
                    product_id=product.id,
                    vendor_id=product.vendor_id,
                    name=product.name,
                    quantity=item.quantity,
                    unit_price=product.price,
                    variant=item.variant,
                )
            )

        coupon = None
        if coupon_code:
            coupon = self._load_coupon(coupon_code, lock=lock_coupon)
            validate_coupon(coupon, sum((line.line_total for line in lines)), get_datetime_utc())

        quote = price_cart(lines, self.pricing, coupon)
        return PricedCart(quote=quote, reservation=reservation, coupon=coupon)

    # GATEWAY FLOW

    async def open_intent(
        self, principal: Principal, request: CheckoutRequest, gateway: PaymentGateway
    ) -> PaymentIntent:
        """Price the cart, open a gateway intent and record a pending ticket."""
        quote = self.quote(request.items, request.coupon_code)
        currency = gateway.resolve_currency(request.currency)
        amount = self.rates.convert(quote.total, self.pricing.currency, currency)
        amount_minor = to_minor_units(amount, self.pricing.minor_unit_scale)
        receipt = f"receipt_{unix_millis()}"

        breakdown = None
        if currency == self.pricing.currency:
            breakdown = {
                "item_total": quote.subtotal,
                "tax_total": quote.tax,
                "shipping": quote.shipping,
                "discount": quote.discount,
            }

        try:
            intent = await gateway.create_intent(
                amount_minor,
                currency,
                receipt,
                notes={
                    "customerId": principal.id,
                    "itemCount": len(request.items),
                    "originalAmount": str(quote.total),
                    "originalCurrency": self.pricing.currency,
                },
                breakdown=breakdown,
            )
        except AppError:
            payment_intents_total.labels(gateway=gateway.name, status="failed").inc()
            raise

        payload = request.model_dump(mode="json", by_alias=True)
        payload["paymentMethod"] = gateway.name
        ticket = CheckoutTicket(
            intent_id=intent.intent_id,
            gateway=gateway.name,
            customer_id=principal.id,
            amount_minor=intent.amount,
            currency=intent.currency,
            total=quote.total,
            payload=payload,
        )
        self.session.add(ticket)
        self.session.commit()

        payment_intents_total.labels(gateway=gateway.name, status="created").inc()
        logger.info(
            "checkout_intent_opened",
            intent_id=intent.intent_id,
            gateway=gateway.name,
            customer_id=principal.id,
            total=str(quote.total),
            amount_minor=intent.amount,
            currency=intent.currency,
            vendors=len(quote.vendors),
        )
        return intent

    async def complete_payment(
        self,
        principal: Principal,
        gateway: PaymentGateway,
        intent_id: str,
        callback: dict,
    ) -> tuple[list[Order], bool]:
        """
        Settle a gateway callback. Returns (orders, replayed).

        Signature-only gateways are verified before anything is read or
        locked; a bad signature has no side effects. Capturing gateways are
        called under the ticket lock so a capture happens at most once.
        """
        verified: VerifiedPayment | None = None
        if not gateway.captures_on_verify:
            verified = await self._verify(gateway, callback)
            intent_id = verified.intent_id

        ticket = self.payments.get_ticket(intent_id, principal, lock=True)
        if ticket.gateway != gateway.name:
            self.session.rollback()
            raise UnknownIntent(
                "Unknown payment intent", details={"intentId": intent_id, "gateway": gateway.name}
            )

        if ticket.status == CheckoutStatus.COMMITTED.value:
            orders = self.payments.orders_for_intent(intent_id)
            self.session.commit()
            checkouts_total.labels(flow=gateway.name, result="replayed").inc()
            logger.info(
                "checkout_replayed",
                intent_id=intent_id,
                order_ids=[str(order.id) for order in orders],
            )
            return orders, True

        if verified is None:
            if ticket.capture_id:
                verified = VerifiedPayment(
                    verified=True, intent_id=intent_id, capture_id=ticket.capture_id
                )
            else:
                try:
                    verified = await self._verify(gateway, callback)
                except AppError:
                    self.session.rollback()
                    raise
            ticket.capture_id = verified.capture_id

        outcome = PaymentOutcome(
            payment_status=PaymentStatus.PAID,
            payment_method=gateway.name,
            gateway=gateway.name,
            gateway_order_id=intent_id,
            gateway_payment_id=verified.capture_id,
        )
        return self._materialize(ticket, outcome, flow=gateway.name), False

    async def _verify(self, gateway: PaymentGateway, callback: dict) -> VerifiedPayment:
        try:
            verified = await gateway.verify(callback)
        except AppError as e:
            payment_verifications_total.labels(gateway=gateway.name, result=e.code.lower()).inc()
            raise
        payment_verifications_total.labels(gateway=gateway.name, result="verified").inc()
        return verified

    # OFFLINE FLOW

    def checkout(self, principal: Principal, request: OrderCreate) -> list[Order]:
        """Create orders for a payment method settled outside a gateway callback."""
        if request.payment_method in GATEWAY_METHODS:
            raise InvalidInput(
                f"Use the {request.payment_method.value} payment flow for this method",
                details={"paymentMethod": request.payment_method.value},
            )

        # Fail fast on cart, coupon and stock problems before writing anything
        quote = self.quote(request.items, request.coupon_code)

        intent_id = f"{request.payment_method.value}_{secrets.token_hex(12)}"
        ticket = CheckoutTicket(
            intent_id=intent_id,
            gateway=request.payment_method.value,
            customer_id=principal.id,
            amount_minor=to_minor_units(quote.total, self.pricing.minor_unit_scale),
            currency=self.pricing.currency,
            total=quote.total,
            payload=request.model_dump(mode="json", by_alias=True),
        )
        self.session.add(ticket)
        self.session.flush()

        outcome = PaymentOutcome(
            payment_status=PaymentStatus.PENDING,
            payment_method=request.payment_method.value,
        )
        return self._materialize(ticket, outcome, flow="offline")

    # MATERIALIZATION

    def _materialize(
        self, ticket: CheckoutTicket, outcome: PaymentOutcome, flow: str
    ) -> list[Order]:
        intent_id = ticket.intent_id
        capture_id = ticket.capture_id
        start_time = time.time()
        try:
            request = OrderCreate.model_validate(ticket.payload)
            priced = self._price(request.items, request.coupon_code, lock_coupon=True)
            if priced.quote.total != ticket.total:
                raise Precondition(
                    "Cart total changed since the payment was initiated",
                    details={"expected": str(ticket.total), "actual": str(priced.quote.total)},
                )

            self.inventory.commit(priced.reservation)

            orders = [
                self._build_order(ticket, request, vendor_quote, outcome, priced.quote)
                for vendor_quote in priced.quote.vendors
            ]

            if priced.coupon is not None:
                priced.coupon.used_count += 1
                self.session.add(priced.coupon)

            self.session.exec(delete(Cart).where(col(Cart.user_id) == ticket.customer_id))

            for order in orders:
                self._stage_created_event(order, intent_id)

            now = get_datetime_utc()
            ticket.status = CheckoutStatus.COMMITTED.value
            ticket.order_ids = [str(order.id) for order in orders]
            ticket.last_error = None
            ticket.committed_at = now
            ticket.updated_at = now
            self.session.add(ticket)
            self.session.commit()
        except AppError as e:
            self.session.rollback()
            self._mark_failed(intent_id, e.message, capture_id)
            checkouts_total.labels(flow=flow, result="failed").inc()
            logger.warning(
                "checkout_failed",
                intent_id=intent_id,
                error_code=e.code,
                error_message=e.message,
            )
            raise
        except Exception as e:
            self.session.rollback()
            self._mark_failed(intent_id, str(e), capture_id)
            checkouts_total.labels(flow=flow, result="failed").inc()
            logger.error(
                "checkout_failed",
                intent_id=intent_id,
                error_type=type(e).__name__,
                error_message=str(e),
                exc_info=True,
            )
            raise Internal("Failed to create orders", details={"intentId": intent_id}) from e

        duration = time.time() - start_time
        checkouts_total.labels(flow=flow, result="committed").inc()
        checkout_duration_seconds.labels(flow=flow).observe(duration)
        logger.info(
            "checkout_committed",
            intent_id=intent_id,
            flow=flow,
            customer_id=ticket.customer_id,
            order_ids=ticket.order_ids,
            payment_status=outcome.payment_status.value,
            duration_ms=round(duration * 1000, 2),
        )
        return orders

    def _build_order(
        self,
        ticket: CheckoutTicket,
        request: OrderCreate,
        vendor_quote: VendorQuote,
        outcome: PaymentOutcome,
        quote: CartQuote,
    ) -> Order:
        shipping_address = request.shipping_address.model_dump(mode="json", by_alias=True)
        billing_address = (
            request.billing_address.model_dump(mode="json", by_alias=True)
            if request.billing_address
            else shipping_address
        )
        order = Order(
            order_number=generate_order_number(),
            customer_id=ticket.customer_id,
            status=OrderStatus.PENDING.value,
            payment_status=outcome.payment_status.value,
            payment_method=outcome.payment_method,
            payment_gateway=outcome.gateway,
            gateway_order_id=outcome.gateway_order_id,
            gateway_payment_id=outcome.gateway_payment_id,
            checkout_ticket_id=ticket.id,
            subtotal=vendor_quote.subtotal,
            tax=vendor_quote.tax,
            shipping=vendor_quote.shipping,
            discount=vendor_quote.discount,
            total=vendor_quote.total,
            currency=quote.currency,
            coupon_code=quote.coupon_code,
            shipping_address=shipping_address,
            billing_address=billing_address,
            notes=request.notes,
        )
        vendor_order = VendorOrder(
            order_id=order.id,
            vendor_id=vendor_quote.vendor_id,
            position=0,
            status=OrderStatus.PENDING.value,
            subtotal=vendor_quote.subtotal,
            commission=vendor_quote.commission,
            vendor_amount=vendor_quote.vendor_amount,
        )
        items = [
            OrderItem(
                order_id=order.id,
                vendor_order_id=vendor_order.id,
                position=position,
                product_id=line.product_id,
                vendor_id=line.vendor_id,
                name=line.name,
                quantity=line.quantity,
                unit_price=line.unit_price,
                variant=line.variant,
            )
            for position, line in enumerate(vendor_quote.lines)
        ]
        vendor_order.items = items
        order.items = items
        order.vendor_orders = [vendor_order]
        self.session.add(order)
        return order

    def _stage_created_event(self, order: Order, intent_id: str) -> None:
        vendor_order = order.vendor_orders[0]
        OutboxService.create_event(
            session=self.session,
            event_type="order.created",
            topic=settings.KAFKA_TOPIC_ORDER_CREATED,
            event_data=OrderCreatedData(
                order_id=str(order.id),
                order_number=order.order_number,
                customer_id=order.customer_id,
                vendor_id=vendor_order.vendor_id,
                status=order.status,
                payment_status=order.payment_status,
                payment_method=order.payment_method,
                checkout_intent_id=intent_id,
                subtotal=order.subtotal,
                discount=order.discount,
                total_amount=order.total,
                commission=vendor_order.commission,
                currency=order.currency,
                coupon_code=order.coupon_code,
                items=[
                    OrderItemData(
                        product_id=item.product_id,
                        quantity=item.quantity,
                        unit_price=item.unit_price,
                    )
                    for item in vendor_order.items
                ],
                created_at=order.created_at,
            ),
            partition_key=str(order.id),
        )

    def _mark_failed(self, intent_id: str, error: str, capture_id: str | None) -> None:
        ticket = self.session.exec(
            select(CheckoutTicket).where(CheckoutTicket.intent_id == intent_id)
        ).first()
        if ticket is None:
            return
        ticket.status = CheckoutStatus.FAILED.value
        ticket.last_error = error[:500]
        ticket.updated_at = get_datetime_utc()
        if capture_id:
            ticket.capture_id = capture_id
        self.session.add(ticket)
        try:
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(
                "checkout_ticket_mark_failed_error",
                intent_id=intent_id,
                error_type=type(e).__name__,
                error_message=str(e),
            )

from fastapi import APIRouter

from app.core.logging import get_logger
from app.deps import CurrentUser, RazorpayDep, SessionDep
from app.schemas import (
    CheckoutRequest,
    OrderPublic,
    OrdersPublic,
    PaymentIntentPublic,
    RazorpayVerifyRequest,
)
from app.services.checkout_service import CheckoutService

router = APIRouter(prefix="/razorpay", tags=["payments"])
logger = get_logger(__name__)


@router.get("/key-id")
async def read_key_id(gateway: RazorpayDep) -> dict[str, str | None]:
    """Public key the browser checkout widget is opened with"""
    gateway.ensure_configured()
    return {"keyId": gateway.key_id}


@router.post("/create-order")
async def create_razorpay_order(
    *, session: SessionDep, user: CurrentUser, gateway: RazorpayDep, request: CheckoutRequest
) -> PaymentIntentPublic:
    """Price the cart and open a Razorpay order for it"""
    intent = await CheckoutService(session).open_intent(user, request, gateway)
    return PaymentIntentPublic(
        id=intent.intent_id,
        amount=intent.amount,
        currency=intent.currency,
        receipt=intent.receipt,
        status=intent.status,
        key_id=intent.client_data.get("keyId"),
    )


@router.post("/verify-payment")
async def verify_razorpay_payment(
    *, session: SessionDep, user: CurrentUser, gateway: RazorpayDep, callback: RazorpayVerifyRequest
) -> OrdersPublic:
    """
    Authenticate the checkout callback and create the orders it paid for.

    Replaying a verified callback returns the orders created the first time.
    """
    orders, replayed = await CheckoutService(session).complete_payment(
        user,
        gateway,
        callback.razorpay_order_id,
        callback.model_dump(exclude={"order_data"}),
    )
    logger.info(
        "razorpay_payment_verified",
        razorpay_order_id=callback.razorpay_order_id,
        replayed=replayed,
        orders=len(orders),
    )
    return OrdersPublic(
        message="Payment already processed" if replayed else "Payment verified and orders created",
        orders=[OrderPublic.model_validate(order) for order in orders],
    )

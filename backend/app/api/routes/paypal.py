from fastapi import APIRouter

from app.core.logging import get_logger
from app.deps import CurrentUser, PayPalDep, SessionDep
from app.schemas import CheckoutRequest, OrderPublic, OrdersPublic, PaymentIntentPublic
from app.services.checkout_service import CheckoutService

router = APIRouter(prefix="/paypal", tags=["payments"])
logger = get_logger(__name__)


@router.get("/client-id")
async def read_client_id(gateway: PayPalDep) -> dict[str, str | None]:
    gateway.ensure_configured()
    return {"clientId": gateway.client_id}


@router.post("/create-order")
async def create_paypal_order(
    *, session: SessionDep, user: CurrentUser, gateway: PayPalDep, request: CheckoutRequest
) -> PaymentIntentPublic:
    intent = await CheckoutService(session).open_intent(user, request, gateway)
    return PaymentIntentPublic(
        id=intent.intent_id,
        amount=intent.amount,
        currency=intent.currency,
        receipt=intent.receipt,
        status=intent.status,
    )


@router.post("/capture-order/{paypal_order_id}")
async def capture_paypal_order(
    *, session: SessionDep, user: CurrentUser, gateway: PayPalDep, paypal_order_id: str
) -> OrdersPublic:
    """Capture an approved PayPal order and create the orders it paid for"""
    orders, replayed = await CheckoutService(session).complete_payment(
        user, gateway, paypal_order_id, {"paypal_order_id": paypal_order_id}
    )
    logger.info(
        "paypal_order_settled",
        paypal_order_id=paypal_order_id,
        replayed=replayed,
        orders=len(orders),
    )
    return OrdersPublic(
        message="Payment already processed" if replayed else "Payment captured and orders created",
        orders=[OrderPublic.model_validate(order) for order in orders],
    )

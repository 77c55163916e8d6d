"""
Razorpay gateway

Intents are Razorpay orders created over the REST API with basic auth. The
checkout callback is authenticated locally:

    razorpay_signature == hex(HMAC_SHA256(order_id + "|" + payment_id, key_secret))
"""

import hashlib
import hmac
from typing import Any

import httpx

from app.clients.payment_gateway import PaymentGateway, PaymentIntent, VerifiedPayment
from app.core.config import settings
from app.core.errors import BadSignature
from app.core.http import build_http_client
from app.core.logging import get_logger

logger = get_logger(__name__)


def razorpay_signature(order_id: str, payment_id: str, secret: str) -> str:
    message = f"{order_id}|{payment_id}".encode("utf-8")
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


class RazorpayGateway(PaymentGateway):
    name = "razorpay"
    supported_currencies = ("INR", "USD")
    default_currency = "INR"

    def __init__(
        self,
        key_id: str | None = None,
        key_secret: str | None = None,
        api_url: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        super().__init__()
        self.key_id = key_id if key_id is not None else settings.RAZORPAY_KEY_ID
        self.key_secret = key_secret if key_secret is not None else settings.RAZORPAY_KEY_SECRET
        self.api_url = api_url or settings.RAZORPAY_API_URL
        self.transport = transport

    def is_configured(self) -> bool:
        return bool(self.key_id and self.key_secret)

    def build_client(self) -> httpx.AsyncClient:
        return build_http_client(
            self.api_url,
            transport=self.transport,
            auth=httpx.BasicAuth(self.key_id, self.key_secret),
        )

    async def create_intent(
        self,
        amount_minor: int,
        currency: str,
        receipt: str,
        notes: dict[str, Any] | None = None,
        **extra: Any,
    ) -> PaymentIntent:
        self.ensure_configured()
        body = await self._request(
            "POST",
            "/orders",
            json={
                "amount": amount_minor,
                "currency": currency,
                "receipt": receipt,
                "notes": notes or {},
            },
        )
        logger.info(
            "razorpay_order_created",
            razorpay_order_id=body["id"],
            amount=body.get("amount", amount_minor),
            currency=body.get("currency", currency),
        )
        return PaymentIntent(
            intent_id=body["id"],
            amount=body.get("amount", amount_minor),
            currency=body.get("currency", currency),
            receipt=body.get("receipt", receipt),
            status=body.get("status"),
            client_data={"keyId": self.key_id},
        )

    async def verify(self, callback: dict[str, Any]) -> VerifiedPayment:
        order_id = callback.get("razorpay_order_id") or ""
        payment_id = callback.get("razorpay_payment_id") or ""
        signature = (callback.get("razorpay_signature") or "").strip()

        if not order_id or not payment_id or not signature:
            raise BadSignature("Invalid payment signature", details={"gateway": self.name})
        self.ensure_configured()

        expected = razorpay_signature(order_id, payment_id, self.key_secret)
        if not hmac.compare_digest(expected.encode("utf-8"), signature.encode("utf-8")):
            logger.warning(
                "razorpay_signature_mismatch",
                razorpay_order_id=order_id,
                razorpay_payment_id=payment_id,
            )
            raise BadSignature("Invalid payment signature", details={"gateway": self.name})

        return VerifiedPayment(verified=True, intent_id=order_id, capture_id=payment_id)

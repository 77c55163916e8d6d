"""
PayPal gateway (Orders v2)

Intents are PayPal orders with intent CAPTURE; verification is the capture
itself, which must come back COMPLETED. Access tokens come from the OAuth
client-credentials grant and are cached until shortly before expiry.
"""

import time
from decimal import Decimal
from typing import Any

import httpx

from app.clients.payment_gateway import PaymentGateway, PaymentIntent, VerifiedPayment
from app.core.config import settings
from app.core.errors import PaymentNotCompleted
from app.core.http import build_http_client
from app.core.logging import get_logger

logger = get_logger(__name__)

TOKEN_EXPIRY_MARGIN_SECONDS = 60


class PayPalGateway(PaymentGateway):
    name = "paypal"
    captures_on_verify = True
    supported_currencies = ("USD",)
    default_currency = "USD"

    def __init__(
        self,
        client_id: str | None = None,
        client_secret: str | None = None,
        api_url: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        super().__init__()
        self.client_id = client_id if client_id is not None else settings.PAYPAL_CLIENT_ID
        self.client_secret = (
            client_secret if client_secret is not None else settings.PAYPAL_CLIENT_SECRET
        )
        self.api_url = api_url or settings.PAYPAL_API_URL
        self.transport = transport
        self._token: str | None = None
        self._token_expires_at = 0.0

    def is_configured(self) -> bool:
        return bool(self.client_id and self.client_secret)

    def build_client(self) -> httpx.AsyncClient:
        return build_http_client(self.api_url, transport=self.transport)

    async def _access_token(self) -> str:
        if self._token and time.monotonic() < self._token_expires_at:
            return self._token
        body = await self._request(
            "POST",
            "/v1/oauth2/token",
            data={"grant_type": "client_credentials"},
            auth=httpx.BasicAuth(self.client_id, self.client_secret),
        )
        self._token = body["access_token"]
        self._token_expires_at = (
            time.monotonic() + int(body.get("expires_in", 0)) - TOKEN_EXPIRY_MARGIN_SECONDS
        )
        return self._token

    async def _auth_headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {await self._access_token()}"}

    async def create_intent(
        self,
        amount_minor: int,
        currency: str,
        receipt: str,
        notes: dict[str, Any] | None = None,
        **extra: Any,
    ) -> PaymentIntent:
        self.ensure_configured()
        value = (Decimal(amount_minor) / 100).quantize(Decimal("0.01"))
        amount: dict[str, Any] = {"currency_code": currency, "value": str(value)}
        if extra.get("breakdown"):
            amount["breakdown"] = {
                key: {"currency_code": currency, "value": str(part)}
                for key, part in extra["breakdown"].items()
            }

        unit: dict[str, Any] = {"reference_id": receipt, "amount": amount}
        if notes and notes.get("customerId"):
            unit["custom_id"] = notes["customerId"]

        body = await self._request(
            "POST",
            "/v2/checkout/orders",
            headers={**await self._auth_headers(), "Prefer": "return=representation"},
            json={"intent": "CAPTURE", "purchase_units": [unit]},
        )
        logger.info(
            "paypal_order_created",
            paypal_order_id=body["id"],
            status=body.get("status"),
            amount=str(value),
        )
        return PaymentIntent(
            intent_id=body["id"],
            amount=amount_minor,
            currency=currency,
            receipt=receipt,
            status=body.get("status"),
        )

    async def verify(self, callback: dict[str, Any]) -> VerifiedPayment:
        """Capture the approved order; only a COMPLETED capture counts as paid"""
        self.ensure_configured()
        order_id = callback["paypal_order_id"]
        body = await self._request(
            "POST",
            f"/v2/checkout/orders/{order_id}/capture",
            headers={**await self._auth_headers(), "Prefer": "return=representation"},
            json={},
        )
        status = body.get("status")
        if status != "COMPLETED":
            logger.warning("paypal_capture_not_completed", paypal_order_id=order_id, status=status)
            raise PaymentNotCompleted(
                "Payment not completed",
                details={"gateway": self.name, "status": status},
            )

        capture_id = None
        units = body.get("purchase_units") or []
        if units:
            captures = (units[0].get("payments") or {}).get("captures") or []
            if captures:
                capture_id = captures[0].get("id")

        logger.info("paypal_order_captured", paypal_order_id=order_id, capture_id=capture_id)
        return VerifiedPayment(verified=True, intent_id=order_id, capture_id=capture_id)

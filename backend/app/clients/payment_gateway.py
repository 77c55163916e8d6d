"""
Payment gateway interface

A gateway opens a payment intent server-side (amount in minor units) and
authenticates the callback the browser relays after the customer pays. The
gateway is authoritative, so nothing here retries: a transport failure or a
5xx surfaces as GatewayUnavailable and the client re-drives the request.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

import httpx

from app.core.errors import GatewayUnavailable, InvalidInput
from app.core.http import response_body
from app.core.logging import get_logger

logger = get_logger(__name__)


@dataclass
class PaymentIntent:
    intent_id: str
    amount: int
    currency: str
    receipt: str
    status: str | None = None
    client_data: dict[str, Any] = field(default_factory=dict)


@dataclass
class VerifiedPayment:
    verified: bool
    intent_id: str
    capture_id: str | None = None


class PaymentGateway(ABC):
    name: str
    # Whether verify() moves money (PayPal capture) rather than only
    # authenticating a callback (Razorpay signature)
    captures_on_verify: bool = False
    supported_currencies: tuple[str, ...] = ("USD",)
    default_currency: str = "USD"

    def __init__(self) -> None:
        self._client: httpx.AsyncClient | None = None

    @abstractmethod
    def is_configured(self) -> bool: ...

    @abstractmethod
    def build_client(self) -> httpx.AsyncClient: ...

    async def start(self) -> None:
        if self._client is None:
            self._client = self.build_client()
            logger.info("payment_gateway_started", gateway=self.name, configured=self.is_configured())

    async def stop(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            logger.info("payment_gateway_stopped", gateway=self.name)

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = self.build_client()
        return self._client

    def resolve_currency(self, requested: str | None) -> str:
        """Requested currency when supported, otherwise the gateway default"""
        if requested and requested.upper() in self.supported_currencies:
            return requested.upper()
        return self.default_currency

    def ensure_configured(self) -> None:
        if not self.is_configured():
            raise GatewayUnavailable(
                f"{self.name} is not configured", details={"gateway": self.name}
            )

    @abstractmethod
    async def create_intent(
        self,
        amount_minor: int,
        currency: str,
        receipt: str,
        notes: dict[str, Any] | None = None,
        **extra: Any,
    ) -> PaymentIntent:
        """Open a payment intent for `amount_minor` of `currency`"""

    @abstractmethod
    async def verify(self, callback: dict[str, Any]) -> VerifiedPayment:
        """Authenticate a payment callback; raises BadSignature when it is not genuine"""

    async def _request(self, method: str, url: str, **kwargs: Any) -> Any:
        """Issue a request and decode the JSON body, mapping failures to domain errors"""
        try:
            response = await self.client.request(method, url, **kwargs)
        except httpx.RequestError as e:
            logger.error(
                "payment_gateway_unreachable",
                gateway=self.name,
                url=url,
                error_type=type(e).__name__,
                error_message=str(e),
            )
            raise GatewayUnavailable(
                f"{self.name} is unreachable", details={"gateway": self.name}
            ) from e

        if response.status_code >= 500:
            logger.error(
                "payment_gateway_error",
                gateway=self.name,
                url=url,
                status_code=response.status_code,
            )
            raise GatewayUnavailable(
                f"{self.name} returned {response.status_code}",
                details={"gateway": self.name, "status": response.status_code},
            )
        if response.status_code >= 400:
            body = response_body(response)
            logger.warning(
                "payment_gateway_rejected",
                gateway=self.name,
                url=url,
                status_code=response.status_code,
                body=body,
            )
            raise InvalidInput(
                f"{self.name} rejected the request",
                details={"gateway": self.name, "status": response.status_code, "body": body},
            )
        return response.json()

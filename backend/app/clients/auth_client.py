"""
Auth service API client

Resolves a bearer token to the user it was issued for by calling the auth
service's `GET /api/auth/me` with the caller's token.
"""

from typing import Any

import httpx

from app.core.config import settings
from app.core.errors import GatewayUnavailable
from app.core.http import build_http_client
from app.core.logging import get_logger

logger = get_logger(__name__)


class AuthClient:
    """HTTP client for the auth service"""

    def __init__(
        self,
        base_url: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url or settings.AUTH_SERVICE_URL
        self.transport = transport
        self._client: httpx.AsyncClient | None = None

    async def start(self) -> None:
        if self._client is None:
            self._client = build_http_client(self.base_url, transport=self.transport)

    async def stop(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def get_me(self, token: str) -> dict[str, Any] | None:
        """
        Fetch the user behind `token`

        Returns:
            User data dict, or None if the auth service rejects the token

        Raises:
            GatewayUnavailable: If the auth service cannot be reached or fails
        """
        if self._client is None:
            await self.start()
        assert self._client is not None

        try:
            response = await self._client.get(
                "/api/auth/me", headers={"Authorization": f"Bearer {token}"}
            )
        except httpx.RequestError as e:
            logger.error(
                "auth_service_unreachable",
                error_type=type(e).__name__,
                error_message=str(e),
            )
            raise GatewayUnavailable(
                "Auth service unavailable", details={"gateway": "auth"}
            ) from e

        if response.status_code in (401, 403, 404):
            logger.info("auth_service_rejected_token", status_code=response.status_code)
            return None
        if response.status_code >= 400:
            logger.error("auth_service_error", status_code=response.status_code)
            raise GatewayUnavailable(
                "Auth service unavailable",
                details={"gateway": "auth", "status": response.status_code},
            )

        body = response.json()
        # The auth service wraps the user as {"user": {...}}
        if isinstance(body, dict) and isinstance(body.get("user"), dict):
            return body["user"]
        return body

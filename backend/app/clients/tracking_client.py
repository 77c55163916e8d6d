"""
17track API client (v2.2)

Two-step lookup: POST /register for the number, wait the minimum interval
the API asks for, then POST /gettrackinfo. Both calls carry the `17token`
header. Transport errors and 5xx are retried once with jittered backoff;
anything still failing surfaces as TrackingUnavailable.
"""

import asyncio
from typing import Any

import httpx
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential_jitter,
)
from tenacity.wait import wait_base

from app.core.config import settings
from app.core.errors import TrackingUnavailable
from app.core.http import build_http_client
from app.core.logging import get_logger

logger = get_logger(__name__)


def _is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, httpx.RequestError):
        return True
    return isinstance(exc, httpx.HTTPStatusError) and exc.response.status_code >= 500


class Track17Client:
    def __init__(
        self,
        api_key: str | None = None,
        api_url: str | None = None,
        register_interval: float | None = None,
        attempts: int | None = None,
        retry_wait: wait_base | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_key = api_key if api_key is not None else settings.TRACK17_API_KEY
        self.api_url = api_url or settings.TRACK17_API_URL
        self.register_interval = (
            register_interval
            if register_interval is not None
            else settings.TRACK17_REGISTER_INTERVAL_SECONDS
        )
        self.attempts = attempts or settings.OUTBOUND_RETRY_ATTEMPTS
        self.retry_wait = retry_wait or wait_exponential_jitter(initial=0.25, max=2.0)
        self.transport = transport
        self._client: httpx.AsyncClient | None = None

    def is_configured(self) -> bool:
        return bool(self.api_key)

    async def start(self) -> None:
        if self._client is None:
            self._client = build_http_client(
                self.api_url,
                transport=self.transport,
                headers={"17token": self.api_key},
            )
            logger.info("track17_client_started", configured=self.is_configured())

    async def stop(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _post(self, path: str, payload: list[dict[str, Any]]) -> Any:
        if self._client is None:
            await self.start()
        assert self._client is not None
        async for attempt in AsyncRetrying(
            retry=retry_if_exception(_is_retryable),
            stop=stop_after_attempt(self.attempts),
            wait=self.retry_wait,
            reraise=True,
        ):
            with attempt:
                response = await self._client.post(path, json=payload)
                response.raise_for_status()
                return response.json()

    async def register(self, tracking_number: str, carrier_code: int | None = None) -> None:
        """Register a number; 17track answers gettrackinfo only for registered numbers"""
        try:
            body = await self._post(
                "/register", [{"number": tracking_number, "carrier": carrier_code or 0}]
            )
        except (httpx.HTTPError, ValueError) as e:
            # Already-registered numbers are rejected here; the lookup still works
            logger.warning(
                "track17_register_failed",
                tracking_number=tracking_number,
                error_type=type(e).__name__,
                error_message=str(e),
            )
            return
        rejected = ((body or {}).get("data") or {}).get("rejected") or []
        if rejected:
            logger.debug("track17_register_rejected", tracking_number=tracking_number, rejected=rejected)

    async def fetch(
        self, tracking_number: str, carrier_code: int | None = None
    ) -> dict[str, Any] | None:
        """
        Register then fetch one number.

        Returns the first accepted record, or None when 17track has nothing
        for the number.
        """
        await self.register(tracking_number, carrier_code)
        await asyncio.sleep(self.register_interval)

        try:
            body = await self._post("/gettrackinfo", [{"number": tracking_number}])
        except (httpx.HTTPError, ValueError) as e:
            status = e.response.status_code if isinstance(e, httpx.HTTPStatusError) else None
            logger.warning(
                "track17_fetch_failed",
                tracking_number=tracking_number,
                status_code=status,
                error_type=type(e).__name__,
                error_message=str(e),
            )
            raise TrackingUnavailable(
                "Tracking service unavailable",
                details={"trackingNumber": tracking_number, "status": status},
            ) from e

        data = (body or {}).get("data") or {}
        accepted = data.get("accepted") or []
        if accepted:
            return accepted[0]
        if data.get("rejected"):
            logger.info(
                "track17_tracking_rejected",
                tracking_number=tracking_number,
                rejected=data["rejected"],
            )
        return None

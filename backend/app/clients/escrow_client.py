"""
Escrow adapter

The escrow contract is driven through a signing relay that speaks JSON-RPC
2.0 over HTTP; the relay holds the keys and waits for the transaction
receipt. A call either returns a mined receipt or fails:

    transport error, timeout, 5xx   -> EscrowUnavailable (retried once)
    JSON-RPC error, receipt status 0 -> EscrowReverted
"""

import itertools
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
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
from app.core.errors import EscrowReverted, EscrowUnavailable
from app.core.http import build_http_client
from app.core.logging import get_logger
from app.core.metrics import escrow_call_duration_seconds, escrow_calls_total

logger = get_logger(__name__)


@dataclass
class EscrowReceipt:
    tx_hash: str
    block_number: int | None = None


class EscrowAdapter(ABC):
    async def start(self) -> None:
        pass

    async def stop(self) -> None:
        pass

    @abstractmethod
    def is_initialized(self) -> bool: ...

    @abstractmethod
    async def raise_dispute(self, address: str, actor: str) -> EscrowReceipt: ...

    @abstractmethod
    async def resolve(self, address: str, winner_address: str) -> EscrowReceipt: ...


def _is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, httpx.RequestError):
        return True
    return isinstance(exc, httpx.HTTPStatusError) and exc.response.status_code >= 500


class RpcEscrowAdapter(EscrowAdapter):
    def __init__(
        self,
        rpc_url: str | None = None,
        signer_key: str | None = None,
        attempts: int | None = None,
        retry_wait: wait_base | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.rpc_url = rpc_url if rpc_url is not None else settings.ESCROW_RPC_URL
        self.signer_key = signer_key if signer_key is not None else settings.ESCROW_SIGNER_KEY
        self.attempts = attempts or settings.OUTBOUND_RETRY_ATTEMPTS
        self.retry_wait = retry_wait or wait_exponential_jitter(initial=0.25, max=2.0)
        self.transport = transport
        self._client: httpx.AsyncClient | None = None
        self._ids = itertools.count(1)

    def is_initialized(self) -> bool:
        return bool(self.rpc_url and self.signer_key)

    async def start(self) -> None:
        if self._client is None and self.is_initialized():
            self._client = build_http_client(
                self.rpc_url,
                transport=self.transport,
                headers={"Authorization": f"Bearer {self.signer_key}"},
            )
        logger.info("escrow_adapter_started", initialized=self.is_initialized())

    async def stop(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def raise_dispute(self, address: str, actor: str) -> EscrowReceipt:
        return await self._call("escrow_raiseDispute", {"escrow": address, "actor": actor})

    async def resolve(self, address: str, winner_address: str) -> EscrowReceipt:
        return await self._call(
            "escrow_resolveDispute", {"escrow": address, "winner": winner_address}
        )

    async def _post(self, payload: dict[str, Any]) -> dict[str, Any]:
        assert self._client is not None
        async for attempt in AsyncRetrying(
            retry=retry_if_exception(_is_retryable),
            stop=stop_after_attempt(self.attempts),
            wait=self.retry_wait,
            reraise=True,
        ):
            with attempt:
                response = await self._client.post("", json=payload)
                response.raise_for_status()
                return response.json()

    async def _call(self, method: str, params: dict[str, Any]) -> EscrowReceipt:
        if not self.is_initialized():
            raise EscrowUnavailable("Escrow service is not initialized")
        if self._client is None:
            await self.start()

        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        started = time.time()
        try:
            body = await self._post(payload)
        except httpx.HTTPStatusError as e:
            if e.response.status_code < 500:
                escrow_calls_total.labels(operation=method, result="reverted").inc()
                logger.error(
                    "escrow_call_rejected", method=method, status_code=e.response.status_code
                )
                raise EscrowReverted(
                    "Escrow relay rejected the call",
                    details={"method": method, "status": e.response.status_code},
                ) from e
            escrow_calls_total.labels(operation=method, result="unavailable").inc()
            logger.error("escrow_call_failed", method=method, status_code=e.response.status_code)
            raise EscrowUnavailable(
                "Escrow relay unavailable", details={"method": method}
            ) from e
        except (httpx.RequestError, ValueError) as e:
            escrow_calls_total.labels(operation=method, result="unavailable").inc()
            logger.error(
                "escrow_call_failed",
                method=method,
                error_type=type(e).__name__,
                error_message=str(e),
            )
            raise EscrowUnavailable(
                "Escrow relay unavailable", details={"method": method}
            ) from e
        finally:
            escrow_call_duration_seconds.labels(operation=method).observe(time.time() - started)

        error = body.get("error")
        result = body.get("result") or {}
        if error or str(result.get("status", 1)) in ("0", "0x0"):
            escrow_calls_total.labels(operation=method, result="reverted").inc()
            reason = (error or {}).get("message") or "Transaction reverted"
            logger.warning(
                "escrow_call_reverted",
                method=method,
                escrow_address=params.get("escrow"),
                reason=reason,
                tx_hash=result.get("txHash"),
            )
            raise EscrowReverted(reason, details={"method": method})

        receipt = EscrowReceipt(
            tx_hash=result.get("txHash") or "",
            block_number=result.get("blockNumber"),
        )
        escrow_calls_total.labels(operation=method, result="success").inc()
        logger.info(
            "escrow_call_succeeded",
            method=method,
            escrow_address=params.get("escrow"),
            tx_hash=receipt.tx_hash,
            block_number=receipt.block_number,
        )
        return receipt

"""
Shared factory for outbound HTTP clients (httpx)

Every collaborator (payment gateways, 17track, escrow relay, auth service)
gets its own AsyncClient with the service-wide deadline and a request hook
that forwards the current traceparent. Tests pass an httpx.MockTransport.
"""

from typing import Any

import httpx

from app.core.config import settings
from app.core.tracing import outbound_trace_headers


async def _inject_traceparent(request: httpx.Request) -> None:
    for name, value in outbound_trace_headers().items():
        request.headers.setdefault(name, value)


def build_http_client(
    base_url: str,
    *,
    timeout: float | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
    headers: dict[str, str] | None = None,
    auth: Any = None,
) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        base_url=base_url,
        timeout=httpx.Timeout(timeout or settings.OUTBOUND_TIMEOUT_SECONDS),
        transport=transport,
        headers={
            "User-Agent": f"{settings.SERVICE_NAME}/{settings.SERVICE_VERSION}",
            **(headers or {}),
        },
        auth=auth,
        event_hooks={"request": [_inject_traceparent]},
    )


def response_body(response: httpx.Response) -> Any:
    """Decoded JSON body, or the raw text when the upstream did not send JSON"""
    try:
        return response.json()
    except ValueError:
        return response.text

"""
Tracing Middleware - W3C Trace Context for inbound requests

Continues the caller's trace when a valid `traceparent` header is present,
starts a new one otherwise, and binds trace.id/span.id/request_id into
structlog's contextvars so every log line of the request carries them.
Outbound calls (payment gateways, 17track, escrow relay, auth service) pick
the context up through app.core.http; outbox events store it for the worker.
"""

import uuid
from typing import Callable

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from app.core.logging import get_logger
from app.core.tracing import (
    TRACEPARENT,
    TraceContext,
    bind_trace_context,
    create_trace_context,
    unbind_trace_context,
)

logger = get_logger(__name__)


class TracingMiddleware(BaseHTTPMiddleware):
    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Response]
    ) -> Response:
        trace_context = self._extract(request.headers.get(TRACEPARENT))
        # Unique to this HTTP request; retries of one user action share trace.id only
        request_id = request.headers.get("x-request-id") or str(uuid.uuid4())

        bind_trace_context(trace_context, request_id=request_id)
        try:
            response = await call_next(request)
            response.headers["X-Trace-Id"] = trace_context.trace_id
            response.headers["X-Request-Id"] = request_id
            response.headers[TRACEPARENT] = trace_context.to_traceparent_header()
            return response
        finally:
            unbind_trace_context()

    @staticmethod
    def _extract(header: str | None) -> TraceContext:
        if not header:
            return create_trace_context()
        parsed = TraceContext.from_traceparent_header(header)
        if parsed is None:
            # Malformed header, start new trace
            context = create_trace_context()
            logger.warning(
                "trace_context_invalid_header",
                traceparent=header,
                **{"trace.id": context.trace_id},
            )
            return context
        logger.debug(
            "trace_context_extracted",
            **{"trace.id": parsed.trace_id},
            parent_span_id=parsed.parent_span_id,
        )
        return parsed

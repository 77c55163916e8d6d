"""
Logging Middleware - structured HTTP access log

One `http_request_completed` line per request with ECS field names, so the
access log can be joined with application logs on trace.id. Registered
inside TracingMiddleware, which binds the trace context first.

Levels:
- 2xx/3xx/4xx: INFO (4xx are domain rejections, not faults)
- slow (> SLOW_REQUEST_MS) successful requests: WARNING
- 5xx or unhandled exception: ERROR with stack trace
"""

import time
from typing import Callable

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response
from starlette.status import HTTP_500_INTERNAL_SERVER_ERROR

from app.core.logging import get_logger

logger = get_logger(__name__)

SLOW_REQUEST_MS = 1000
# Probes and scrapes would drown the access log
QUIET_PATHS = frozenset({"/metrics", "/api/health/live", "/api/health/ready"})


class LoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Response]
    ) -> Response:
        start_time = time.time()
        method = request.method
        path = request.url.path

        exception_raised = None
        try:
            response = await call_next(request)
        except Exception as e:
            exception_raised = e
            response = Response(
                content="Internal Server Error",
                status_code=HTTP_500_INTERNAL_SERVER_ERROR,
            )

        duration_ms = (time.time() - start_time) * 1000
        status_code = response.status_code

        log_data = {
            "http.request.method": method,
            "url.path": path,
            "url.query": str(request.url.query) or None,
            "http.response.status_code": status_code,
            "event.duration": round(duration_ms * 1_000_000, 0),  # ECS uses nanoseconds
            "duration_ms": round(duration_ms, 2),
            "client.ip": request.client.host if request.client else None,
            "user_agent.original": request.headers.get("user-agent"),
        }

        if exception_raised is not None or status_code >= 500:
            if exception_raised is not None:
                log_data["error_type"] = type(exception_raised).__name__
                log_data["error_message"] = str(exception_raised)
            logger.error("http_request_completed", **log_data, exc_info=exception_raised)
        elif duration_ms > SLOW_REQUEST_MS:
            logger.warning("http_request_slow", **log_data)
        elif path in QUIET_PATHS:
            logger.debug("http_request_completed", **log_data)
        else:
            logger.info("http_request_completed", **log_data)

        if exception_raised is not None:
            raise exception_raised
        return response

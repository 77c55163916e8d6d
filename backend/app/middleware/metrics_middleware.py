"""
HTTP Metrics Middleware

Tracks request counts (by status class), durations and in-flight requests.
Paths are templated before they become label values so ids do not explode
cardinality:

    /api/orders/123e4567-e89b-12d3-a456-426614174000/tracking -> /api/orders/{id}/tracking
    /uploads/disputes/dispute-3f2a....png                       -> /uploads/disputes/{file}
"""

import re
import time
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from app.core.metrics import (
    http_request_duration_seconds,
    http_requests_in_progress,
    http_requests_total,
)


class MetricsMiddleware(BaseHTTPMiddleware):
    def __init__(self, app: ASGIApp):
        super().__init__(app)
        self.uuid_pattern = re.compile(
            r"/[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}(/|$)"
        )
        self.numeric_pattern = re.compile(r"/\d+(/|$)")
        # PayPal order ids in /api/paypal/capture-order/{id}
        self.capture_pattern = re.compile(r"(/capture-order)/[^/]+$")
        self.upload_pattern = re.compile(r"^(/uploads/disputes)/.+$")

    def _template_path(self, path: str) -> str:
        templated = self.upload_pattern.sub(r"\1/{file}", path)
        templated = self.capture_pattern.sub(r"\1/{id}", templated)
        templated = self.uuid_pattern.sub(r"/{id}\1", templated)
        return self.numeric_pattern.sub(r"/{id}\1", templated)

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        method = request.method
        endpoint = self._template_path(request.url.path)

        http_requests_in_progress.labels(method=method, endpoint=endpoint).inc()
        start_time = time.time()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
        finally:
            duration = time.time() - start_time
            http_requests_total.labels(
                method=method, endpoint=endpoint, status_code=f"{status_code // 100}xx"
            ).inc()
            http_request_duration_seconds.labels(method=method, endpoint=endpoint).observe(duration)
            http_requests_in_progress.labels(method=method, endpoint=endpoint).dec()

        return response

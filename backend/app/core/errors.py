"""
Domain error hierarchy

Services raise these; the exception handler registered in app.main turns them
into a JSON body of the form:

    {"message": "...", "code": "INSUFFICIENT_QUANTITY", "retryable": false, "details": {...}}

`retryable` tells the client it may re-drive the same request (gateway or
escrow outages); everything else needs a different request.
"""

from typing import Any

from fastapi import Request
from fastapi.responses import JSONResponse

from app.core.logging import get_logger

logger = get_logger(__name__)


class AppError(Exception):
    """Base class for errors that map onto an HTTP response"""

    code = "INTERNAL"
    status_code = 500
    retryable = False

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "message": self.message,
            "code": self.code,
            "retryable": self.retryable,
            "details": self.details,
        }


class InvalidInput(AppError):
    code = "INVALID_INPUT"
    status_code = 400


class UnknownProduct(InvalidInput):
    code = "UNKNOWN_PRODUCT"


class InactiveProduct(InvalidInput):
    code = "INACTIVE_PRODUCT"


class InvalidCoupon(AppError):
    code = "INVALID_COUPON"
    status_code = 400


class InsufficientQuantity(AppError):
    code = "INSUFFICIENT_QUANTITY"
    status_code = 400


class Precondition(AppError):
    """Invalid state transition for the current state of the resource"""

    code = "PRECONDITION_FAILED"
    status_code = 400


class BadSignature(AppError):
    code = "BAD_SIGNATURE"
    status_code = 400


class PaymentNotCompleted(BadSignature):
    code = "PAYMENT_NOT_COMPLETED"


class Unauthorized(AppError):
    code = "UNAUTHORIZED"
    status_code = 401


class Forbidden(AppError):
    code = "FORBIDDEN"
    status_code = 403


class NotFound(AppError):
    code = "NOT_FOUND"
    status_code = 404


class UnknownIntent(NotFound):
    code = "UNKNOWN_INTENT"


class Conflict(AppError):
    code = "CONFLICT"
    status_code = 409


class EscrowReverted(AppError):
    """The escrow contract rejected the call. Local state must not change."""

    code = "ESCROW_REVERTED"
    status_code = 502


class GatewayUnavailable(AppError):
    code = "GATEWAY_UNAVAILABLE"
    status_code = 503
    retryable = True


class EscrowUnavailable(AppError):
    code = "ESCROW_UNAVAILABLE"
    status_code = 503
    retryable = True


class TrackingUnavailable(AppError):
    code = "TRACKING_UNAVAILABLE"
    status_code = 503
    retryable = True


class Internal(AppError):
    code = "INTERNAL"
    status_code = 500


async def app_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Render an AppError as JSON with its HTTP status"""
    assert isinstance(exc, AppError)
    log = logger.error if exc.status_code >= 500 else logger.info
    log(
        "request_failed",
        error_code=exc.code,
        error_message=exc.message,
        status_code=exc.status_code,
        retryable=exc.retryable,
        path=request.url.path,
    )
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

# agenda/core/exceptions.py
"""Typed booking errors and their HTTP mapping"""
import logging
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from agenda.utils.my_logging import redact_url

logger = logging.getLogger(__name__)


class BookingError(Exception):
    """Base class for every error the booking core surfaces to callers."""

    code = "booking_error"
    http_status = 400
    default_message = "Booking request failed"

    def __init__(self, message: Optional[str] = None, **details: Any):
        self.message = message or self.default_message
        self.details: Dict[str, Any] = details
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.code,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(BookingError):
    code = "validation_error"
    http_status = 422
    default_message = "Invalid booking data"


class NotFound(BookingError):
    code = "not_found"
    http_status = 404
    default_message = "Resource not found"


class PolicyViolation(BookingError):
    code = "policy_violation"
    http_status = 403
    default_message = "This action is not allowed by the establishment policy"


class QuotaExceeded(BookingError):
    """Plan limit reached. details carry `limit` and `current` for upgrade prompts."""

    code = "quota_exceeded"
    http_status = 402
    default_message = "Plan limit reached"


class SlotNoLongerAvailable(BookingError):
    """The requested interval was taken; refresh availability and retry."""

    code = "slot_no_longer_available"
    http_status = 409
    default_message = "This time slot is no longer available"


class TokenInvalid(BookingError):
    code = "token_invalid"
    http_status = 401
    default_message = "Invalid management link"


class TokenExpired(BookingError):
    code = "token_expired"
    http_status = 410
    default_message = "This management link has expired"


class InvalidTransition(BookingError):
    code = "invalid_transition"
    http_status = 409
    default_message = "Appointment can no longer be changed"


async def booking_error_handler(request: Request, exc: BookingError) -> JSONResponse:
    correlation_id = getattr(request.state, "correlation_id", "unknown")
    logger.warning(
        f"Booking request rejected: {exc.code}",
        extra={"correlation_id": correlation_id, "path": redact_url(request.url.path)},
    )
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = jsonable_encoder(exc.errors(), custom_encoder={Exception: str})
    return JSONResponse(
        status_code=ValidationError.http_status,
        content={
            "error": ValidationError.code,
            "message": ValidationError.default_message,
            "details": {"errors": errors},
        },
    )


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    correlation_id = getattr(request.state, "correlation_id", "unknown")
    logger.error(
        f"Unhandled error on {request.method} {redact_url(request.url.path)}",
        exc_info=exc,
        extra={"correlation_id": correlation_id},
    )
    return JSONResponse(
        status_code=500,
        content={
            "error": "internal_error",
            "message": "Something went wrong. Please try again later.",
            "details": {},
        },
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Map typed booking errors to JSON responses"""
    app.add_exception_handler(BookingError, booking_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

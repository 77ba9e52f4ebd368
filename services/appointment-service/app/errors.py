"""
Domain error taxonomy.

Every error carries an HTTP status and a stable machine-readable code so
routes stay thin: they raise, and a single exception handler renders
``{"error": message, "code": CODE, ...extra}``.
"""
from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class AppError(Exception):
    status_code = 500
    default_code = "INTERNAL_ERROR"

    def __init__(self, message: str, code: str | None = None, **extra):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.extra = extra

    def to_dict(self) -> dict:
        body = {"error": self.message, "code": self.code}
        body.update(self.extra)
        return body


class ValidationError(AppError):
    """Malformed or out-of-policy input. User-correctable."""

    status_code = 400
    default_code = "VALIDATION_ERROR"


class Conflict(AppError):
    """Slot or same-day contention."""

    status_code = 409
    default_code = "SLOT_UNAVAILABLE"


class NotFound(AppError):
    """Unknown resource, or one the caller does not own."""

    status_code = 404
    default_code = "APPOINTMENT_NOT_FOUND"


class InvalidTransition(AppError):
    status_code = 409
    default_code = "INVALID_TRANSITION"


class CancellationTooLate(AppError):
    status_code = 400
    default_code = "CANCELLATION_TOO_LATE"

    def __init__(self, hours_until: int):
        super().__init__(
            f"Cannot cancel appointment. Less than 1 hour remaining ({hours_until} hours left)",
            hoursUntilAppointment=hours_until,
        )
        self.hours_until = hours_until


class PaymentNotCompleted(AppError):
    status_code = 400
    default_code = "PAYMENT_NOT_COMPLETED"

    def __init__(self, provider_status: str | None):
        super().__init__("Payment was not completed", status=provider_status)
        self.provider_status = provider_status


class PaymentProviderError(AppError):
    """Upstream payment processor failure (transport or API)."""

    status_code = 500
    default_code = "PAYMENT_PROVIDER_ERROR"

    def __init__(self, message: str, code: str | None = None, http_status: int | None = None, **extra):
        super().__init__(message, code, **extra)
        self.http_status = http_status


class MeetingLinkError(AppError):
    status_code = 502
    default_code = "MEET_LINK_GENERATION_ERROR"


class ConfigError(AppError):
    """Missing credentials or settings. Operator-fixable."""

    status_code = 500
    default_code = "CONFIG_ERROR"


async def app_error_handler(request: Request, exc: AppError):
    if exc.status_code >= 500:
        logger.error("%s %s -> %s: %s", request.method, request.url.path, exc.code, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AppError, app_error_handler)

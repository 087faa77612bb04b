"""Unified API response envelope."""

from typing import Any
from datetime import datetime
from uuid import uuid4

from pydantic import BaseModel, Field

from utils.timezone import now_utc


class APIMeta(BaseModel):
    """Metadata included in every API response."""

    timestamp: datetime = Field(..., description="Response timestamp (UTC)")
    request_id: str = Field(..., description="Unique request identifier for tracing")


class APIResponse(BaseModel):
    """
    Unified response format for all API endpoints.

    ``status`` is what clients branch on: "OK", "ERROR", or a step marker
    such as "2FA_REQUIRED" or "NEEDS_EMAIL". Errors always carry ``code``.
    """

    status: str
    code: str | None = None
    message: str | None = None
    data: Any | None = None
    meta: APIMeta


class ResponseStatus:
    OK = "OK"
    ERROR = "ERROR"
    TWO_FACTOR_REQUIRED = "2FA_REQUIRED"
    NEEDS_EMAIL = "NEEDS_EMAIL"


def _meta(request_id: str | None) -> APIMeta:
    return APIMeta(timestamp=now_utc(), request_id=request_id or str(uuid4()))


def success_response(
    data: Any = None,
    message: str | None = None,
    status: str = ResponseStatus.OK,
    request_id: str | None = None,
) -> APIResponse:
    """Create a success (or intermediate step) response."""
    return APIResponse(
        status=status,
        message=message,
        data=data,
        meta=_meta(request_id),
    )


def error_response(
    code: str,
    message: str,
    data: Any = None,
    request_id: str | None = None,
) -> APIResponse:
    """Create an error response."""
    return APIResponse(
        status=ResponseStatus.ERROR,
        code=code,
        message=message,
        data=data,
        meta=_meta(request_id),
    )


class ErrorCodes:
    """
    Error codes not owned by an AuthError subclass.

    Auth failures carry their own ``code`` (see auth/exceptions.py).
    """

    NOT_AUTHENTICATED = "NOT_AUTHENTICATED"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    NOT_FOUND = "NOT_FOUND"
    EMAIL_DELIVERY_FAILED = "EMAIL_DELIVERY_FAILED"
    INTERNAL_ERROR = "INTERNAL_ERROR"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"

"""Global exception handlers for FastAPI."""

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.responses import JSONResponse

from api.base import error_response, ErrorCodes
from auth.exceptions import AuthError, RateLimitedError, ValidationError, WeakPasswordError
from clients.email_client import EmailGatewayError

logger = logging.getLogger(__name__)


def _request_id(request: Request) -> str | None:
    return getattr(request.state, "request_id", None)


def auth_error_response(request: Request, exc: AuthError) -> JSONResponse:
    """Render an AuthError as the error envelope."""
    data = {"errors": exc.errors} if isinstance(exc, WeakPasswordError) else None
    headers = None
    if isinstance(exc, RateLimitedError):
        headers = {"Retry-After": str(exc.retry_after_seconds)}
    return JSONResponse(
        status_code=exc.status_code,
        headers=headers,
        content=error_response(
            exc.code,
            exc.message,
            data=data,
            request_id=_request_id(request),
        ).model_dump(mode="json"),
    )


def register_error_handlers(app: FastAPI) -> None:
    """Register global exception handlers on the app."""

    @app.exception_handler(AuthError)
    async def auth_error_handler(request: Request, exc: AuthError):
        if isinstance(exc, ValidationError):
            logger.debug(f"Rejected input on {request.url.path}: {exc.code}")
        return auth_error_response(request, exc)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        logger.debug(f"Request validation failed on {request.url.path}")
        return JSONResponse(
            status_code=422,
            content=error_response(
                ErrorCodes.VALIDATION_ERROR,
                "Invalid request",
                data={"errors": [
                    {"loc": list(err.get("loc", ())), "msg": err.get("msg")}
                    for err in exc.errors()
                ]},
                request_id=_request_id(request),
            ).model_dump(mode="json"),
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        code = ErrorCodes.NOT_FOUND if exc.status_code == 404 else ErrorCodes.VALIDATION_ERROR
        return JSONResponse(
            status_code=exc.status_code,
            content=error_response(code, str(exc.detail), request_id=_request_id(request)).model_dump(mode="json"),
        )

    @app.exception_handler(EmailGatewayError)
    async def email_error_handler(request: Request, exc: EmailGatewayError):
        logger.error(f"Email gateway failure: {exc}")
        return JSONResponse(
            status_code=502,
            content=error_response(
                ErrorCodes.EMAIL_DELIVERY_FAILED,
                "We could not send the email. Please try again shortly",
                request_id=_request_id(request),
            ).model_dump(mode="json"),
        )

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception("Unhandled exception")
        return JSONResponse(
            status_code=500,
            content=error_response(
                ErrorCodes.INTERNAL_ERROR,
                "An internal error occurred",
                request_id=_request_id(request),
            ).model_dump(mode="json"),
        )

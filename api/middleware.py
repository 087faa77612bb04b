"""Request-scoped middleware for API requests."""

import logging
from uuid import uuid4

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse

from api.base import error_response, ErrorCodes

logger = logging.getLogger(__name__)

ADMIN_MODE_HEADER = "X-Admin-Mode"


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Assigns a unique request ID to every request."""

    async def dispatch(self, request: Request, call_next):
        request_id = str(uuid4())
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response


def mark_degraded(request: Request) -> None:
    """Flag this admin response as served from a degraded read path."""
    request.state.admin_mode = "degraded"


class AdminModeMiddleware(BaseHTTPMiddleware):
    """Tags every /admin response with X-Admin-Mode: normal|degraded.

    Degraded when a route flagged it via ``mark_degraded`` or the response
    is a server-side failure. Clients render degraded data read-only.
    """

    PREFIX = "/admin"

    async def dispatch(self, request: Request, call_next):
        if not request.url.path.startswith(self.PREFIX):
            return await call_next(request)

        request.state.admin_mode = "normal"
        try:
            response = await call_next(request)
        except Exception:
            # Unhandled errors would otherwise leave this layer without the header
            logger.exception(f"Unhandled exception on {request.url.path}")
            response = JSONResponse(
                status_code=500,
                content=error_response(
                    ErrorCodes.INTERNAL_ERROR,
                    "An internal error occurred",
                    request_id=getattr(request.state, "request_id", None),
                ).model_dump(mode="json"),
            )

        mode = getattr(request.state, "admin_mode", "normal")
        if response.status_code >= 500:
            mode = "degraded"
        response.headers[ADMIN_MODE_HEADER] = mode
        return response

"""Security middleware for FastAPI - per-request session resolution."""

import logging

from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse

from auth.exceptions import NotAuthenticatedError, SessionExpiredError
from auth.service import AuthService
from auth.types import Principal
from api.base import error_response, ErrorCodes

logger = logging.getLogger(__name__)

SESSION_COOKIE = "session_token"


def extract_session_token(request: Request, cookie_name: str = SESSION_COOKIE) -> str | None:
    """Session token from the cookie or an ``Authorization: Bearer`` header."""
    token = request.cookies.get(cookie_name)
    if token:
        return token
    auth_header = request.headers.get("Authorization", "")
    scheme, _, value = auth_header.partition(" ")
    if scheme.lower() == "bearer" and value.strip():
        return value.strip()
    return None


def current_principal(request: Request) -> Principal:
    """FastAPI dependency: the authenticated caller, or NOT_AUTHENTICATED."""
    principal = getattr(request.state, "principal", None)
    if principal is None:
        raise NotAuthenticatedError()
    return principal


class AuthMiddleware(BaseHTTPMiddleware):
    """Middleware that resolves the session into ``request.state.principal``.

    For every request carrying a session token (cookie or bearer):
    1. Resolves session, user and permission set via AuthService
    2. Stores the Principal in request.state (request-scoped, no globals)
    3. Bumps the session's last_seen_at (best-effort)

    Protected paths without a valid session are rejected with 401. Public
    paths continue anonymously.
    """

    PUBLIC_PATHS = [
        "/auth/login",
        "/auth/2fa/verify",
        "/auth/session",
        "/auth/logout",
        "/auth/register",
        "/auth/activation/resend",
        "/auth/activate",
        "/auth/forgot-password",
        "/auth/password/reset/validate",
        "/auth/reset-password",
        "/auth/oauth/",
        "/health",
        "/docs",
        "/openapi.json",
    ]

    def __init__(self, app, auth_service: AuthService, cookie_name: str = SESSION_COOKIE):
        super().__init__(app)
        self._auth_service = auth_service
        self._cookie_name = cookie_name

    def _is_public_path(self, path: str) -> bool:
        """Check if path is in public paths list."""
        for public_path in self.PUBLIC_PATHS:
            if path == public_path or path.startswith(public_path):
                return True
        return False

    async def dispatch(self, request: Request, call_next):
        """Process request through middleware."""
        public = self._is_public_path(request.url.path)
        request.state.principal = None

        session_token = extract_session_token(request, self._cookie_name)

        if not session_token:
            if public:
                return await call_next(request)
            return JSONResponse(
                status_code=401,
                content=error_response(
                    ErrorCodes.NOT_AUTHENTICATED,
                    "Authentication required",
                ).model_dump(mode="json"),
            )

        try:
            principal = await run_in_threadpool(self._auth_service.resolve_principal, session_token)
        except SessionExpiredError as e:
            if public:
                return await call_next(request)
            return JSONResponse(
                status_code=401,
                content=error_response(e.code, e.message).model_dump(mode="json"),
            )

        request.state.principal = principal
        await run_in_threadpool(self._auth_service.touch_session, principal.session)
        return await call_next(request)

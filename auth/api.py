"""HTTP routes for authentication: login, 2FA step, account tokens, OAuth."""

import ipaddress

from fastapi import APIRouter, Depends, Path, Query, Request, Response

from api.base import ResponseStatus, success_response
from auth.config import AuthConfig
from auth.exceptions import ValidationError
from auth.oauth import OAuthLinkingResolver
from auth.permissions import resolve_permissions
from auth.schemas import (
    EmailRequest,
    LoginRequest,
    OAuthCallbackRequest,
    OAuthCompleteRequest,
    RegisterRequest,
    ResetPasswordRequest,
    TokenRequest,
    TwoFactorVerifyRequest,
)
from auth.security_middleware import current_principal
from auth.service import AuthService
from auth.types import Authenticated, AuthSession, AwaitingSecondFactor, DeviceInfo, NeedsEmail, Principal, User
from utils.timezone import format_iso, seconds_until

PROVIDER_PATTERN = r"^[a-z0-9_-]{1,32}$"


def get_client_ip(request: Request) -> str | None:
    """Extract valid IP address from request, or None if invalid."""
    if not request.client:
        return None
    host = request.client.host
    try:
        ipaddress.ip_address(host)
        return host
    except ValueError:
        return None


def device_from_request(request: Request, device_label: str | None = None) -> DeviceInfo:
    return DeviceInfo(
        ip_address=get_client_ip(request),
        user_agent=request.headers.get("User-Agent"),
        device_label=device_label,
    )


def user_payload(user: User) -> dict:
    """Public profile: never includes the password hash."""
    return {
        "id": user.id,
        "email": user.email,
        "role": user.role.value,
        "status": user.status.value,
        "terms_accepted": user.terms_accepted,
        "terms_version": user.terms_version,
        "feature_flags": user.feature_flags,
        "permissions": sorted(resolve_permissions(user)),
        "created_at": format_iso(user.created_at),
        "last_login_at": format_iso(user.last_login_at),
    }


def set_session_cookie(response: Response, session: AuthSession, config: AuthConfig) -> None:
    response.set_cookie(
        key=config.session_cookie_name,
        value=session.token,
        httponly=True,
        secure=config.session_cookie_secure,
        samesite="lax",
        max_age=seconds_until(session.expires_at),
    )


def clear_session_cookie(response: Response, config: AuthConfig) -> None:
    response.delete_cookie(
        key=config.session_cookie_name,
        httponly=True,
        secure=config.session_cookie_secure,
        samesite="lax",
    )


def authenticated_payload(result: Authenticated) -> dict:
    return {
        "user": user_payload(result.user),
        "session": {
            "id": result.session.id,
            "expires_at": result.session.expires_at.isoformat(),
            # For API clients using Authorization: Bearer
            "token": result.session.token,
        },
    }


def create_auth_router(
    auth_service: AuthService,
    oauth_resolver: OAuthLinkingResolver,
    config: AuthConfig,
) -> APIRouter:
    """Create auth router with injected services."""
    router = APIRouter(prefix="/auth", tags=["auth"])

    @router.post("/login")
    def login(request: Request, response: Response, body: LoginRequest):
        """Password step.

        Returns:
            - status OK with user + session (cookie set) when 2FA is off
            - status 2FA_REQUIRED with ticket + methods when 2FA is on
        """
        result = auth_service.login(
            email=body.email,
            password=body.password,
            device=device_from_request(request, body.device_label),
        )

        if isinstance(result, AwaitingSecondFactor):
            return success_response(
                {
                    "ticket": result.ticket,
                    "methods": result.methods.model_dump(),
                    "expires_at": result.expires_at.isoformat(),
                    "expires_in": seconds_until(result.expires_at),
                },
                status=ResponseStatus.TWO_FACTOR_REQUIRED,
            )

        set_session_cookie(response, result.session, config)
        return success_response(authenticated_payload(result))

    @router.post("/2fa/verify")
    def verify_two_factor(request: Request, response: Response, body: TwoFactorVerifyRequest):
        """Second-factor step: redeem ticket with a TOTP or recovery code."""
        result = auth_service.complete_two_factor(
            ticket=body.ticket,
            mode=body.mode,
            code=body.code,
            device=device_from_request(request, body.device_label),
        )
        set_session_cookie(response, result.session, config)
        return success_response(authenticated_payload(result))

    @router.get("/session")
    def session_status(request: Request):
        """Lightweight liveness check. Never 401s."""
        principal: Principal | None = getattr(request.state, "principal", None)
        if principal is None:
            return success_response({"authenticated": False})
        return success_response({
            "authenticated": True,
            "user_id": principal.user.id,
            "expires_at": principal.session.expires_at.isoformat(),
        })

    @router.get("/me")
    def me(principal: Principal = Depends(current_principal)):
        """Full profile with permissions and feature flags."""
        return success_response({
            "user": user_payload(principal.user),
            "session": {
                "id": principal.session.id,
                "expires_at": principal.session.expires_at.isoformat(),
            },
        })

    @router.post("/logout")
    def logout(request: Request, response: Response):
        """Logout - revoke session and clear cookie. Succeeds without a session too."""
        principal: Principal | None = getattr(request.state, "principal", None)
        if principal is not None:
            auth_service.logout(principal.session, device_from_request(request))

        clear_session_cookie(response, config)
        return success_response(message="Logged out successfully")

    @router.post("/register", status_code=201)
    def register(request: Request, body: RegisterRequest):
        """Create a pending account and send the activation email."""
        user = auth_service.register(
            email=body.email,
            password=body.password,
            terms_accepted=body.terms_accepted,
            device=device_from_request(request),
        )
        return success_response(
            {"user_id": user.id, "email": user.email, "status": user.status.value},
            message="Account created. Check your email to activate it",
        )

    @router.post("/activation/resend")
    def resend_activation(request: Request, body: EmailRequest):
        auth_service.resend_activation(body.email, device_from_request(request))
        return success_response(message="If that account is awaiting activation, a new email is on its way")

    @router.get("/activate")
    def activate(request: Request, token: str | None = Query(None)):
        """Consume an activation token."""
        if not token:
            raise ValidationError("Token parameter is required")
        user = auth_service.activate(token, device_from_request(request))
        return success_response(
            {"user_id": user.id, "email": user.email, "status": user.status.value},
            message="Account activated",
        )

    @router.post("/forgot-password")
    def forgot_password(request: Request, body: EmailRequest):
        """Always reports success so it can't be used to discover accounts."""
        auth_service.request_password_reset(body.email, device_from_request(request))
        return success_response(message="If an account exists for that email, a reset link has been sent")

    @router.post("/password/reset/validate")
    def validate_reset_token(body: TokenRequest):
        auth_service.validate_password_reset_token(body.token)
        return success_response({"valid": True})

    @router.post("/reset-password")
    def reset_password(request: Request, response: Response, body: ResetPasswordRequest):
        """Consume a reset token, set the new password, sign out all sessions."""
        revoked = auth_service.reset_password(body.token, body.password, device_from_request(request))
        clear_session_cookie(response, config)
        return success_response({"sessions_revoked": revoked}, message="Password updated. Please sign in")

    @router.post("/oauth/{provider}/callback")
    def oauth_callback(
        request: Request,
        response: Response,
        body: OAuthCallbackRequest,
        provider: str = Path(..., pattern=PROVIDER_PATTERN),
    ):
        """Provider callback with claims the provider integration already verified."""
        result = oauth_resolver.handle_callback(body.to_claims(provider), device_from_request(request))

        if isinstance(result, NeedsEmail):
            return success_response(
                {
                    "ticket": result.ticket,
                    "provider": result.provider,
                    "expires_at": result.expires_at.isoformat(),
                    "expires_in": seconds_until(result.expires_at),
                },
                status=ResponseStatus.NEEDS_EMAIL,
            )

        set_session_cookie(response, result.session, config)
        return success_response(authenticated_payload(result))

    @router.post("/oauth/complete")
    def oauth_complete(request: Request, response: Response, body: OAuthCompleteRequest):
        """Redeem a needs-email ticket."""
        result = oauth_resolver.complete_with_email(body.ticket, body.email, device_from_request(request))
        set_session_cookie(response, result.session, config)
        return success_response(authenticated_payload(result))

    return router

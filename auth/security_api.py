"""HTTP routes for a user's own security settings: password, sessions and two-factor."""

from fastapi import APIRouter, Depends, Request, Response

from api.base import success_response
from auth.api import clear_session_cookie, device_from_request
from auth.config import AuthConfig
from auth.schemas import ChangePasswordRequest, TwoFactorCodeRequest
from auth.security_logger import SecurityEvent, SecurityLogger
from auth.security_middleware import current_principal
from auth.service import AuthService
from auth.session import SessionManager
from auth.two_factor import SecondFactorVerifier
from auth.types import Principal


def create_security_router(
    auth_service: AuthService,
    session_manager: SessionManager,
    second_factor: SecondFactorVerifier,
    security_logger: SecurityLogger,
    config: AuthConfig,
) -> APIRouter:
    """Create /user/security router with injected services."""
    router = APIRouter(prefix="/user/security", tags=["security"])

    def _log(event: SecurityEvent, request: Request, principal: Principal, details: dict | None = None) -> None:
        device = device_from_request(request)
        security_logger.log(
            event,
            email=principal.user.email,
            user_id=principal.user.id,
            ip_address=device.ip_address,
            user_agent=device.user_agent,
            details=details,
        )

    # -- password ----------------------------------------------------------

    @router.post("/password")
    def change_password(
        body: ChangePasswordRequest,
        request: Request,
        principal: Principal = Depends(current_principal),
    ):
        """Change password. This session stays signed in; every other one is revoked."""
        revoked = auth_service.change_password(
            principal,
            body.current_password,
            body.new_password,
            device_from_request(request),
        )
        return success_response({"sessions_revoked": revoked}, message="Password updated")

    # -- sessions ----------------------------------------------------------

    @router.get("/sessions")
    def list_sessions(principal: Principal = Depends(current_principal)):
        sessions = session_manager.list_sessions(principal.user.id, principal.session.id)
        return success_response({"sessions": [s.model_dump(mode="json") for s in sessions]})

    @router.post("/sessions/revoke-others")
    def revoke_other_sessions(request: Request, principal: Principal = Depends(current_principal)):
        """Sign out everywhere except here."""
        count = session_manager.revoke_all_others(principal.user.id, principal.session.id)
        _log(SecurityEvent.SESSIONS_REVOKED_OTHERS, request, principal, {"count": count})
        return success_response({"revoked": count})

    @router.post("/sessions/{session_id}/revoke")
    def revoke_session(
        session_id: int,
        request: Request,
        response: Response,
        principal: Principal = Depends(current_principal),
    ):
        """Revoke one of the caller's sessions. Revoking the current one signs out."""
        revoked = session_manager.revoke(principal.user.id, session_id)
        if revoked:
            _log(SecurityEvent.SESSION_REVOKED, request, principal, {"session_id": session_id})
        is_current = session_id == principal.session.id
        if is_current:
            clear_session_cookie(response, config)
        return success_response({"revoked": revoked, "was_current": is_current})

    # -- two-factor --------------------------------------------------------

    @router.get("/2fa")
    def two_factor_status(principal: Principal = Depends(current_principal)):
        return success_response(second_factor.status(principal.user.id).model_dump(mode="json"))

    @router.post("/2fa/setup")
    def two_factor_setup(request: Request, principal: Principal = Depends(current_principal)):
        """Start setup. Returns secret + otpauth URI once; 2FA stays off until confirmed."""
        setup = second_factor.start_setup(principal.user.id, principal.user.email)
        _log(SecurityEvent.TWO_FACTOR_SETUP_STARTED, request, principal)
        return success_response(setup.model_dump())

    @router.post("/2fa/confirm")
    def two_factor_confirm(
        request: Request,
        body: TwoFactorCodeRequest,
        principal: Principal = Depends(current_principal),
    ):
        """Confirm setup with one code. Returns the first recovery codes, shown once."""
        codes = second_factor.confirm_setup(principal.user.id, body.code)
        _log(SecurityEvent.TWO_FACTOR_ENABLED, request, principal)
        return success_response({"enabled": True, "recovery_codes": codes})

    @router.post("/2fa/disable")
    def two_factor_disable(request: Request, principal: Principal = Depends(current_principal)):
        second_factor.disable(principal.user.id)
        _log(SecurityEvent.TWO_FACTOR_DISABLED, request, principal)
        return success_response({"enabled": False})

    @router.get("/2fa/recovery-codes")
    def recovery_codes(principal: Principal = Depends(current_principal)):
        """Masked listing with used/unused state."""
        return success_response(second_factor.recovery_codes_status(principal.user.id).model_dump(mode="json"))

    @router.post("/2fa/recovery-codes/regenerate")
    def regenerate_recovery_codes(request: Request, principal: Principal = Depends(current_principal)):
        codes = second_factor.regenerate_recovery_codes(principal.user.id)
        _log(SecurityEvent.RECOVERY_CODES_REGENERATED, request, principal, {"count": len(codes)})
        return success_response({"recovery_codes": codes})

    return router

"""HTTP routes for the admin session and account controls."""

from fastapi import APIRouter, Depends, Query, Request

from api.base import success_response
from api.middleware import mark_degraded
from auth.admin import AdminSessionGateway
from auth.api import get_client_ip, user_payload
from auth.schemas import AdminRevokeRequest, FeatureFlagsUpdateRequest, RoleUpdateRequest, StatusUpdateRequest
from auth.security_middleware import current_principal
from auth.types import Principal


def create_admin_router(gateway: AdminSessionGateway) -> APIRouter:
    """Create /admin router. Every response carries X-Admin-Mode (see AdminModeMiddleware)."""
    router = APIRouter(prefix="/admin", tags=["admin"])

    @router.get("/users/{user_id}/sessions")
    def list_user_sessions(
        user_id: int,
        request: Request,
        principal: Principal = Depends(current_principal),
    ):
        result = gateway.list_sessions(principal, user_id)
        if result.degraded:
            mark_degraded(request)
        return success_response({
            "user_id": result.user_id,
            "sessions": [s.model_dump(mode="json") for s in result.sessions],
            "degraded": result.degraded,
        })

    @router.post("/users/{user_id}/sessions/revoke-all")
    def revoke_all_user_sessions(
        user_id: int,
        request: Request,
        body: AdminRevokeRequest | None = None,
        principal: Principal = Depends(current_principal),
    ):
        count = gateway.revoke_all_sessions(
            principal,
            user_id,
            confirm_self=body.confirm_self if body else False,
            ip_address=get_client_ip(request),
        )
        return success_response({"revoked": count})

    @router.post("/users/{user_id}/sessions/{session_id}/revoke")
    def revoke_user_session(
        user_id: int,
        session_id: int,
        request: Request,
        body: AdminRevokeRequest | None = None,
        principal: Principal = Depends(current_principal),
    ):
        """Force-expire a session. Own sessions need confirm_self=true."""
        revoked = gateway.revoke_session(
            principal,
            user_id,
            session_id,
            confirm_self=body.confirm_self if body else False,
            ip_address=get_client_ip(request),
        )
        return success_response({"revoked": revoked, "session_id": session_id})

    @router.put("/users/{user_id}/status")
    def set_user_status(
        user_id: int,
        request: Request,
        body: StatusUpdateRequest,
        principal: Principal = Depends(current_principal),
    ):
        """Set account status. Disabling signs the account out everywhere."""
        user = gateway.set_user_status(
            principal,
            user_id,
            body.status,
            confirm_self=body.confirm_self,
            ip_address=get_client_ip(request),
        )
        return success_response({"user": user_payload(user)})

    @router.put("/users/{user_id}/role")
    def set_user_role(
        user_id: int,
        request: Request,
        body: RoleUpdateRequest,
        principal: Principal = Depends(current_principal),
    ):
        """Set account role. SUSPENDED and BANNED sign the account out everywhere."""
        user = gateway.set_user_role(
            principal,
            user_id,
            body.role,
            confirm_self=body.confirm_self,
            ip_address=get_client_ip(request),
        )
        return success_response({"user": user_payload(user)})

    @router.delete("/users/{user_id}")
    def delete_user(
        user_id: int,
        request: Request,
        reason: str = Query(..., min_length=1, max_length=500),
        principal: Principal = Depends(current_principal),
    ):
        revoked = gateway.delete_user(principal, user_id, reason, ip_address=get_client_ip(request))
        return success_response({"deleted": True, "sessions_revoked": revoked})

    @router.put("/users/{user_id}/feature-flags")
    def set_feature_flags(
        user_id: int,
        request: Request,
        body: FeatureFlagsUpdateRequest,
        principal: Principal = Depends(current_principal),
    ):
        """Returns the persisted map; clients roll back to it on error."""
        flags = gateway.set_feature_flags(principal, user_id, body.flags, ip_address=get_client_ip(request))
        return success_response({"user_id": user_id, "feature_flags": flags})

    return router

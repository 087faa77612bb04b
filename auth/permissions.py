"""Capability resolution.

Every authorization decision goes through ``resolve_permissions``: the user's
permission set is computed once per request and call sites only ever test
membership. No call site looks at ``user.role`` to decide access.
"""

from enum import Enum

from auth.exceptions import PermissionDeniedError
from auth.types import Principal, Role, User


class Permission(str, Enum):
    ADMIN_USERS_READ = "ADMIN_USERS_READ"
    ADMIN_USERS_WRITE = "ADMIN_USERS_WRITE"
    ADMIN_ROLES_READ = "ADMIN_ROLES_READ"
    ADMIN_ROLES_WRITE = "ADMIN_ROLES_WRITE"
    ADMIN_AUDIT_READ = "ADMIN_AUDIT_READ"
    ADMIN_SETTINGS_READ = "ADMIN_SETTINGS_READ"
    ADMIN_SETTINGS_WRITE = "ADMIN_SETTINGS_WRITE"
    ADMIN_SESSIONS_READ = "ADMIN_SESSIONS_READ"
    ADMIN_SESSIONS_WRITE = "ADMIN_SESSIONS_WRITE"
    SYSTEM_HEALTH_READ = "SYSTEM_HEALTH_READ"
    SYSTEM_JOBS_READ = "SYSTEM_JOBS_READ"
    SYSTEM_JOBS_WRITE = "SYSTEM_JOBS_WRITE"


ALL_PERMISSIONS = frozenset(p.value for p in Permission)

ROLE_PERMISSIONS: dict[Role, frozenset[str]] = {
    Role.FOUNDER: ALL_PERMISSIONS,
    Role.CORE_TEAM: frozenset({
        Permission.ADMIN_USERS_READ.value,
        Permission.ADMIN_AUDIT_READ.value,
        Permission.ADMIN_SESSIONS_READ.value,
        Permission.SYSTEM_HEALTH_READ.value,
        Permission.SYSTEM_JOBS_READ.value,
    }),
    Role.ADMIN: frozenset({
        Permission.ADMIN_USERS_READ.value,
        Permission.ADMIN_USERS_WRITE.value,
        Permission.ADMIN_ROLES_READ.value,
        Permission.ADMIN_AUDIT_READ.value,
        Permission.ADMIN_SETTINGS_READ.value,
        Permission.ADMIN_SESSIONS_READ.value,
        Permission.ADMIN_SESSIONS_WRITE.value,
        Permission.SYSTEM_HEALTH_READ.value,
        Permission.SYSTEM_JOBS_READ.value,
    }),
    Role.MODERATOR: frozenset({
        Permission.ADMIN_USERS_READ.value,
        Permission.ADMIN_AUDIT_READ.value,
    }),
}


def resolve_permissions(user: User) -> frozenset[str]:
    """
    Normalized permission set for a user.

    FOUNDER always holds everything. Otherwise a non-null
    ``permissions_override`` replaces the role's set entirely; unknown
    permission names in an override are dropped.
    """
    if user.role == Role.FOUNDER:
        return ALL_PERMISSIONS
    if user.permissions_override is not None:
        return frozenset(p for p in user.permissions_override if p in ALL_PERMISSIONS)
    return ROLE_PERMISSIONS.get(user.role, frozenset())


def require_permission(principal: Principal, permission: Permission) -> None:
    """Raise PermissionDeniedError unless the principal holds ``permission``."""
    if not principal.has(permission.value):
        raise PermissionDeniedError(required_permission=permission.value)

"""Admin revocation gateway.

Privileged counterpart of the session manager: lets an administrator expire
another user's sessions and change account state. Each operation checks the
caller's permission set, guards against an admin accidentally signing
themselves out, and writes an audit entry where actor and subject differ.

Reads are retried on transient storage errors and then served degraded
(empty, flagged) so the console renders read-only instead of failing.
Mutations are never retried.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, TypeVar

import psycopg2
import psycopg2.pool

from auth.database import AuthDatabase
from auth.exceptions import (
    PermissionDeniedError,
    SelfRevokeConfirmationRequired,
    SessionNotFoundError,
    UserNotFoundError,
)
from auth.permissions import ROLE_PERMISSIONS, Permission, require_permission
from auth.session import SessionManager
from auth.types import AccountStatus, Principal, Role, SessionView, User
from core.audit import AuditAction, AuditLogger, compute_changes
from utils.timezone import now_utc

logger = logging.getLogger(__name__)

T = TypeVar("T")

READ_ATTEMPTS = 3
TRANSIENT_ERRORS = (psycopg2.OperationalError, psycopg2.InterfaceError, psycopg2.pool.PoolError)


class DegradedRead(Exception):
    """Storage stayed unavailable for every read attempt."""


@dataclass
class AdminSessionList:
    """Result of an admin session listing."""

    user_id: int
    sessions: list[SessionView] = field(default_factory=list)
    degraded: bool = False


class AdminSessionGateway:
    """Admin-side session revocation and account controls."""

    def __init__(
        self,
        auth_db: AuthDatabase,
        session_manager: SessionManager,
        audit: AuditLogger,
        retry_delay_seconds: float = 0.1,
    ):
        self._auth_db = auth_db
        self._session_manager = session_manager
        self._audit = audit
        self._retry_delay = retry_delay_seconds

    def _read(self, fn: Callable[[], T]) -> T:
        """Run an idempotent read, retrying transient failures.

        Raises:
            DegradedRead: Every attempt failed.
        """
        for attempt in range(1, READ_ATTEMPTS + 1):
            try:
                return fn()
            except TRANSIENT_ERRORS as e:
                logger.warning(f"Admin read failed (attempt {attempt}/{READ_ATTEMPTS}): {e}")
                if attempt < READ_ATTEMPTS:
                    time.sleep(self._retry_delay * attempt)
        raise DegradedRead()

    def _target_user(self, user_id: int) -> User:
        user = self._auth_db.get_user_by_id(user_id)
        if user is None:
            raise UserNotFoundError()
        return user

    # -- sessions ----------------------------------------------------------

    def list_sessions(self, principal: Principal, user_id: int) -> AdminSessionList:
        """Sessions of ``user_id`` with status. Degrades instead of failing on storage errors."""
        require_permission(principal, Permission.ADMIN_SESSIONS_READ)

        def load() -> list[SessionView]:
            self._target_user(user_id)
            return self._session_manager.list_sessions(user_id, current_session_id=principal.session.id)

        try:
            sessions = self._read(load)
        except DegradedRead:
            logger.error(f"Serving degraded session list for user {user_id}")
            return AdminSessionList(user_id=user_id, degraded=True)
        return AdminSessionList(user_id=user_id, sessions=sessions)

    def revoke_session(
        self,
        principal: Principal,
        user_id: int,
        session_id: int,
        confirm_self: bool = False,
        ip_address: str | None = None,
    ) -> bool:
        """
        Force-expire one session of ``user_id``.

        Returns:
            True if revoked now, False if it already was.

        Raises:
            PermissionDeniedError: Caller lacks ADMIN_SESSIONS_WRITE.
            SessionNotFoundError: No such session for that user.
            SelfRevokeConfirmationRequired: Session is the caller's own and
                confirm_self was not given.
        """
        require_permission(principal, Permission.ADMIN_SESSIONS_WRITE)

        session = self._session_manager.get(session_id)
        if session is None or session.user_id != user_id:
            raise SessionNotFoundError()
        if session.user_id == principal.user.id and not confirm_self:
            raise SelfRevokeConfirmationRequired()

        revoked = self._session_manager.revoke_any(session_id)
        if revoked:
            self._audit.log_action(
                AuditAction.ADMIN_SESSION_REVOKE,
                actor_user_id=principal.user.id,
                subject_user_id=user_id,
                target_type="session",
                target_id=session_id,
                changes={"revoked_at": {"old": None, "new": now_utc().isoformat()}},
                ip_address=ip_address,
            )
        return revoked

    def revoke_all_sessions(
        self,
        principal: Principal,
        user_id: int,
        confirm_self: bool = False,
        ip_address: str | None = None,
    ) -> int:
        """
        Revoke every active session of ``user_id``.

        Raises:
            SelfRevokeConfirmationRequired: Target is the caller and confirm_self not given.
        """
        require_permission(principal, Permission.ADMIN_SESSIONS_WRITE)
        self._target_user(user_id)
        if user_id == principal.user.id and not confirm_self:
            raise SelfRevokeConfirmationRequired()

        count = self._session_manager.revoke_all_for_user(user_id)
        self._audit.log_action(
            AuditAction.ADMIN_SESSIONS_REVOKE_ALL,
            actor_user_id=principal.user.id,
            subject_user_id=user_id,
            target_type="user",
            target_id=user_id,
            changes={"sessions_revoked": count},
            ip_address=ip_address,
        )
        return count

    # -- account state -----------------------------------------------------

    def set_user_status(
        self,
        principal: Principal,
        user_id: int,
        status: AccountStatus,
        confirm_self: bool = False,
        ip_address: str | None = None,
    ) -> User:
        """
        Change account status. Disabling revokes every session of the account.

        Raises:
            PermissionDeniedError: Caller lacks ADMIN_USERS_WRITE.
            UserNotFoundError: No such user.
            SelfRevokeConfirmationRequired: Caller disabling their own account
                without confirm_self.
        """
        require_permission(principal, Permission.ADMIN_USERS_WRITE)
        old = self._target_user(user_id)
        if user_id == principal.user.id and status != AccountStatus.ACTIVE and not confirm_self:
            raise SelfRevokeConfirmationRequired("This is your own account. Confirm to sign yourself out")

        updated = self._auth_db.set_status(user_id, status)
        if updated is None:
            raise UserNotFoundError()

        changes = compute_changes({"status": old.status.value}, {"status": updated.status.value})
        if status == AccountStatus.DISABLED:
            changes["sessions_revoked"] = self._session_manager.revoke_all_for_user(user_id)

        self._audit.log_action(
            AuditAction.ADMIN_USER_STATUS_CHANGE,
            actor_user_id=principal.user.id,
            subject_user_id=user_id,
            target_type="user",
            target_id=user_id,
            changes=changes,
            ip_address=ip_address,
        )
        return updated

    def set_user_role(
        self,
        principal: Principal,
        user_id: int,
        role: Role,
        confirm_self: bool = False,
        ip_address: str | None = None,
    ) -> User:
        """
        Change account role. SUSPENDED and BANNED revoke every session of the account.

        A caller can neither grant a role nor change the role of an account
        that would hold permissions the caller lacks.

        Raises:
            PermissionDeniedError: Caller lacks ADMIN_USERS_WRITE, or either
                role is above the caller's own permissions.
            UserNotFoundError: No such user.
            SelfRevokeConfirmationRequired: Caller changing their own role
                without confirm_self.
        """
        require_permission(principal, Permission.ADMIN_USERS_WRITE)
        old = self._target_user(user_id)
        for checked in (old.role, role):
            if not ROLE_PERMISSIONS.get(checked, frozenset()) <= principal.permissions:
                raise PermissionDeniedError(message=f"Cannot manage accounts with role {checked.value}")
        if user_id == principal.user.id and role != old.role and not confirm_self:
            raise SelfRevokeConfirmationRequired("This is your own account. Confirm to change your own role")

        updated = self._auth_db.set_role(user_id, role)
        if updated is None:
            raise UserNotFoundError()

        changes = compute_changes({"role": old.role.value}, {"role": updated.role.value})
        if role in (Role.SUSPENDED, Role.BANNED):
            changes["sessions_revoked"] = self._session_manager.revoke_all_for_user(user_id)

        self._audit.log_action(
            AuditAction.ADMIN_USER_ROLE_CHANGE,
            actor_user_id=principal.user.id,
            subject_user_id=user_id,
            target_type="user",
            target_id=user_id,
            changes=changes,
            ip_address=ip_address,
        )
        return updated

    def delete_user(
        self,
        principal: Principal,
        user_id: int,
        reason: str,
        ip_address: str | None = None,
    ) -> int:
        """
        Soft-delete an account and revoke all its sessions.

        Returns:
            Number of sessions revoked.
        """
        require_permission(principal, Permission.ADMIN_USERS_WRITE)
        if user_id == principal.user.id:
            raise SelfRevokeConfirmationRequired("Administrators cannot delete their own account here")
        self._target_user(user_id)

        if not self._auth_db.soft_delete_user(user_id, reason):
            raise UserNotFoundError()
        revoked = self._session_manager.revoke_all_for_user(user_id)

        self._audit.log_action(
            AuditAction.ADMIN_USER_DELETE,
            actor_user_id=principal.user.id,
            subject_user_id=user_id,
            target_type="user",
            target_id=user_id,
            changes={"deleted_reason": reason, "sessions_revoked": revoked},
            ip_address=ip_address,
        )
        return revoked

    def set_feature_flags(
        self,
        principal: Principal,
        user_id: int,
        flags: dict[str, bool],
        ip_address: str | None = None,
    ) -> dict[str, bool]:
        """
        Merge flag values into the account's map.

        Returns:
            The persisted map. Clients replace their optimistic copy with it,
            and roll back to their last copy if this raises.
        """
        require_permission(principal, Permission.ADMIN_USERS_WRITE)
        old = self._target_user(user_id)

        persisted = self._auth_db.set_feature_flags(user_id, flags)
        if persisted is None:
            raise UserNotFoundError()

        self._audit.log_action(
            AuditAction.ADMIN_FEATURE_FLAGS_UPDATE,
            actor_user_id=principal.user.id,
            subject_user_id=user_id,
            target_type="user",
            target_id=user_id,
            changes=compute_changes(old.feature_flags, persisted),
            ip_address=ip_address,
        )
        return persisted

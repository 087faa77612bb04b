"""
Admin audit trail.

Every privileged action an administrator takes against another account
(session revocation, status change, feature flags) is logged here, separate
from the security_events trail that user-initiated actions write to. The
audit log is:
- Append-only (entries never modified or deleted)
- Actor-attributed (who did it) and subject-attributed (to whom)
- Detailed (captures old and new values)
"""

from enum import Enum
from typing import Any

from psycopg2.extras import Json

from clients.postgres_client import PostgresClient
from utils.timezone import now_utc


class AuditAction(Enum):
    """Privileged action taken by an administrator."""

    ADMIN_SESSION_REVOKE = "ADMIN_SESSION_REVOKE"
    ADMIN_SESSIONS_REVOKE_ALL = "ADMIN_SESSIONS_REVOKE_ALL"
    ADMIN_USER_STATUS_CHANGE = "ADMIN_USER_STATUS_CHANGE"
    ADMIN_USER_ROLE_CHANGE = "ADMIN_USER_ROLE_CHANGE"
    ADMIN_FEATURE_FLAGS_UPDATE = "ADMIN_FEATURE_FLAGS_UPDATE"
    ADMIN_USER_DELETE = "ADMIN_USER_DELETE"


def compute_changes(
    old: dict[str, Any],
    new: dict[str, Any],
    exclude_fields: set[str] | None = None
) -> dict[str, dict[str, Any]]:
    """
    Compute changes between two states.

    Args:
        old: Previous state
        new: New state
        exclude_fields: Fields to ignore

    Returns:
        Dict of {field: {"old": old_val, "new": new_val}} for changed fields.
        Empty dict if no changes.
    """
    exclude = exclude_fields or set()
    changes = {}

    for key in set(old.keys()) | set(new.keys()):
        if key in exclude:
            continue

        old_val = old.get(key)
        new_val = new.get(key)

        if old_val != new_val:
            changes[key] = {"old": old_val, "new": new_val}

    return changes


class AuditLogger:
    """
    Admin audit trail.

    Usage:
        audit = AuditLogger(postgres)

        audit.log_action(
            AuditAction.ADMIN_SESSION_REVOKE,
            actor_user_id=admin.id,
            subject_user_id=target_user_id,
            target_type="session",
            target_id=session.id,
            changes={"revoked_at": {"old": None, "new": now.isoformat()}},
        )

        history = audit.get_subject_history(target_user_id)
    """

    def __init__(self, postgres: PostgresClient):
        self.postgres = postgres

    def log_action(
        self,
        action: AuditAction,
        actor_user_id: int,
        subject_user_id: int,
        target_type: str,
        target_id: int | None = None,
        changes: dict[str, Any] | None = None,
        ip_address: str | None = None,
    ) -> None:
        """
        Log an admin action.

        Args:
            action: What was done
            actor_user_id: Administrator who did it
            subject_user_id: Account it was done to
            target_type: "session", "user", ...
            target_id: ID of the specific row affected, if any
            changes: JSON-serializable detail (use model_dump(mode="json"))
            ip_address: Administrator's IP
        """
        self.postgres.execute(
            """
            INSERT INTO audit_log
                (actor_user_id, subject_user_id, action, target_type, target_id,
                 changes, ip_address, created_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                actor_user_id,
                subject_user_id,
                action.value,
                target_type,
                target_id,
                Json(changes or {}),
                ip_address,
                now_utc(),
            )
        )

    def get_subject_history(self, subject_user_id: int, limit: int = 100) -> list[dict[str, Any]]:
        """Admin actions taken against an account, newest first."""
        return self.postgres.execute(
            """
            SELECT id, actor_user_id, subject_user_id, action, target_type, target_id,
                   changes, ip_address, created_at
            FROM audit_log
            WHERE subject_user_id = %s
            ORDER BY created_at DESC, id DESC
            LIMIT %s
            """,
            (subject_user_id, limit)
        )

    def get_actor_activity(self, actor_user_id: int, limit: int = 100) -> list[dict[str, Any]]:
        """Admin actions taken by an administrator, newest first."""
        return self.postgres.execute(
            """
            SELECT id, actor_user_id, subject_user_id, action, target_type, target_id,
                   changes, ip_address, created_at
            FROM audit_log
            WHERE actor_user_id = %s
            ORDER BY created_at DESC, id DESC
            LIMIT %s
            """,
            (actor_user_id, limit)
        )

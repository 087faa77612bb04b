"""Database operations for the credential store.

Tables: users, user_oauth_identities, activation_tokens, password_reset_tokens.
Users are never hard-deleted; every lookup here skips soft-deleted rows.
"""

from datetime import datetime
from typing import Any

import psycopg2.errors
from psycopg2.extras import Json

from clients.postgres_client import PostgresClient
from auth.exceptions import EmailAlreadyExistsError
from auth.types import AccountStatus, OneTimeToken, Role, TokenKind, User
from utils.timezone import now_utc

_USER_COLUMNS = """id, email, password_hash, role, status, terms_accepted,
    terms_accepted_at, terms_version, permissions_override, feature_flags,
    created_at, last_login_at"""


def _row_to_user(row: dict[str, Any]) -> User:
    return User(
        id=row["id"],
        email=row["email"],
        password_hash=row["password_hash"],
        role=Role(row["role"]),
        status=AccountStatus(row["status"]),
        terms_accepted=row["terms_accepted"],
        terms_accepted_at=row["terms_accepted_at"],
        terms_version=row["terms_version"],
        permissions_override=row["permissions_override"],
        feature_flags=row["feature_flags"] or {},
        created_at=row["created_at"],
        last_login_at=row["last_login_at"],
    )


def _row_to_token(row: dict[str, Any]) -> OneTimeToken:
    return OneTimeToken(
        id=row["id"],
        user_id=row["user_id"],
        token_hash=row["token_hash"],
        used=row["used"],
        expires_at=row["expires_at"],
        created_at=row["created_at"],
    )


class AuthDatabase:
    """Database operations for users, linked identities and one-time tokens."""

    def __init__(self, postgres: PostgresClient):
        self._db = postgres

    # -- users ------------------------------------------------------------

    def get_user_by_email(self, email: str) -> User | None:
        """Find user by email (case-insensitive)."""
        row = self._db.execute_single(
            f"""SELECT {_USER_COLUMNS} FROM users
                WHERE email = lower(%s) AND deleted_at IS NULL""",
            (email,),
        )
        return _row_to_user(row) if row else None

    def get_user_by_id(self, user_id: int) -> User | None:
        row = self._db.execute_single(
            f"""SELECT {_USER_COLUMNS} FROM users
                WHERE id = %s AND deleted_at IS NULL""",
            (user_id,),
        )
        return _row_to_user(row) if row else None

    def create_user(
        self,
        email: str,
        password_hash: str | None,
        status: AccountStatus = AccountStatus.PENDING_VERIFICATION,
        role: Role = Role.STANDARD_USER,
        terms_version: str | None = None,
    ) -> User:
        """
        Insert a user (email lowercased).

        ``terms_version`` set means the terms were accepted now.

        Raises:
            EmailAlreadyExistsError: Email taken (unique index decides races).
        """
        now = now_utc()
        try:
            rows = self._db.execute_returning(
                f"""INSERT INTO users
                    (email, password_hash, role, status, terms_accepted,
                     terms_accepted_at, terms_version, created_at)
                    VALUES (lower(%s), %s, %s, %s, %s, %s, %s, %s)
                    RETURNING {_USER_COLUMNS}""",
                (
                    email,
                    password_hash,
                    role.value,
                    status.value,
                    terms_version is not None,
                    now if terms_version else None,
                    terms_version,
                    now,
                ),
            )
        except psycopg2.errors.UniqueViolation as e:
            raise EmailAlreadyExistsError() from e
        return _row_to_user(rows[0])

    def update_password(self, user_id: int, password_hash: str) -> bool:
        rows = self._db.execute_returning(
            "UPDATE users SET password_hash = %s WHERE id = %s AND deleted_at IS NULL RETURNING id",
            (password_hash, user_id),
        )
        return len(rows) > 0

    def update_last_login(self, user_id: int) -> None:
        self._db.execute_returning(
            "UPDATE users SET last_login_at = %s WHERE id = %s RETURNING id",
            (now_utc(), user_id),
        )

    def set_status(self, user_id: int, status: AccountStatus) -> User | None:
        """Set account status. Returns the updated user, None if not found."""
        rows = self._db.execute_returning(
            f"""UPDATE users SET status = %s
                WHERE id = %s AND deleted_at IS NULL
                RETURNING {_USER_COLUMNS}""",
            (status.value, user_id),
        )
        return _row_to_user(rows[0]) if rows else None

    def set_role(self, user_id: int, role: Role) -> User | None:
        """Set account role. Returns the updated user, None if not found."""
        rows = self._db.execute_returning(
            f"""UPDATE users SET role = %s
                WHERE id = %s AND deleted_at IS NULL
                RETURNING {_USER_COLUMNS}""",
            (role.value, user_id),
        )
        return _row_to_user(rows[0]) if rows else None

    def set_feature_flags(self, user_id: int, flags: dict[str, bool]) -> dict[str, bool] | None:
        """
        Merge ``flags`` into the stored map.

        Returns:
            The full persisted map after the update, None if user not found.
        """
        rows = self._db.execute_returning(
            """UPDATE users
               SET feature_flags = COALESCE(feature_flags, '{}'::jsonb) || %s::jsonb
               WHERE id = %s AND deleted_at IS NULL
               RETURNING feature_flags""",
            (Json(flags), user_id),
        )
        return rows[0]["feature_flags"] if rows else None

    def soft_delete_user(self, user_id: int, reason: str) -> bool:
        rows = self._db.execute_returning(
            """UPDATE users SET deleted_at = %s, deleted_reason = %s
               WHERE id = %s AND deleted_at IS NULL
               RETURNING id""",
            (now_utc(), reason, user_id),
        )
        return len(rows) > 0

    # -- linked identities -------------------------------------------------

    def get_user_by_identity(self, provider: str, provider_user_id: str) -> User | None:
        row = self._db.execute_single(
            """SELECT u.id, u.email, u.password_hash, u.role, u.status, u.terms_accepted,
                      u.terms_accepted_at, u.terms_version, u.permissions_override,
                      u.feature_flags, u.created_at, u.last_login_at
                FROM user_oauth_identities i
                JOIN users u ON u.id = i.user_id
                WHERE i.provider = %s AND i.provider_user_id = %s
                  AND u.deleted_at IS NULL""",
            (provider, provider_user_id),
        )
        return _row_to_user(row) if row else None

    def link_identity(self, user_id: int, provider: str, provider_user_id: str) -> bool:
        """
        Link a provider identity to a user. Re-linking is a no-op.

        Returns:
            True if a new link was written.
        """
        rows = self._db.execute_returning(
            """INSERT INTO user_oauth_identities (user_id, provider, provider_user_id, created_at)
               VALUES (%s, %s, %s, %s)
               ON CONFLICT (provider, provider_user_id) DO NOTHING
               RETURNING id""",
            (user_id, provider, provider_user_id, now_utc()),
        )
        return len(rows) > 0

    def create_oauth_user(self, email: str, provider: str, provider_user_id: str) -> User:
        """
        Create an active, passwordless user and its identity link in one transaction.

        Raises:
            EmailAlreadyExistsError: Another request created the email first.
        """
        now = now_utc()
        try:
            with self._db.transaction() as tx:
                rows = tx.execute(
                    f"""INSERT INTO users (email, password_hash, role, status, created_at)
                        VALUES (lower(%s), NULL, %s, %s, %s)
                        RETURNING {_USER_COLUMNS}""",
                    (email, Role.STANDARD_USER.value, AccountStatus.ACTIVE.value, now),
                )
                user = _row_to_user(rows[0])
                tx.execute(
                    """INSERT INTO user_oauth_identities (user_id, provider, provider_user_id, created_at)
                       VALUES (%s, %s, %s, %s)""",
                    (user.id, provider, provider_user_id, now),
                )
        except psycopg2.errors.UniqueViolation as e:
            raise EmailAlreadyExistsError() from e
        return user

    # -- one-time tokens ---------------------------------------------------

    def store_one_time_token(
        self, kind: TokenKind, user_id: int, token_hash: str, expires_at: datetime
    ) -> OneTimeToken:
        """Store a token hash, retiring the user's older unused tokens of the same kind."""
        now = now_utc()
        with self._db.transaction() as tx:
            tx.execute(
                f"""UPDATE {kind.value} SET used = true, used_at = %s
                    WHERE user_id = %s AND used = false""",
                (now, user_id),
            )
            rows = tx.execute(
                f"""INSERT INTO {kind.value} (user_id, token_hash, used, expires_at, created_at)
                    VALUES (%s, %s, false, %s, %s)
                    RETURNING id, user_id, token_hash, used, expires_at, created_at""",
                (user_id, token_hash, expires_at, now),
            )
        return _row_to_token(rows[0])

    def find_valid_one_time_token(self, kind: TokenKind, token_hash: str, now: datetime) -> OneTimeToken | None:
        """Unused, unexpired token by hash. Does not consume it."""
        row = self._db.execute_single(
            f"""SELECT id, user_id, token_hash, used, expires_at, created_at
                FROM {kind.value}
                WHERE token_hash = %s AND used = false AND expires_at > %s""",
            (token_hash, now),
        )
        return _row_to_token(row) if row else None

    def activate_with_token(self, token_hash: str, now: datetime) -> int | None:
        """
        Consume an activation token and activate its pending user.

        The conditional update decides which of two racing redemptions wins.

        Returns:
            The user id, or None if the token is unknown, used or expired.
        """
        with self._db.transaction() as tx:
            rows = tx.execute(
                """UPDATE activation_tokens SET used = true, used_at = %s
                   WHERE token_hash = %s AND used = false AND expires_at > %s
                   RETURNING user_id""",
                (now, token_hash, now),
            )
            if not rows:
                return None
            user_id = rows[0]["user_id"]
            tx.execute(
                """UPDATE users SET status = %s
                   WHERE id = %s AND status = %s AND deleted_at IS NULL""",
                (AccountStatus.ACTIVE.value, user_id, AccountStatus.PENDING_VERIFICATION.value),
            )
        return user_id

    def reset_password_with_token(self, token_hash: str, password_hash: str, now: datetime) -> int | None:
        """
        Consume a reset token and set the new password hash atomically.

        Returns:
            The user id, or None if the token is unknown, used or expired.
        """
        with self._db.transaction() as tx:
            rows = tx.execute(
                """UPDATE password_reset_tokens SET used = true, used_at = %s
                   WHERE token_hash = %s AND used = false AND expires_at > %s
                   RETURNING user_id""",
                (now, token_hash, now),
            )
            if not rows:
                return None
            user_id = rows[0]["user_id"]
            tx.execute(
                "UPDATE users SET password_hash = %s WHERE id = %s AND deleted_at IS NULL",
                (password_hash, user_id),
            )
        return user_id

    def cleanup_expired_tokens(self, kind: TokenKind, before: datetime) -> int:
        """Delete tokens that expired before ``before``. Returns count deleted."""
        rows = self._db.execute_returning(
            f"DELETE FROM {kind.value} WHERE expires_at < %s RETURNING id",
            (before,),
        )
        return len(rows)

"""Database operations for auth_sessions.

Revocation is always a conditional update on ``revoked_at IS NULL`` so admin
and self revocation of the same row can never interleave into a lost update.
"""

from datetime import datetime
from typing import Any

from clients.postgres_client import PostgresClient
from auth.types import AuthSession

_SESSION_COLUMNS = """id, user_id, token, user_agent, ip_address, device_fingerprint,
    device_label, created_at, last_seen_at, expires_at, revoked_at"""


def _row_to_session(row: dict[str, Any]) -> AuthSession:
    return AuthSession(
        id=row["id"],
        user_id=row["user_id"],
        token=row["token"],
        user_agent=row["user_agent"],
        ip_address=str(row["ip_address"]) if row["ip_address"] else None,
        device_fingerprint=row["device_fingerprint"],
        device_label=row["device_label"],
        created_at=row["created_at"],
        last_seen_at=row["last_seen_at"],
        expires_at=row["expires_at"],
        revoked_at=row["revoked_at"],
    )


class SessionDatabase:
    """Session rows. One row per login, kept after revocation until purged."""

    def __init__(self, postgres: PostgresClient):
        self._db = postgres

    def insert_session(
        self,
        user_id: int,
        token: str,
        user_agent: str | None,
        ip_address: str | None,
        device_fingerprint: str | None,
        device_label: str | None,
        created_at: datetime,
        expires_at: datetime,
    ) -> AuthSession:
        """
        Insert a session.

        Raises:
            psycopg2.errors.UniqueViolation: Token collided with an existing one.
        """
        rows = self._db.execute_returning(
            f"""INSERT INTO auth_sessions
                (user_id, token, user_agent, ip_address, device_fingerprint,
                 device_label, created_at, last_seen_at, expires_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                RETURNING {_SESSION_COLUMNS}""",
            (
                user_id,
                token,
                user_agent,
                ip_address,
                device_fingerprint,
                device_label,
                created_at,
                created_at,
                expires_at,
            ),
        )
        return _row_to_session(rows[0])

    def get_active_by_token(self, token: str, now: datetime) -> AuthSession | None:
        row = self._db.execute_single(
            f"""SELECT {_SESSION_COLUMNS} FROM auth_sessions
                WHERE token = %s AND revoked_at IS NULL AND expires_at > %s""",
            (token, now),
        )
        return _row_to_session(row) if row else None

    def get_by_id(self, session_id: int) -> AuthSession | None:
        row = self._db.execute_single(
            f"SELECT {_SESSION_COLUMNS} FROM auth_sessions WHERE id = %s",
            (session_id,),
        )
        return _row_to_session(row) if row else None

    def list_for_user(self, user_id: int) -> list[AuthSession]:
        rows = self._db.execute(
            f"""SELECT {_SESSION_COLUMNS} FROM auth_sessions
                WHERE user_id = %s
                ORDER BY last_seen_at DESC, id DESC""",
            (user_id,),
        )
        return [_row_to_session(r) for r in rows]

    def revoke(self, session_id: int, now: datetime, user_id: int | None = None) -> bool:
        """
        Revoke one session if still unrevoked (and owned by ``user_id`` when given).

        Returns:
            True if this call revoked it.
        """
        if user_id is None:
            rows = self._db.execute_returning(
                """UPDATE auth_sessions SET revoked_at = %s
                   WHERE id = %s AND revoked_at IS NULL
                   RETURNING id""",
                (now, session_id),
            )
        else:
            rows = self._db.execute_returning(
                """UPDATE auth_sessions SET revoked_at = %s
                   WHERE id = %s AND user_id = %s AND revoked_at IS NULL
                   RETURNING id""",
                (now, session_id, user_id),
            )
        return len(rows) > 0

    def revoke_all_except(self, user_id: int, keep_session_id: int | None, now: datetime) -> int:
        """
        Revoke every active session of a user, optionally sparing one.

        Single statement, so it either happens completely or not at all.
        """
        rows = self._db.execute_returning(
            """UPDATE auth_sessions SET revoked_at = %s
               WHERE user_id = %s
                 AND revoked_at IS NULL
                 AND expires_at > %s
                 AND (%s::bigint IS NULL OR id <> %s::bigint)
               RETURNING id""",
            (now, user_id, now, keep_session_id, keep_session_id),
        )
        return len(rows)

    def touch(self, session_id: int, now: datetime) -> bool:
        rows = self._db.execute_returning(
            """UPDATE auth_sessions SET last_seen_at = %s
               WHERE id = %s AND revoked_at IS NULL
               RETURNING id""",
            (now, session_id),
        )
        return len(rows) > 0

    def delete_expired_before(self, cutoff: datetime) -> int:
        """Hard-delete rows whose expiry is older than ``cutoff``. Storage hygiene only."""
        rows = self._db.execute_returning(
            "DELETE FROM auth_sessions WHERE expires_at < %s RETURNING id",
            (cutoff,),
        )
        return len(rows)

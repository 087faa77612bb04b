"""Security event logging for the auth activity trail.

Append-only log to the security_events table. Every successful login, every
credential failure and every session change lands here with actor, IP and
user agent. Old events are archived to JSON lines by ``rotate_logs``.
"""

import json
from datetime import timedelta
from enum import Enum
from pathlib import Path
from typing import Any

from psycopg2.extras import Json

from clients.postgres_client import PostgresClient
from utils.timezone import format_iso, now_utc


class SecurityEvent(Enum):
    """Auth security event types."""

    LOGIN_SUCCESS = "LOGIN_SUCCESS"
    LOGIN_SUCCESS_2FA = "LOGIN_SUCCESS_2FA"
    LOGIN_FAILED = "LOGIN_FAILED"
    LOGIN_BLOCKED = "LOGIN_BLOCKED"
    LOGIN_2FA_REQUIRED = "LOGIN_2FA_REQUIRED"
    TWO_FACTOR_FAILED = "TWO_FACTOR_FAILED"
    TWO_FACTOR_LOCKED = "TWO_FACTOR_LOCKED"
    TWO_FACTOR_SETUP_STARTED = "TWO_FACTOR_SETUP_STARTED"
    TWO_FACTOR_ENABLED = "TWO_FACTOR_ENABLED"
    TWO_FACTOR_DISABLED = "TWO_FACTOR_DISABLED"
    RECOVERY_CODE_USED = "RECOVERY_CODE_USED"
    RECOVERY_CODES_REGENERATED = "RECOVERY_CODES_REGENERATED"
    SESSION_REVOKED = "SESSION_REVOKED"
    SESSIONS_REVOKED_OTHERS = "SESSIONS_REVOKED_OTHERS"
    USER_REGISTERED = "USER_REGISTERED"
    ACTIVATION_SENT = "ACTIVATION_SENT"
    ACCOUNT_ACTIVATED = "ACCOUNT_ACTIVATED"
    ACTIVATION_FAILED = "ACTIVATION_FAILED"
    PASSWORD_RESET_REQUESTED = "PASSWORD_RESET_REQUESTED"
    PASSWORD_RESET = "PASSWORD_RESET"
    PASSWORD_RESET_FAILED = "PASSWORD_RESET_FAILED"
    PASSWORD_CHANGED = "PASSWORD_CHANGED"
    PASSWORD_CHANGE_FAILED = "PASSWORD_CHANGE_FAILED"
    OAUTH_LOGIN = "OAUTH_LOGIN"
    OAUTH_LINKED = "OAUTH_LINKED"
    OAUTH_USER_CREATED = "OAUTH_USER_CREATED"
    OAUTH_EMAIL_REQUIRED = "OAUTH_EMAIL_REQUIRED"
    OAUTH_EMAIL_CONFLICT = "OAUTH_EMAIL_CONFLICT"
    RATE_LIMITED = "RATE_LIMITED"


class SecurityLogger:
    """Append-only security event logger with rotation."""

    def __init__(self, postgres: PostgresClient):
        self._db = postgres

    def log(
        self,
        event: SecurityEvent,
        email: str | None = None,
        user_id: int | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Log security event to database."""
        self._db.execute_returning(
            """INSERT INTO security_events
               (event_type, email, user_id, ip_address, user_agent, details, created_at)
               VALUES (%s, %s, %s, %s, %s, %s, %s)
               RETURNING id""",
            (
                event.value,
                email,
                user_id,
                ip_address,
                user_agent,
                Json(details) if details else None,
                now_utc(),
            ),
        )

    def get_recent_events(
        self,
        email: str | None = None,
        user_id: int | None = None,
        event_type: SecurityEvent | None = None,
        limit: int = 100,
    ) -> list[dict]:
        """Query recent security events with optional filters."""
        conditions = []
        params: list[Any] = []

        if email:
            conditions.append("email = %s")
            params.append(email)

        if user_id is not None:
            conditions.append("user_id = %s")
            params.append(user_id)

        if event_type:
            conditions.append("event_type = %s")
            params.append(event_type.value)

        where_clause = " AND ".join(conditions) if conditions else "1=1"
        params.append(limit)

        return self._db.execute(
            f"""SELECT id, event_type, email, user_id, ip_address, user_agent, details, created_at
                FROM security_events
                WHERE {where_clause}
                ORDER BY created_at DESC, id DESC
                LIMIT %s""",
            tuple(params),
        )

    def rotate_logs(self, older_than_days: int, output_path: Path) -> int:
        """Archive events older than ``older_than_days`` to a JSON lines file and delete them.

        Returns:
            Number of events archived and deleted
        """
        cutoff = now_utc() - timedelta(days=older_than_days)

        events = self._db.execute(
            """SELECT id, event_type, email, user_id, ip_address, user_agent, details, created_at
               FROM security_events
               WHERE created_at < %s
               ORDER BY created_at ASC, id ASC""",
            (cutoff,),
        )

        if not events:
            return 0

        with open(output_path, "a") as f:
            for event in events:
                record = {
                    "id": event["id"],
                    "event_type": event["event_type"],
                    "email": event["email"],
                    "user_id": event["user_id"],
                    "ip_address": str(event["ip_address"]) if event["ip_address"] else None,
                    "user_agent": event["user_agent"],
                    "details": event["details"],
                    "created_at": format_iso(event["created_at"]),
                }
                f.write(json.dumps(record) + "\n")

        # Delete only what was archived; rows inserted meanwhile stay.
        self._db.execute_returning(
            "DELETE FROM security_events WHERE id = ANY(%s) RETURNING id",
            ([e["id"] for e in events],),
        )

        return len(events)

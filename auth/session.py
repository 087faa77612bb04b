"""Session token lifecycle management.

Sessions are rows in auth_sessions; Postgres is the only source of truth and
nothing is cached in-process. Tokens are 64 hex chars from ``secrets`` and a
unique index guarantees no two sessions ever share one.

Expiry is fixed at creation. Activity moves ``last_seen_at`` only.
"""

import hashlib
import logging
from datetime import timedelta

import psycopg2
import psycopg2.errors

from auth.config import AuthConfig
from auth.exceptions import SessionExpiredError, SessionNotFoundError
from auth.session_db import SessionDatabase
from auth.tokens import generate_token
from auth.types import AuthSession, DeviceInfo, SessionView
from utils.timezone import now_utc

logger = logging.getLogger(__name__)

_MAX_TOKEN_ATTEMPTS = 3


def device_fingerprint(device: DeviceInfo) -> str | None:
    """SHA-256 of the user agent, or None when the client sent none."""
    if not device.user_agent:
        return None
    return hashlib.sha256(device.user_agent.encode("utf-8")).hexdigest()


def device_label(device: DeviceInfo) -> str | None:
    """Human label for a session: explicit label, else a coarse guess from the user agent."""
    if device.device_label:
        return device.device_label[:100]
    ua = device.user_agent or ""
    if not ua:
        return None
    for needle, label in (
        ("iPhone", "iPhone"),
        ("iPad", "iPad"),
        ("Android", "Android"),
        ("Windows", "Windows"),
        ("Macintosh", "Mac"),
        ("Linux", "Linux"),
    ):
        if needle in ua:
            return label
    return "Unknown device"


class SessionManager:
    """Create, validate, list and revoke sessions."""

    def __init__(self, db: SessionDatabase, config: AuthConfig):
        self._db = db
        self._config = config

    def create(self, user_id: int, device: DeviceInfo) -> AuthSession:
        """
        Create a session with a fresh token.

        The unique index on the token decides collisions; a colliding insert
        is retried with a new token.
        """
        now = now_utc()
        expires_at = now + timedelta(days=self._config.session_ttl_days)

        for attempt in range(_MAX_TOKEN_ATTEMPTS):
            try:
                return self._db.insert_session(
                    user_id=user_id,
                    token=generate_token(),
                    user_agent=device.user_agent,
                    ip_address=device.ip_address,
                    device_fingerprint=device_fingerprint(device),
                    device_label=device_label(device),
                    created_at=now,
                    expires_at=expires_at,
                )
            except psycopg2.errors.UniqueViolation:
                logger.warning(f"Session token collision (attempt {attempt + 1})")
        raise RuntimeError("Could not allocate a unique session token")

    def validate(self, token: str) -> AuthSession:
        """
        Active session for a token.

        Raises:
            SessionExpiredError: Unknown, expired or revoked.
        """
        if not token:
            raise SessionExpiredError()
        session = self._db.get_active_by_token(token, now_utc())
        if session is None:
            raise SessionExpiredError()
        return session

    def touch(self, session: AuthSession) -> None:
        """Bump last_seen_at. Best-effort: storage errors are logged, never raised."""
        try:
            self._db.touch(session.id, now_utc())
        except psycopg2.Error as e:
            logger.warning(f"Failed to touch session {session.id}: {e}")

    def list_sessions(self, user_id: int, current_session_id: int | None = None) -> list[SessionView]:
        """All of a user's sessions, most recently seen first, with the caller's flagged."""
        now = now_utc()
        return [
            SessionView.from_session(s, now, current_session_id)
            for s in self._db.list_for_user(user_id)
        ]

    def get(self, session_id: int) -> AuthSession | None:
        return self._db.get_by_id(session_id)

    def revoke(self, user_id: int, session_id: int) -> bool:
        """
        Revoke a session owned by ``user_id``.

        Idempotent: an already revoked session is a no-op.

        Returns:
            True if this call revoked it, False if it was already revoked.

        Raises:
            SessionNotFoundError: No such session for this user.
        """
        if self._db.revoke(session_id, now_utc(), user_id=user_id):
            return True
        session = self._db.get_by_id(session_id)
        if session is None or session.user_id != user_id:
            raise SessionNotFoundError()
        return False

    def revoke_any(self, session_id: int) -> bool:
        """Revoke regardless of owner. Callers must have authorized this already."""
        return self._db.revoke(session_id, now_utc())

    def revoke_all_others(self, user_id: int, current_session_id: int) -> int:
        """Revoke every other active session of the user in one statement."""
        return self._db.revoke_all_except(user_id, current_session_id, now_utc())

    def revoke_all_for_user(self, user_id: int) -> int:
        return self._db.revoke_all_except(user_id, None, now_utc())

    def purge_expired(self) -> int:
        """Delete rows whose expiry is older than the purge horizon."""
        cutoff = now_utc() - timedelta(days=self._config.session_purge_after_days)
        deleted = self._db.delete_expired_before(cutoff)
        if deleted:
            logger.info(f"Purged {deleted} expired sessions")
        return deleted

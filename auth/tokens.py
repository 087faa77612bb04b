"""Single-use credential generation and the activation/reset token issuer.

Plaintext tokens leave the process exactly once (in an email or a response);
storage only ever sees their SHA-256 hash.
"""

import hashlib
import logging
import secrets
from datetime import datetime, timedelta

from auth.config import AuthConfig
from auth.database import AuthDatabase
from auth.exceptions import InvalidTokenError, ResetTokenInvalidError, ValidationError
from auth.types import TokenKind
from utils.timezone import now_utc

logger = logging.getLogger(__name__)

# No 0/O or 1/I: codes get read off paper.
RECOVERY_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
RECOVERY_CODE_GROUPS = 4
RECOVERY_CODE_GROUP_LENGTH = 4


def generate_token() -> str:
    """256-bit random token, 64 hex chars."""
    return secrets.token_hex(32)


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def generate_recovery_code() -> str:
    """Random code formatted XXXX-XXXX-XXXX-XXXX."""
    groups = [
        "".join(secrets.choice(RECOVERY_CODE_ALPHABET) for _ in range(RECOVERY_CODE_GROUP_LENGTH))
        for _ in range(RECOVERY_CODE_GROUPS)
    ]
    return "-".join(groups)


def normalize_recovery_code(code: str) -> str:
    """Upper-case and drop dashes and whitespace, so any spacing the user types matches."""
    return "".join(ch for ch in code.upper() if ch != "-" and not ch.isspace())


def hash_recovery_code(code: str) -> str:
    return hash_token(normalize_recovery_code(code))


def mask_recovery_code(code: str) -> str:
    """Listing label: only the last group is visible."""
    normalized = normalize_recovery_code(code)
    hidden = "-".join(["*" * RECOVERY_CODE_GROUP_LENGTH] * (RECOVERY_CODE_GROUPS - 1))
    return f"{hidden}-{normalized[-RECOVERY_CODE_GROUP_LENGTH:]}"


class TokenIssuer:
    """Issues and redeems activation and password reset tokens."""

    def __init__(self, auth_db: AuthDatabase, config: AuthConfig):
        self._db = auth_db
        self._config = config

    def _expiry(self, kind: TokenKind, now: datetime) -> datetime:
        if kind == TokenKind.ACTIVATION:
            return now + timedelta(hours=self._config.activation_token_expiry_hours)
        return now + timedelta(minutes=self._config.password_reset_expiry_minutes)

    def issue(self, kind: TokenKind, user_id: int) -> tuple[str, datetime]:
        """
        Create a token for ``user_id``. Older unused tokens of the same kind stop working.

        Returns:
            (plaintext token, expires_at)
        """
        token = generate_token()
        expires_at = self._expiry(kind, now_utc())
        self._db.store_one_time_token(kind, user_id, hash_token(token), expires_at)
        logger.info(f"Issued {kind.name.lower()} token for user {user_id}")
        return token, expires_at

    def issue_activation_token(self, user_id: int) -> str:
        token, _ = self.issue(TokenKind.ACTIVATION, user_id)
        return token

    def issue_password_reset_token(self, user_id: int) -> str:
        token, _ = self.issue(TokenKind.PASSWORD_RESET, user_id)
        return token

    @staticmethod
    def _require(token: str | None) -> str:
        token = (token or "").strip()
        if not token:
            raise ValidationError("Token is required")
        return token

    def redeem_activation_token(self, token: str) -> int:
        """
        Consume an activation token and activate the account.

        Returns:
            The activated user's id.

        Raises:
            InvalidTokenError: Unknown, expired or already used.
        """
        token = self._require(token)
        user_id = self._db.activate_with_token(hash_token(token), now_utc())
        if user_id is None:
            raise InvalidTokenError("Invalid or expired activation token")
        return user_id

    def validate_password_reset_token(self, token: str) -> int:
        """
        Check a reset token without consuming it.

        Raises:
            ResetTokenInvalidError: Unknown, expired or already used.
        """
        token = self._require(token)
        record = self._db.find_valid_one_time_token(TokenKind.PASSWORD_RESET, hash_token(token), now_utc())
        if record is None:
            raise ResetTokenInvalidError()
        return record.user_id

    def redeem_password_reset_token(self, token: str, new_password_hash: str) -> int:
        """
        Consume a reset token and store the new password hash.

        Raises:
            ResetTokenInvalidError: Unknown, expired or already used.
        """
        token = self._require(token)
        user_id = self._db.reset_password_with_token(hash_token(token), new_password_hash, now_utc())
        if user_id is None:
            raise ResetTokenInvalidError()
        return user_id

    def cleanup_expired(self, before: datetime | None = None) -> int:
        before = before or now_utc()
        return sum(self._db.cleanup_expired_tokens(kind, before) for kind in TokenKind)

"""Second-factor verification and the TOTP setup protocol.

TOTP math is pyotp's. What lives here is the state around it: the secret is
AES-GCM encrypted at rest, a secret only governs login once one code has
confirmed it, and every accepted time step is recorded so a captured code
cannot be replayed inside its validity window.
"""

import hmac
import logging

import pyotp

from auth.config import AuthConfig
from auth.crypto import SecretBox
from auth.exceptions import (
    InvalidTotpCodeError,
    TwoFactorNotEnabledError,
    TwoFactorNotInitializedError,
)
from auth.tokens import generate_recovery_code, hash_recovery_code, mask_recovery_code
from auth.two_factor_db import TwoFactorDatabase
from auth.types import (
    RecoveryCodesStatus,
    RecoveryCodeView,
    TwoFactorMethods,
    TwoFactorSetup,
    TwoFactorStatus,
)
from utils.timezone import now_utc

logger = logging.getLogger(__name__)

TOTP_DIGITS = 6


class SecondFactorVerifier:
    """TOTP and recovery-code checks plus enable/disable lifecycle."""

    def __init__(self, db: TwoFactorDatabase, secret_box: SecretBox, config: AuthConfig):
        self._db = db
        self._box = secret_box
        self._config = config

    def _matching_step(self, secret: str, code: str) -> int | None:
        """Time step whose code equals ``code`` within the valid window, else None."""
        code = "".join(code.split())
        if len(code) != TOTP_DIGITS or not code.isdigit():
            return None

        totp = pyotp.TOTP(secret)
        now = now_utc()
        current = totp.timecode(now)
        window = self._config.totp_valid_window
        for offset in range(-window, window + 1):
            if hmac.compare_digest(totp.at(now, counter_offset=offset), code):
                return current + offset
        return None

    # -- verification ------------------------------------------------------

    def is_enabled(self, user_id: int) -> bool:
        record = self._db.get(user_id)
        return record is not None and record.enabled

    def available_methods(self, user_id: int) -> TwoFactorMethods:
        return TwoFactorMethods(
            totp=True,
            recovery=self._db.count_unused_recovery_codes(user_id) > 0,
        )

    def verify_totp(self, user_id: int, code: str) -> bool:
        """
        Check a code against the user's enabled secret.

        A code for a step at or before the last accepted one fails, even if
        it is still inside the window.
        """
        record = self._db.get(user_id)
        if record is None or not record.enabled:
            return False

        step = self._matching_step(self._box.decrypt(record.secret_encrypted), code)
        if step is None:
            return False

        if not self._db.record_totp_step(user_id, step):
            logger.warning(f"Replayed TOTP step rejected for user {user_id}")
            return False
        return True

    def verify_recovery_code(self, user_id: int, code: str) -> bool:
        """
        Consume a matching unused recovery code.

        Of concurrent requests with the same code, only one returns True.
        """
        candidate = hash_recovery_code(code or "")
        for stored in self._db.list_unused_recovery_codes(user_id):
            if hmac.compare_digest(stored.code_hash, candidate):
                return self._db.mark_recovery_code_used(stored.id, now_utc())
        return False

    # -- setup protocol ----------------------------------------------------

    def start_setup(self, user_id: int, account_name: str) -> TwoFactorSetup:
        """
        Generate a new unconfirmed secret, replacing any previous one.

        The returned secret is shown once for QR or manual entry.
        """
        secret = pyotp.random_base32()
        self._db.upsert_pending(user_id, self._box.encrypt(secret), now_utc())
        uri = pyotp.TOTP(secret).provisioning_uri(name=account_name, issuer_name=self._config.totp_issuer)
        return TwoFactorSetup(secret=secret, otpauth_uri=uri)

    def confirm_setup(self, user_id: int, code: str) -> list[str]:
        """
        Enable two-factor after proving possession of the pending secret.

        Returns:
            The first set of plaintext recovery codes.

        Raises:
            TwoFactorNotInitializedError: No pending secret.
            InvalidTotpCodeError: Code does not match.
        """
        record = self._db.get(user_id)
        if record is None or record.enabled:
            raise TwoFactorNotInitializedError()

        step = self._matching_step(self._box.decrypt(record.secret_encrypted), code)
        if step is None:
            raise InvalidTotpCodeError()

        codes, rows = self._new_recovery_codes()
        if not self._db.enable(user_id, record.secret_encrypted, step, rows, now_utc()):
            # Setup was restarted or confirmed concurrently.
            raise TwoFactorNotInitializedError()
        logger.info(f"Two-factor enabled for user {user_id}")
        return codes

    def disable(self, user_id: int) -> None:
        """
        Delete the secret and all recovery codes, immediately.

        Raises:
            TwoFactorNotEnabledError: Nothing to disable.
        """
        if not self._db.delete(user_id):
            raise TwoFactorNotEnabledError()
        logger.info(f"Two-factor disabled for user {user_id}")

    # -- recovery codes ----------------------------------------------------

    def _new_recovery_codes(self) -> tuple[list[str], list[tuple[str, str]]]:
        codes = [generate_recovery_code() for _ in range(self._config.recovery_code_count)]
        rows = [(hash_recovery_code(c), mask_recovery_code(c)) for c in codes]
        return codes, rows

    def regenerate_recovery_codes(self, user_id: int) -> list[str]:
        """
        Replace the user's recovery codes. Previously unused codes stop working.

        Raises:
            TwoFactorNotEnabledError: 2FA is not enabled.
        """
        if not self.is_enabled(user_id):
            raise TwoFactorNotEnabledError()
        codes, rows = self._new_recovery_codes()
        self._db.replace_recovery_codes(user_id, rows, now_utc())
        return codes

    def status(self, user_id: int) -> TwoFactorStatus:
        record = self._db.get(user_id)
        if record is None:
            return TwoFactorStatus(enabled=False)
        return TwoFactorStatus(
            enabled=record.enabled,
            pending=not record.enabled,
            enabled_at=record.enabled_at,
            recovery_codes_remaining=self._db.count_unused_recovery_codes(user_id) if record.enabled else 0,
        )

    def recovery_codes_status(self, user_id: int) -> RecoveryCodesStatus:
        """Masked listing. Plaintext codes are never recoverable after issue."""
        if not self.is_enabled(user_id):
            raise TwoFactorNotEnabledError()
        codes = self._db.list_recovery_codes(user_id)
        return RecoveryCodesStatus(
            total=len(codes),
            remaining=sum(1 for c in codes if not c.used),
            codes=[RecoveryCodeView(label=c.label, used=c.used, used_at=c.used_at) for c in codes],
        )

"""Password hashing (Argon2id) and the password policy."""

import logging
import re

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

logger = logging.getLogger(__name__)

_hasher = PasswordHasher(type=Type.ID)

MIN_PASSWORD_LENGTH = 8

COMMON_PASSWORDS = frozenset({
    "password",
    "123456",
    "123456789",
    "qwerty",
    "ogc123",
    "ogcnewfinity",
})

# Verified against when the email is unknown so both failure paths cost the same.
_dummy_hash: str | None = None


def hash_password(password: str) -> str:
    return _hasher.hash(password)


def verify_password(password_hash: str, password: str) -> bool:
    """Constant-time verify. Any malformed hash counts as a mismatch."""
    try:
        return _hasher.verify(password_hash, password)
    except VerifyMismatchError:
        return False
    except (InvalidHash, VerificationError):
        logger.warning("Stored password hash could not be verified")
        return False


def needs_rehash(password_hash: str) -> bool:
    try:
        return _hasher.check_needs_rehash(password_hash)
    except InvalidHash:
        return True


def burn_verification(password: str) -> None:
    """Run a full verify against a throwaway hash. Result is discarded."""
    global _dummy_hash
    if _dummy_hash is None:
        _dummy_hash = _hasher.hash("not-a-real-password")
    verify_password(_dummy_hash, password)


def validate_password_strength(password: str) -> list[str]:
    """
    Check a candidate password against the policy.

    Returns:
        List of human-readable failures. Empty means the password is acceptable.
    """
    errors = []
    if len(password) < MIN_PASSWORD_LENGTH:
        errors.append(f"Password must be at least {MIN_PASSWORD_LENGTH} characters long.")
    if not re.search(r"[A-Z]", password):
        errors.append("Password must contain at least one uppercase letter.")
    if not re.search(r"[a-z]", password):
        errors.append("Password must contain at least one lowercase letter.")
    if not re.search(r"[0-9]", password):
        errors.append("Password must contain at least one number.")
    if not re.search(r"[^A-Za-z0-9]", password):
        errors.append("Password must contain at least one symbol.")
    if password.lower() in COMMON_PASSWORDS:
        errors.append("Password is too common.")
    return errors

"""Pydantic models for the auth domain."""

from datetime import datetime
from enum import Enum
from typing import Literal, Union

from pydantic import BaseModel, EmailStr, Field


class Role(str, Enum):
    """Account role. Independent of AccountStatus; both gate login."""

    FOUNDER = "FOUNDER"
    CORE_TEAM = "CORE_TEAM"
    ADMIN = "ADMIN"
    MODERATOR = "MODERATOR"
    CREATOR = "CREATOR"
    STANDARD_USER = "STANDARD_USER"
    SUSPENDED = "SUSPENDED"
    BANNED = "BANNED"


class AccountStatus(str, Enum):
    PENDING_VERIFICATION = "pending_verification"
    ACTIVE = "active"
    DISABLED = "disabled"


class TwoFactorMode(str, Enum):
    TOTP = "totp"
    RECOVERY = "recovery"


class TokenKind(str, Enum):
    """One-time email tokens. Value is the backing table."""

    ACTIVATION = "activation_tokens"
    PASSWORD_RESET = "password_reset_tokens"


class User(BaseModel):
    """A registered user of the system."""

    id: int
    email: EmailStr
    password_hash: str | None = Field(default=None, exclude=True)
    role: Role = Role.STANDARD_USER
    status: AccountStatus = AccountStatus.PENDING_VERIFICATION
    terms_accepted: bool = False
    terms_accepted_at: datetime | None = None
    terms_version: str | None = None
    permissions_override: list[str] | None = None
    feature_flags: dict[str, bool] = Field(default_factory=dict)
    created_at: datetime
    last_login_at: datetime | None = None

    model_config = {"from_attributes": True}

    def is_feature_enabled(self, flag: str) -> bool:
        """Missing flags are off."""
        return bool(self.feature_flags.get(flag, False))


class DeviceInfo(BaseModel):
    """What we know about the client at login time."""

    ip_address: str | None = None
    user_agent: str | None = None
    device_label: str | None = None


class AuthSession(BaseModel):
    """
    A login session row.

    Active iff ``revoked_at`` is null and now < ``expires_at``.
    ``last_seen_at`` moves with activity, ``expires_at`` never does.
    """

    id: int
    user_id: int
    token: str = Field(..., exclude=True, description="Opaque 64-hex-char session token")
    user_agent: str | None = None
    ip_address: str | None = None
    device_fingerprint: str | None = None
    device_label: str | None = None
    created_at: datetime
    last_seen_at: datetime
    expires_at: datetime
    revoked_at: datetime | None = None

    def is_active(self, now: datetime) -> bool:
        return self.revoked_at is None and now < self.expires_at

    def status_at(self, now: datetime) -> str:
        if self.revoked_at is not None:
            return "revoked"
        if now >= self.expires_at:
            return "expired"
        return "active"


class SessionView(BaseModel):
    """Session as shown to its owner or an admin. Never includes the token."""

    id: int
    device_label: str | None = None
    user_agent: str | None = None
    ip_address: str | None = None
    created_at: datetime
    last_seen_at: datetime
    expires_at: datetime
    revoked_at: datetime | None = None
    status: Literal["active", "revoked", "expired"]
    is_current: bool = False

    @classmethod
    def from_session(cls, session: AuthSession, now: datetime, current_session_id: int | None = None) -> "SessionView":
        return cls(
            id=session.id,
            device_label=session.device_label,
            user_agent=session.user_agent,
            ip_address=session.ip_address,
            created_at=session.created_at,
            last_seen_at=session.last_seen_at,
            expires_at=session.expires_at,
            revoked_at=session.revoked_at,
            status=session.status_at(now),
            is_current=current_session_id is not None and session.id == current_session_id,
        )


class OneTimeToken(BaseModel):
    """Activation or password reset token row. Only the hash is stored."""

    id: int
    user_id: int
    token_hash: str
    used: bool  # Required - fail closed, no default
    expires_at: datetime
    created_at: datetime


class TwoFactorRecord(BaseModel):
    """Row of user_two_factor. ``secret_encrypted`` is AES-GCM ciphertext."""

    user_id: int
    secret_encrypted: str
    enabled: bool
    created_at: datetime
    enabled_at: datetime | None = None
    last_used_step: int | None = None


class RecoveryCode(BaseModel):
    id: int
    user_id: int
    code_hash: str
    label: str = Field(..., description="Masked form shown in listings, e.g. ****-****-****-7KQ2")
    used: bool
    used_at: datetime | None = None
    created_at: datetime


class TwoFactorMethods(BaseModel):
    totp: bool = True
    recovery: bool = False


class TwoFactorStatus(BaseModel):
    enabled: bool
    pending: bool = Field(False, description="Setup started but not confirmed")
    enabled_at: datetime | None = None
    recovery_codes_remaining: int = 0


class TwoFactorSetup(BaseModel):
    """Returned once from setup start; the secret is never shown again."""

    secret: str
    otpauth_uri: str


class RecoveryCodeView(BaseModel):
    label: str
    used: bool
    used_at: datetime | None = None


class RecoveryCodesStatus(BaseModel):
    total: int
    remaining: int
    codes: list[RecoveryCodeView]


class OAuthClaims(BaseModel):
    """Identity claims from a provider callback, already verified upstream."""

    provider: str
    provider_user_id: str
    email: str | None = None
    email_verified: bool = False
    display_name: str | None = None


class TwoFactorTicket(BaseModel):
    """Claimed 2FA ticket. ``ticket_id`` is the hash; the plaintext never leaves the client."""

    ticket_id: str
    user_id: int
    issued_at: datetime


# -- login progress -------------------------------------------------------


class Authenticated(BaseModel):
    kind: Literal["authenticated"] = "authenticated"
    user: User
    session: AuthSession


class AwaitingSecondFactor(BaseModel):
    kind: Literal["awaiting_second_factor"] = "awaiting_second_factor"
    ticket: str
    methods: TwoFactorMethods
    expires_at: datetime


class NeedsEmail(BaseModel):
    kind: Literal["needs_email"] = "needs_email"
    ticket: str
    provider: str
    expires_at: datetime


LoginResult = Union[Authenticated, AwaitingSecondFactor]
OAuthResult = Union[Authenticated, NeedsEmail]


class Principal(BaseModel):
    """The authenticated caller of one request."""

    user: User
    session: AuthSession
    permissions: frozenset[str]

    def has(self, permission: str) -> bool:
        return permission in self.permissions

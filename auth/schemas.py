"""Request bodies for the auth HTTP routes."""

from pydantic import BaseModel, EmailStr, Field

from auth.types import AccountStatus, OAuthClaims, Role


class LoginRequest(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=1, max_length=1024)
    device_label: str | None = Field(default=None, max_length=100)


class TwoFactorVerifyRequest(BaseModel):
    ticket: str = Field(..., min_length=1)
    mode: str = Field(..., description='"totp" or "recovery"')
    code: str = Field(..., min_length=1, max_length=64)
    device_label: str | None = Field(default=None, max_length=100)


class RegisterRequest(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=1, max_length=1024)
    terms_accepted: bool = False


class EmailRequest(BaseModel):
    """Body for always-success flows (activation resend, forgot password)."""

    email: EmailStr


class TokenRequest(BaseModel):
    token: str = Field(..., min_length=1)


class ResetPasswordRequest(BaseModel):
    token: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1, max_length=1024)


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(..., min_length=1, max_length=1024)
    new_password: str = Field(..., min_length=1, max_length=1024)


class OAuthCallbackRequest(BaseModel):
    """Claims handed over by the provider integration after it verified the callback."""

    provider_user_id: str = Field(..., min_length=1)
    email: str | None = None
    email_verified: bool = False
    display_name: str | None = None

    def to_claims(self, provider: str) -> OAuthClaims:
        return OAuthClaims(provider=provider, **self.model_dump())


class OAuthCompleteRequest(BaseModel):
    ticket: str = Field(..., min_length=1)
    # Format checked by the resolver so a typo does not burn the ticket.
    email: str


class TwoFactorCodeRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=64)


class AdminRevokeRequest(BaseModel):
    confirm_self: bool = False


class StatusUpdateRequest(BaseModel):
    status: AccountStatus
    confirm_self: bool = False


class RoleUpdateRequest(BaseModel):
    role: Role
    confirm_self: bool = False


class FeatureFlagsUpdateRequest(BaseModel):
    flags: dict[str, bool]

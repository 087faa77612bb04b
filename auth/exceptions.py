"""Typed exceptions for auth failures.

Every exception carries the machine-readable ``code`` clients branch on and
the HTTP ``status_code`` the API layer answers with. Messages are safe to show
to end users.
"""


class AuthError(Exception):
    """Base class for authentication/authorization errors."""

    code = "AUTH_ERROR"
    status_code = 400
    default_message = "Authentication error"

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)


# -- user input -----------------------------------------------------------


class ValidationError(AuthError):
    """Malformed request input (bad email, unknown 2FA mode, empty token)."""

    code = "VALIDATION_ERROR"
    default_message = "Invalid request"


class WeakPasswordError(ValidationError):
    """Password does not satisfy the password policy."""

    code = "WEAK_PASSWORD"
    default_message = "Password does not meet the password policy"

    def __init__(self, errors: list[str]):
        self.errors = errors
        super().__init__(" ".join(errors) or self.default_message)


class TermsNotAcceptedError(ValidationError):
    code = "TERMS_NOT_ACCEPTED"
    default_message = "You must accept the terms to create an account"


class EmailAlreadyExistsError(AuthError):
    code = "EMAIL_ALREADY_EXISTS"
    status_code = 409
    default_message = "An account with this email already exists"


# -- authentication state -------------------------------------------------


class InvalidCredentialsError(AuthError):
    """
    Email unknown or password wrong.

    Both cases deliberately share this class and its message.
    """

    code = "INVALID_CREDENTIALS"
    status_code = 401
    default_message = "Invalid email or password"


class CurrentPasswordInvalidError(AuthError):
    """Signed-in user confirmed a password change with the wrong current password."""

    code = "CURRENT_PASSWORD_INVALID"
    default_message = "Current password is incorrect"


class PasswordLoginDisabledError(AuthError):
    """Account has no password (provider sign-in only)."""

    code = "PASSWORD_LOGIN_DISABLED"
    default_message = "Password login is not enabled for this account"


class AccountStateError(AuthError):
    """Credentials were right but the account may not sign in."""

    status_code = 403


class AccountNotVerifiedError(AccountStateError):
    code = "ACCOUNT_NOT_VERIFIED"
    default_message = "Account not activated. Check your email for the activation link"


class AccountDisabledError(AccountStateError):
    code = "ACCOUNT_DISABLED"
    default_message = "Account is disabled"


class AccountSuspendedError(AccountStateError):
    code = "ACCOUNT_SUSPENDED"
    default_message = "Account is suspended"


class AccountBannedError(AccountStateError):
    code = "ACCOUNT_BANNED"
    default_message = "Account is banned"


class InvalidTokenError(AuthError):
    """Activation token is invalid, expired, or already used."""

    code = "INVALID_TOKEN"
    status_code = 401
    default_message = "Invalid or expired token"


class ResetTokenInvalidError(InvalidTokenError):
    code = "RESET_TOKEN_INVALID_OR_EXPIRED"
    default_message = "This reset link is invalid or has expired"


class InvalidTwoFactorTicketError(AuthError):
    """2FA ticket unknown, expired or already redeemed. Client restarts login."""

    code = "INVALID_2FA_TICKET"
    status_code = 401
    default_message = "Your sign-in attempt expired. Please sign in again"


class InvalidTotpCodeError(AuthError):
    code = "INVALID_TOTP_CODE"
    status_code = 401
    default_message = "Invalid two-factor code"


class InvalidRecoveryCodeError(AuthError):
    code = "INVALID_RECOVERY_CODE"
    status_code = 401
    default_message = "Invalid recovery code"


class TwoFactorNotInitializedError(AuthError):
    """Confirm called without a pending setup, or 2FA-only action without 2FA."""

    code = "TWO_FACTOR_NOT_INITIALIZED"
    status_code = 409
    default_message = "Two-factor setup has not been started"


class TwoFactorNotEnabledError(AuthError):
    code = "TWO_FACTOR_NOT_ENABLED"
    status_code = 409
    default_message = "Two-factor authentication is not enabled"


class OAuthTicketInvalidError(AuthError):
    code = "OAUTH_TICKET_INVALID"
    status_code = 401
    default_message = "This sign-in link is invalid or has expired"


class OAuthEmailConflictError(AuthError):
    """Email belongs to a different account than the provider identity."""

    code = "OAUTH_EMAIL_CONFLICT"
    status_code = 409
    default_message = "This email is already used by another account"


class SessionExpiredError(AuthError):
    """Session token unknown, expired or revoked. User must re-authenticate."""

    code = "SESSION_EXPIRED"
    status_code = 401
    default_message = "Session has expired"


class NotAuthenticatedError(AuthError):
    code = "NOT_AUTHENTICATED"
    status_code = 401
    default_message = "Authentication required"


# -- authorization --------------------------------------------------------


class PermissionDeniedError(AuthError):
    code = "PERMISSION_DENIED"
    status_code = 403
    default_message = "You do not have permission to perform this action"

    def __init__(self, required_permission: str | None = None, message: str | None = None):
        self.required_permission = required_permission
        super().__init__(message)


class SelfRevokeConfirmationRequired(AuthError):
    """Admin targeted their own session without confirm_self."""

    code = "SELF_REVOKE_CONFIRMATION_REQUIRED"
    status_code = 409
    default_message = "This is your own session. Confirm to sign yourself out"


class SessionNotFoundError(AuthError):
    code = "SESSION_NOT_FOUND"
    status_code = 404
    default_message = "Session not found"


class UserNotFoundError(AuthError):
    """
    No such user.

    Note: never raised on login or forgot-password paths, which must not
    reveal whether an email exists.
    """

    code = "USER_NOT_FOUND"
    status_code = 404
    default_message = "User not found"


# -- rate limiting --------------------------------------------------------


class RateLimitedError(AuthError):
    """Too many attempts. Client should wait before retrying."""

    code = "RATE_LIMIT_EXCEEDED"
    status_code = 429

    def __init__(self, retry_after_seconds: int):
        self.retry_after_seconds = retry_after_seconds
        super().__init__(f"Too many attempts. Retry after {retry_after_seconds} seconds.")

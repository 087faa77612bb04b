"""Authentication, session lifecycle and authorization modules."""

from auth.exceptions import (
    AuthError,
    AccountStateError,
    InvalidCredentialsError,
    InvalidTokenError,
    PermissionDeniedError,
    RateLimitedError,
    SessionExpiredError,
    ValidationError,
)
from auth.types import (
    User,
    AuthSession,
    SessionView,
    DeviceInfo,
    Principal,
    Authenticated,
    AwaitingSecondFactor,
    NeedsEmail,
)
from auth.config import AuthConfig
from auth.permissions import Permission, resolve_permissions, require_permission
from auth.service import AuthService
from auth.session import SessionManager
from auth.two_factor import SecondFactorVerifier
from auth.oauth import OAuthLinkingResolver
from auth.admin import AdminSessionGateway

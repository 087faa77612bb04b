"""OAuth account linking.

Reconciles a provider identity (already verified by the provider
integration) with local accounts. Outcomes: a session for an existing or new
account, a needs-email ticket when the provider gave no usable email, or an
explicit conflict. Accounts are never merged silently.
"""

import logging

from pydantic import EmailStr, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from auth.database import AuthDatabase
from auth.exceptions import OAuthEmailConflictError, ValidationError
from auth.security_logger import SecurityEvent, SecurityLogger
from auth.service import check_account_gates
from auth.session import SessionManager
from auth.tickets import TicketStore
from auth.types import Authenticated, DeviceInfo, NeedsEmail, OAuthClaims, OAuthResult, User

logger = logging.getLogger(__name__)

_email_adapter = TypeAdapter(EmailStr)


def normalize_email(email: str) -> str:
    """
    Validate and lowercase an email address.

    Raises:
        ValidationError: Not a valid address.
    """
    try:
        return _email_adapter.validate_python((email or "").strip()).lower()
    except PydanticValidationError:
        raise ValidationError("Invalid email address") from None


class OAuthLinkingResolver:
    """Turns provider callbacks into sessions, tickets or conflicts."""

    def __init__(
        self,
        auth_db: AuthDatabase,
        session_manager: SessionManager,
        tickets: TicketStore,
        security_logger: SecurityLogger,
    ):
        self._auth_db = auth_db
        self._session_manager = session_manager
        self._tickets = tickets
        self._security_logger = security_logger

    def _sign_in(self, user: User, claims: OAuthClaims, device: DeviceInfo) -> Authenticated:
        check_account_gates(user)
        session = self._session_manager.create(user.id, device)
        self._auth_db.update_last_login(user.id)
        self._security_logger.log(
            SecurityEvent.OAUTH_LOGIN,
            email=user.email,
            user_id=user.id,
            ip_address=device.ip_address,
            user_agent=device.user_agent,
            details={"provider": claims.provider, "session_id": session.id},
        )
        return Authenticated(user=user, session=session)

    def _link(self, user: User, claims: OAuthClaims, device: DeviceInfo) -> None:
        if self._auth_db.link_identity(user.id, claims.provider, claims.provider_user_id):
            self._security_logger.log(
                SecurityEvent.OAUTH_LINKED,
                email=user.email,
                user_id=user.id,
                ip_address=device.ip_address,
                details={"provider": claims.provider},
            )

    def _create(self, email: str, claims: OAuthClaims, device: DeviceInfo) -> User:
        # OAuth accounts skip the activation flow.
        user = self._auth_db.create_oauth_user(email, claims.provider, claims.provider_user_id)
        self._security_logger.log(
            SecurityEvent.OAUTH_USER_CREATED,
            email=user.email,
            user_id=user.id,
            ip_address=device.ip_address,
            details={"provider": claims.provider},
        )
        return user

    def handle_callback(self, claims: OAuthClaims, device: DeviceInfo) -> OAuthResult:
        """Resolve a provider callback.

        1. Identity already linked: sign in as that account.
        2. Verified email of an existing account: link (idempotent) and sign in.
        3. Verified email of nobody: create an active account and sign in.
        4. No verified email: issue an OAuth ticket, caller must supply one.

        Raises:
            AccountStateError subclasses: Resolved account may not sign in.
        """
        linked = self._auth_db.get_user_by_identity(claims.provider, claims.provider_user_id)
        if linked is not None:
            return self._sign_in(linked, claims, device)

        email = None
        if claims.email and claims.email_verified:
            try:
                email = normalize_email(claims.email)
            except ValidationError:
                logger.warning(f"Provider {claims.provider} sent an unusable email")

        if email is None:
            ticket, expires_at = self._tickets.issue_oauth_ticket(claims)
            self._security_logger.log(
                SecurityEvent.OAUTH_EMAIL_REQUIRED,
                ip_address=device.ip_address,
                user_agent=device.user_agent,
                details={"provider": claims.provider},
            )
            return NeedsEmail(ticket=ticket, provider=claims.provider, expires_at=expires_at)

        existing = self._auth_db.get_user_by_email(email)
        if existing is not None:
            self._link(existing, claims, device)
            return self._sign_in(existing, claims, device)

        return self._sign_in(self._create(email, claims, device), claims, device)

    def complete_with_email(self, ticket: str, email: str, device: DeviceInfo) -> Authenticated:
        """Finish a needs-email login.

        The supplied email is unverified, so it may only name a new account or
        the account the provider identity is already linked to. Anything else
        is a conflict.

        Raises:
            ValidationError: Malformed email (ticket left intact).
            OAuthTicketInvalidError: Unknown, expired or already redeemed.
            OAuthEmailConflictError: Email belongs to a different account.
        """
        email = normalize_email(email)
        claims = self._tickets.redeem_oauth_ticket(ticket)

        linked = self._auth_db.get_user_by_identity(claims.provider, claims.provider_user_id)
        existing = self._auth_db.get_user_by_email(email)

        if existing is not None and (linked is None or existing.id != linked.id):
            self._security_logger.log(
                SecurityEvent.OAUTH_EMAIL_CONFLICT,
                email=email,
                user_id=existing.id,
                ip_address=device.ip_address,
                user_agent=device.user_agent,
                details={
                    "provider": claims.provider,
                    "linked_user_id": linked.id if linked else None,
                },
            )
            raise OAuthEmailConflictError()

        if linked is not None:
            return self._sign_in(linked, claims, device)

        return self._sign_in(self._create(email, claims, device), claims, device)

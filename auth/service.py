"""Authentication service - orchestrates password login, second factor and account tokens."""

import logging

from auth.config import AuthConfig
from auth.database import AuthDatabase
from auth.exceptions import (
    AccountBannedError,
    AccountDisabledError,
    AccountNotVerifiedError,
    AccountStateError,
    AccountSuspendedError,
    CurrentPasswordInvalidError,
    InvalidCredentialsError,
    InvalidRecoveryCodeError,
    InvalidTokenError,
    InvalidTotpCodeError,
    InvalidTwoFactorTicketError,
    PasswordLoginDisabledError,
    RateLimitedError,
    SessionExpiredError,
    TermsNotAcceptedError,
    UserNotFoundError,
    ValidationError,
    WeakPasswordError,
)
from auth.passwords import (
    burn_verification,
    hash_password,
    needs_rehash,
    validate_password_strength,
    verify_password,
)
from auth.permissions import resolve_permissions
from auth.rate_limiter import RateLimiter
from auth.security_logger import SecurityEvent, SecurityLogger
from auth.session import SessionManager
from auth.tickets import TicketStore
from auth.tokens import TokenIssuer
from auth.two_factor import SecondFactorVerifier
from auth.types import (
    AccountStatus,
    Authenticated,
    AuthSession,
    AwaitingSecondFactor,
    DeviceInfo,
    LoginResult,
    Principal,
    Role,
    TwoFactorMode,
    User,
)
from clients.email_client import EmailGatewayClient, EmailGatewayError
from clients.valkey_client import ValkeyClient

logger = logging.getLogger(__name__)


def check_account_gates(user: User) -> None:
    """
    Raise if the account may not hold a session.

    Status and role are independent; both are checked.
    """
    if user.status == AccountStatus.PENDING_VERIFICATION:
        raise AccountNotVerifiedError()
    if user.status == AccountStatus.DISABLED:
        raise AccountDisabledError()
    if user.role == Role.SUSPENDED:
        raise AccountSuspendedError()
    if user.role == Role.BANNED:
        raise AccountBannedError()


class AuthService:
    """Orchestrates the login protocol and account token flows.

    Handles:
    - Password login, with a 2FA ticket step when enabled
    - Ticket redemption with TOTP or recovery code
    - Registration and activation
    - Password reset (with enumeration protection) and self-service change
    - Logout and per-request principal resolution
    """

    def __init__(
        self,
        config: AuthConfig,
        auth_db: AuthDatabase,
        session_manager: SessionManager,
        token_issuer: TokenIssuer,
        tickets: TicketStore,
        second_factor: SecondFactorVerifier,
        valkey: ValkeyClient,
        email_client: EmailGatewayClient,
        security_logger: SecurityLogger,
    ):
        self._config = config
        self._auth_db = auth_db
        self._session_manager = session_manager
        self._token_issuer = token_issuer
        self._tickets = tickets
        self._second_factor = second_factor
        self._email_client = email_client
        self._security_logger = security_logger

        self._login_limiter = RateLimiter(
            valkey,
            "login",
            config.login_rate_limit_attempts,
            config.login_rate_limit_window_minutes * 60,
        )
        self._email_limiter = RateLimiter(
            valkey,
            "account_email",
            config.password_reset_rate_limit_attempts,
            config.password_reset_rate_limit_window_minutes * 60,
        )
        self._two_factor_limiter = RateLimiter(
            valkey,
            "two_factor",
            config.two_factor_max_failed_attempts,
            config.two_factor_lockout_minutes * 60,
        )
        self._two_factor_user_limiter = RateLimiter(
            valkey,
            "two_factor_user",
            config.two_factor_max_failed_attempts_per_user,
            config.two_factor_lockout_minutes * 60,
        )

    # -- login -------------------------------------------------------------

    def _enforce_account_gates(self, user: User, device: DeviceInfo) -> None:
        try:
            check_account_gates(user)
        except AccountStateError as e:
            self._security_logger.log(
                SecurityEvent.LOGIN_BLOCKED,
                email=user.email,
                user_id=user.id,
                ip_address=device.ip_address,
                user_agent=device.user_agent,
                details={"reason": e.code},
            )
            raise

    def _finish_login(self, user: User, device: DeviceInfo, event: SecurityEvent, details: dict | None = None) -> Authenticated:
        self._login_limiter.reset_rate_limit(user.email)
        session = self._session_manager.create(user.id, device)
        self._auth_db.update_last_login(user.id)

        self._security_logger.log(
            event,
            email=user.email,
            user_id=user.id,
            ip_address=device.ip_address,
            user_agent=device.user_agent,
            details={"session_id": session.id, **(details or {})},
        )

        # Refresh user to get updated last_login_at
        user = self._auth_db.get_user_by_id(user.id) or user
        return Authenticated(user=user, session=session)

    def login(self, email: str, password: str, device: DeviceInfo) -> LoginResult:
        """Verify email + password.

        Flow:
        1. Count the attempt against the per-email limiter
        2. Look up user; unknown email burns a hash verify so timing matches
        3. Verify password
        4. Check account status and role gates
        5. 2FA enabled: issue ticket, return AwaitingSecondFactor
        6. Otherwise: create session, return Authenticated

        The per-email counter is cleared only when a session is issued, so
        correct passwords that stop at the second factor keep counting.

        Raises:
            RateLimitedError: Too many attempts for this email.
            InvalidCredentialsError: Unknown email or wrong password (same error).
            AccountStateError subclasses: Credentials fine, account gated.
        """
        email = email.lower().strip()

        try:
            self._login_limiter.check_rate_limit(email)
        except RateLimitedError:
            self._security_logger.log(
                SecurityEvent.RATE_LIMITED,
                email=email,
                ip_address=device.ip_address,
                user_agent=device.user_agent,
                details={"scope": "login"},
            )
            raise

        user = self._auth_db.get_user_by_email(email)

        if user is None or not user.password_hash:
            burn_verification(password)
            self._security_logger.log(
                SecurityEvent.LOGIN_FAILED,
                email=email,
                user_id=user.id if user else None,
                ip_address=device.ip_address,
                user_agent=device.user_agent,
                details={"reason": "user_not_found" if user is None else "no_password"},
            )
            raise InvalidCredentialsError()

        if not verify_password(user.password_hash, password):
            self._security_logger.log(
                SecurityEvent.LOGIN_FAILED,
                email=email,
                user_id=user.id,
                ip_address=device.ip_address,
                user_agent=device.user_agent,
                details={"reason": "wrong_password"},
            )
            raise InvalidCredentialsError()

        self._enforce_account_gates(user, device)

        if needs_rehash(user.password_hash):
            self._auth_db.update_password(user.id, hash_password(password))

        if self._second_factor.is_enabled(user.id):
            ticket, expires_at = self._tickets.issue_two_factor_ticket(user.id)
            methods = self._second_factor.available_methods(user.id)
            self._security_logger.log(
                SecurityEvent.LOGIN_2FA_REQUIRED,
                email=user.email,
                user_id=user.id,
                ip_address=device.ip_address,
                user_agent=device.user_agent,
            )
            return AwaitingSecondFactor(ticket=ticket, methods=methods, expires_at=expires_at)

        return self._finish_login(user, device, SecurityEvent.LOGIN_SUCCESS)

    def complete_two_factor(self, ticket: str, mode: str, code: str, device: DeviceInfo) -> Authenticated:
        """Redeem a 2FA ticket with a TOTP or recovery code.

        The ticket is claimed before the code is checked, so two requests
        racing on one ticket never both reach the verifier. A wrong code puts
        the ticket back and counts against two limits: one per ticket and one
        per user across all of that user's tickets. Reaching either locks
        second-factor attempts for the lockout window whatever code is sent
        afterwards.

        Raises:
            ValidationError: Unknown mode.
            InvalidTwoFactorTicketError: Unknown, expired, superseded, consumed or in use.
            RateLimitedError: Ticket or user locked out.
            InvalidTotpCodeError / InvalidRecoveryCodeError: Wrong code.
        """
        try:
            mode = TwoFactorMode(mode)
        except ValueError:
            raise ValidationError("Unknown two-factor mode") from None

        claimed = self._tickets.claim_two_factor_ticket(ticket)
        user_key = str(claimed.user_id)

        try:
            self._two_factor_limiter.ensure_not_locked(claimed.ticket_id)
            self._two_factor_user_limiter.ensure_not_locked(user_key)
        except RateLimitedError:
            self._tickets.release_two_factor_ticket(claimed)
            raise

        if mode == TwoFactorMode.TOTP:
            verified = self._second_factor.verify_totp(claimed.user_id, code or "")
        else:
            verified = self._second_factor.verify_recovery_code(claimed.user_id, code or "")

        if not verified:
            self._security_logger.log(
                SecurityEvent.TWO_FACTOR_FAILED,
                user_id=claimed.user_id,
                ip_address=device.ip_address,
                user_agent=device.user_agent,
                details={"mode": mode.value},
            )
            try:
                self._two_factor_user_limiter.record_failure(user_key)
                self._two_factor_limiter.record_failure(claimed.ticket_id)
            except RateLimitedError:
                self._security_logger.log(
                    SecurityEvent.TWO_FACTOR_LOCKED,
                    user_id=claimed.user_id,
                    ip_address=device.ip_address,
                    user_agent=device.user_agent,
                )
                raise
            finally:
                # Failures are counted before the ticket is usable again.
                self._tickets.release_two_factor_ticket(claimed)
            if mode == TwoFactorMode.TOTP:
                raise InvalidTotpCodeError()
            raise InvalidRecoveryCodeError()

        self._tickets.finish_two_factor_ticket(claimed)
        self._two_factor_limiter.reset_rate_limit(claimed.ticket_id)
        self._two_factor_user_limiter.reset_rate_limit(user_key)

        user = self._auth_db.get_user_by_id(claimed.user_id)
        if user is None:
            raise InvalidTwoFactorTicketError()
        self._enforce_account_gates(user, device)

        if mode == TwoFactorMode.RECOVERY:
            self._security_logger.log(
                SecurityEvent.RECOVERY_CODE_USED,
                email=user.email,
                user_id=user.id,
                ip_address=device.ip_address,
                user_agent=device.user_agent,
            )

        return self._finish_login(user, device, SecurityEvent.LOGIN_SUCCESS_2FA, {"mode": mode.value})

    def logout(self, session: AuthSession, device: DeviceInfo) -> None:
        """Revoke the caller's own session."""
        self._session_manager.revoke(session.user_id, session.id)
        self._security_logger.log(
            SecurityEvent.SESSION_REVOKED,
            user_id=session.user_id,
            ip_address=device.ip_address,
            user_agent=device.user_agent,
            details={"session_id": session.id, "reason": "logout"},
        )

    def resolve_principal(self, token: str) -> Principal:
        """Session token to the request's principal.

        Raises:
            SessionExpiredError: Token unknown, expired or revoked, or the
                account can no longer hold a session.
        """
        session = self._session_manager.validate(token)
        user = self._auth_db.get_user_by_id(session.user_id)
        if user is None:
            raise SessionExpiredError()
        try:
            check_account_gates(user)
        except AccountStateError:
            raise SessionExpiredError()
        return Principal(user=user, session=session, permissions=resolve_permissions(user))

    def touch_session(self, session: AuthSession) -> None:
        self._session_manager.touch(session)

    # -- registration and activation ----------------------------------------

    def register(self, email: str, password: str, terms_accepted: bool, device: DeviceInfo) -> User:
        """Create a pending account and email its activation link.

        Raises:
            TermsNotAcceptedError: Terms not accepted.
            WeakPasswordError: Password fails the policy.
            EmailAlreadyExistsError: Email taken.
            EmailGatewayError: Activation email could not be handed to the gateway.
        """
        email = email.lower().strip()
        if not terms_accepted:
            raise TermsNotAcceptedError()
        errors = validate_password_strength(password)
        if errors:
            raise WeakPasswordError(errors)

        user = self._auth_db.create_user(
            email=email,
            password_hash=hash_password(password),
            terms_version=self._config.terms_version,
        )
        self._security_logger.log(
            SecurityEvent.USER_REGISTERED,
            email=user.email,
            user_id=user.id,
            ip_address=device.ip_address,
            user_agent=device.user_agent,
            details={"terms_version": self._config.terms_version},
        )

        self._send_activation(user, device)
        return user

    def _send_activation(self, user: User, device: DeviceInfo) -> None:
        token = self._token_issuer.issue_activation_token(user.id)
        self._email_client.send_activation(
            email=user.email,
            token=token,
            app_url=self._config.app_base_url,
        )
        self._security_logger.log(
            SecurityEvent.ACTIVATION_SENT,
            email=user.email,
            user_id=user.id,
            ip_address=device.ip_address,
        )

    def resend_activation(self, email: str, device: DeviceInfo) -> None:
        """Resend the activation email. Same outcome whether or not the email exists.

        Raises:
            RateLimitedError: Too many requests for this email.
        """
        email = email.lower().strip()
        self._email_limiter.check_rate_limit(f"activation:{email}")

        user = self._auth_db.get_user_by_email(email)
        if user is None or user.status != AccountStatus.PENDING_VERIFICATION:
            logger.debug("Activation resend for unknown or already active account ignored")
            return

        try:
            self._send_activation(user, device)
        except EmailGatewayError as e:
            logger.error(f"Activation resend failed for user {user.id}: {e}")

    def activate(self, token: str, device: DeviceInfo) -> User:
        """Consume an activation token and activate the account.

        Raises:
            InvalidTokenError: Unknown, expired or already used.
        """
        try:
            user_id = self._token_issuer.redeem_activation_token(token)
        except InvalidTokenError:
            self._security_logger.log(
                SecurityEvent.ACTIVATION_FAILED,
                ip_address=device.ip_address,
                user_agent=device.user_agent,
            )
            raise

        user = self._auth_db.get_user_by_id(user_id)
        if user is None:
            raise InvalidTokenError("Invalid or expired activation token")

        self._security_logger.log(
            SecurityEvent.ACCOUNT_ACTIVATED,
            email=user.email,
            user_id=user.id,
            ip_address=device.ip_address,
            user_agent=device.user_agent,
        )
        return user

    # -- password reset ----------------------------------------------------

    def request_password_reset(self, email: str, device: DeviceInfo) -> None:
        """Email a reset link if the account exists. Always looks the same to the caller.

        Raises:
            RateLimitedError: Too many requests for this email (counted
                whether or not it exists).
        """
        email = email.lower().strip()
        self._email_limiter.check_rate_limit(f"reset:{email}")

        user = self._auth_db.get_user_by_email(email)
        self._security_logger.log(
            SecurityEvent.PASSWORD_RESET_REQUESTED,
            email=email,
            user_id=user.id if user else None,
            ip_address=device.ip_address,
            user_agent=device.user_agent,
            details={"account_found": user is not None},
        )
        if user is None or user.status == AccountStatus.DISABLED:
            return

        token = self._token_issuer.issue_password_reset_token(user.id)
        try:
            self._email_client.send_password_reset(
                email=user.email,
                token=token,
                app_url=self._config.app_base_url,
            )
        except EmailGatewayError as e:
            # Surfacing this would reveal that the account exists.
            logger.error(f"Password reset email failed for user {user.id}: {e}")

    def validate_password_reset_token(self, token: str) -> None:
        """Raises ResetTokenInvalidError if the token can't be used. Does not consume it."""
        self._token_issuer.validate_password_reset_token(token)

    def reset_password(self, token: str, new_password: str, device: DeviceInfo) -> int:
        """Consume a reset token, set the new password and sign out everywhere.

        Returns:
            Number of sessions revoked.

        Raises:
            WeakPasswordError: New password fails the policy (token not consumed).
            ResetTokenInvalidError: Unknown, expired or already used.
        """
        errors = validate_password_strength(new_password)
        if errors:
            raise WeakPasswordError(errors)

        try:
            user_id = self._token_issuer.redeem_password_reset_token(token, hash_password(new_password))
        except InvalidTokenError:
            self._security_logger.log(
                SecurityEvent.PASSWORD_RESET_FAILED,
                ip_address=device.ip_address,
                user_agent=device.user_agent,
            )
            raise

        revoked = self._session_manager.revoke_all_for_user(user_id)
        user = self._auth_db.get_user_by_id(user_id)
        if user is not None:
            self._login_limiter.reset_rate_limit(user.email)

        self._security_logger.log(
            SecurityEvent.PASSWORD_RESET,
            email=user.email if user else None,
            user_id=user_id,
            ip_address=device.ip_address,
            user_agent=device.user_agent,
            details={"sessions_revoked": revoked},
        )
        return revoked

    def change_password(self, principal: Principal, current_password: str, new_password: str, device: DeviceInfo) -> int:
        """Change the signed-in user's password and sign out every other session.

        Wrong current passwords count against the same per-email limiter as
        login, so a hijacked session cannot be used to guess it.

        Returns:
            Number of other sessions revoked.

        Raises:
            RateLimitedError: Too many wrong current passwords.
            PasswordLoginDisabledError: Account has no password.
            CurrentPasswordInvalidError: Current password wrong.
            WeakPasswordError: New password fails the policy.
        """
        user = self.get_user(principal.user.id)
        if not user.password_hash:
            raise PasswordLoginDisabledError()

        self._login_limiter.ensure_not_locked(user.email)
        if not verify_password(user.password_hash, current_password):
            self._security_logger.log(
                SecurityEvent.PASSWORD_CHANGE_FAILED,
                email=user.email,
                user_id=user.id,
                ip_address=device.ip_address,
                user_agent=device.user_agent,
            )
            self._login_limiter.check_rate_limit(user.email)
            raise CurrentPasswordInvalidError()

        errors = validate_password_strength(new_password)
        if errors:
            raise WeakPasswordError(errors)

        if not self._auth_db.update_password(user.id, hash_password(new_password)):
            raise UserNotFoundError()
        revoked = self._session_manager.revoke_all_others(user.id, principal.session.id)
        self._login_limiter.reset_rate_limit(user.email)

        self._security_logger.log(
            SecurityEvent.PASSWORD_CHANGED,
            email=user.email,
            user_id=user.id,
            ip_address=device.ip_address,
            user_agent=device.user_agent,
            details={"sessions_revoked": revoked},
        )
        return revoked

    # -- lookups -------------------------------------------------------------

    def get_user(self, user_id: int) -> User:
        user = self._auth_db.get_user_by_id(user_id)
        if user is None:
            raise UserNotFoundError()
        return user

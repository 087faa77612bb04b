"""Tests for AuthService - login protocol, account tokens and password reset.

Real auth logic over in-memory storage; the email gateway and the security
logger are mocks asserted through their calls.
"""

from concurrent.futures import ThreadPoolExecutor

import pyotp
import pytest
from argon2 import PasswordHasher

from auth.exceptions import (
    AccountBannedError,
    AccountDisabledError,
    AccountNotVerifiedError,
    AccountSuspendedError,
    CurrentPasswordInvalidError,
    EmailAlreadyExistsError,
    InvalidCredentialsError,
    InvalidRecoveryCodeError,
    InvalidTokenError,
    InvalidTotpCodeError,
    InvalidTwoFactorTicketError,
    PasswordLoginDisabledError,
    RateLimitedError,
    ResetTokenInvalidError,
    SessionExpiredError,
    TermsNotAcceptedError,
    UserNotFoundError,
    ValidationError,
    WeakPasswordError,
)
from auth.passwords import verify_password
from auth.security_logger import SecurityEvent
from auth.types import AccountStatus, Authenticated, AwaitingSecondFactor, Role
from clients.email_client import EmailGatewayError
from tests.fakes import STRONG_PASSWORD, logged_events, next_totp

NEW_PASSWORD = "Another-Passw0rd?"


class TestPasswordLogin:
    """Email + password without a second factor."""

    def test_success_creates_session(self, auth_service, make_user, device, session_db):
        user = make_user()

        result = auth_service.login("user@example.com", STRONG_PASSWORD, device)

        assert isinstance(result, Authenticated)
        assert result.user.id == user.id
        assert result.user.last_login_at is not None
        assert result.session.id in session_db.rows

    def test_success_logged(self, auth_service, make_user, device, security_logger):
        make_user()
        auth_service.login("user@example.com", STRONG_PASSWORD, device)
        assert logged_events(security_logger) == [SecurityEvent.LOGIN_SUCCESS]

    def test_email_case_and_whitespace_ignored(self, auth_service, make_user, device):
        make_user()
        result = auth_service.login("  USER@Example.com ", STRONG_PASSWORD, device)
        assert isinstance(result, Authenticated)

    def test_unknown_email_and_wrong_password_identical(self, auth_service, make_user, device):
        """Same class, same message: no account enumeration."""
        make_user()

        with pytest.raises(InvalidCredentialsError) as unknown:
            auth_service.login("nobody@example.com", STRONG_PASSWORD, device)
        with pytest.raises(InvalidCredentialsError) as wrong:
            auth_service.login("user@example.com", "Wrong-Passw0rd!", device)

        assert unknown.value.message == wrong.value.message
        assert unknown.value.code == wrong.value.code

    def test_passwordless_account_rejected(self, auth_service, make_user, device):
        make_user(password=None)
        with pytest.raises(InvalidCredentialsError):
            auth_service.login("user@example.com", STRONG_PASSWORD, device)

    def test_wrong_password_on_gated_account_is_invalid_credentials(self, auth_service, make_user, device):
        """Account state is only revealed after the password checks out."""
        make_user(status=AccountStatus.DISABLED)
        with pytest.raises(InvalidCredentialsError):
            auth_service.login("user@example.com", "Wrong-Passw0rd!", device)

    @pytest.mark.parametrize("overrides, error", [
        ({"status": AccountStatus.PENDING_VERIFICATION}, AccountNotVerifiedError),
        ({"status": AccountStatus.DISABLED}, AccountDisabledError),
        ({"role": Role.SUSPENDED}, AccountSuspendedError),
        ({"role": Role.BANNED}, AccountBannedError),
    ])
    def test_account_gates(self, auth_service, make_user, device, security_logger, session_db, overrides, error):
        make_user(**overrides)

        with pytest.raises(error):
            auth_service.login("user@example.com", STRONG_PASSWORD, device)

        assert session_db.rows == {}
        assert logged_events(security_logger) == [SecurityEvent.LOGIN_BLOCKED]

    def test_outdated_hash_upgraded(self, auth_service, auth_db, device):
        weak = PasswordHasher(time_cost=1, memory_cost=8, parallelism=1).hash(STRONG_PASSWORD)
        user = auth_db.add_user("user@example.com", weak)

        auth_service.login("user@example.com", STRONG_PASSWORD, device)

        upgraded = auth_db.get_user_by_id(user.id).password_hash
        assert upgraded != weak
        assert verify_password(upgraded, STRONG_PASSWORD)


class TestLoginRateLimit:
    def test_blocks_after_limit_even_with_right_password(self, auth_service, make_user, device, config):
        make_user()
        for _ in range(config.login_rate_limit_attempts):
            with pytest.raises(InvalidCredentialsError):
                auth_service.login("user@example.com", "Wrong-Passw0rd!", device)

        with pytest.raises(RateLimitedError):
            auth_service.login("user@example.com", STRONG_PASSWORD, device)

    def test_success_resets_counter(self, auth_service, make_user, device, config):
        make_user()
        for _ in range(config.login_rate_limit_attempts - 1):
            with pytest.raises(InvalidCredentialsError):
                auth_service.login("user@example.com", "Wrong-Passw0rd!", device)
        auth_service.login("user@example.com", STRONG_PASSWORD, device)

        for _ in range(config.login_rate_limit_attempts - 1):
            with pytest.raises(InvalidCredentialsError):
                auth_service.login("user@example.com", "Wrong-Passw0rd!", device)

    def test_unknown_emails_limited_too(self, auth_service, device, config, security_logger):
        for _ in range(config.login_rate_limit_attempts):
            with pytest.raises(InvalidCredentialsError):
                auth_service.login("ghost@example.com", "x", device)

        with pytest.raises(RateLimitedError):
            auth_service.login("ghost@example.com", "x", device)
        assert logged_events(security_logger)[-1] == SecurityEvent.RATE_LIMITED


class TestTwoFactorLogin:
    """Password login that stops at a ticket, then the second factor."""

    @pytest.fixture
    def user(self, make_user):
        return make_user()

    @pytest.fixture
    def factors(self, user, enable_two_factor):
        return enable_two_factor(user)

    @pytest.fixture
    def pending(self, auth_service, user, factors, device):
        return auth_service.login("user@example.com", STRONG_PASSWORD, device)

    def test_password_step_returns_ticket_not_session(self, pending, session_db):
        assert isinstance(pending, AwaitingSecondFactor)
        assert pending.ticket
        assert pending.methods.totp is True
        assert pending.methods.recovery is True
        assert session_db.rows == {}

    def test_totp_completes_login(self, auth_service, pending, factors, device, security_logger, user):
        secret, _ = factors

        result = auth_service.complete_two_factor(pending.ticket, "totp", next_totp(secret), device)

        assert isinstance(result, Authenticated)
        assert result.user.id == user.id
        assert logged_events(security_logger)[-1] == SecurityEvent.LOGIN_SUCCESS_2FA

    def test_ticket_single_use(self, auth_service, pending, factors, device):
        secret, codes = factors
        auth_service.complete_two_factor(pending.ticket, "totp", next_totp(secret), device)

        with pytest.raises(InvalidTwoFactorTicketError):
            auth_service.complete_two_factor(pending.ticket, "recovery", codes[0], device)

    def test_recovery_code_completes_login(self, auth_service, pending, factors, device, security_logger):
        _, codes = factors

        result = auth_service.complete_two_factor(pending.ticket, "recovery", codes[0], device)

        assert isinstance(result, Authenticated)
        assert SecurityEvent.RECOVERY_CODE_USED in logged_events(security_logger)

    def test_wrong_code_keeps_ticket_usable(self, auth_service, pending, factors, device):
        secret, _ = factors

        with pytest.raises(InvalidTotpCodeError):
            auth_service.complete_two_factor(pending.ticket, "totp", "000000", device)

        result = auth_service.complete_two_factor(pending.ticket, "totp", next_totp(secret), device)
        assert isinstance(result, Authenticated)

    def test_wrong_recovery_code(self, auth_service, pending, factors, device):
        with pytest.raises(InvalidRecoveryCodeError):
            auth_service.complete_two_factor(pending.ticket, "recovery", "AAAA-AAAA-AAAA-AAAA", device)

    def test_lockout_after_max_failures(self, auth_service, pending, factors, device, config, security_logger):
        """The failure that reaches the limit locks; a correct code afterwards is refused."""
        secret, _ = factors
        for _ in range(config.two_factor_max_failed_attempts - 1):
            with pytest.raises(InvalidTotpCodeError):
                auth_service.complete_two_factor(pending.ticket, "totp", "000000", device)

        with pytest.raises(RateLimitedError):
            auth_service.complete_two_factor(pending.ticket, "totp", "000000", device)
        with pytest.raises(RateLimitedError):
            auth_service.complete_two_factor(pending.ticket, "totp", next_totp(secret), device)

        assert SecurityEvent.TWO_FACTOR_LOCKED in logged_events(security_logger)

    def test_fresh_logins_do_not_refill_code_guesses(self, auth_service, factors, device, config, security_logger):
        """Round after round of right password then wrong codes: guesses stay bounded."""
        for _ in range(20):
            try:
                pending = auth_service.login("user@example.com", STRONG_PASSWORD, device)
            except RateLimitedError:
                continue
            for _ in range(3):
                with pytest.raises((InvalidTotpCodeError, RateLimitedError)):
                    auth_service.complete_two_factor(pending.ticket, "totp", "000000", device)

        guesses = logged_events(security_logger).count(SecurityEvent.TWO_FACTOR_FAILED)
        assert guesses <= config.two_factor_max_failed_attempts_per_user
        assert guesses <= config.login_rate_limit_attempts * config.two_factor_max_failed_attempts

    def test_user_locked_across_tickets(self, auth_service, factors, device, config):
        _, codes = factors
        limit = config.two_factor_max_failed_attempts_per_user
        for attempt in range(limit):
            # Two failures per ticket stays under the per-ticket limit.
            if attempt % 2 == 0:
                ticket = auth_service.login("user@example.com", STRONG_PASSWORD, device).ticket
            expected = RateLimitedError if attempt == limit - 1 else InvalidRecoveryCodeError
            with pytest.raises(expected):
                auth_service.complete_two_factor(ticket, "recovery", "AAAA-AAAA-AAAA-AAAA", device)

        fresh = auth_service.login("user@example.com", STRONG_PASSWORD, device)
        with pytest.raises(RateLimitedError):
            auth_service.complete_two_factor(fresh.ticket, "recovery", codes[0], device)

    def test_password_step_alone_does_not_clear_login_counter(self, auth_service, factors, device, config):
        for _ in range(config.login_rate_limit_attempts):
            auth_service.login("user@example.com", STRONG_PASSWORD, device)

        with pytest.raises(RateLimitedError):
            auth_service.login("user@example.com", STRONG_PASSWORD, device)

    def test_completed_login_clears_login_counter(self, auth_service, factors, device, config):
        _, codes = factors
        for _ in range(config.login_rate_limit_attempts - 1):
            pending = auth_service.login("user@example.com", STRONG_PASSWORD, device)
        auth_service.complete_two_factor(pending.ticket, "recovery", codes[0], device)

        for _ in range(config.login_rate_limit_attempts - 1):
            auth_service.login("user@example.com", STRONG_PASSWORD, device)

    def test_concurrent_redemptions_spend_one_code(self, auth_service, pending, factors, device, two_factor_db, user):
        """Requests racing on one ticket: one login, the rest refused before any code is checked."""
        _, codes = factors

        def redeem(code):
            try:
                return auth_service.complete_two_factor(pending.ticket, "recovery", code, device)
            except InvalidTwoFactorTicketError:
                return None

        with ThreadPoolExecutor(max_workers=4) as pool:
            results = list(pool.map(redeem, codes[:4]))

        assert len([r for r in results if r is not None]) == 1
        assert two_factor_db.count_unused_recovery_codes(user.id) == len(codes) - 1


    def test_unknown_mode(self, auth_service, pending, device):
        with pytest.raises(ValidationError):
            auth_service.complete_two_factor(pending.ticket, "sms", "123456", device)

    def test_new_login_supersedes_ticket(self, auth_service, pending, factors, device):
        secret, _ = factors
        auth_service.login("user@example.com", STRONG_PASSWORD, device)

        with pytest.raises(InvalidTwoFactorTicketError):
            auth_service.complete_two_factor(pending.ticket, "totp", next_totp(secret), device)

    def test_account_disabled_mid_login(self, auth_service, auth_db, pending, factors, device, user):
        _, codes = factors
        auth_db.set_status(user.id, AccountStatus.DISABLED)

        with pytest.raises(AccountDisabledError):
            auth_service.complete_two_factor(pending.ticket, "recovery", codes[0], device)

    def test_totp_confirm_step_cannot_be_replayed(self, auth_service, pending, factors, device):
        """The code that confirmed setup was recorded as used."""
        secret, _ = factors
        with pytest.raises(InvalidTotpCodeError):
            auth_service.complete_two_factor(pending.ticket, "totp", pyotp.TOTP(secret).now(), device)


class TestRegistration:
    def test_creates_pending_user_and_sends_activation(self, auth_service, device, email_client, config):
        user = auth_service.register("New@Example.com", STRONG_PASSWORD, True, device)

        assert user.email == "new@example.com"
        assert user.status == AccountStatus.PENDING_VERIFICATION
        assert user.terms_version == config.terms_version
        kwargs = email_client.send_activation.call_args.kwargs
        assert kwargs["email"] == "new@example.com"
        assert kwargs["app_url"] == config.app_base_url
        assert len(kwargs["token"]) == 64

    def test_terms_required(self, auth_service, device):
        with pytest.raises(TermsNotAcceptedError):
            auth_service.register("new@example.com", STRONG_PASSWORD, False, device)

    def test_weak_password(self, auth_service, device, auth_db):
        with pytest.raises(WeakPasswordError) as exc_info:
            auth_service.register("new@example.com", "short", True, device)
        assert exc_info.value.errors
        assert auth_db.users == {}

    def test_duplicate_email(self, auth_service, make_user, device):
        make_user(email="taken@example.com")
        with pytest.raises(EmailAlreadyExistsError):
            auth_service.register("TAKEN@example.com", STRONG_PASSWORD, True, device)

    def test_gateway_failure_surfaces(self, auth_service, device, email_client):
        email_client.send_activation.side_effect = EmailGatewayError("down")
        with pytest.raises(EmailGatewayError):
            auth_service.register("new@example.com", STRONG_PASSWORD, True, device)


class TestActivation:
    def _register(self, auth_service, device, email_client) -> str:
        auth_service.register("new@example.com", STRONG_PASSWORD, True, device)
        return email_client.send_activation.call_args.kwargs["token"]

    def test_activation_enables_login(self, auth_service, device, email_client):
        token = self._register(auth_service, device, email_client)

        user = auth_service.activate(token, device)

        assert user.status == AccountStatus.ACTIVE
        assert isinstance(auth_service.login("new@example.com", STRONG_PASSWORD, device), Authenticated)

    def test_token_single_use(self, auth_service, device, email_client, security_logger):
        token = self._register(auth_service, device, email_client)
        auth_service.activate(token, device)

        with pytest.raises(InvalidTokenError):
            auth_service.activate(token, device)
        assert logged_events(security_logger)[-1] == SecurityEvent.ACTIVATION_FAILED

    def test_resend_supersedes_previous_token(self, auth_service, device, email_client):
        first = self._register(auth_service, device, email_client)
        auth_service.resend_activation("new@example.com", device)
        second = email_client.send_activation.call_args.kwargs["token"]

        with pytest.raises(InvalidTokenError):
            auth_service.activate(first, device)
        auth_service.activate(second, device)

    def test_resend_unknown_email_silent(self, auth_service, device, email_client):
        auth_service.resend_activation("nobody@example.com", device)
        email_client.send_activation.assert_not_called()

    def test_resend_active_account_silent(self, auth_service, make_user, device, email_client):
        make_user()
        auth_service.resend_activation("user@example.com", device)
        email_client.send_activation.assert_not_called()

    def test_resend_swallows_gateway_failure(self, auth_service, make_user, device, email_client):
        make_user(status=AccountStatus.PENDING_VERIFICATION)
        email_client.send_activation.side_effect = EmailGatewayError("down")

        auth_service.resend_activation("user@example.com", device)

    def test_resend_rate_limited(self, auth_service, device, config):
        for _ in range(config.password_reset_rate_limit_attempts):
            auth_service.resend_activation("nobody@example.com", device)
        with pytest.raises(RateLimitedError):
            auth_service.resend_activation("nobody@example.com", device)


class TestPasswordReset:
    def _request(self, auth_service, device, email_client) -> str:
        auth_service.request_password_reset("user@example.com", device)
        return email_client.send_password_reset.call_args.kwargs["token"]

    def test_unknown_email_looks_the_same(self, auth_service, device, email_client, security_logger):
        assert auth_service.request_password_reset("nobody@example.com", device) is None

        email_client.send_password_reset.assert_not_called()
        call = security_logger.log.call_args
        assert call.args[0] == SecurityEvent.PASSWORD_RESET_REQUESTED
        assert call.kwargs["details"] == {"account_found": False}

    def test_disabled_account_gets_no_email(self, auth_service, make_user, device, email_client):
        make_user(status=AccountStatus.DISABLED)
        auth_service.request_password_reset("user@example.com", device)
        email_client.send_password_reset.assert_not_called()

    def test_gateway_failure_hidden(self, auth_service, make_user, device, email_client):
        make_user()
        email_client.send_password_reset.side_effect = EmailGatewayError("down")

        assert auth_service.request_password_reset("user@example.com", device) is None

    def test_rate_limited_for_unknown_email_too(self, auth_service, device, config):
        for _ in range(config.password_reset_rate_limit_attempts):
            auth_service.request_password_reset("nobody@example.com", device)
        with pytest.raises(RateLimitedError):
            auth_service.request_password_reset("nobody@example.com", device)

    def test_reset_changes_password_and_revokes_sessions(
        self, auth_service, make_user, device, email_client, session_manager
    ):
        user = make_user()
        sessions = [session_manager.create(user.id, device) for _ in range(2)]
        token = self._request(auth_service, device, email_client)

        auth_service.validate_password_reset_token(token)
        revoked = auth_service.reset_password(token, NEW_PASSWORD, device)

        assert revoked == 2
        for session in sessions:
            with pytest.raises(SessionExpiredError):
                session_manager.validate(session.token)
        with pytest.raises(InvalidCredentialsError):
            auth_service.login("user@example.com", STRONG_PASSWORD, device)
        assert isinstance(auth_service.login("user@example.com", NEW_PASSWORD, device), Authenticated)

    def test_token_single_use(self, auth_service, make_user, device, email_client, security_logger):
        make_user()
        token = self._request(auth_service, device, email_client)
        auth_service.reset_password(token, NEW_PASSWORD, device)

        with pytest.raises(ResetTokenInvalidError):
            auth_service.reset_password(token, "Third-Passw0rd!", device)
        assert logged_events(security_logger)[-1] == SecurityEvent.PASSWORD_RESET_FAILED

    def test_weak_password_keeps_token(self, auth_service, make_user, device, email_client):
        make_user()
        token = self._request(auth_service, device, email_client)

        with pytest.raises(WeakPasswordError):
            auth_service.reset_password(token, "weak", device)
        auth_service.validate_password_reset_token(token)

    def test_reset_clears_login_lockout(self, auth_service, make_user, device, email_client, config):
        make_user()
        for _ in range(config.login_rate_limit_attempts):
            with pytest.raises(InvalidCredentialsError):
                auth_service.login("user@example.com", "Wrong-Passw0rd!", device)
        token = self._request(auth_service, device, email_client)

        auth_service.reset_password(token, NEW_PASSWORD, device)

        assert isinstance(auth_service.login("user@example.com", NEW_PASSWORD, device), Authenticated)


class TestChangePassword:
    @pytest.fixture
    def principal(self, auth_service, make_user, session_manager, device):
        user = make_user()
        return auth_service.resolve_principal(session_manager.create(user.id, device).token)

    def test_changes_password_and_revokes_others(self, auth_service, principal, session_manager, auth_db, device, security_logger):
        other = session_manager.create(principal.user.id, device)

        revoked = auth_service.change_password(principal, STRONG_PASSWORD, NEW_PASSWORD, device)

        assert revoked == 1
        assert verify_password(auth_db.get_user_by_id(principal.user.id).password_hash, NEW_PASSWORD)
        session_manager.validate(principal.session.token)
        with pytest.raises(SessionExpiredError):
            session_manager.validate(other.token)
        assert logged_events(security_logger) == [SecurityEvent.PASSWORD_CHANGED]

    def test_wrong_current_password(self, auth_service, principal, auth_db, device, security_logger):
        with pytest.raises(CurrentPasswordInvalidError):
            auth_service.change_password(principal, "Wrong-Passw0rd!", NEW_PASSWORD, device)

        assert verify_password(auth_db.get_user_by_id(principal.user.id).password_hash, STRONG_PASSWORD)
        assert logged_events(security_logger) == [SecurityEvent.PASSWORD_CHANGE_FAILED]

    def test_wrong_current_passwords_rate_limited(self, auth_service, principal, device, config):
        for _ in range(config.login_rate_limit_attempts):
            with pytest.raises(CurrentPasswordInvalidError):
                auth_service.change_password(principal, "Wrong-Passw0rd!", NEW_PASSWORD, device)

        with pytest.raises(RateLimitedError):
            auth_service.change_password(principal, STRONG_PASSWORD, NEW_PASSWORD, device)

    def test_weak_new_password(self, auth_service, principal, session_manager, device):
        other = session_manager.create(principal.user.id, device)

        with pytest.raises(WeakPasswordError):
            auth_service.change_password(principal, STRONG_PASSWORD, "weak", device)

        session_manager.validate(other.token)

    def test_passwordless_account(self, auth_service, make_user, session_manager, device):
        user = make_user(email="oauth@example.com", password=None)
        principal = auth_service.resolve_principal(session_manager.create(user.id, device).token)

        with pytest.raises(PasswordLoginDisabledError):
            auth_service.change_password(principal, "", NEW_PASSWORD, device)

    def test_new_password_signs_in(self, auth_service, principal, device):
        auth_service.change_password(principal, STRONG_PASSWORD, NEW_PASSWORD, device)

        with pytest.raises(InvalidCredentialsError):
            auth_service.login("user@example.com", STRONG_PASSWORD, device)
        assert isinstance(auth_service.login("user@example.com", NEW_PASSWORD, device), Authenticated)


class TestPrincipalAndLogout:
    def test_resolve_principal(self, auth_service, make_user, session_manager, device):
        user = make_user(role=Role.ADMIN)
        session = session_manager.create(user.id, device)

        principal = auth_service.resolve_principal(session.token)

        assert principal.user.id == user.id
        assert principal.session.id == session.id
        assert principal.has("ADMIN_SESSIONS_WRITE")

    def test_disabled_account_loses_session(self, auth_service, auth_db, make_user, session_manager, device):
        user = make_user()
        session = session_manager.create(user.id, device)
        auth_db.set_status(user.id, AccountStatus.DISABLED)

        with pytest.raises(SessionExpiredError):
            auth_service.resolve_principal(session.token)

    def test_deleted_account_loses_session(self, auth_service, auth_db, make_user, session_manager, device):
        user = make_user()
        session = session_manager.create(user.id, device)
        auth_db.soft_delete_user(user.id, "spam")

        with pytest.raises(SessionExpiredError):
            auth_service.resolve_principal(session.token)

    def test_logout_revokes_only_this_session(self, auth_service, make_user, session_manager, device, security_logger):
        user = make_user()
        mine = session_manager.create(user.id, device)
        other = session_manager.create(user.id, device)

        auth_service.logout(mine, device)

        with pytest.raises(SessionExpiredError):
            session_manager.validate(mine.token)
        session_manager.validate(other.token)
        assert logged_events(security_logger) == [SecurityEvent.SESSION_REVOKED]

    def test_get_user_unknown(self, auth_service):
        with pytest.raises(UserNotFoundError):
            auth_service.get_user(999)

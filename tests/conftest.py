"""Shared test fixtures for the auth service test suite."""

import base64
import os
from pathlib import Path
from unittest.mock import Mock

import pytest
from dotenv import load_dotenv

# Load .env file BEFORE any other imports that might use env vars
# override=True ensures .env takes precedence over shell env vars
load_dotenv(Path(__file__).parent.parent / ".env", override=True)

# Reset vault client singleton to pick up env vars
import clients.vault_client as vault_module
vault_module._vault_client_instance = None
vault_module._secret_cache.clear()

from auth.config import AuthConfig
from auth.crypto import SecretBox
from auth.types import DeviceInfo
from tests.fakes import STRONG_PASSWORD

SCHEMA_PATH = Path(__file__).parent.parent / "schema" / "auth.sql"

# A fixed key keeps encrypted fixtures reproducible across a run
TEST_ENCRYPTION_KEY = base64.b64encode(b"k" * 32).decode("ascii")


# =============================================================================
# PLAIN FIXTURES
# =============================================================================


@pytest.fixture
def config():
    """Test config: insecure cookie so TestClient (http) sends it back."""
    return AuthConfig(
        session_cookie_secure=False,
        app_base_url="https://test.example.com",
    )


@pytest.fixture
def secret_box():
    return SecretBox(TEST_ENCRYPTION_KEY)


@pytest.fixture
def device():
    return DeviceInfo(ip_address="192.168.1.1", user_agent="TestBrowser/1.0 (Macintosh)")


# =============================================================================
# INFRASTRUCTURE FIXTURES (integration tests; skipped when unavailable)
# =============================================================================


def _infra_configured() -> bool:
    return bool(os.getenv("VAULT_ADDR"))


@pytest.fixture(scope="session")
def db():
    """Session-scoped PostgresClient with the auth schema applied."""
    if not _infra_configured():
        pytest.skip("VAULT_ADDR not set - no database for integration tests")

    import psycopg2
    from clients.postgres_client import PostgresClient
    from clients.vault_client import get_database_url

    client = PostgresClient(get_database_url())
    try:
        client.execute(SCHEMA_PATH.read_text())
    except psycopg2.OperationalError as e:
        pytest.skip(f"Database unreachable: {e}")
    yield client
    client.close()


@pytest.fixture
def clean_db(db):
    """Empty every auth table before the test."""
    db.execute("""
        TRUNCATE
            users, user_oauth_identities, activation_tokens, password_reset_tokens,
            auth_sessions, user_two_factor, user_two_factor_recovery,
            security_events, audit_log
        RESTART IDENTITY CASCADE
    """)
    yield db


@pytest.fixture(scope="session")
def valkey():
    """Session-scoped ValkeyClient."""
    if not _infra_configured():
        pytest.skip("VAULT_ADDR not set - no Valkey for integration tests")

    import redis
    from clients.valkey_client import ValkeyClient
    from clients.vault_client import get_valkey_url

    try:
        client = ValkeyClient(get_valkey_url())
    except redis.ConnectionError as e:
        pytest.skip(f"Valkey unreachable: {e}")
    yield client
    client.close()


# =============================================================================
# SERVICE FIXTURES (in-memory storage, real auth logic)
# =============================================================================


@pytest.fixture
def fake_valkey():
    from tests.fakes import FakeValkey
    return FakeValkey()


@pytest.fixture
def auth_db():
    from tests.fakes import FakeAuthDatabase
    return FakeAuthDatabase()


@pytest.fixture
def session_db():
    from tests.fakes import FakeSessionDatabase
    return FakeSessionDatabase()


@pytest.fixture
def two_factor_db():
    from tests.fakes import FakeTwoFactorDatabase
    return FakeTwoFactorDatabase()


@pytest.fixture
def security_logger():
    """Mock security logger - events asserted via call args."""
    from auth.security_logger import SecurityLogger
    return Mock(spec=SecurityLogger)


@pytest.fixture
def email_client():
    """Mock email client - no actual emails sent in tests."""
    from clients.email_client import EmailGatewayClient
    mock = Mock(spec=EmailGatewayClient)
    mock.send_activation.return_value = None
    mock.send_password_reset.return_value = None
    return mock


@pytest.fixture
def audit():
    from core.audit import AuditLogger
    return Mock(spec=AuditLogger)


@pytest.fixture
def session_manager(session_db, config):
    from auth.session import SessionManager
    return SessionManager(session_db, config)


@pytest.fixture
def token_issuer(auth_db, config):
    from auth.tokens import TokenIssuer
    return TokenIssuer(auth_db, config)


@pytest.fixture
def tickets(fake_valkey, config):
    from auth.tickets import TicketStore
    return TicketStore(fake_valkey, config)


@pytest.fixture
def second_factor(two_factor_db, secret_box, config):
    from auth.two_factor import SecondFactorVerifier
    return SecondFactorVerifier(two_factor_db, secret_box, config)


@pytest.fixture
def auth_service(
    config, auth_db, session_manager, token_issuer, tickets, second_factor,
    fake_valkey, email_client, security_logger,
):
    from auth.service import AuthService
    return AuthService(
        config=config,
        auth_db=auth_db,
        session_manager=session_manager,
        token_issuer=token_issuer,
        tickets=tickets,
        second_factor=second_factor,
        valkey=fake_valkey,
        email_client=email_client,
        security_logger=security_logger,
    )


@pytest.fixture
def oauth_resolver(auth_db, session_manager, tickets, security_logger):
    from auth.oauth import OAuthLinkingResolver
    return OAuthLinkingResolver(auth_db, session_manager, tickets, security_logger)


@pytest.fixture
def admin_gateway(auth_db, session_manager, audit):
    from auth.admin import AdminSessionGateway
    return AdminSessionGateway(auth_db, session_manager, audit, retry_delay_seconds=0)


# =============================================================================
# USER FIXTURES
# =============================================================================


@pytest.fixture
def make_user(auth_db):
    """Factory: seed an active user with a real Argon2 password hash."""
    from auth.passwords import hash_password
    from auth.types import AccountStatus, Role

    def _make(
        email: str = "user@example.com",
        password: str | None = STRONG_PASSWORD,
        role: Role = Role.STANDARD_USER,
        status: AccountStatus = AccountStatus.ACTIVE,
        **extra,
    ):
        return auth_db.add_user(
            email,
            hash_password(password) if password else None,
            role=role,
            status=status,
            **extra,
        )

    return _make


@pytest.fixture
def enable_two_factor(second_factor):
    """Factory: run the setup protocol for a user. Returns (secret, recovery_codes)."""
    import pyotp

    def _enable(user):
        setup = second_factor.start_setup(user.id, user.email)
        codes = second_factor.confirm_setup(user.id, pyotp.TOTP(setup.secret).now())
        return setup.secret, codes

    return _enable


# =============================================================================
# HTTP FIXTURES
# =============================================================================


@pytest.fixture
def app(config, auth_service, oauth_resolver, session_manager, second_factor, security_logger, admin_gateway):
    """Full FastAPI app over the in-memory services. No maintenance scheduler."""
    from main import build_app
    return build_app(
        config=config,
        auth_service=auth_service,
        oauth_resolver=oauth_resolver,
        session_manager=session_manager,
        second_factor=second_factor,
        security_logger=security_logger,
        admin_gateway=admin_gateway,
        health_checks={"postgres": lambda: True, "valkey": lambda: True},
    )


@pytest.fixture
def client(app):
    """TestClient; keeps the session cookie between requests like a browser."""
    from starlette.testclient import TestClient
    return TestClient(app)


@pytest.fixture
def login_as(client, make_user):
    """Factory: seed a user and sign the client in as them. Returns the user."""
    def _login(email: str = "user@example.com", **user_kwargs):
        user = make_user(email=email, **user_kwargs)
        response = client.post("/auth/login", json={"email": email, "password": STRONG_PASSWORD})
        assert response.status_code == 200, response.text
        return user
    return _login

"""
Application assembly for the auth service.

Run with: uvicorn main:create_app --factory
"""

import logging
from contextlib import asynccontextmanager
from typing import Callable

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from api.base import ErrorCodes, error_response, success_response
from api.errors import register_error_handlers
from api.middleware import AdminModeMiddleware, RequestIDMiddleware
from auth.admin import AdminSessionGateway
from auth.admin_api import create_admin_router
from auth.api import create_auth_router
from auth.config import AuthConfig
from auth.crypto import SecretBox
from auth.database import AuthDatabase
from auth.oauth import OAuthLinkingResolver
from auth.security_api import create_security_router
from auth.security_logger import SecurityLogger
from auth.security_middleware import AuthMiddleware
from auth.service import AuthService
from auth.session import SessionManager
from auth.session_db import SessionDatabase
from auth.tickets import TicketStore
from auth.tokens import TokenIssuer
from auth.two_factor import SecondFactorVerifier
from auth.two_factor_db import TwoFactorDatabase
from clients.email_client import EmailGatewayClient
from clients.postgres_client import PostgresClient
from clients.valkey_client import ValkeyClient
from clients.vault_client import get_database_url, get_email_config, get_two_factor_key, get_valkey_url
from core.audit import AuditLogger
from core.maintenance import MaintenanceScheduler

logger = logging.getLogger(__name__)


def create_app(
    config: AuthConfig | None = None,
    postgres: PostgresClient | None = None,
    valkey: ValkeyClient | None = None,
    email_client: EmailGatewayClient | None = None,
    secret_box: SecretBox | None = None,
    run_maintenance: bool = True,
) -> FastAPI:
    """Wire clients, services, middleware and routers into a FastAPI app.

    Any client not passed in is built from Vault secrets.
    """
    config = config or AuthConfig()
    postgres = postgres or PostgresClient(get_database_url())
    valkey = valkey or ValkeyClient(get_valkey_url())
    email_client = email_client or EmailGatewayClient(**get_email_config())
    secret_box = secret_box or SecretBox(get_two_factor_key())

    auth_db = AuthDatabase(postgres)
    security_logger = SecurityLogger(postgres)
    session_manager = SessionManager(SessionDatabase(postgres), config)
    token_issuer = TokenIssuer(auth_db, config)
    tickets = TicketStore(valkey, config)
    second_factor = SecondFactorVerifier(TwoFactorDatabase(postgres), secret_box, config)

    auth_service = AuthService(
        config=config,
        auth_db=auth_db,
        session_manager=session_manager,
        token_issuer=token_issuer,
        tickets=tickets,
        second_factor=second_factor,
        valkey=valkey,
        email_client=email_client,
        security_logger=security_logger,
    )
    oauth_resolver = OAuthLinkingResolver(auth_db, session_manager, tickets, security_logger)
    admin_gateway = AdminSessionGateway(auth_db, session_manager, AuditLogger(postgres))
    maintenance = MaintenanceScheduler(session_manager, token_issuer, security_logger, config)

    return build_app(
        config=config,
        auth_service=auth_service,
        oauth_resolver=oauth_resolver,
        session_manager=session_manager,
        second_factor=second_factor,
        security_logger=security_logger,
        admin_gateway=admin_gateway,
        health_checks={"postgres": postgres.ping, "valkey": valkey.ping},
        maintenance=maintenance if run_maintenance else None,
    )


def build_app(
    config: AuthConfig,
    auth_service: AuthService,
    oauth_resolver: OAuthLinkingResolver,
    session_manager: SessionManager,
    second_factor: SecondFactorVerifier,
    security_logger: SecurityLogger,
    admin_gateway: AdminSessionGateway,
    health_checks: dict[str, Callable[[], bool]] | None = None,
    maintenance: MaintenanceScheduler | None = None,
) -> FastAPI:
    """Assemble middleware, error handlers and routers around already-built services."""
    checks = health_checks or {}

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if maintenance is not None:
            maintenance.start()
        yield
        if maintenance is not None:
            maintenance.stop()

    app = FastAPI(title=f"{config.app_name} Auth", lifespan=lifespan)

    # Last added runs first: request id, then admin mode, then auth
    app.add_middleware(AuthMiddleware, auth_service=auth_service, cookie_name=config.session_cookie_name)
    app.add_middleware(AdminModeMiddleware)
    app.add_middleware(RequestIDMiddleware)

    register_error_handlers(app)

    app.include_router(create_auth_router(auth_service, oauth_resolver, config))
    app.include_router(create_security_router(auth_service, session_manager, second_factor, security_logger, config))
    app.include_router(create_admin_router(admin_gateway))

    @app.get("/health")
    def health():
        results = {}
        for name, check in checks.items():
            try:
                results[name] = bool(check())
            except Exception as e:
                logger.warning(f"Health check {name} failed: {e}")
                results[name] = False
        if all(results.values()):
            return success_response(results)
        return JSONResponse(
            status_code=503,
            content=error_response(
                ErrorCodes.SERVICE_UNAVAILABLE, "A dependency is unavailable", data=results
            ).model_dump(mode="json"),
        )

    return app

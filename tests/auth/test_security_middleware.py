"""Tests for AuthMiddleware - session resolution into request.state.principal."""

from unittest.mock import Mock

import pytest
from fastapi import Depends, FastAPI, Request
from fastapi.testclient import TestClient

from api.errors import register_error_handlers
from auth.exceptions import SessionExpiredError
from auth.security_middleware import AuthMiddleware, current_principal, extract_session_token
from auth.service import AuthService
from auth.types import Principal


@pytest.fixture
def principal():
    """Principal stand-in; routes below only read the user id."""
    return Mock(spec=Principal, user=Mock(id=7), session=Mock(id=3))


@pytest.fixture
def mock_auth_service(principal):
    def resolve(token):
        if token == "good-token":
            return principal
        raise SessionExpiredError()

    service = Mock(spec=AuthService)
    service.resolve_principal.side_effect = resolve
    return service


@pytest.fixture
def app_with_middleware(mock_auth_service):
    """FastAPI app with auth middleware."""
    app = FastAPI()
    app.add_middleware(AuthMiddleware, auth_service=mock_auth_service)
    register_error_handlers(app)

    @app.get("/user/security/sessions")
    def protected_route(principal: Principal = Depends(current_principal)):
        return {"user_id": principal.user.id}

    @app.get("/auth/session")
    def public_route(request: Request):
        principal = request.state.principal
        return {"user_id": principal.user.id if principal else None}

    @app.get("/health")
    def health():
        return {"status": "ok"}

    return app


@pytest.fixture
def client(app_with_middleware):
    return TestClient(app_with_middleware)


class TestExtractSessionToken:
    def _request(self, headers=None, cookies=None):
        request = Mock(spec=Request)
        request.cookies = cookies or {}
        request.headers = headers or {}
        return request

    def test_cookie(self):
        assert extract_session_token(self._request(cookies={"session_token": "abc"})) == "abc"

    def test_bearer(self):
        assert extract_session_token(self._request(headers={"Authorization": "Bearer abc"})) == "abc"

    def test_cookie_wins_over_bearer(self):
        request = self._request(headers={"Authorization": "Bearer header"}, cookies={"session_token": "cookie"})
        assert extract_session_token(request) == "cookie"

    @pytest.mark.parametrize("header", ["Basic abc", "Bearer ", "abc"])
    def test_other_schemes_ignored(self, header):
        assert extract_session_token(self._request(headers={"Authorization": header})) is None


class TestProtectedPaths:
    def test_no_token_rejected(self, client, mock_auth_service):
        response = client.get("/user/security/sessions")

        assert response.status_code == 401
        assert response.json()["code"] == "NOT_AUTHENTICATED"
        mock_auth_service.resolve_principal.assert_not_called()

    def test_invalid_token_rejected(self, client):
        response = client.get("/user/security/sessions", cookies={"session_token": "bad-token"})

        assert response.status_code == 401
        assert response.json()["code"] == "SESSION_EXPIRED"

    def test_valid_token_sets_principal(self, client):
        response = client.get("/user/security/sessions", headers={"Authorization": "Bearer good-token"})

        assert response.status_code == 200
        assert response.json() == {"user_id": 7}

    def test_valid_request_touches_session(self, client, mock_auth_service, principal):
        client.get("/user/security/sessions", cookies={"session_token": "good-token"})
        mock_auth_service.touch_session.assert_called_once_with(principal.session)


class TestPublicPaths:
    def test_anonymous_allowed(self, client):
        assert client.get("/auth/session").json() == {"user_id": None}

    def test_invalid_token_continues_anonymously(self, client, mock_auth_service):
        response = client.get("/auth/session", cookies={"session_token": "bad-token"})

        assert response.status_code == 200
        assert response.json() == {"user_id": None}
        mock_auth_service.touch_session.assert_not_called()

    def test_valid_token_still_resolved(self, client):
        response = client.get("/auth/session", cookies={"session_token": "good-token"})
        assert response.json() == {"user_id": 7}

    def test_health_public(self, client):
        assert client.get("/health").status_code == 200

"""Tests for RequestIDMiddleware and AdminModeMiddleware."""

import pytest
from uuid import UUID
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.testclient import TestClient

from api.middleware import AdminModeMiddleware, RequestIDMiddleware, mark_degraded


@pytest.fixture
def app():
    """Minimal FastAPI app with both middlewares, request id outermost."""
    app = FastAPI()
    app.add_middleware(AdminModeMiddleware)
    app.add_middleware(RequestIDMiddleware)

    @app.get("/test")
    async def test_endpoint(request: Request):
        return JSONResponse({"request_id": request.state.request_id})

    @app.get("/admin/users")
    async def admin_normal():
        return {"ok": True}

    @app.get("/admin/degraded")
    async def admin_degraded(request: Request):
        mark_degraded(request)
        return {"ok": True}

    @app.get("/admin/boom")
    async def admin_boom():
        raise RuntimeError("storage down")

    return app


@pytest.fixture
def client(app):
    return TestClient(app)


class TestRequestIDMiddleware:
    """Tests for RequestIDMiddleware."""

    def test_response_has_request_id_header(self, client):
        """Response includes X-Request-ID header."""
        response = client.get("/test")

        assert "X-Request-ID" in response.headers
        # Should be a valid UUID
        UUID(response.headers["X-Request-ID"])

    def test_request_state_has_request_id(self, client):
        """request.state.request_id is set and matches header."""
        response = client.get("/test")

        header_id = response.headers["X-Request-ID"]
        body_id = response.json()["request_id"]
        assert header_id == body_id

    def test_each_request_gets_unique_id(self, client):
        """Different requests get different IDs."""
        r1 = client.get("/test")
        r2 = client.get("/test")

        assert r1.headers["X-Request-ID"] != r2.headers["X-Request-ID"]


class TestAdminModeMiddleware:
    """Tests for the X-Admin-Mode tag on /admin responses."""

    def test_normal(self, client):
        response = client.get("/admin/users")
        assert response.headers["X-Admin-Mode"] == "normal"

    def test_route_flagged_degraded(self, client):
        response = client.get("/admin/degraded")

        assert response.status_code == 200
        assert response.headers["X-Admin-Mode"] == "degraded"

    def test_unhandled_error_is_degraded_envelope(self, client):
        """Server failures still carry the header and the error envelope."""
        response = client.get("/admin/boom")

        assert response.status_code == 500
        assert response.headers["X-Admin-Mode"] == "degraded"
        body = response.json()
        assert body["code"] == "INTERNAL_ERROR"
        assert body["meta"]["request_id"] == response.headers["X-Request-ID"]

    def test_non_admin_paths_untagged(self, client):
        assert "X-Admin-Mode" not in client.get("/test").headers

    def test_unknown_admin_path_still_tagged(self, client):
        response = client.get("/admin/nope")

        assert response.status_code == 404
        assert response.headers["X-Admin-Mode"] == "normal"

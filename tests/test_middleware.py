"""
Tests for reviewbot/core/middleware.py

Covers:
- CorrelationIdMiddleware: explicit header, GitHub delivery id, generated id
- RequestLoggingMiddleware: request logging, exceptions re-raised
- setup_middleware: only correlation and logging wrap the app
- Exception handlers: AppException and unexpected exceptions
"""
import logging
from unittest.mock import AsyncMock

import pytest
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse, PlainTextResponse
from starlette.routing import Route
from starlette.testclient import TestClient

from reviewbot.core.exceptions import (
    AppException,
    AuthFailure,
    ErrorCode,
    ValidationException,
)
from reviewbot.core.middleware import (
    CorrelationIdMiddleware,
    RequestLoggingMiddleware,
    app_exception_handler,
    generic_exception_handler,
    setup_middleware,
)


# ============================================================================
# Helpers
# ============================================================================


def _hello(request: Request) -> PlainTextResponse:
    return PlainTextResponse("ok")


def _webhook(request: Request) -> PlainTextResponse:
    return PlainTextResponse("webhook ok")


def _error(request: Request) -> PlainTextResponse:
    raise ValueError("handler blew up")


def _build_app(*, middlewares: list[tuple] | None = None) -> Starlette:
    app = Starlette(routes=[
        Route("/test", _hello),
        Route("/api/github/webhook", _webhook, methods=["GET", "POST"]),
        Route("/error", _error),
    ])
    for mw_class, kwargs in middlewares or []:
        app.add_middleware(mw_class, **kwargs)
    return app


# ============================================================================
# CorrelationIdMiddleware
# ============================================================================


class TestCorrelationIdMiddleware:
    @pytest.mark.unit
    def test_generates_correlation_id_when_missing(self):
        app = _build_app(middlewares=[(CorrelationIdMiddleware, {})])

        with TestClient(app) as client:
            response = client.get("/test")

        assert response.status_code == 200
        assert response.headers["x-correlation-id"]

    @pytest.mark.unit
    def test_preserves_existing_correlation_id(self):
        app = _build_app(middlewares=[(CorrelationIdMiddleware, {})])

        with TestClient(app) as client:
            response = client.get("/test", headers={"X-Correlation-ID": "my-correlation-id"})

        assert response.headers["x-correlation-id"] == "my-correlation-id"

    @pytest.mark.unit
    def test_uses_github_delivery_id(self):
        app = _build_app(middlewares=[(CorrelationIdMiddleware, {})])

        with TestClient(app) as client:
            response = client.post(
                "/api/github/webhook",
                headers={"X-GitHub-Delivery": "72d3162e-cc78-11e3-81ab-4c9367dc0958"},
            )

        assert response.headers["x-correlation-id"] == "72d3162e-cc78-11e3-81ab-4c9367dc0958"

    @pytest.mark.unit
    def test_correlation_id_unique_per_request(self):
        app = _build_app(middlewares=[(CorrelationIdMiddleware, {})])

        with TestClient(app) as client:
            first = client.get("/test").headers["x-correlation-id"]
            second = client.get("/test").headers["x-correlation-id"]

        assert first != second


# ============================================================================
# RequestLoggingMiddleware
# ============================================================================


class TestRequestLoggingMiddleware:
    @pytest.mark.unit
    def test_successful_request_passes_through(self):
        app = _build_app(middlewares=[(RequestLoggingMiddleware, {})])

        with TestClient(app) as client:
            assert client.get("/test").status_code == 200

    @pytest.mark.unit
    def test_exception_in_handler_reraised(self):
        app = _build_app(middlewares=[(RequestLoggingMiddleware, {})])

        with TestClient(app, raise_server_exceptions=False) as client:
            assert client.get("/error").status_code == 500

    @pytest.mark.unit
    def test_rejected_request_logged_at_warning(self, caplog):
        app = _build_app(middlewares=[(RequestLoggingMiddleware, {})])

        with caplog.at_level(logging.INFO, logger="reviewbot.core.middleware"):
            with TestClient(app) as client:
                client.get("/missing", headers={"X-GitHub-Event": "pull_request"})

        [record] = [r for r in caplog.records if r.name == "reviewbot.core.middleware"]
        assert record.levelno == logging.WARNING
        assert record.extra_data["status_code"] == 404
        assert record.extra_data["github_event"] == "pull_request"


# ============================================================================
# setup_middleware
# ============================================================================


class TestSetupMiddleware:
    @pytest.mark.unit
    def test_installs_correlation_and_logging_only(self):
        app = _build_app()

        setup_middleware(app)

        assert [m.cls for m in app.user_middleware] == [CorrelationIdMiddleware, RequestLoggingMiddleware]

    @pytest.mark.unit
    def test_webhook_burst_is_never_turned_away(self):
        app = _build_app()
        setup_middleware(app)

        with TestClient(app) as client:
            statuses = {client.post("/api/github/webhook").status_code for _ in range(400)}

        assert statuses == {200}


# ============================================================================
# Exception handlers
# ============================================================================


def _request(path: str) -> AsyncMock:
    request = AsyncMock(spec=Request)
    request.url.path = path
    return request


class TestAppExceptionHandler:
    @pytest.mark.unit
    async def test_handles_app_exception(self):
        exc = AppException(
            message="Dead letter 3 not found",
            error_code=ErrorCode.NOT_FOUND,
            status_code=404,
            details={"id": 3},
        )

        response = await app_exception_handler(_request("/api/admin/dead-letters/3/requeue"), exc)

        assert isinstance(response, JSONResponse)
        assert response.status_code == 404
        assert "x-correlation-id" in response.headers

    @pytest.mark.unit
    async def test_handles_validation_exception(self):
        exc = ValidationException("X-GitHub-Delivery header is required", field="X-GitHub-Delivery")

        response = await app_exception_handler(_request("/api/github/webhook"), exc)

        assert response.status_code == 400
        assert b"X-GitHub-Delivery" in response.body

    @pytest.mark.unit
    async def test_handles_auth_failure(self):
        response = await app_exception_handler(_request("/api/github/webhook"), AuthFailure("Invalid signature"))

        assert response.status_code == 401
        assert ErrorCode.AUTH_FAILURE.value.encode() in response.body


class TestGenericExceptionHandler:
    @pytest.mark.unit
    async def test_handles_unexpected_exception(self):
        response = await generic_exception_handler(_request("/api/github/webhook"), RuntimeError("boom"))

        assert isinstance(response, JSONResponse)
        assert response.status_code == 500
        assert "x-correlation-id" in response.headers

    @pytest.mark.unit
    async def test_does_not_leak_internal_details(self):
        exc = RuntimeError("database connection failed on host 10.0.0.1")

        response = await generic_exception_handler(_request("/api/github/webhook"), exc)

        body = response.body.decode()
        assert "10.0.0.1" not in body
        assert ErrorCode.INTERNAL_ERROR.value in body

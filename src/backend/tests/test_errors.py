"""Tests for the PreviewdError hierarchy and global exception handler.

Verifies that each error subclass produces the correct HTTP status code
and the expected response body shape:
  {"error": {"code": "...", "message": "...", "request_id": "..."}}
"""

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from previewd.errors import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    PreviewdError,
    ReconcileError,
    StaleVersionError,
    TransientError,
    UnauthorizedError,
    UpstreamError,
    ValidationError,
)
from previewd.main import previewd_error_handler
from previewd.middleware import RequestIDMiddleware


def make_test_app(*error_classes: type[PreviewdError]) -> FastAPI:
    """Build a minimal FastAPI app with one route per error class."""
    test_app = FastAPI()
    test_app.add_middleware(RequestIDMiddleware)
    test_app.add_exception_handler(PreviewdError, previewd_error_handler)

    for cls in error_classes:
        path = f"/raise/{cls.__name__.lower()}"

        async def make_route(error_cls=cls):
            raise error_cls("test message")

        test_app.get(path)(make_route)

    return test_app


ERROR_CASES = [
    (NotFoundError, 404, "NOT_FOUND"),
    (UnauthorizedError, 401, "UNAUTHORIZED"),
    (ForbiddenError, 403, "FORBIDDEN"),
    (ConflictError, 409, "CONFLICT"),
    (StaleVersionError, 409, "CONFLICT"),
    (ValidationError, 422, "VALIDATION_ERROR"),
    (UpstreamError, 502, "UPSTREAM_ERROR"),
    (TransientError, 503, "TRANSIENT_ERROR"),
]


class TestErrorHierarchy:
    @pytest.mark.parametrize("error_cls,expected_status,expected_code", ERROR_CASES)
    async def test_error_status_and_code(self, error_cls, expected_status, expected_code):
        app = make_test_app(error_cls)

        async with AsyncClient(
            transport=ASGITransport(app=app), base_url="http://test"
        ) as client:
            response = await client.get(f"/raise/{error_cls.__name__.lower()}")

        assert response.status_code == expected_status
        body = response.json()
        assert body["error"]["code"] == expected_code
        assert body["error"]["message"] == "test message"
        assert "request_id" in body["error"]

    async def test_request_id_in_body_matches_header(self):
        app = make_test_app(NotFoundError)

        async with AsyncClient(
            transport=ASGITransport(app=app), base_url="http://test"
        ) as client:
            response = await client.get("/raise/notfounderror")

        body = response.json()
        assert body["error"]["request_id"] == response.headers["x-request-id"]

    async def test_inbound_request_id_is_reused(self):
        app = make_test_app(NotFoundError)

        async with AsyncClient(
            transport=ASGITransport(app=app), base_url="http://test"
        ) as client:
            response = await client.get(
                "/raise/notfounderror", headers={"X-Request-ID": "gateway-abc-123"}
            )

        assert response.headers["x-request-id"] == "gateway-abc-123"
        assert response.json()["error"]["request_id"] == "gateway-abc-123"


class TestReconcileError:
    def test_message_names_environment_and_resource(self):
        exc = ReconcileError(
            "quota rejected", resource="resource quota", environment="acme-shop-pr-42",
            reason="InvalidResourceOverride", permanent=True,
        )
        assert exc.message == "acme-shop-pr-42: resource quota: quota rejected"
        assert exc.reason == "InvalidResourceOverride"
        assert exc.permanent is True

    def test_stale_version_is_a_conflict(self):
        assert issubclass(StaleVersionError, ConflictError)

"""
Unit tests for request ID middleware.

Tests the RequestIDMiddleware to ensure it correctly generates,
extracts, and propagates request IDs, and that error responses and log
records carry the same ID.
"""

import logging
import uuid

import pytest
from fastapi import FastAPI, Request
from fastapi.testclient import TestClient

from errors.codes import ErrorCode
from errors.exceptions import engine_not_running
from errors.handlers import register_exception_handlers
from middleware.request_id import (
    RequestIDMiddleware,
    request_id_var,
    REQUEST_ID_HEADER,
)
from telemetry.service import get_request_id


@pytest.fixture
def app():
    """A host with the middleware, the error handlers and three endpoints."""
    app = FastAPI()
    app.add_middleware(RequestIDMiddleware)
    register_exception_handlers(app)

    @app.get("/status")
    async def status(request: Request):
        return {
            "request_id_from_state": request.state.request_id,
            "request_id_from_context": request_id_var.get(),
            "request_id_from_telemetry": get_request_id(),
        }

    @app.post("/signals/position")
    async def position():
        raise engine_not_running(details={"signal": "position"})

    @app.post("/sync/flush")
    async def flush():
        raise RuntimeError("sink unavailable")

    return app


@pytest.fixture
def client(app):
    return TestClient(app, raise_server_exceptions=False)


class TestRequestIDMiddleware:
    """Tests for the RequestIDMiddleware class."""

    def test_generates_request_id_when_not_provided(self, client):
        response = client.get("/status")

        assert response.status_code == 200
        request_id = response.headers[REQUEST_ID_HEADER]
        assert str(uuid.UUID(request_id)) == request_id

    def test_uses_existing_request_id_from_header(self, client):
        response = client.get("/status", headers={REQUEST_ID_HEADER: "device-42-req-7"})

        assert response.headers[REQUEST_ID_HEADER] == "device-42-req-7"

    def test_request_id_visible_in_state_context_and_telemetry(self, client):
        response = client.get("/status", headers={REQUEST_ID_HEADER: "corr-1"})

        assert response.json() == {
            "request_id_from_state": "corr-1",
            "request_id_from_context": "corr-1",
            "request_id_from_telemetry": "corr-1",
        }

    def test_context_variable_reset_after_request(self, client):
        client.get("/status", headers={REQUEST_ID_HEADER: "first-request-id"})

        assert request_id_var.get() == ""

    def test_different_requests_get_different_ids(self, client):
        first = client.get("/status").headers[REQUEST_ID_HEADER]
        second = client.get("/status").headers[REQUEST_ID_HEADER]

        assert first != second

    def test_empty_request_id_header_generates_new_id(self, client):
        response = client.get("/status", headers={REQUEST_ID_HEADER: ""})

        request_id = response.headers[REQUEST_ID_HEADER]
        assert len(request_id) == 36

    def test_completed_request_is_logged(self, client, caplog):
        with caplog.at_level(logging.DEBUG, logger="middleware.request_id"):
            client.get("/status")

        record = next(r for r in caplog.records if r.getMessage() == "Request completed")
        assert record.extra_data["path"] == "/status"
        assert record.extra_data["status_code"] == 200


class TestRequestIDWithErrors:
    """Error responses carry the ID assigned by the middleware."""

    def test_app_exception_response_includes_request_id(self, client):
        response = client.post("/signals/position", headers={REQUEST_ID_HEADER: "error-handler-test-id"})

        assert response.status_code == 503
        data = response.json()
        assert data["error_code"] == ErrorCode.ENGINE_NOT_RUNNING.value
        assert data["details"] == {"signal": "position"}
        assert data["request_id"] == "error-handler-test-id"
        assert response.headers[REQUEST_ID_HEADER] == "error-handler-test-id"

    def test_unexpected_error_includes_request_id(self, client):
        response = client.post("/sync/flush", headers={REQUEST_ID_HEADER: "unexpected-id"})

        assert response.status_code == 500
        data = response.json()
        assert data["error_code"] == ErrorCode.INTERNAL_ERROR.value
        assert data["request_id"] == "unexpected-id"
        assert "sink unavailable" not in data["message"]

    def test_context_variable_reset_even_on_exception(self, client):
        client.post("/sync/flush", headers={REQUEST_ID_HEADER: "error-request-id"})

        assert request_id_var.get() == ""

    def test_subsequent_request_works_after_exception(self, client):
        client.post("/sync/flush")

        response = client.get("/status", headers={REQUEST_ID_HEADER: "success-request-id"})

        assert response.status_code == 200
        assert response.json()["request_id_from_state"] == "success-request-id"

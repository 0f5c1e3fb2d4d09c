"""Tests for the error envelope format and exception handlers.

Error responses share one shape:
{
    "status": "error",
    "error": {"code": "<stable_code>", "message": "<human_readable>", "details": ...},
    "request_id": "<uuid>"
}
"""

import pytest
from fastapi import FastAPI, HTTPException
from fastapi.testclient import TestClient
from pydantic import ValidationError

from chatgate.api.error_handling import (
    _error_code_for_status,
    _error_response,
    register_exception_handlers,
)
from chatgate.api.schemas import Envelope, ErrorBody
from chatgate.service.errors import (
    ConflictError,
    ForbiddenError,
    InvalidSessionError,
    LoginError,
    NotFoundError,
    ServerError,
    TokenExchangeError,
    ValidationError as ServiceValidationError,
)
from chatgate.storage.errors import ConstraintViolation


@pytest.fixture
def client():
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/invalid-session")
    async def invalid_session():
        raise InvalidSessionError()

    @app.get("/forbidden")
    async def forbidden():
        raise ForbiddenError("Insufficient permissions")

    @app.get("/missing")
    async def missing():
        raise NotFoundError("chat session not found", detail={"id": "x"})

    @app.get("/server")
    async def server():
        raise ServerError("backend unavailable")

    @app.get("/bad-request")
    async def bad_request():
        raise ServiceValidationError("title too long")

    @app.get("/duplicate")
    async def duplicate():
        raise ConflictError("chat session already exists")

    @app.get("/conflict")
    async def conflict():
        raise ConstraintViolation("email already exists", {"field": "email"})

    @app.get("/http")
    async def http():
        raise HTTPException(status_code=404, detail="nothing here")

    @app.get("/boom")
    async def boom():
        raise RuntimeError("secret internals")

    return TestClient(app, raise_server_exceptions=False)


class TestEnvelopeModels:
    def test_error_body_requires_code_and_message(self):
        with pytest.raises(ValidationError):
            ErrorBody(message="no code")
        with pytest.raises(ValidationError):
            ErrorBody(code="no_message")

    def test_envelope_status_is_constrained(self):
        with pytest.raises(ValidationError):
            Envelope(status="maybe")

    def test_envelope_generates_request_id(self):
        first, second = Envelope(status="ok"), Envelope(status="ok")

        assert first.request_id and first.request_id != second.request_id

    def test_status_code_mapping(self):
        assert _error_code_for_status(401) == "unauthorized"
        assert _error_code_for_status(403) == "forbidden"
        assert _error_code_for_status(418) == "server_error"

    def test_error_response_shape(self):
        response = _error_response(409, "taken", {"field": "email"})

        assert response.status_code == 409
        assert b'"code":"conflict"' in response.body


class TestHandlers:
    @pytest.mark.parametrize(
        "path,status,code,message",
        [
            ("/invalid-session", 401, "unauthorized", "invalid session"),
            ("/forbidden", 403, "forbidden", "Insufficient permissions"),
            ("/missing", 404, "not_found", "chat session not found"),
            ("/server", 500, "server_error", "backend unavailable"),
            ("/bad-request", 400, "validation_error", "title too long"),
            ("/duplicate", 409, "conflict", "chat session already exists"),
            ("/conflict", 409, "conflict", "email already exists"),
            ("/http", 404, "not_found", "nothing here"),
        ],
    )
    def test_errors_use_envelope(self, client, path, status, code, message):
        response = client.get(path)

        assert response.status_code == status
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == code
        assert body["error"]["message"] == message
        assert body["request_id"]

    def test_details_are_passed_through(self, client):
        assert client.get("/missing").json()["error"]["details"] == {"id": "x"}
        assert client.get("/conflict").json()["error"]["details"] == {"field": "email"}

    def test_unhandled_exception_is_opaque(self, client):
        response = client.get("/boom")

        assert response.status_code == 500
        body = response.json()
        assert body["error"]["code"] == "server_error"
        assert "secret internals" not in response.text


class TestLoginErrors:
    def test_unknown_reason_collapses_to_authentication_failed(self):
        assert LoginError("something_new").reason == "authentication_failed"
        assert TokenExchangeError("x", reason="made_up").reason == "authentication_failed"

    def test_known_reasons_are_kept(self):
        assert LoginError("invalid_state").reason == "invalid_state"
        assert TokenExchangeError("x", reason="no_id_token").reason == "no_id_token"

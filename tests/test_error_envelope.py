"""Tests for the error envelope format and the exception handlers.

Error responses share one shape:
{
    "status": "error",
    "error": {
        "code": "<stable_code>",
        "message": "<human_readable>",
        "details": <object|array|null>
    },
    "request_id": "<uuid>"
}
"""

import json

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from pydantic import BaseModel, ValidationError
from starlette.exceptions import HTTPException

from tokenwarden.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
    register_exception_handlers,
)
from tokenwarden.api.schemas import Envelope, ErrorBody
from tokenwarden.service.errors import (
    CredentialStoreError,
    InvalidCredentials,
    InvalidToken,
    UserAlreadyExists,
    UserNotFound,
)


class TestErrorBody:
    def test_required_fields(self):
        error = ErrorBody(code="unauthorized", message="invalid credentials")
        assert error.code == "unauthorized"
        assert error.details is None

    def test_details_accept_dict_and_list(self):
        assert ErrorBody(code="validation_error", message="x", details={"a": 1}).details == {"a": 1}
        assert len(ErrorBody(code="validation_error", message="x", details=[1, 2]).details) == 2

    def test_missing_fields_raise(self):
        with pytest.raises(ValidationError):
            ErrorBody(message="error occurred")
        with pytest.raises(ValidationError):
            ErrorBody(code="server_error")

    def test_unknown_code_is_rejected(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="short and stout")


class TestEnvelope:
    def test_error_envelope(self):
        envelope = Envelope(status="error", error=ErrorBody(code="unauthorized", message="bad"))

        assert envelope.status == "error"
        assert envelope.error.code == "unauthorized"
        assert envelope.data is None

    def test_request_id_generated(self):
        envelope = Envelope(status="ok")
        assert len(envelope.request_id) == 36

    def test_request_id_custom(self):
        assert Envelope(status="ok", request_id="req-1").request_id == "req-1"

    @pytest.mark.parametrize("status", ["pending", "success", ""])
    def test_invalid_status(self, status):
        with pytest.raises(ValidationError):
            Envelope(status=status)


class TestErrorCodeMapping:
    @pytest.mark.parametrize(
        "status_code,code",
        [
            (400, "validation_error"),
            (401, "unauthorized"),
            (403, "forbidden"),
            (404, "not_found"),
            (405, "validation_error"),
            (409, "conflict"),
            (422, "validation_error"),
            (500, "server_error"),
        ],
    )
    def test_known_statuses(self, status_code, code):
        assert _error_code_for_status(status_code) == code

    def test_unknown_status_defaults_to_server_error(self):
        assert _error_code_for_status(418) == "server_error"
        assert _error_code_for_status(503) == "server_error"

    def test_every_mapped_code_is_valid(self):
        for code in set(_STATUS_TO_CODE.values()):
            ErrorBody(code=code, message="ok")


class TestErrorResponseFactory:
    def test_basic(self):
        response = _error_response(404, "not found")

        data = json.loads(response.body.decode())
        assert response.status_code == 404
        assert data["status"] == "error"
        assert data["error"] == {"code": "not_found", "message": "not found", "details": None}
        assert data["request_id"]

    def test_unauthorized_carries_challenge(self):
        response = _error_response(401, "invalid token")

        assert response.headers["WWW-Authenticate"] == "Bearer"

    def test_other_statuses_have_no_challenge(self):
        assert "WWW-Authenticate" not in _error_response(409, "conflict").headers

    def test_custom_code(self):
        data = json.loads(_error_response(400, "custom", code="conflict").body.decode())
        assert data["error"]["code"] == "conflict"


class _Payload(BaseModel):
    value: int


def _build_app() -> FastAPI:
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/service/{kind}")
    async def service_error(kind: str):
        raise {
            "exists": UserAlreadyExists(),
            "missing": UserNotFound(),
            "credentials": InvalidCredentials(),
            "token": InvalidToken(),
            "store": CredentialStoreError("store unavailable"),
        }[kind]

    @app.get("/http")
    async def http_error():
        raise HTTPException(status_code=403, detail="nope")

    @app.post("/payload")
    async def payload(body: _Payload):
        return {"value": body.value}

    @app.get("/boom")
    async def boom():
        raise RuntimeError("kaboom")

    return app


@pytest.fixture
def client():
    return TestClient(_build_app(), raise_server_exceptions=False)


class TestExceptionHandlers:
    @pytest.mark.parametrize(
        "kind,status_code,code",
        [
            ("exists", 409, "conflict"),
            ("missing", 404, "not_found"),
            ("credentials", 401, "unauthorized"),
            ("token", 401, "unauthorized"),
            ("store", 500, "server_error"),
        ],
    )
    def test_service_errors(self, client, kind, status_code, code):
        response = client.get(f"/service/{kind}")

        assert response.status_code == status_code
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == code
        assert body["error"]["message"]

    def test_invalid_token_challenge_header(self, client):
        response = client.get("/service/token")

        assert response.headers["WWW-Authenticate"] == "Bearer"
        assert response.json()["error"]["message"] == "invalid or expired token"

    def test_http_exception(self, client):
        response = client.get("/http")

        assert response.status_code == 403
        assert response.json()["error"] == {"code": "forbidden", "message": "nope", "details": None}

    def test_unknown_route(self, client):
        response = client.get("/nowhere")

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"

    def test_request_validation_is_400(self, client):
        response = client.post("/payload", json={"value": "not-a-number"})

        assert response.status_code == 400
        body = response.json()
        assert body["error"]["code"] == "validation_error"
        fields = [detail["field"] for detail in body["error"]["details"]]
        assert "body.value" in fields

    def test_uncaught_exception_is_500(self, client):
        response = client.get("/boom")

        assert response.status_code == 500
        body = response.json()
        assert body["error"]["code"] == "server_error"
        assert "kaboom" not in body["error"]["message"]

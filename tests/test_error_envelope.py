"""Error envelope format and exception-to-response mapping.

Error responses share one shape:
{
    "status": "error",
    "error": {"code": "<stable_code>", "message": "<human_readable>", "details": ...},
    "request_id": "<id>"
}
"""

import json

import pytest
from pydantic import ValidationError

from stagevault.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
)
from stagevault.api.schemas import Envelope, ErrorBody
from stagevault.logging import sanitize_error_message, set_correlation_id
from stagevault.service.errors import (
    AuthenticationError,
    ForbiddenError,
    NotFoundError,
    ServerError,
    ValidationError as ServiceValidationError,
)


class TestErrorBody:
    def test_error_body_with_details(self):
        error = ErrorBody(
            code="validation_error",
            message="Invalid input",
            details={"field": "image_data"},
        )
        assert error.details == {"field": "image_data"}

    def test_error_body_rejects_unknown_code(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="short and stout")

    def test_error_body_missing_message_raises(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="server_error")


class TestEnvelope:
    def test_envelope_request_id_auto_generated(self):
        envelope = Envelope(status="ok")

        assert len(envelope.request_id) == 36  # UUID format

    def test_envelope_invalid_status_raises(self):
        with pytest.raises(ValidationError):
            Envelope(status="pending")


class TestErrorCodeMapping:
    @pytest.mark.parametrize(
        "status,code",
        [
            (400, "validation_error"),
            (401, "unauthorized"),
            (403, "forbidden"),
            (404, "not_found"),
            (413, "validation_error"),
            (500, "server_error"),
        ],
    )
    def test_known_statuses(self, status, code):
        assert _error_code_for_status(status) == code

    def test_unknown_status_defaults_to_server_error(self):
        assert _error_code_for_status(418) == "server_error"
        assert _error_code_for_status(503) == "server_error"

    def test_all_mapped_codes_are_valid(self):
        for code in set(_STATUS_TO_CODE.values()):
            ErrorBody(code=code, message="ok")

    @pytest.mark.parametrize(
        "exc_type,status,code",
        [
            (ServiceValidationError, 400, "validation_error"),
            (AuthenticationError, 401, "unauthorized"),
            (ForbiddenError, 403, "forbidden"),
            (NotFoundError, 404, "not_found"),
            (ServerError, 500, "server_error"),
        ],
    )
    def test_service_errors_carry_status_and_code(self, exc_type, status, code):
        exc = exc_type("boom")

        assert exc.status_code == status
        assert exc.error_code == code
        assert exc.detail == {}


class TestErrorResponseFactory:
    def test_error_response_basic(self):
        response = _error_response(401, "missing user identity")

        data = json.loads(response.body.decode())
        assert response.status_code == 401
        assert data["status"] == "error"
        assert data["error"]["code"] == "unauthorized"
        assert data["error"]["details"] is None

    def test_error_response_uses_correlation_id(self):
        set_correlation_id("corr-42")

        data = json.loads(_error_response(404, "image not found").body.decode())

        assert data["request_id"] == "corr-42"

    def test_error_response_list_details(self):
        response = _error_response(422, "request validation failed", details=[{"loc": ["body"]}])

        data = json.loads(response.body.decode())
        assert data["error"]["code"] == "validation_error"
        assert data["error"]["details"] == [{"loc": ["body"]}]


class TestSanitizeErrorMessage:
    def test_strips_filesystem_paths(self):
        message = sanitize_error_message("cannot open /srv/stagevault/uploads/images/a.png")

        assert "/srv/stagevault" not in message
        assert "[redacted]" in message

    def test_strips_credentials(self):
        assert "hunter2" not in sanitize_error_message("password=hunter2 rejected")

    def test_empty_message_gets_placeholder(self):
        assert sanitize_error_message("") == "An error occurred"

    def test_long_messages_are_capped(self):
        assert len(sanitize_error_message("x" * 2000)) == 500

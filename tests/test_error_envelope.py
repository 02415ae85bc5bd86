"""Tests for the error envelope format and error handling.

Error responses share one stable shape:
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
from pydantic import ValidationError

from appauth.api.error_handling import _STATUS_TO_CODE, _error_code_for_status, _error_response
from appauth.api.schemas import Envelope, ErrorBody, LoginRequest, RegisterRequest
from appauth.service import errors as service_errors


class TestErrorBody:
    """Tests for the ErrorBody Pydantic model."""

    def test_error_body_required_fields(self):
        error = ErrorBody(code="invalid_credentials", message="Invalid credentials")
        assert error.code == "invalid_credentials"
        assert error.details is None

    def test_unknown_code_rejected(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="made_up_code", message="nope")

    def test_every_service_error_code_is_valid(self):
        """Each service exception renders with a code the envelope accepts."""
        for name in service_errors.__all__:
            cls = getattr(service_errors, name)
            ErrorBody(code=cls.error_code, message=name)


class TestErrorResponse:
    def test_status_mapping(self):
        assert _error_code_for_status(401) == "unauthorized"
        assert _error_code_for_status(423) == "locked"
        assert _error_code_for_status(418) == "server_error"
        assert _STATUS_TO_CODE[409] == "conflict"

    def test_response_shape(self):
        response = _error_response(403, "denied", {"role": "admin"}, code="role_not_granted")
        body = json.loads(response.body)
        assert response.status_code == 403
        assert body["status"] == "error"
        assert body["error"] == {
            "code": "role_not_granted",
            "message": "denied",
            "details": {"role": "admin"},
        }
        assert body["request_id"]

    def test_envelope_status_pattern(self):
        with pytest.raises(ValidationError):
            Envelope(status="maybe")


class TestRequestSchemas:
    """Boundary validation of request bodies."""

    def test_register_normalizes_email_and_wraps_single_role(self):
        body = RegisterRequest(
            email=" Alice@X.com ",
            password="pw123456",
            app_endpoint="http://localhost:3000",
            roles="user",
        )
        assert body.email == "alice@x.com"
        assert body.roles == ["user"]

    def test_register_rejects_unknown_role_and_method(self):
        with pytest.raises(ValidationError):
            RegisterRequest(email="a@x.com", app_endpoint="x", roles=["owner"])
        with pytest.raises(ValidationError):
            RegisterRequest(email="a@x.com", app_endpoint="x", auth_method="saml")

    def test_unknown_fields_rejected(self):
        with pytest.raises(ValidationError):
            LoginRequest(email="a@x.com", password="pw", app_endpoint="x", tenant="t")

    def test_bad_email_rejected(self):
        with pytest.raises(ValidationError):
            LoginRequest(email="not-an-email", password="pw", app_endpoint="x")

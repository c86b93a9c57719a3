"""Error body format and mapping of gateway errors to HTTP responses.

Every failed request returns:
{
    "error": <message or relayed upstream payload>,
    "code": "<stable_code>",
    "details": <object>      # omitted when empty
}
"""

import json

import pytest
from pydantic import ValidationError

from flowgate.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    error_response,
    safe_payload,
)
from flowgate.api.schemas import ErrorBody
from flowgate.service.errors import (
    PayloadTooLargeError,
    TenantNotFoundError,
    UploadTooLargeError,
    UpstreamError,
)


class TestErrorBody:
    def test_required_fields(self):
        body = ErrorBody(error="Access Denied", code="forbidden")
        assert body.details is None

    def test_missing_code_raises(self):
        with pytest.raises(ValidationError):
            ErrorBody(error="boom")

    def test_error_may_be_structured(self):
        body = ErrorBody(error={"message": "bad input"}, code="upstream_error")
        assert body.model_dump()["error"] == {"message": "bad input"}


class TestStatusCodes:
    def test_known_statuses(self):
        assert _error_code_for_status(401) == "unauthorized"
        assert _error_code_for_status(403) == "forbidden"
        assert _error_code_for_status(413) == "payload_too_large"
        assert _error_code_for_status(429) == "tenant_busy"

    def test_unknown_status_is_server_error(self):
        assert _error_code_for_status(418) == "server_error"
        assert 418 not in _STATUS_TO_CODE


class TestErrorResponse:
    def test_details_omitted_when_empty(self):
        response = error_response(404, "Not Found")
        assert json.loads(response.body) == {"error": "Not Found", "code": "not_found"}

    def test_details_included(self):
        response = error_response(403, "Access Denied", {"origin": "https://x.example"})
        body = json.loads(response.body)
        assert body["details"] == {"origin": "https://x.example"}
        assert response.status_code == 403

    def test_unserializable_payload_is_stringified(self):
        marker = object()
        assert safe_payload(marker) == str(marker)
        assert safe_payload({"a": 1}) == {"a": 1}


class TestServiceErrors:
    def test_tenant_not_found_names_identifier(self):
        exc = TenantNotFoundError("acme")
        assert exc.status_code == 404
        assert exc.message == "Chatflow not found: acme"

    def test_too_large_errors_are_distinct(self):
        assert PayloadTooLargeError().message == "Request body too large"
        upload = UploadTooLargeError(detail={"limit_bytes": 1})
        assert upload.status_code == 413
        assert upload.error_code == "upload_too_large"
        assert upload.message == "File too large"

    def test_upstream_error_payload(self):
        assert UpstreamError().status_code == 500
        assert UpstreamError().payload == "Proxy server error"
        relayed = UpstreamError("x", status_code=502, body="bad gateway")
        assert relayed.status_code == 502
        assert relayed.payload == "bad gateway"
        assert UpstreamError("x", status_code=502, body="").payload == "x"

from __future__ import annotations

from typing import Any, Optional


class ConfigurationError(Exception):
    """Startup configuration is unusable; the process cannot serve any tenant."""


class ServiceError(Exception):
    """Base class for per-request errors mapped to HTTP responses.

    Each subclass carries an HTTP ``status_code`` and a stable ``error_code``
    that is returned to the caller alongside the message:
    - validation_error (400)
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - payload_too_large (413)
    - tenant_busy (429)
    - upstream_error (upstream status or 500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}

    @property
    def payload(self) -> Any:
        """Value placed under ``error`` in the response body."""
        return self.message


class BadRequestError(ServiceError):
    """Request is malformed (400)."""
    status_code = 400
    error_code = "validation_error"


class MultipartBoundaryError(BadRequestError):
    """Multipart boundary missing from both the header and the body (400)."""
    error_code = "multipart_boundary_missing"


class UnauthorizedDevKeyError(ServiceError):
    """Dev/admin endpoint called without the configured API key (401)."""
    status_code = 401
    error_code = "unauthorized"


class DomainDeniedError(ServiceError):
    """Request origin is not on the tenant's allow-list (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class TenantNotFoundError(NotFoundError):
    """No servable tenant matches the identifier (404)."""

    def __init__(self, identifier: str) -> None:
        super().__init__(
            f"Chatflow not found: {identifier}", detail={"identifier": identifier}
        )
        self.identifier = identifier


class OAuthNotConfiguredError(NotFoundError):
    """Tenant exists but has no OAuth block (404)."""

    def __init__(self, identifier: str) -> None:
        super().__init__(
            "OAuth configuration not found for this chatflow",
            detail={"identifier": identifier},
        )
        self.identifier = identifier


class PayloadTooLargeError(ServiceError):
    """Buffered request body exceeds the gateway limit (413)."""
    status_code = 413
    error_code = "payload_too_large"
    default_message = "Request body too large"

    def __init__(self, message: Optional[str] = None, *, detail: Optional[dict] = None) -> None:
        super().__init__(message or self.default_message, detail=detail)


class UploadTooLargeError(PayloadTooLargeError):
    """Multipart upload exceeds the upload limit (413)."""
    error_code = "upload_too_large"
    default_message = "File too large"


class TenantBusyError(ServiceError):
    """Tenant has reached its in-flight upstream call limit (429)."""
    status_code = 429
    error_code = "tenant_busy"


class UpstreamError(ServiceError):
    """Upstream call failed.

    When the upstream responded, its status and body are passed through;
    otherwise the caller sees 500 "proxy server error".
    """

    status_code = 500
    error_code = "upstream_error"

    def __init__(
        self,
        message: str = "Proxy server error",
        *,
        status_code: Optional[int] = None,
        body: Any = None,
    ) -> None:
        super().__init__(message, status_code=status_code)
        self.body = body

    @property
    def payload(self) -> Any:
        if self.body is None or self.body == "":
            return self.message
        return self.body


__all__ = [
    "ConfigurationError",
    "ServiceError",
    "BadRequestError",
    "MultipartBoundaryError",
    "UnauthorizedDevKeyError",
    "DomainDeniedError",
    "NotFoundError",
    "TenantNotFoundError",
    "OAuthNotConfiguredError",
    "PayloadTooLargeError",
    "UploadTooLargeError",
    "TenantBusyError",
    "UpstreamError",
]

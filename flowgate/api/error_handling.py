from __future__ import annotations

import json
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from flowgate.api.schemas import ErrorBody
from flowgate.logging import get_logger
from flowgate.service.errors import ServiceError

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    405: "method_not_allowed",
    413: "payload_too_large",
    429: "tenant_busy",
    500: "server_error",
}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def safe_payload(value: Any) -> Any:
    """Return ``value`` if it JSON-serializes, else its string form."""
    try:
        json.dumps(value)
    except (TypeError, ValueError):
        return str(value)
    return value


def error_response(
    status_code: int,
    message: Any,
    details: Any = None,
    code: str | None = None,
) -> JSONResponse:
    body = ErrorBody(
        error=safe_payload(message),
        code=code or _error_code_for_status(status_code),
        details=safe_payload(details) if details else None,
    )
    return JSONResponse(status_code=status_code, content=body.model_dump(exclude_none=True))


def register_exception_handlers(app: FastAPI) -> None:
    """Install JSON error handlers; no request error may crash the process."""

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=exc.error_code,
            message=exc.message,
            detail=exc.detail,
        )
        return error_response(exc.status_code, exc.payload, exc.detail or None, code=exc.error_code)

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                message=exc.detail,
            )
        message = exc.detail if exc.detail is not None else "http error"
        return error_response(exc.status_code, message)

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return error_response(500, "Internal Server Error", code="server_error")

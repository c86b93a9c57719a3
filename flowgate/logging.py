from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Per-request context carried into every log entry
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)
tenant_var: ContextVar[Optional[str]] = ContextVar("tenant", default=None)

_SECRET_KEYS = ("secret", "token", "api_key", "apikey", "authorization", "password")
_IDENTITY_KEYS = ("email",)
_BEARER_VALUE = re.compile(r"(?i)\bbearer\s+\S+")


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Set (or generate) the request's correlation ID and clear any stale tenant."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    tenant_var.set(None)
    return cid


def bind_tenant(identifier: Optional[str]) -> None:
    """Tag the rest of the request's log entries with a tenant identifier."""
    tenant_var.set(identifier)


def _add_request_context(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = correlation_id_var.get()
    if cid:
        event_dict.setdefault("correlation_id", cid)
    tenant = tenant_var.get()
    if tenant:
        event_dict.setdefault("tenant", tenant)
    return event_dict


def _mask(value: str) -> str:
    if len(value) <= 4:
        return "***"
    return value[:2] + "***" + value[-2:]


def _mask_email(value: str) -> str:
    local, at, domain = value.partition("@")
    if not at:
        return _mask(value)
    return f"{local[:1]}***@{domain}"


def _redact_secrets(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Mask credentials and identity claims; bearer tokens never reach the log."""
    for key, value in list(event_dict.items()):
        if not isinstance(value, str):
            continue
        lower_key = key.lower()
        if any(secret in lower_key for secret in _SECRET_KEYS):
            event_dict[key] = _mask(value)
        elif any(claim in lower_key for claim in _IDENTITY_KEYS):
            event_dict[key] = _mask_email(value)
        elif "bearer" in value.lower():
            event_dict[key] = _BEARER_VALUE.sub("Bearer ***", value)
    return event_dict


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes", "on"}


def configure_logging(
    log_level: str = "INFO",
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """Configure structlog for the gateway.

    Args:
        log_level: Minimum level (DEBUG, INFO, WARNING, ERROR)
        json_output: Emit one JSON object per line when True
        development_mode: Colored console output, overrides ``json_output``
    """
    level = getattr(logging, log_level.upper(), logging.INFO)
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_request_context,
        _redact_secrets,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if development_mode or not json_output:
        renderer = [structlog.dev.ConsoleRenderer(colors=development_mode)]
    else:
        renderer = [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]

    structlog.configure(
        processors=shared_processors + renderer,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
    # httpx logs every outbound request at INFO; the dispatcher already does.
    logging.getLogger("httpx").setLevel(max(level, logging.WARNING))


configure_logging(
    log_level=os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", "true"),
    development_mode=_env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)

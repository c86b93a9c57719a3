from __future__ import annotations

import json
import os
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from flowgate.logging import get_logger

logger = get_logger(__name__)

__version__ = "0.1.0"

# Searched in order; the first file that parses wins.
CONFIG_FILE_CANDIDATES = ("prod.config.json", "local.config.json", "config.json")

# Legacy single-line tenants: CHATFLOW_<IDENTIFIER>=<chatflowId>[,<origin>...]
TENANT_ENV_PREFIX = "CHATFLOW_"

DEV_DEFAULT_ORIGIN = "http://localhost:5678"
DEFAULT_OAUTH_REDIRECT_URI = "http://localhost:3005/oauth-callback.html"


class Environment(str, Enum):
    DEVELOPMENT = "development"
    PRODUCTION = "production"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Process-wide gateway settings read from the environment."""

    upstream_url: Optional[str] = env_field(None, "UPSTREAM_URL")
    upstream_api_key: Optional[str] = env_field(None, "UPSTREAM_API_KEY")
    dev_api_key: Optional[str] = env_field(
        None,
        "DEV_API_KEY",
        description="Secret required by /api/auth/config and /debug endpoints when set",
    )
    oauth_redirect_uri: Optional[str] = env_field(None, "OAUTH_REDIRECT_URI")
    debug_mode: bool = env_field(False, "DEBUG_MODE")
    environment: Environment = env_field(Environment.DEVELOPMENT, "APP_ENV")
    config_dir: str = env_field(".", "CONFIG_DIR")
    public_dir: str = env_field("public", "PUBLIC_DIR")
    public_base_url: Optional[str] = env_field(None, "PUBLIC_BASE_URL")
    host: str = env_field("0.0.0.0", "HOST")
    port: int = env_field(3001, "PORT")
    test_mode: bool = env_field(False, "TEST_MODE")

    json_body_limit_bytes: int = env_field(50 * 1024 * 1024, "JSON_BODY_LIMIT_BYTES")
    upload_limit_bytes: int = env_field(100 * 1024 * 1024, "UPLOAD_LIMIT_BYTES")

    identity_timeout_seconds: float = env_field(5.0, "IDENTITY_TIMEOUT_SECONDS")
    config_fetch_timeout_seconds: float = env_field(10.0, "CONFIG_FETCH_TIMEOUT_SECONDS")
    proxy_timeout_seconds: float = env_field(30.0, "PROXY_TIMEOUT_SECONDS")
    upload_timeout_seconds: float = env_field(300.0, "UPLOAD_TIMEOUT_SECONDS")

    session_sweep_interval_seconds: int = env_field(300, "SESSION_SWEEP_INTERVAL_SECONDS")
    session_default_ttl_hours: int = env_field(24, "SESSION_DEFAULT_TTL_HOURS")
    tenant_max_in_flight: int = env_field(
        0,
        "TENANT_MAX_IN_FLIGHT",
        description="Concurrent upstream calls allowed per tenant; 0 disables the limit",
    )

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("environment", mode="before")
    @classmethod
    def _normalize_environment(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower() or Environment.DEVELOPMENT
        return value

    @property
    def is_production(self) -> bool:
        return self.environment == Environment.PRODUCTION


class OAuthBlock(BaseModel):
    """``oauth`` block of a tenant entry in the config file."""

    mode: Optional[str] = None
    client_id: Optional[str] = Field(None, alias="clientId")
    authority: Optional[str] = None
    redirect_uri: Optional[str] = Field(None, alias="redirectUri")
    scope: Optional[str] = None
    response_type: Optional[str] = Field(None, alias="responseType")
    prompt: Optional[str] = None

    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class ChatflowSpec(BaseModel):
    """Raw tenant entry; validated by the registry, not here."""

    identifier: Optional[str] = None
    chatflow_id: Optional[str] = Field(None, alias="chatflowId")
    allowed_domains: List[str] = Field(default_factory=list, alias="allowedDomains")
    debug: Optional[bool] = None
    oauth: Optional[OAuthBlock] = None

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    @field_validator("allowed_domains", mode="before")
    @classmethod
    def _coerce_domains(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, str):
            return [part.strip() for part in value.split(",") if part.strip()]
        return value


class GatewayFile(BaseModel):
    """Contents of the tenant table file."""

    api_host: Optional[str] = Field(None, alias="apiHost")
    flowise_api_key: Optional[str] = Field(None, alias="flowiseApiKey")
    oauth_api_key: Optional[str] = Field(None, alias="oauthApiKey")
    oauth_redirect_uri: Optional[str] = Field(None, alias="oauthRedirectUri")
    chatflows: List[ChatflowSpec] = Field(default_factory=list)

    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class GatewayConfig(BaseModel):
    """Resolved startup inputs: globals after env overrides, plus the tenant table."""

    upstream_url: Optional[str] = None
    upstream_api_key: Optional[str] = None
    dev_api_key: Optional[str] = None
    oauth_redirect_uri: str = DEFAULT_OAUTH_REDIRECT_URI
    default_origins: List[str] = Field(default_factory=list)
    chatflows: List[ChatflowSpec] = Field(default_factory=list)
    source: Optional[str] = None


def load_gateway_file(config_dir: str | Path) -> tuple[Optional[GatewayFile], Optional[str]]:
    """Load the first parseable tenant table file from ``config_dir``."""

    root = Path(config_dir)
    for name in CONFIG_FILE_CANDIDATES:
        path = root / name
        if not path.is_file():
            continue
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
            parsed = GatewayFile.model_validate(raw)
        except (OSError, ValueError, ValidationError) as exc:
            logger.error("config_file_parse_failed", path=str(path), error=str(exc))
            continue
        logger.info("config_file_loaded", path=str(path), chatflows=len(parsed.chatflows))
        return parsed, str(path)
    return None, None


def parse_env_tenants(environ: Mapping[str, str]) -> List[ChatflowSpec]:
    """Parse legacy ``CHATFLOW_<IDENTIFIER>=<chatflowId>,<origin>,...`` entries."""

    specs: List[ChatflowSpec] = []
    for key, value in sorted(environ.items()):
        if not key.startswith(TENANT_ENV_PREFIX) or len(key) == len(TENANT_ENV_PREFIX):
            continue
        parts = [part.strip() for part in value.split(",")]
        specs.append(
            ChatflowSpec(
                identifier=key[len(TENANT_ENV_PREFIX):],
                chatflow_id=parts[0] or None,
                allowed_domains=[p for p in parts[1:] if p],
            )
        )
    return specs


def build_gateway_config(
    settings: Settings,
    *,
    file_config: Optional[GatewayFile] = None,
    source: Optional[str] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> GatewayConfig:
    """Reconcile environment settings with the tenant table file.

    Environment values win over file globals; tenants from both are combined.
    """
    file_config = file_config or GatewayFile()
    chatflows = list(file_config.chatflows)
    chatflows.extend(parse_env_tenants(os.environ if environ is None else environ))
    return GatewayConfig(
        upstream_url=(settings.upstream_url or file_config.api_host or None),
        upstream_api_key=(settings.upstream_api_key or file_config.flowise_api_key or None),
        dev_api_key=(settings.dev_api_key or file_config.oauth_api_key or None),
        oauth_redirect_uri=(
            settings.oauth_redirect_uri
            or file_config.oauth_redirect_uri
            or DEFAULT_OAUTH_REDIRECT_URI
        ),
        default_origins=[] if settings.is_production else [DEV_DEFAULT_ORIGIN],
        chatflows=chatflows,
        source=source,
    )


def load_gateway_config(settings: Settings) -> GatewayConfig:
    file_config, source = load_gateway_file(settings.config_dir)
    return build_gateway_config(settings, file_config=file_config, source=source)


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None

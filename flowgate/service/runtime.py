from __future__ import annotations

import threading
from datetime import timedelta
from typing import Optional

import httpx

from flowgate.config import (
    GatewayConfig,
    Settings,
    get_settings,
    load_gateway_config,
    reset_settings_cache,
)
from flowgate.logging import get_logger
from flowgate.service.config_merge import ConfigMerger
from flowgate.service.errors import ConfigurationError
from flowgate.service.identity import OIDCUserInfoClient, UserContextResolver
from flowgate.service.limiter import TenantLimiter
from flowgate.service.oauth_config import OAuthConfigStore
from flowgate.service.proxy import ProxyDispatcher
from flowgate.service.registry import ChatflowRegistry
from flowgate.service.rewriter import PathRewriter
from flowgate.storage.models import TenantEntry
from flowgate.storage.session_cache import SessionCache

logger = get_logger(__name__)


class Runtime:
    """Holds the gateway's long-lived components for the FastAPI app."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        gateway: Optional[GatewayConfig] = None,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.gateway = gateway or load_gateway_config(self.settings)
        logger.info(
            "runtime_init_started",
            config_source=self.gateway.source,
            debug_mode=self.settings.debug_mode,
            environment=self.settings.environment.value,
        )

        if not self.gateway.upstream_url:
            raise ConfigurationError("Upstream URL is not configured (UPSTREAM_URL / apiHost)")
        if not self.gateway.upstream_api_key:
            raise ConfigurationError(
                "Upstream credential is not configured (UPSTREAM_API_KEY / flowiseApiKey)"
            )

        self.registry = ChatflowRegistry().register(
            self.gateway.chatflows, default_origins=self.gateway.default_origins
        )
        self.oauth_configs = OAuthConfigStore(self.gateway.oauth_redirect_uri).register(
            spec for spec in self.gateway.chatflows if self.registry.find(spec.identifier)
        )
        self.sessions = SessionCache(
            default_ttl=timedelta(hours=self.settings.session_default_ttl_hours)
        )
        self.rewriter = PathRewriter(self.registry)
        self.merger = ConfigMerger()
        self.limiter = TenantLimiter(self.settings.tenant_max_in_flight)

        self.http = httpx.AsyncClient(
            transport=transport,
            timeout=httpx.Timeout(self.settings.proxy_timeout_seconds, connect=10.0),
            follow_redirects=False,
        )
        self.dispatcher = ProxyDispatcher(
            self.http,
            self.gateway.upstream_url,
            self.gateway.upstream_api_key,
            limiter=self.limiter,
            proxy_timeout=self.settings.proxy_timeout_seconds,
            upload_timeout=self.settings.upload_timeout_seconds,
        )
        self.resolver = UserContextResolver(
            self.oauth_configs,
            self.sessions,
            OIDCUserInfoClient(self.http, timeout=self.settings.identity_timeout_seconds),
        )
        logger.info(
            "runtime_ready",
            chatflows=len(self.registry.servable()),
            unreachable=len(self.registry) - len(self.registry.servable()),
            oauth=len(self.oauth_configs),
            upstream_url=self.gateway.upstream_url,
        )

    @property
    def dev_api_key(self) -> Optional[str]:
        return self.gateway.dev_api_key

    def debug_enabled(self, tenant: Optional[TenantEntry] = None) -> bool:
        """Tenant override when set, else the process-wide debug toggle."""
        if tenant is not None and tenant.debug_override is not None:
            return tenant.debug_override
        return self.settings.debug_mode

    async def close(self) -> None:
        await self.http.aclose()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton.

    Double-checked locking: the fast path skips the lock once created.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def set_runtime_for_tests(instance: Optional[Runtime]) -> Optional[Runtime]:
    """Install a prebuilt runtime (or clear it) for isolated test runs."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = instance.settings if instance is not None else get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime replacement is only allowed in TEST_MODE")
        runtime = instance
        return runtime

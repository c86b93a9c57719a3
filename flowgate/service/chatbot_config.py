from __future__ import annotations

from typing import Any, Dict, Optional

from flowgate.config import __version__
from flowgate.logging import get_logger
from flowgate.service.config_merge import ConfigMerger
from flowgate.service.errors import UpstreamError
from flowgate.service.oauth_config import build_auth_payload
from flowgate.service.proxy import ProxyDispatcher
from flowgate.storage.models import OAuthTenantConfig, TenantEntry

logger = get_logger(__name__)


def build_local_config(
    tenant: TenantEntry,
    oauth: Optional[OAuthTenantConfig],
    *,
    host: str,
    debug: Optional[bool] = None,
) -> Dict[str, Any]:
    local: Dict[str, Any] = {
        "chatflowId": tenant.chatflow_id,
        "identifier": tenant.identifier,
    }
    if oauth is not None:
        local["authentication"] = build_auth_payload(oauth)
    if debug is not None:
        local["debug"] = debug
    local["proxyServer"] = {
        "version": __version__,
        "host": host,
        "features": {
            "authentication": oauth is not None,
            "domainValidation": True,
            "apiProxy": True,
        },
    }
    return local


async def fetch_upstream_config(
    dispatcher: ProxyDispatcher, tenant: TenantEntry, *, timeout: float
) -> Dict[str, Any]:
    """Upstream chatbot config, or ``{}`` when it cannot be fetched."""
    path = f"/api/v1/public-chatbotConfig/{tenant.chatflow_id}"
    try:
        payload = await dispatcher.get_json(path, timeout=timeout)
    except UpstreamError as exc:
        logger.warning(
            "upstream_config_unavailable",
            identifier=tenant.identifier,
            status_code=exc.status_code,
            error=exc.message,
        )
        return {}
    if not isinstance(payload, dict):
        logger.warning(
            "upstream_config_not_object",
            identifier=tenant.identifier,
            type=type(payload).__name__,
        )
        return {}
    logger.info(
        "upstream_config_fetched",
        identifier=tenant.identifier,
        keys=sorted(payload.keys()),
        uploads=bool(payload.get("uploads")),
    )
    return payload


async def resolve_chatbot_config(
    dispatcher: ProxyDispatcher,
    merger: ConfigMerger,
    tenant: TenantEntry,
    oauth: Optional[OAuthTenantConfig],
    *,
    host: str,
    timeout: float,
    debug: Optional[bool] = None,
) -> Dict[str, Any]:
    local = build_local_config(tenant, oauth, host=host, debug=debug)
    upstream = await fetch_upstream_config(dispatcher, tenant, timeout=timeout)
    return merger.merge(local, upstream, tenant.identifier)

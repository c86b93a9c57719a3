from __future__ import annotations

from typing import Any, Dict, Iterable, Optional

from flowgate.config import ChatflowSpec
from flowgate.logging import get_logger
from flowgate.service.errors import OAuthNotConfiguredError
from flowgate.storage.models import OAuthMode, OAuthTenantConfig

logger = get_logger(__name__)

DEFAULT_MODE = OAuthMode.OPTIONAL
DEFAULT_SCOPE = "openid profile email"
DEFAULT_RESPONSE_TYPE = "code"
DEFAULT_PROMPT = "select_account"

# Shown by the widget's sign-in prompt
PROMPT_CONFIG = {
    "title": "Sign In to Continue",
    "message": "Please sign in to access personalized chat features and chat history.",
    "loginButtonText": "Sign In",
    "skipButtonText": "Continue as Guest",
}
REFRESH_THRESHOLD_SECONDS = 300


def _parse_mode(raw: Optional[str], identifier: str) -> OAuthMode:
    if not raw:
        return DEFAULT_MODE
    try:
        return OAuthMode(raw.strip().lower())
    except ValueError:
        logger.warning("oauth_mode_invalid", identifier=identifier, mode=raw, fallback=DEFAULT_MODE.value)
        return DEFAULT_MODE


class OAuthConfigStore:
    """Per-tenant OAuth parameters with defaults applied at registration."""

    def __init__(self, default_redirect_uri: str) -> None:
        self.default_redirect_uri = default_redirect_uri
        self._configs: Dict[str, OAuthTenantConfig] = {}

    def register(self, specs: Iterable[ChatflowSpec]) -> "OAuthConfigStore":
        for spec in specs:
            if spec.oauth is None or not spec.identifier or not spec.chatflow_id:
                continue
            identifier = spec.identifier.strip()
            block = spec.oauth
            config = OAuthTenantConfig(
                identifier=identifier,
                mode=_parse_mode(block.mode, identifier),
                client_id=block.client_id,
                authority=block.authority.rstrip("/") if block.authority else None,
                redirect_uri=block.redirect_uri or self.default_redirect_uri,
                scope=block.scope or DEFAULT_SCOPE,
                response_type=block.response_type or DEFAULT_RESPONSE_TYPE,
                prompt=block.prompt or DEFAULT_PROMPT,
            )
            self._configs[identifier] = config
            logger.info(
                "oauth_configured",
                identifier=identifier,
                authority=config.authority,
                client_id=config.client_id,
                mode=config.mode.value,
            )
        if not self._configs:
            logger.info("oauth_not_configured")
        return self

    def __len__(self) -> int:
        return len(self._configs)

    def find(self, identifier: Optional[str]) -> Optional[OAuthTenantConfig]:
        if not identifier:
            return None
        config = self._configs.get(identifier)
        if config is not None:
            return config
        lowered = identifier.lower()
        for key, candidate in self._configs.items():
            if key.lower() == lowered:
                return candidate
        return None

    def lookup(self, identifier: str) -> OAuthTenantConfig:
        config = self.find(identifier)
        if config is None:
            raise OAuthNotConfiguredError(identifier)
        return config


def build_auth_payload(config: OAuthTenantConfig) -> Dict[str, Any]:
    """Client-facing authentication block for a tenant."""
    return {
        "mode": config.mode.value,
        "oauth": config.to_public(),
        "promptConfig": dict(PROMPT_CONFIG),
        "tokenStorageKey": f"flowise_tokens_{config.identifier}",
        "autoRefresh": True,
        "refreshThreshold": REFRESH_THRESHOLD_SECONDS,
    }

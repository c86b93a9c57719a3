from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from flowgate.logging import get_logger
from flowgate.service.oauth_config import OAuthConfigStore
from flowgate.service.rewriter import identifier_from_path
from flowgate.storage.models import OAuthTenantConfig, UserInfo
from flowgate.storage.session_cache import SessionCache

logger = get_logger(__name__)

DISCOVERY_SUFFIX = "/.well-known/openid-configuration"


class IdentityLookupError(Exception):
    """Userinfo could not be resolved; callers downgrade to unauthenticated."""


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.strip().partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def chat_id_from(body: Optional[bytes], query_chat_id: Optional[str]) -> Optional[str]:
    """``chatId`` from a JSON body, falling back to the query string."""
    if body:
        try:
            payload = json.loads(body)
        except ValueError:
            payload = None
        if isinstance(payload, dict):
            value = payload.get("chatId")
            if isinstance(value, str) and value:
                return value
    return query_chat_id or None


@dataclass
class UserContext:
    identifier: str
    user: Optional[UserInfo] = None
    chat_id: Optional[str] = None
    source: str = "anonymous"  # "token", "session", or "anonymous"

    @property
    def authenticated(self) -> bool:
        return self.user is not None


class OIDCUserInfoClient:
    """Resolve identity claims from a tenant's OIDC userinfo endpoint."""

    def __init__(self, client: httpx.AsyncClient, *, timeout: float = 5.0) -> None:
        self.client = client
        self.timeout = timeout
        self._discovery: Dict[str, Dict[str, Any]] = {}

    async def discover(self, authority: str) -> Dict[str, Any]:
        cached = self._discovery.get(authority)
        if cached is not None:
            return cached
        url = authority.rstrip("/") + DISCOVERY_SUFFIX
        try:
            response = await self.client.get(
                url, headers={"Accept": "application/json"}, timeout=self.timeout
            )
        except httpx.HTTPError as exc:
            raise IdentityLookupError(f"discovery request failed: {exc}") from exc
        if response.status_code != 200:
            raise IdentityLookupError(f"discovery returned {response.status_code}")
        try:
            document = response.json()
        except ValueError as exc:
            raise IdentityLookupError("discovery document is not JSON") from exc
        if not isinstance(document, dict):
            raise IdentityLookupError("discovery document is not an object")
        self._discovery[authority] = document
        return document

    async def userinfo(self, config: OAuthTenantConfig, token: str) -> UserInfo:
        if not config.authority:
            raise IdentityLookupError("tenant has no OAuth authority")
        document = await self.discover(config.authority)
        endpoint = document.get("userinfo_endpoint")
        if not endpoint:
            raise IdentityLookupError("discovery document has no userinfo_endpoint")
        try:
            response = await self.client.get(
                endpoint,
                headers={"Authorization": f"Bearer {token}", "Accept": "application/json"},
                timeout=self.timeout,
            )
        except httpx.HTTPError as exc:
            raise IdentityLookupError(f"userinfo request failed: {exc}") from exc
        if response.status_code != 200:
            raise IdentityLookupError(f"userinfo returned {response.status_code}")
        try:
            claims = response.json()
        except ValueError as exc:
            raise IdentityLookupError("userinfo response is not JSON") from exc
        if not isinstance(claims, dict):
            raise IdentityLookupError("userinfo response is not an object")
        return UserInfo.from_claims(claims)


class UserContextResolver:
    """Attach an advisory user identity to gateway requests.

    Failures never reject the request: the caller continues unauthenticated.
    Tenants whose OAuth mode is ``required`` are not enforced here either.
    """

    def __init__(
        self,
        oauth_configs: OAuthConfigStore,
        sessions: SessionCache,
        userinfo_client: OIDCUserInfoClient,
    ) -> None:
        self.oauth_configs = oauth_configs
        self.sessions = sessions
        self.userinfo_client = userinfo_client

    async def resolve(
        self,
        *,
        path: str,
        method: str,
        authorization: Optional[str],
        chat_id: Optional[str],
    ) -> Optional[UserContext]:
        identifier = identifier_from_path(path)
        config = self.oauth_configs.find(identifier)
        if identifier is None or config is None:
            return None

        context = UserContext(identifier=config.identifier, chat_id=chat_id)
        token = bearer_token(authorization)
        if token:
            try:
                context.user = await self.userinfo_client.userinfo(config, token)
            except IdentityLookupError as exc:
                logger.warning(
                    "user_context_token_rejected", identifier=config.identifier, error=str(exc)
                )
                return context
            context.source = "token"
            logger.info(
                "user_context_resolved",
                identifier=config.identifier,
                subject=context.user.subject,
                chat_id=chat_id,
            )
            if chat_id and method.upper() == "POST":
                self.sessions.upsert(chat_id, context.user, config.identifier, token)
            return context

        if chat_id:
            session = self.sessions.get(chat_id)
            if session is None:
                logger.debug("user_context_no_session", identifier=config.identifier, chat_id=chat_id)
                return context
            if session.identifier.lower() != config.identifier.lower():
                logger.warning(
                    "user_context_session_tenant_mismatch",
                    identifier=config.identifier,
                    session_identifier=session.identifier,
                    chat_id=chat_id,
                )
                return context
            self.sessions.touch(chat_id)
            context.user = session.user_info
            context.source = "session"
            logger.info(
                "user_context_from_session",
                identifier=config.identifier,
                subject=session.user_info.subject,
                chat_id=chat_id,
            )
        return context

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional


def utcnow() -> datetime:
    """Timezone-aware UTC helper to avoid naive datetime usage."""

    return datetime.now(timezone.utc)


class OAuthMode(str, Enum):
    """How a tenant's widget treats sign-in."""

    REQUIRED = "required"
    OPTIONAL = "optional"
    DISABLED = "disabled"


@dataclass(frozen=True)
class TenantEntry:
    identifier: str
    chatflow_id: str
    allowed_origins: FrozenSet[str] = frozenset()
    debug_override: Optional[bool] = None
    # Set when the allow-list contains "*"; such tenants are never served.
    unreachable: bool = False


@dataclass(frozen=True)
class OAuthTenantConfig:
    identifier: str
    mode: OAuthMode
    client_id: Optional[str]
    authority: Optional[str]
    redirect_uri: str
    scope: str
    response_type: str
    prompt: str

    def to_public(self) -> Dict[str, Any]:
        return {
            "clientId": self.client_id,
            "authority": self.authority,
            "redirectUri": self.redirect_uri,
            "scope": self.scope,
            "responseType": self.response_type,
            "prompt": self.prompt,
        }


@dataclass(frozen=True)
class UserInfo:
    subject: Optional[str]
    email: Optional[str] = None
    name: Optional[str] = None
    username: Optional[str] = None

    @classmethod
    def from_claims(cls, claims: Dict[str, Any]) -> "UserInfo":
        return cls(
            subject=claims.get("sub"),
            email=claims.get("email"),
            name=claims.get("name"),
            username=claims.get("preferred_username") or claims.get("username"),
        )

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {
            "sub": self.subject,
            "email": self.email,
            "name": self.name,
            "username": self.username,
        }


@dataclass(frozen=True)
class UnverifiedExpiry:
    """Expiry read from an access token WITHOUT signature verification.

    Only used to size a session cache TTL. Never an authentication decision.
    """

    epoch_ms: int

    def as_datetime(self) -> Optional[datetime]:
        """Expiry instant, or None when it lies outside the platform's datetime range."""
        try:
            return datetime.fromtimestamp(self.epoch_ms / 1000, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None


@dataclass
class Session:
    chat_id: str
    user_info: UserInfo
    identifier: str
    created_at: datetime
    expires_at: datetime
    last_accessed: datetime

    @classmethod
    def new(
        cls,
        chat_id: str,
        user_info: UserInfo,
        identifier: str,
        *,
        expiry: Optional[UnverifiedExpiry] = None,
        default_ttl: timedelta = timedelta(hours=24),
        now: Optional[datetime] = None,
    ) -> "Session":
        now = now or utcnow()
        expires_at = expiry.as_datetime() if expiry is not None else None
        if expires_at is None:
            expires_at = now + default_ttl
        return cls(
            chat_id=chat_id,
            user_info=user_info,
            identifier=identifier,
            created_at=now,
            expires_at=expires_at,
            last_accessed=now,
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at < (now or utcnow())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chatId": self.chat_id,
            "userInfo": self.user_info.to_dict(),
            "identifier": self.identifier,
            "createdAt": self.created_at.isoformat(),
            "expiresAt": self.expires_at.isoformat(),
            "lastAccessed": self.last_accessed.isoformat(),
        }


@dataclass
class ProxyRequestContext:
    original_path: str
    tenant: Optional[TenantEntry] = None
    rewritten_path: Optional[str] = None
    user: Optional[UserInfo] = None
    streaming: bool = False

    @property
    def target_path(self) -> str:
        return self.rewritten_path or self.original_path

from __future__ import annotations

from typing import AbstractSet, Optional

from flowgate.service.errors import DomainDeniedError
from flowgate.service.registry import WILDCARD_ORIGIN
from flowgate.storage.models import TenantEntry


def is_allowed(origin: Optional[str], allowed_origins: AbstractSet[str]) -> bool:
    """Origin check for browser callers.

    A missing Origin header (same-origin or non-browser caller) passes. A
    wildcard anywhere in the allow-list denies everything.
    """
    if WILDCARD_ORIGIN in allowed_origins:
        return False
    if not origin:
        return True
    return origin in allowed_origins


def is_tenant_allowed(origin: Optional[str], tenant: TenantEntry) -> bool:
    if tenant.unreachable:
        return False
    return is_allowed(origin, tenant.allowed_origins)


def ensure_origin_allowed(origin: Optional[str], tenant: TenantEntry) -> None:
    if not is_tenant_allowed(origin, tenant):
        raise DomainDeniedError(
            "Access Denied", detail={"identifier": tenant.identifier, "origin": origin}
        )

from __future__ import annotations

import re
from typing import Dict, Iterable, Iterator, List, Optional, Sequence

from flowgate.config import ChatflowSpec
from flowgate.logging import get_logger
from flowgate.service.errors import ConfigurationError, TenantNotFoundError
from flowgate.storage.models import TenantEntry

logger = get_logger(__name__)

WILDCARD_ORIGIN = "*"

_UUID_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE
)


def looks_like_uuid(value: Optional[str]) -> bool:
    """True when ``value`` has the shape of an upstream chatflow id."""
    return bool(value) and bool(_UUID_PATTERN.match(value))


class ChatflowRegistry:
    """Tenant table: identifier -> chatflow id, allowed origins, debug flag.

    Built once at startup and immutable afterwards. Identifiers are unique
    case-insensitively and keep the case they were first registered with;
    lookups fall back to a case-insensitive scan.
    """

    def __init__(self) -> None:
        self._entries: Dict[str, TenantEntry] = {}

    def register(
        self,
        specs: Iterable[ChatflowSpec],
        *,
        default_origins: Sequence[str] = (),
    ) -> "ChatflowRegistry":
        for spec in specs:
            identifier = (spec.identifier or "").strip()
            chatflow_id = (spec.chatflow_id or "").strip()
            if not identifier or not chatflow_id:
                logger.error(
                    "chatflow_entry_invalid",
                    identifier=identifier or None,
                    reason="missing identifier or chatflowId",
                )
                continue

            origins = set(default_origins)
            origins.update(o.strip() for o in spec.allowed_domains if o and o.strip())
            existing = self.find(identifier)
            if existing is not None:
                # Identifiers are unique case-insensitively; the first spelling wins.
                identifier = existing.identifier
                if existing.chatflow_id != chatflow_id:
                    logger.warning(
                        "chatflow_entry_duplicate",
                        identifier=identifier,
                        kept=existing.chatflow_id,
                        ignored=chatflow_id,
                    )
                origins |= existing.allowed_origins
                chatflow_id = existing.chatflow_id

            unreachable = WILDCARD_ORIGIN in origins
            if unreachable:
                logger.error(
                    "chatflow_wildcard_origin",
                    identifier=identifier,
                    message="Wildcard (*) origins are not allowed; this chatflow will not be accessible",
                )
            if not looks_like_uuid(chatflow_id):
                logger.warning(
                    "chatflow_id_not_uuid", identifier=identifier, chatflow_id=chatflow_id
                )

            self._entries[identifier] = TenantEntry(
                identifier=identifier,
                chatflow_id=chatflow_id,
                allowed_origins=frozenset(origins),
                debug_override=(
                    spec.debug
                    if spec.debug is not None
                    else (existing.debug_override if existing else None)
                ),
                unreachable=unreachable,
            )

        if not any(not entry.unreachable for entry in self._entries.values()):
            raise ConfigurationError("No valid chatflow configurations found")

        for entry in self._entries.values():
            logger.info(
                "chatflow_configured",
                identifier=entry.identifier,
                chatflow_id=entry.chatflow_id,
                origins=sorted(entry.allowed_origins),
                reachable=not entry.unreachable,
            )
        return self

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[TenantEntry]:
        return iter(self._entries.values())

    def servable(self) -> List[TenantEntry]:
        return [entry for entry in self._entries.values() if not entry.unreachable]

    def find(self, identifier: Optional[str]) -> Optional[TenantEntry]:
        """Exact match, then case-insensitive scan. Includes unreachable entries."""
        if not identifier:
            return None
        entry = self._entries.get(identifier)
        if entry is not None:
            return entry
        lowered = identifier.lower()
        for key, candidate in self._entries.items():
            if key.lower() == lowered:
                return candidate
        return None

    def lookup(self, identifier: Optional[str], *, include_unreachable: bool = False) -> TenantEntry:
        """Resolve a servable tenant or raise ``TenantNotFoundError``.

        ``include_unreachable`` exposes wildcard-flagged entries for diagnostics.
        """
        entry = self.find(identifier)
        if entry is None or (entry.unreachable and not include_unreachable):
            raise TenantNotFoundError(identifier or "")
        return entry

    def find_by_chatflow_id(self, chatflow_id: Optional[str]) -> Optional[TenantEntry]:
        if not chatflow_id:
            return None
        for entry in self._entries.values():
            if entry.chatflow_id == chatflow_id:
                return entry
        return None

    def all_allowed_origins(self) -> frozenset[str]:
        """Union of every servable tenant's allow-list."""
        origins: set[str] = set()
        for entry in self.servable():
            origins |= entry.allowed_origins
        return frozenset(origins)

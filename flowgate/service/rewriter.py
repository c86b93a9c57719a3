from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Sequence

from flowgate.logging import get_logger
from flowgate.service.errors import TenantNotFoundError
from flowgate.service.registry import ChatflowRegistry, looks_like_uuid
from flowgate.storage.models import TenantEntry

logger = get_logger(__name__)

# Indexes into the non-empty path segments where an identifier may sit:
#   3 -> /api/v1/<resource>/<identifier>/...
#   4 -> /api/v1/<resource>/<sub>/<identifier>/...
# Upstream URL shapes are not uniform, so this is a best-effort search.
CANDIDATE_POSITIONS: Sequence[int] = (3, 4)


@dataclass(frozen=True)
class RewriteResult:
    original: str
    path: str
    tenant: Optional[TenantEntry] = None
    identifier: Optional[str] = None
    position: Optional[int] = None

    @property
    def rewritten(self) -> bool:
        return self.tenant is not None


def split_segments(path: str) -> List[str]:
    return [segment for segment in path.split("/") if segment]


class PathRewriter:
    """Swap the public tenant identifier in a path for its chatflow id.

    Must receive the full inbound path; a mount-stripped path shifts the
    segment positions.
    """

    def __init__(
        self,
        registry: ChatflowRegistry,
        positions: Sequence[int] = CANDIDATE_POSITIONS,
    ) -> None:
        self.registry = registry
        self.positions = tuple(positions)

    def rewrite(self, path: str) -> RewriteResult:
        path_only, sep, query = path.partition("?")
        raw_segments = path_only.split("/")
        # Positions count non-empty segments; map them back to raw indexes so
        # leading, trailing, and doubled slashes survive the rebuild.
        non_empty = [i for i, segment in enumerate(raw_segments) if segment]
        first_candidate: Optional[str] = None

        for position in self.positions:
            if position >= len(non_empty):
                break
            raw_index = non_empty[position]
            candidate = raw_segments[raw_index]
            if first_candidate is None:
                first_candidate = candidate
            if looks_like_uuid(candidate):
                continue
            try:
                tenant = self.registry.lookup(candidate)
            except TenantNotFoundError:
                continue
            rebuilt = list(raw_segments)
            rebuilt[raw_index] = tenant.chatflow_id
            new_path = "/".join(rebuilt) + (sep + query if sep else "")
            logger.debug(
                "path_rewritten",
                identifier=candidate,
                position=position,
                chatflow_id=tenant.chatflow_id,
            )
            return RewriteResult(
                original=path,
                path=new_path,
                tenant=tenant,
                identifier=candidate,
                position=position,
            )
        # ``identifier`` reports the segment at the first candidate position so
        # callers can tell "no identifier" from "unknown identifier".
        return RewriteResult(original=path, path=path, identifier=first_candidate)


def identifier_from_path(path: str) -> Optional[str]:
    """Last non-UUID-shaped segment of ``path``, the gateway's tenant convention."""
    for segment in reversed(split_segments(path.partition("?")[0])):
        if not looks_like_uuid(segment):
            return segment
    return None

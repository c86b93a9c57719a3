from __future__ import annotations

import re
from typing import Optional, Protocol, Sequence

from flowgate.logging import get_logger
from flowgate.service.errors import MultipartBoundaryError

logger = get_logger(__name__)

DEFAULT_MEDIA_TYPE = "multipart/form-data"

# RFC 2046 boundaries are 1-70 characters.
_FIRST_LINE_BOUNDARY = re.compile(rb"\A--([^\r\n]{1,70}?)[ \t]*\r?\n")
_BOUNDARY_PARAM = re.compile(r'boundary\s*=\s*(?:"([^"]+)"|([^;\s"]+))', re.IGNORECASE)


class BoundaryRecovery(Protocol):
    """Strategy that recovers a multipart boundary from the raw body."""

    def recover(self, body: bytes) -> Optional[str]: ...


class FirstLineBoundaryRecovery:
    """Read the boundary from the body's opening ``--<boundary>`` line."""

    def recover(self, body: bytes) -> Optional[str]:
        match = _FIRST_LINE_BOUNDARY.match(body)
        if not match:
            return None
        try:
            return match.group(1).decode("ascii")
        except UnicodeDecodeError:
            return None


DEFAULT_STRATEGIES: Sequence[BoundaryRecovery] = (FirstLineBoundaryRecovery(),)


def boundary_from_header(content_type: Optional[str]) -> Optional[str]:
    if not content_type:
        return None
    match = _BOUNDARY_PARAM.search(content_type)
    if not match:
        return None
    return match.group(1) or match.group(2)


def _without_boundary(content_type: Optional[str]) -> list[str]:
    """Media type and parameters of ``content_type`` minus any (empty) boundary."""
    parts = [part.strip() for part in (content_type or "").split(";")]
    media_type = parts[0] or DEFAULT_MEDIA_TYPE
    params = [
        part
        for part in parts[1:]
        if part and part.partition("=")[0].strip().lower() != "boundary"
    ]
    return [media_type, *params]


def resolve_multipart_content_type(
    content_type: Optional[str],
    body: bytes,
    strategies: Sequence[BoundaryRecovery] = DEFAULT_STRATEGIES,
) -> str:
    """Return a Content-Type that carries the multipart boundary.

    The header is used as-is when it has a boundary. Otherwise each strategy
    is tried against the raw body and the header is rebuilt with the
    recovered boundary. Raises ``MultipartBoundaryError`` when nothing works.
    """
    if boundary_from_header(content_type):
        return content_type  # type: ignore[return-value]

    for strategy in strategies:
        boundary = strategy.recover(body)
        if boundary:
            corrected = "; ".join([*_without_boundary(content_type), f"boundary={boundary}"])
            logger.warning(
                "multipart_boundary_recovered",
                original_content_type=content_type,
                content_type=corrected,
                strategy=type(strategy).__name__,
            )
            return corrected

    raise MultipartBoundaryError(
        "Multipart boundary missing from Content-Type header and request body",
        detail={"content_type": content_type},
    )


def is_multipart(content_type: Optional[str]) -> bool:
    return bool(content_type) and content_type.lower().lstrip().startswith("multipart/")

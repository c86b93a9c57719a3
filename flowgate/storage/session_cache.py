from __future__ import annotations

import base64
import binascii
import json
import math
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from flowgate.logging import get_logger
from flowgate.storage.models import Session, UnverifiedExpiry, UserInfo, utcnow

logger = get_logger(__name__)


def derive_expiry(bearer_token: Optional[str]) -> Optional[UnverifiedExpiry]:
    """Read the ``exp`` claim of a JWT-shaped token without verifying it.

    Returns None when the token is not three dot-separated segments, the middle
    segment is not base64url JSON, or it carries no finite numeric ``exp``.
    """
    if not bearer_token:
        return None
    parts = bearer_token.split(".")
    if len(parts) != 3:
        return None
    segment = parts[1]
    padded = segment + "=" * (-len(segment) % 4)
    try:
        payload = json.loads(base64.urlsafe_b64decode(padded.encode("ascii")))
    except (binascii.Error, UnicodeError, ValueError):
        return None
    if not isinstance(payload, dict):
        return None
    exp = payload.get("exp")
    if isinstance(exp, bool) or not isinstance(exp, (int, float)):
        return None
    if isinstance(exp, float) and not math.isfinite(exp):
        return None
    return UnverifiedExpiry(epoch_ms=int(exp * 1000))


class SessionCache:
    """In-memory chat session cache keyed by opaque chat ids.

    The gateway runs on a single event loop so mutations need no lock; reads
    and writes may still interleave with ``sweep`` at await points.
    """

    def __init__(
        self,
        *,
        default_ttl: timedelta = timedelta(hours=24),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._sessions: Dict[str, Session] = {}
        self.default_ttl = default_ttl
        self._clock = clock

    derive_expiry = staticmethod(derive_expiry)

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, chat_id: object) -> bool:
        return chat_id in self._sessions

    def now(self) -> datetime:
        return self._clock()

    def put(self, chat_id: str, session: Session) -> Session:
        self._sessions[chat_id] = session
        return session

    def upsert(
        self,
        chat_id: str,
        user_info: UserInfo,
        identifier: str,
        bearer_token: Optional[str] = None,
    ) -> Session:
        """Create or replace the session for ``chat_id`` with a fresh expiry."""
        now = self.now()
        session = Session.new(
            chat_id,
            user_info,
            identifier,
            expiry=derive_expiry(bearer_token),
            default_ttl=self.default_ttl,
            now=now,
        )
        previous = self._sessions.get(chat_id)
        if previous is not None and previous.identifier == identifier:
            session.created_at = previous.created_at
        self.put(chat_id, session)
        logger.debug(
            "session_upserted",
            chat_id=chat_id,
            identifier=identifier,
            expires_at=session.expires_at.isoformat(),
        )
        return session

    def get(self, chat_id: str) -> Optional[Session]:
        """Return the live session or None; expired entries are evicted."""
        session = self._sessions.get(chat_id)
        if session is None:
            return None
        if session.is_expired(self.now()):
            self._sessions.pop(chat_id, None)
            logger.info("session_expired_on_access", chat_id=chat_id)
            return None
        return session

    def touch(self, chat_id: str) -> Optional[Session]:
        """Refresh ``last_accessed`` of a live session. Never extends expiry."""
        session = self.get(chat_id)
        if session is not None:
            session.last_accessed = self.now()
        return session

    def delete(self, chat_id: str) -> bool:
        return self._sessions.pop(chat_id, None) is not None

    def sweep(self) -> int:
        now = self.now()
        expired = [
            chat_id
            for chat_id, session in self._sessions.items()
            if session.expires_at < now
        ]
        for chat_id in expired:
            self._sessions.pop(chat_id, None)
        if expired:
            logger.info("session_sweep", removed=len(expired), remaining=len(self._sessions))
        return len(expired)

    def list_for_tenant(self, identifier: str) -> List[Session]:
        lowered = identifier.lower()
        return [
            session
            for session in self._sessions.values()
            if session.identifier.lower() == lowered
        ]

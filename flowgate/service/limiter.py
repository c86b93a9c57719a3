from __future__ import annotations

import contextlib
from typing import AsyncIterator, Dict

from flowgate.logging import get_logger
from flowgate.service.errors import TenantBusyError

logger = get_logger(__name__)


class TenantLimiter:
    """Caps concurrent upstream calls per tenant.

    ``max_in_flight == 0`` disables the cap, so one tenant can still saturate
    upstream connections for everyone else.
    """

    def __init__(self, max_in_flight: int = 0) -> None:
        self.max_in_flight = max(0, max_in_flight)
        self._in_flight: Dict[str, int] = {}

    def in_flight(self, identifier: str) -> int:
        return self._in_flight.get(identifier, 0)

    def acquire(self, identifier: str) -> None:
        current = self._in_flight.get(identifier, 0)
        if self.max_in_flight and current >= self.max_in_flight:
            logger.warning(
                "tenant_busy", identifier=identifier, in_flight=current, limit=self.max_in_flight
            )
            raise TenantBusyError(
                "Too many concurrent requests for this chatflow",
                detail={"identifier": identifier, "limit": self.max_in_flight},
            )
        self._in_flight[identifier] = current + 1

    def release(self, identifier: str) -> None:
        remaining = self._in_flight.get(identifier, 0) - 1
        if remaining > 0:
            self._in_flight[identifier] = remaining
        else:
            self._in_flight.pop(identifier, None)

    @contextlib.asynccontextmanager
    async def slot(self, identifier: str) -> AsyncIterator[None]:
        self.acquire(identifier)
        try:
            yield
        finally:
            self.release(identifier)

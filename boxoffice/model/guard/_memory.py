from __future__ import annotations
import asyncio
import itertools
import logging
from typing import Dict, Optional

log = logging.getLogger(__name__)


class InMemoryGuard:
    """
    Per-order mutual exclusion for a single process.

    An order id is "in flight" from try_acquire() until release(). Every
    acquisition also schedules a release after `ttl_seconds` so a holder that
    died mid-way cannot wedge the order. try_acquire() hands out a token;
    release() and the expiry timer only remove the entry holding that token.

    try_acquire() never awaits, so check-and-insert is atomic on the event
    loop.
    """

    def __init__(self, ttl_seconds: float = 30.0) -> None:
        self.ttl = ttl_seconds
        self._tokens = itertools.count(1)
        # order_id -> (token, timer handle)
        self._in_flight: Dict[str, tuple[str, asyncio.TimerHandle]] = {}

    async def try_acquire(self, order_id: str) -> Optional[str]:
        """Return the holder's token, or None if the order is in flight."""
        if order_id in self._in_flight:
            return None
        token = str(next(self._tokens))
        loop = asyncio.get_running_loop()
        handle = loop.call_later(self.ttl, self._expire, order_id, token)
        self._in_flight[order_id] = (token, handle)
        return token

    async def release(self, order_id: str, token: str) -> None:
        entry = self._in_flight.get(order_id)
        if entry is None or entry[0] != token:
            log.warning("guard for order %s no longer held by this "
                        "caller, not releasing", order_id)
            return
        del self._in_flight[order_id]
        entry[1].cancel()

    def _expire(self, order_id: str, token: str) -> None:
        entry = self._in_flight.get(order_id)
        if entry is not None and entry[0] == token:
            del self._in_flight[order_id]
            log.warning("guard for order %s expired after %.0fs",
                        order_id, self.ttl)

    async def held(self, order_id: str) -> bool:
        return order_id in self._in_flight

    def __len__(self) -> int:
        return len(self._in_flight)

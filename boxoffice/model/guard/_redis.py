from __future__ import annotations
import logging
import uuid
from typing import Optional
import redis.asyncio as redis

log = logging.getLogger(__name__)


# ---- keys
def k_guard(order_id: str) -> str: return f"fulfill:guard:{order_id}"


# delete only if the caller still owns the key
_RELEASE_LUA = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
end
return 0
"""


class RedisGuard:
    """
    Per-order mutual exclusion visible to every process sharing the Redis.

    SET NX with an expiry is the self-expiring lock; the value is the token
    returned to the caller, and release() deletes the key only while it
    still carries that token.
    """

    def __init__(self, r: redis.Redis, ttl_seconds: float = 30.0) -> None:
        self.r = r
        self.ttl_ms = int(ttl_seconds * 1000)

    async def try_acquire(self, order_id: str) -> Optional[str]:
        token = uuid.uuid4().hex
        ok = await self.r.set(k_guard(order_id), token, nx=True, px=self.ttl_ms)
        return token if ok else None

    async def release(self, order_id: str, token: str) -> None:
        deleted = await self.r.eval(_RELEASE_LUA, 1, k_guard(order_id), token)
        if not deleted:
            log.warning("guard for order %s no longer held by this "
                        "caller, not releasing", order_id)

    async def held(self, order_id: str) -> bool:
        return bool(await self.r.exists(k_guard(order_id)))

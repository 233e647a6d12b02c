# model/guard/__init__.py
import os
from typing import Optional
import redis.asyncio as redis

BACKEND = os.getenv("GUARD_BACKEND", "memory").lower()  # 'memory' | 'redis'
GUARD_TTL_SECONDS = float(os.getenv("GUARD_TTL_SECONDS", "30"))

from ._memory import InMemoryGuard  # noqa: E402
from ._redis import RedisGuard  # noqa: E402


# Factory keeps server.py simple and constructor-agnostic:
def new_guard(*, r: Optional[redis.Redis] = None,
              ttl_seconds: float = GUARD_TTL_SECONDS):
    if BACKEND == "redis":
        if r is None:
            raise RuntimeError("RedisGuard requires r=redis.Redis")
        return RedisGuard(r=r, ttl_seconds=ttl_seconds)
    return InMemoryGuard(ttl_seconds=ttl_seconds)


__all__ = [
    "InMemoryGuard", "RedisGuard", "new_guard", "BACKEND",
    "GUARD_TTL_SECONDS",
]

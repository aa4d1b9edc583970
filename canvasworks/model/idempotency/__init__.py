from typing import Optional
from sqlalchemy.ext.asyncio import async_sessionmaker
import redis.asyncio as redis

from ...config import IDEMPOTENCY_BACKEND as BACKEND
from ...infra.sql import Gated
from ._postgres import IdempotencyStore as SqlIdempotencyStore
from ._redis import IdempotencyStore as RedisIdempotencyStore


# Factory keeps server.py simple and constructor-agnostic:
def new_store(*, sessions: Optional[async_sessionmaker] = None,
              gated: Optional[Gated] = None,
              r: Optional[redis.Redis] = None):
    if BACKEND == "redis":
        if r is None:
            raise RuntimeError(
                "IdempotencyStore(redis) requires r=redis.Redis"
            )
        return RedisIdempotencyStore(r=r)
    if sessions is None or gated is None:
        raise RuntimeError(
            "IdempotencyStore(sql) requires sessions= and gated="
        )
    return SqlIdempotencyStore(sessions=sessions, gated=gated)


IdempotencyStore = (
    RedisIdempotencyStore if BACKEND == "redis" else SqlIdempotencyStore
)
__all__ = [
    "IdempotencyStore", "SqlIdempotencyStore", "RedisIdempotencyStore",
    "new_store", "BACKEND",
]

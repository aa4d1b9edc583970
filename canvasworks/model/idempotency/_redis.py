from __future__ import annotations
import redis.asyncio as redis

from ...helpers import now_ts


# ---- keys
def k_effect(effect_name: str, event_id: str) -> str:
    return f"effect:{effect_name}:{event_id}"


# the gateway stops redelivering after a few days
RETENTION_SECONDS = 30 * 24 * 3600


class IdempotencyStore:
    def __init__(self, r: redis.Redis,
                 ttl_seconds: int = RETENTION_SECONDS) -> None:
        self.r = r
        self.ttl = ttl_seconds

    async def seen(self, effect_name: str, event_id: str) -> bool:
        return bool(await self.r.exists(k_effect(effect_name, event_id)))

    async def record(self, effect_name: str, event_id: str) -> None:
        await self.r.set(
            k_effect(effect_name, event_id), str(now_ts()),
            nx=True, ex=self.ttl,
        )

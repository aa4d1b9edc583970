from __future__ import annotations
from sqlalchemy import text
from sqlalchemy.ext.asyncio import async_sessionmaker

from ...helpers import now_ts
from ...infra.sql import Gated


class IdempotencyStore:
    """(effect_name, event_id) -> completed_at, in the relational store.

    Works on PostgreSQL and SQLite alike; both speak ON CONFLICT.
    """

    def __init__(self, *, sessions: async_sessionmaker, gated: Gated) -> None:
        self.sessions = sessions
        self.gated = gated

    async def seen(self, effect_name: str, event_id: str) -> bool:
        async with self.gated():
            async with self.sessions() as db:
                result = await db.execute(text("""
                    SELECT 1 FROM idempotency_records
                    WHERE effect_name = :effect AND event_id = :event
                """), {"effect": effect_name, "event": event_id})
                return result.first() is not None

    async def record(self, effect_name: str, event_id: str) -> None:
        async with self.gated():
            async with self.sessions() as db:
                async with db.begin():
                    await db.execute(text("""
                        INSERT INTO idempotency_records(
                          effect_name, event_id, completed_at
                        ) VALUES (:effect, :event, :at)
                        ON CONFLICT (effect_name, event_id) DO NOTHING
                    """), {
                        "effect": effect_name,
                        "event": event_id,
                        "at": now_ts(),
                    })

import os
import asyncio
from contextlib import asynccontextmanager
from typing import Any, AsyncContextManager, Callable, Dict, NamedTuple, Tuple

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine,
)

from ..model.db import Base

Gated = Callable[[], AsyncContextManager[None]]

_DRIVERS = (
    ("sqlite://", "sqlite+aiosqlite://"),
    ("postgresql://", "postgresql+asyncpg://"),
    ("postgres://", "postgresql+asyncpg://"),
)


class Database(NamedTuple):
    engine: AsyncEngine
    sessions: async_sessionmaker
    gated: Gated


def normalize_async_url(url: str) -> str:
    for plain, async_ in _DRIVERS:
        if url.startswith(plain):
            return async_ + url[len(plain):]
    return url


def _pool_settings(db_url: str) -> Tuple[Dict[str, Any], int]:
    """Engine kwargs plus the gate size that matches the pool."""
    kw: Dict[str, Any] = dict(future=True, pool_pre_ping=True)
    if not db_url.startswith("postgresql+asyncpg://"):
        return kw, int(os.getenv("DB_GATE_LIMIT", "10"))

    pool_size = int(os.getenv("DB_POOL_SIZE", "10"))
    kw.update(
        pool_size=pool_size,
        max_overflow=int(os.getenv("DB_MAX_OVERFLOW", "10")),
        pool_timeout=int(os.getenv("DB_POOL_TIMEOUT", "30")),
    )
    return kw, int(os.getenv("DB_GATE_LIMIT", pool_size))


def _install_sqlite_pragmas(engine: AsyncEngine) -> None:
    @event.listens_for(engine.sync_engine, "connect")
    def _pragmas(dbapi_connection, _):
        cur = dbapi_connection.cursor()
        # webhook, cron and admin requests write concurrently
        cur.execute("PRAGMA journal_mode=WAL;")
        cur.execute("PRAGMA busy_timeout=5000;")
        cur.execute("PRAGMA synchronous=NORMAL;")
        cur.close()


@asynccontextmanager
async def _gated(sem: asyncio.Semaphore):
    await sem.acquire()
    try:
        yield
    finally:
        sem.release()


def make_async_engine(database_url: str) -> Database:
    """Engine, session factory and a per-engine concurrency gate.

    Every store wraps its session in ``async with gated():`` so the number
    of in-flight queries never exceeds what the pool can serve.
    """
    db_url = normalize_async_url(database_url)
    kw, gate_limit = _pool_settings(db_url)

    engine = create_async_engine(db_url, **kw)
    if db_url.startswith("sqlite+aiosqlite://"):
        _install_sqlite_pragmas(engine)

    sessions = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )
    sem = asyncio.Semaphore(max(1, gate_limit))
    return Database(engine, sessions, lambda: _gated(sem))


async def create_schema(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

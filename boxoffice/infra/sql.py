import os
import asyncio
from dataclasses import dataclass
from typing import AsyncContextManager, Callable

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
)
from contextlib import asynccontextmanager

Gated = Callable[[], AsyncContextManager[None]]


def normalize_async_url(url: str) -> str:
    if url.startswith("sqlite://"):
        return url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+asyncpg://", 1)
    return url


# DB-GATE: never hold more sessions than the pool can serve
@asynccontextmanager
async def _gated(sem: asyncio.Semaphore):
    await sem.acquire()
    try:
        yield
    finally:
        sem.release()


@dataclass
class Database:
    engine: AsyncEngine
    sessions: async_sessionmaker
    gated: Gated

    async def create_schema(self) -> None:
        # imported late so infra does not depend on the model at import time
        from ..model.db import Base
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def dispose(self) -> None:
        await self.engine.dispose()


def make_database(database_url: str) -> Database:
    db_url = normalize_async_url(database_url)
    kw = dict(future=True, pool_pre_ping=True)

    pool_size = None
    if db_url.startswith("postgresql+asyncpg://"):
        pool_size = int(os.getenv("DB_POOL_SIZE", "10"))
        kw.update(
            pool_size=pool_size,
            max_overflow=int(os.getenv("DB_MAX_OVERFLOW", "10")),
            pool_timeout=int(os.getenv("DB_POOL_TIMEOUT", "30")),
        )

    engine = create_async_engine(db_url, **kw)

    if db_url.startswith("sqlite+aiosqlite://"):
        @event.listens_for(engine.sync_engine, "connect")
        def _sqlite_pragmas(dbapi_connection, _):
            cur = dbapi_connection.cursor()
            cur.execute("PRAGMA journal_mode=WAL;")
            cur.execute("PRAGMA busy_timeout=5000;")
            cur.execute("PRAGMA synchronous=NORMAL;")
            cur.close()

    sessions = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )

    # sqlite has no pool size; postgres defaults the gate to the pool size
    if pool_size is None:
        gate_limit = int(os.getenv("DB_GATE_LIMIT", "10"))
    else:
        gate_limit = int(os.getenv("DB_GATE_LIMIT", pool_size))

    db_gate = asyncio.Semaphore(max(1, gate_limit))

    def gated():
        return _gated(db_gate)

    return Database(engine=engine, sessions=sessions, gated=gated)

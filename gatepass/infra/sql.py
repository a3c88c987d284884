import os
import asyncio
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Dict, NamedTuple, Optional

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine,
)

_DRIVERS = (
    ("sqlite://", "sqlite+aiosqlite://"),
    ("postgresql://", "postgresql+asyncpg://"),
    ("postgres://", "postgresql+asyncpg://"),
)

SQLITE_PRAGMAS = (
    "PRAGMA journal_mode=WAL;",
    "PRAGMA busy_timeout=5000;",
    "PRAGMA synchronous=NORMAL;",
    "PRAGMA foreign_keys=ON;",
)


class Database(NamedTuple):
    engine: AsyncEngine
    sessions: async_sessionmaker
    gate: asyncio.Semaphore
    gated: Callable[[], Any]


def normalize_async_url(url: str) -> str:
    """Plain sqlite/postgres URLs get their async driver."""
    for plain, driver in _DRIVERS:
        if url.startswith(plain):
            return driver + url[len(plain):]
    return url


def _pool_options(db_url: str) -> Dict[str, int]:
    if not db_url.startswith("postgresql+asyncpg://"):
        return {}
    return {
        "pool_size": int(os.getenv("DB_POOL_SIZE", "10")),
        "max_overflow": int(os.getenv("DB_MAX_OVERFLOW", "10")),
        "pool_timeout": int(os.getenv("DB_POOL_TIMEOUT", "30")),
    }


def _install_sqlite_pragmas(engine: AsyncEngine) -> None:
    @event.listens_for(engine.sync_engine, "connect")
    def _pragmas(dbapi_connection, _):
        cur = dbapi_connection.cursor()
        for pragma in SQLITE_PRAGMAS:
            cur.execute(pragma)
        cur.close()


# DB gate: at most `limit` units of work hold a connection at once
@asynccontextmanager
async def _gated(sem: asyncio.Semaphore) -> AsyncIterator[None]:
    async with sem:
        yield


def _gate_limit(pool_size: Optional[int]) -> int:
    default = pool_size if pool_size is not None else 10
    return max(1, int(os.getenv("DB_GATE_LIMIT", default)))


def make_async_engine(database_url: str) -> Database:
    """
    Engine, session factory and DB gate for `database_url`.

        engine, SessionAsync, gate, gated = make_async_engine(url)
        async with gated():
            async with session.begin():
                ...
    """
    db_url = normalize_async_url(database_url)
    pool = _pool_options(db_url)
    engine = create_async_engine(
        db_url, future=True, pool_pre_ping=True, **pool
    )
    if db_url.startswith("sqlite+aiosqlite://"):
        _install_sqlite_pragmas(engine)

    sessions = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )
    gate = asyncio.Semaphore(_gate_limit(pool.get("pool_size")))

    def gated():
        return _gated(gate)

    return Database(engine, sessions, gate, gated)

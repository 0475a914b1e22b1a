import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncContextManager, Callable, NamedTuple, Optional

from sqlalchemy import event
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine,
)

from .timings import timeit

_ASYNC_DRIVERS = {
    "sqlite": "sqlite+aiosqlite",
    "postgres": "postgresql+asyncpg",
    "postgresql": "postgresql+asyncpg",
}

SQLITE_PRAGMAS = (
    "PRAGMA journal_mode=WAL;",
    "PRAGMA busy_timeout=5000;",
    "PRAGMA synchronous=NORMAL;",
)

Gated = Callable[[], AsyncContextManager[None]]


def async_url(database_url: str) -> str:
    """Swap a plain sqlite/postgres URL onto its async driver."""
    scheme, sep, rest = database_url.partition("://")
    driver = _ASYNC_DRIVERS.get(scheme)
    if driver is None or not sep:
        return database_url
    return f"{driver}://{rest}"


class Database(NamedTuple):
    engine: AsyncEngine
    SessionAsync: async_sessionmaker
    gate: asyncio.Semaphore
    # `async with gated(): ...`
    gated: Gated


def make_async_engine(
    database_url: str,
    *,
    pool_size: int = 10,
    max_overflow: int = 10,
    pool_timeout: int = 30,
    gate_limit: Optional[int] = None,
) -> Database:
    """
    Engine, session factory and the DB gate.

    The gate bounds in-flight DB work; it defaults to the pool size so
    requests queue on the semaphore instead of timing out in the pool.
    """
    url = async_url(database_url)
    backend = make_url(url).get_backend_name()

    kw = dict(pool_pre_ping=True)
    if backend == "postgresql":
        kw.update(pool_size=pool_size, max_overflow=max_overflow,
                  pool_timeout=pool_timeout)
    engine = create_async_engine(url, **kw)

    if backend == "sqlite":
        @event.listens_for(engine.sync_engine, "connect")
        def _sqlite_pragmas(dbapi_connection, _):
            cur = dbapi_connection.cursor()
            for pragma in SQLITE_PRAGMAS:
                cur.execute(pragma)
            cur.close()

    SessionAsync = async_sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False, autoflush=False,
    )

    gate = asyncio.Semaphore(max(1, gate_limit or pool_size))

    @asynccontextmanager
    async def gated():
        async with timeit("db.gate_wait"):
            await gate.acquire()
        try:
            yield
        finally:
            gate.release()

    return Database(engine, SessionAsync, gate, gated)


@dataclass
class GatedAsyncSession:
    session: AsyncSession
    gated: Gated

    @asynccontextmanager
    async def begin(self):
        async with self.gated():
            async with self.session.begin():
                yield self.session

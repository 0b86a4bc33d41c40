import asyncio
from contextlib import asynccontextmanager
from typing import AsyncContextManager, Callable, NamedTuple, Optional

from sqlalchemy import MetaData, event
from sqlalchemy.ext.asyncio import (
    AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine,
)

Gated = Callable[[], AsyncContextManager[None]]

_DRIVERS = (
    ("sqlite://", "sqlite+aiosqlite://"),
    ("postgresql://", "postgresql+asyncpg://"),
    ("postgres://", "postgresql+asyncpg://"),
)


def async_url(url: str) -> str:
    """Plain `sqlite://` / `postgres://` URLs get their async driver."""
    for plain, driver in _DRIVERS:
        if url.startswith(plain):
            return driver + url[len(plain):]
    return url


class Database(NamedTuple):
    engine: AsyncEngine
    sessions: async_sessionmaker[AsyncSession]
    gate: asyncio.Semaphore
    gated: Gated


# at most `gate_limit` transactions in flight per engine, so a
# burst of webhooks or gate scans queues here instead of in the pool
@asynccontextmanager
async def _gated(sem: asyncio.Semaphore):
    await sem.acquire()
    try:
        yield
    finally:
        sem.release()


def _sqlite_pragmas(dbapi_connection, _):
    cur = dbapi_connection.cursor()
    cur.execute("PRAGMA journal_mode=WAL;")
    cur.execute("PRAGMA busy_timeout=5000;")
    cur.execute("PRAGMA synchronous=NORMAL;")
    cur.close()


def make_async_engine(database_url: str, gate_limit: Optional[int] = None, *,
                      pool_size: int = 10, max_overflow: int = 10,
                      pool_timeout: int = 30) -> Database:
    url = async_url(database_url)
    kw = dict(pool_pre_ping=True)
    is_sqlite = url.startswith("sqlite+aiosqlite://")
    if not is_sqlite:
        kw.update(pool_size=pool_size, max_overflow=max_overflow,
                  pool_timeout=pool_timeout)

    engine = create_async_engine(url, **kw)
    if is_sqlite:
        event.listen(engine.sync_engine, "connect", _sqlite_pragmas)

    sessions = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )

    # sqlite serializes writers anyway; postgres gets one slot per connection
    if gate_limit is None:
        gate_limit = 10 if is_sqlite else pool_size
    gate = asyncio.Semaphore(max(1, gate_limit))

    def gated():
        return _gated(gate)

    return Database(engine, sessions, gate, gated)


async def create_schema(engine: AsyncEngine, metadata: MetaData) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)

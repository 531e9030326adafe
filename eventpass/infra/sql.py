"""
Async engine setup shared by the server and the tests.

``make_async_engine`` returns ``(engine, SessionAsync, gated)``. ``gated`` is
an async context manager factory around one semaphore per engine: every
ledger call runs inside it, so a burst of duplicate callbacks queues in the
app instead of exhausting the connection pool.
"""
from __future__ import annotations
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, AsyncContextManager, Tuple
import asyncio
import logging

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine,
)

logger = logging.getLogger(__name__)

Gated = Callable[[], AsyncContextManager[None]]

ASYNC_DRIVERS = {
    "sqlite://": "sqlite+aiosqlite://",
    "postgresql://": "postgresql+asyncpg://",
    "postgres://": "postgresql+asyncpg://",
}

SQLITE_PRAGMAS = (
    "PRAGMA journal_mode=WAL",
    # concurrent writers wait instead of failing with "database is locked"
    "PRAGMA busy_timeout=5000",
    "PRAGMA synchronous=NORMAL",
)

SQLITE_GATE_DEFAULT = 10


def async_url(url: str) -> str:
    for plain, driver in ASYNC_DRIVERS.items():
        if url.startswith(plain):
            return driver + url[len(plain):]
    return url


def _gate(limit: int) -> Gated:
    sem = asyncio.Semaphore(max(1, limit))

    @asynccontextmanager
    async def gated() -> AsyncIterator[None]:
        async with sem:
            yield

    return gated


def make_async_engine(
    database_url: str,
    gate_limit: int | None = None,
    *,
    pool_size: int = 10,
    max_overflow: int = 10,
    pool_timeout: float = 30.0,
) -> Tuple[AsyncEngine, async_sessionmaker, Gated]:
    url = async_url(database_url)
    is_sqlite = url.startswith("sqlite+aiosqlite://")

    kw = dict(pool_pre_ping=True)
    if not is_sqlite:
        kw.update(
            pool_size=pool_size,
            max_overflow=max_overflow,
            pool_timeout=pool_timeout,
        )
    engine = create_async_engine(url, **kw)

    if is_sqlite:
        @event.listens_for(engine.sync_engine, "connect")
        def _sqlite_pragmas(dbapi_connection, _):
            cur = dbapi_connection.cursor()
            for pragma in SQLITE_PRAGMAS:
                cur.execute(pragma)
            cur.close()

    SessionAsync = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )

    if gate_limit is None:
        gate_limit = SQLITE_GATE_DEFAULT if is_sqlite else pool_size
    logger.debug("engine %s ready (db gate %d)",
                 engine.url.render_as_string(hide_password=True), gate_limit)
    return engine, SessionAsync, _gate(gate_limit)

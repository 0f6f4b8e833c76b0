"""
Engine and transaction scope for the SQL flow store.

``database.url`` may name a sync driver; it is mapped to the async one:
  postgresql:// / postgres://  → postgresql+asyncpg
  mysql:// / mysql+pymysql://  → mysql+aiomysql
  sqlite://                    → sqlite+aiosqlite

Usage:
    await init_db()                  # create tables at startup
    async with db_session() as db:   # one transaction per store call
        await db.execute(...)
    await close_db()                 # dispose the pool at shutdown

Not to be confused with conversation sessions, which are rows the store
reads and writes through this scope.
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import structlog
from sqlalchemy import event
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine,
)

from config.settings import DatabaseConfig, get_settings
from database.models import Base

logger = structlog.get_logger()

_ASYNC_DRIVERS = {
    "postgresql": "postgresql+asyncpg",
    "postgres": "postgresql+asyncpg",
    "postgresql+psycopg2": "postgresql+asyncpg",
    "mysql": "mysql+aiomysql",
    "mysql+pymysql": "mysql+aiomysql",
    "sqlite": "sqlite+aiosqlite",
}

_engine: Optional[AsyncEngine] = None
_sessionmaker: Optional[async_sessionmaker[AsyncSession]] = None


def _to_async_url(db_url: str) -> str:
    url = make_url(db_url)
    driver = _ASYNC_DRIVERS.get(url.drivername)
    if driver is None:
        return db_url
    return url.set(drivername=driver).render_as_string(hide_password=False)


def _is_sqlite(db_url: str) -> bool:
    return make_url(db_url).get_backend_name() == "sqlite"


def _engine_kwargs(db_url: str, config: Optional[DatabaseConfig] = None) -> dict:
    """Pool settings for server databases; SQLite gets a lock wait instead."""
    config = config or DatabaseConfig()
    if _is_sqlite(db_url):
        # The dispatcher, lead loops and webhooks write concurrently
        return {"echo": config.echo, "connect_args": {"timeout": config.sqlite_busy_timeout_seconds}}
    return {
        "echo": config.echo,
        "pool_size": config.pool_size,
        "max_overflow": config.max_overflow,
        "pool_recycle": config.pool_recycle_seconds,
        "pool_pre_ping": True,
    }


def _enable_sqlite_wal(engine: AsyncEngine) -> None:
    database = engine.url.database
    if not database or database == ":memory:":
        return

    @event.listens_for(engine.sync_engine, "connect")
    def _set_pragmas(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.close()


def get_engine(db_url: Optional[str] = None) -> AsyncEngine:
    """
    Return the process-wide engine, creating it on first use.

    ``db_url`` replaces ``database.url`` and is ignored once an engine exists.
    """
    global _engine
    if _engine is not None:
        return _engine

    config = get_settings().database
    url = _to_async_url(db_url or config.url)
    _engine = create_async_engine(url, **_engine_kwargs(url, config))
    if _is_sqlite(url):
        _enable_sqlite_wal(_engine)
    logger.info("database_engine_created", dialect=_engine.dialect.name,
                url=_engine.url.render_as_string(hide_password=True))
    return _engine


@asynccontextmanager
async def db_session() -> AsyncIterator[AsyncSession]:
    """Commit on success, roll back and re-raise on any error."""
    global _sessionmaker
    if _sessionmaker is None:
        _sessionmaker = async_sessionmaker(get_engine(), expire_on_commit=False)
    async with _sessionmaker() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db(db_url: Optional[str] = None) -> None:
    engine = get_engine(db_url)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("database_initialized", dialect=engine.dialect.name,
                tables=sorted(Base.metadata.tables))


async def close_db() -> None:
    global _engine, _sessionmaker
    if _engine is None:
        return
    await _engine.dispose()
    _engine = None
    _sessionmaker = None
    logger.info("database_closed")

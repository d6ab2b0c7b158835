"""
Database — async engine and session factory for the user and conversation
tables.

SQLite (aiosqlite) by default; any SQLAlchemy async URL works through
`database.url`. Tables are created on first use; schema changes after that
go through the Alembic migrations.
"""
import os
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

import structlog
from sqlalchemy import event
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
)

from chatdesk.models import Base
from chatdesk.config import get_config

log = structlog.get_logger()

_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker] = None


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


async def init_database(url: Optional[str] = None):
    """Open the engine and create any missing tables."""
    global _engine, _session_factory

    cfg = get_config()
    db_url = make_url(url or cfg.database.url)

    if db_url.get_backend_name() == "sqlite" and db_url.database and db_url.database != ":memory:":
        directory = os.path.dirname(db_url.database)
        if directory:
            os.makedirs(directory, exist_ok=True)

    _engine = create_async_engine(
        db_url,
        echo=cfg.database.echo,
        pool_pre_ping=True,
    )
    if db_url.get_backend_name() == "sqlite":
        event.listen(_engine.sync_engine, "connect", _enable_sqlite_foreign_keys)

    async with _engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    _session_factory = async_sessionmaker(_engine, class_=AsyncSession, expire_on_commit=False)
    log.info("database_ready", backend=db_url.get_backend_name())


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield an async database session, committing on success."""
    if _session_factory is None:
        await init_database()
    async with _session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def close_database():
    """Dispose of the engine; the next get_session() reopens it."""
    global _engine, _session_factory
    if _engine:
        await _engine.dispose()
        _engine = None
        _session_factory = None

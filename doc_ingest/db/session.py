"""
Database engine and session factory.

The engine is created lazily on first use so importing the package never
opens a connection pool (Celery imports tasks in the parent process before
forking workers).

Flow:
  1. get_session_factory() builds the AsyncEngine from settings once.
  2. The status store opens `async with factory() as session, session.begin()`
     per operation: commit on success, rollback on exception.
"""

from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from doc_ingest.core.config import Settings, settings as default_settings

logger = logging.getLogger(__name__)

_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker[AsyncSession]] = None


def create_engine(cfg: Settings | None = None) -> AsyncEngine:
    cfg = cfg or default_settings
    kwargs = {"echo": cfg.db_echo_sql, "pool_pre_ping": True}
    # SQLite (tests, local runs) does not take queue-pool sizing arguments
    if not cfg.database_url.startswith("sqlite"):
        kwargs.update(
            pool_size=cfg.db_pool_size,
            max_overflow=cfg.db_max_overflow,
            pool_recycle=3600,
        )
    return create_async_engine(cfg.database_url, **kwargs)


def make_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    # expire_on_commit=False keeps ORM objects usable after commit
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


def get_engine() -> AsyncEngine:
    global _engine
    if _engine is None:
        _engine = create_engine()
        logger.info("Database engine created | url=%s", _engine.url.render_as_string(hide_password=True))
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    global _session_factory
    if _session_factory is None:
        _session_factory = make_session_factory(get_engine())
    return _session_factory


async def dispose_engine() -> None:
    """Close the pool; called when a worker process shuts down."""
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None


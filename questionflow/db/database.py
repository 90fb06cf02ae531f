"""
Async database engine & session factory for QuestionFlow.
Works with aiosqlite (default, local dev) and asyncpg (PostgreSQL).
"""
import logging
from typing import Optional

from sqlalchemy.ext.asyncio import (
    AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
)

from questionflow.db.models import Base

logger = logging.getLogger("questionflow.db")

_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker] = None


def init_engine(database_url: str) -> async_sessionmaker:
    """(Re)create the engine for ``database_url`` and return its session factory."""
    global _engine, _session_factory
    _engine = create_async_engine(database_url, echo=False)
    _session_factory = async_sessionmaker(
        _engine, class_=AsyncSession, expire_on_commit=False
    )
    logger.debug(f"Database engine created for {_engine.url.render_as_string(hide_password=True)}")
    return _session_factory


async def init_db() -> None:
    """Create all tables."""
    if _engine is None:
        raise RuntimeError("Database engine not initialised. Call init_engine() first.")
    async with _engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None


def get_session_factory() -> async_sessionmaker:
    if _session_factory is None:
        raise RuntimeError("Database engine not initialised. Call init_engine() first.")
    return _session_factory


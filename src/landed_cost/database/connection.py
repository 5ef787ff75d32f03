"""Engine and session lifecycle for the user and session tables.

PostgreSQL is reached through asyncpg; SQLite through aiosqlite, which is
what tests and local runs use (``sqlite+aiosqlite:///:memory:``).

The engine is process-wide. ``init_db`` builds it at startup (and creates the
tables when ``DATABASE_AUTO_CREATE`` is on), ``close_db`` disposes of it at
shutdown, and the stores open one short-lived session per operation:

```python
async with get_db() as session:
    user = await session.get(User, user_id)
```
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from landed_cost.config import Settings, get_settings
from landed_cost.database.models import Base

logger = logging.getLogger(__name__)

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def _engine_options(settings: Settings) -> dict:
    if settings.is_sqlite:
        # One shared connection, otherwise each checkout sees an empty
        # in-memory database
        return {
            "connect_args": {"check_same_thread": False},
            "poolclass": StaticPool,
        }
    return {
        "pool_size": settings.database_pool_size,
        "max_overflow": settings.database_max_overflow,
        "pool_pre_ping": True,
    }


def _require_engine() -> AsyncEngine:
    if _engine is None:
        raise RuntimeError("Database not initialized; call init_db() first")
    return _engine


async def init_db(settings: Settings | None = None) -> None:
    """Create the engine and session factory for ``settings``."""
    global _engine, _session_factory

    settings = settings or get_settings()
    backend = settings.database_url.split(":", 1)[0]
    logger.info(f"Connecting to {backend} database")

    _engine = create_async_engine(
        settings.database_url,
        echo=settings.database_echo,
        **_engine_options(settings),
    )
    _session_factory = async_sessionmaker(_engine, expire_on_commit=False, autoflush=False)

    if settings.database_auto_create:
        await create_tables()


async def close_db() -> None:
    """Dispose of the engine; a later ``init_db`` starts fresh."""
    global _engine, _session_factory

    if _engine is None:
        return
    await _engine.dispose()
    _engine = None
    _session_factory = None
    logger.info("Database connection closed")


async def create_tables() -> None:
    """Create any missing tables. Schema changes need a migration tool."""
    async with _require_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables ready")


@asynccontextmanager
async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Open a session. Nothing is committed implicitly; errors roll back."""
    if _session_factory is None:
        raise RuntimeError("Database not initialized; call init_db() first")

    async with _session_factory() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise

"""
Engine and session lifecycle for the escrow database.

Each process (API, webhook worker, transfer sweep) builds one engine lazily
and disposes it on shutdown. Sessions keep loaded rows after commit: the
services go on reading an Order right after moving it, and
``transition_order`` refreshes it explicitly where freshness matters.
"""
from collections.abc import AsyncGenerator
from typing import Any

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from config import get_settings
from database.models import Base

# Postgres drops idle connections behind most load balancers after an hour
POOL_RECYCLE_SECONDS = 1800

_engine: AsyncEngine | None = None
_sessions: async_sessionmaker[AsyncSession] | None = None


def engine_options(
    database_url: str, echo: bool = False, pool_size: int = 20, max_overflow: int = 50
) -> dict[str, Any]:
    """
    Keyword arguments for ``create_async_engine``.

    SQLite (local runs, unit tests) gets no pool sizing: aiosqlite uses a
    static or null pool that rejects those options.
    """
    options: dict[str, Any] = {"echo": echo}
    if database_url.startswith("sqlite"):
        return options
    options.update(
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_pre_ping=True,
        pool_recycle=POOL_RECYCLE_SECONDS,
    )
    return options


def get_engine() -> AsyncEngine:
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = create_async_engine(
            settings.database_url,
            **engine_options(
                settings.database_url,
                echo=settings.database_echo,
                pool_size=settings.database_pool_size,
                max_overflow=settings.database_max_overflow,
            ),
        )
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Session factory shared by the request dependency and the workers."""
    global _sessions
    if _sessions is None:
        _sessions = async_sessionmaker(
            get_engine(), class_=AsyncSession, expire_on_commit=False, autoflush=False
        )
    return _sessions


async def get_db() -> AsyncGenerator[AsyncSession, Any]:
    """
    Request-scoped session for FastAPI routes.

    Reservation, payment and refund services commit their own checkpoints
    (a recorded decline must survive the error that follows it); whatever
    is still pending when the route returns is committed here, and an
    exception rolls it back.
    """
    async with get_session_factory()() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db() -> None:
    """Create missing tables; deployed databases are migrated with Alembic instead."""
    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    global _engine, _sessions
    if _engine is None:
        return
    await _engine.dispose()
    _engine = None
    _sessions = None

"""Database access for capi-relay.

One async engine per process, created lazily from the settings on first
use. The event store asks for the session factory and opens a short
session per operation.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

if TYPE_CHECKING:
    from capi_relay.core.config import DatabaseSettings

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def to_psycopg_url(url: str) -> str:
    """Select the psycopg (v3) driver for a plain PostgreSQL URL.

    psycopg serves both the async engine and the synchronous Alembic runs.
    """
    for scheme in ("postgresql://", "postgres://"):
        if url.startswith(scheme):
            return "postgresql+psycopg://" + url[len(scheme) :]
    return url


def create_engine_from_settings(settings: DatabaseSettings) -> AsyncEngine:
    """Build an async engine with the configured pool."""
    return create_async_engine(
        to_psycopg_url(str(settings.url)),
        pool_size=settings.pool_size,
        max_overflow=settings.max_overflow,
        pool_timeout=settings.pool_timeout,
        pool_pre_ping=True,
        echo=settings.echo,
    )


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the process-wide session factory, creating the engine if needed.

    expire_on_commit is off so claimed events stay readable after the
    claiming session has closed.
    """
    global _engine, _session_factory

    if _session_factory is None:
        from capi_relay.core.settings import get_settings

        _engine = create_engine_from_settings(get_settings().database)
        _session_factory = async_sessionmaker(
            bind=_engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

    return _session_factory


async def close_engine() -> None:
    """Dispose of the engine (no-op if it was never created)."""
    global _engine, _session_factory

    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None

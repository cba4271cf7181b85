"""Database access for portability requests and the job queue.

- SQLAlchemy 2.x async ORM models (portability.db.models)
- Alembic migrations (portability.db.migrations)
- Engines on the async psycopg driver, shared by the API and the worker
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

    from sqlalchemy.ext.asyncio import AsyncEngine

# Process-wide engine of the API, created on first use
_engine: AsyncEngine | None = None
_async_session_factory: async_sessionmaker[AsyncSession] | None = None


def to_async_url(url: str) -> str:
    """Rewrite a PostgreSQL URL to use the async psycopg driver."""
    for scheme in ("postgresql://", "postgres://"):
        if url.startswith(scheme):
            return "postgresql+psycopg://" + url[len(scheme) :]
    return url


def create_session_factory(
    url: str,
    **engine_options: Any,
) -> tuple[AsyncEngine, async_sessionmaker[AsyncSession]]:
    """Create an engine and its session factory.

    Sessions do not expire on commit: lifecycle side effects read the
    request again after the transition is committed.

    Args:
        url: PostgreSQL URL, rewritten to the psycopg async driver.
        **engine_options: Passed to create_async_engine (pool sizing, echo).
    """
    engine = create_async_engine(to_async_url(url), pool_pre_ping=True, **engine_options)
    return engine, async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


def _session_factory() -> async_sessionmaker[AsyncSession]:
    global _engine, _async_session_factory

    if _async_session_factory is None:
        from portability.core.settings import get_settings

        database = get_settings().database
        _engine, _async_session_factory = create_session_factory(
            str(database.url),
            pool_size=database.pool_size,
            max_overflow=database.max_overflow,
            pool_timeout=database.pool_timeout,
            echo=database.echo,
        )
    return _async_session_factory


@asynccontextmanager
async def get_async_session() -> AsyncGenerator[AsyncSession, None]:
    """Open a session on the process-wide engine.

    The session is rolled back if the block raises; committing is up to the
    caller (the lifecycle service commits each transition itself).

    Yields:
        AsyncSession for database operations.
    """
    session = _session_factory()()
    try:
        yield session
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


async def close_engine() -> None:
    """Dispose of the process-wide engine (application shutdown)."""
    global _engine, _async_session_factory

    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _async_session_factory = None

"""Database module.

Database models and migrations:
- SQLAlchemy 2.x ORM models
- Alembic migration configuration
- Connection pooling via psycopg
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

if TYPE_CHECKING:
    from loanintake.core.config import DatabaseSettings


def create_engine_from_settings(settings: DatabaseSettings) -> AsyncEngine:
    """Create the pooled async engine for the relational store.

    Args:
        settings: Database settings.

    Returns:
        AsyncEngine with the configured pool.
    """
    url = settings.async_url
    kwargs: dict = {"echo": settings.echo, "pool_pre_ping": True}
    # SQLite (local runs) has no sized connection pool to tune
    if not url.startswith("sqlite"):
        kwargs.update(
            pool_size=settings.pool_size,
            max_overflow=settings.max_overflow,
            pool_timeout=settings.pool_timeout,
        )
    return create_async_engine(url, **kwargs)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create the session factory used to check sessions out per operation."""
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async def create_schema(engine: AsyncEngine) -> None:
    """Create all tables directly from the ORM metadata.

    Migrations are the normal route; this is used for local SQLite runs and tests.
    """
    from loanintake.db.models import Base

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

"""SQLAlchemy async database setup and engine configuration."""

from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from app.config import Settings, get_settings
from db.base import Base


def create_db_engine(url: Optional[str] = None, echo: Optional[bool] = None, settings: Optional[Settings] = None) -> AsyncEngine:
    """Create an async SQLAlchemy engine.

    Args:
        url: Database URL. Defaults to ``settings.DATABASE_URL``.
        echo: Log SQL statements. Defaults to ``settings.SQLALCHEMY_ECHO``.

    Returns:
        Async SQLAlchemy engine instance.
    """
    settings = settings or get_settings()
    url = url or settings.DATABASE_URL
    if echo is None:
        echo = settings.SQLALCHEMY_ECHO

    kwargs = dict(echo=echo)
    if not url.startswith("sqlite"):
        kwargs.update(pool_pre_ping=True)
    return create_async_engine(url, **kwargs)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    """Create async session factory.

    Args:
        engine: SQLAlchemy async engine instance.

    Returns:
        Async sessionmaker instance.
    """
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async def init_db(engine: AsyncEngine) -> None:
    """Create the record tables if they do not exist."""
    import db.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db(engine: AsyncEngine) -> None:
    """Dispose of the engine's connection pool."""
    await engine.dispose()

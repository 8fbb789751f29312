"""
Database Session Management - Async SQLAlchemy engine and session factory.

Engines are built once per process by the application lifespan and carried
on the ServiceContainer, not held in module globals.
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from app.config import Settings


def create_engine_from_settings(settings: Settings) -> AsyncEngine:
    """Create the primary async engine with pool sizing from settings."""
    return create_async_engine(
        settings.database_url,
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
        pool_timeout=settings.database_pool_timeout,
        pool_recycle=settings.database_pool_recycle,
        pool_pre_ping=True,
        echo=settings.log_level.upper() == "DEBUG",
    )


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory; objects stay usable after commit."""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


@asynccontextmanager
async def session_scope(
    factory: async_sessionmaker[AsyncSession],
) -> AsyncIterator[AsyncSession]:
    """
    Open a session from the factory.

    Usage:
        async with session_scope(factory) as session:
            await session.execute(...)
            await session.commit()
    """
    async with factory() as session:
        try:
            yield session
        finally:
            await session.close()

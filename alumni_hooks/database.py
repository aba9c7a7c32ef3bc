"""
Database engine and session management.

Provides the async engine, the session factory and the FastAPI dependency.
"""
from typing import AsyncIterator

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from alumni_hooks.config import settings


engine = create_async_engine(
    settings.DATABASE_URL,
    echo=False,
    pool_pre_ping=True,
)

AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


async def get_db() -> AsyncIterator[AsyncSession]:
    """
    FastAPI dependency that yields a database session.

    The session is closed once the request finishes.
    """
    async with AsyncSessionLocal() as session:
        yield session

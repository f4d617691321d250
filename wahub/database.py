"""
Database engine and session management.

Exposes the async engine, the session factory and the transactional
helpers every repository goes through.
"""
from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from wahub.config import settings


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
    FastAPI dependency yielding a database session.

    Usage:
        @router.get("/")
        async def handler(db: AsyncSession = Depends(get_db)):
            ...
    """
    async with AsyncSessionLocal() as session:
        yield session


@asynccontextmanager
async def transaction(
    session_factory: async_sessionmaker = AsyncSessionLocal,
) -> AsyncIterator[AsyncSession]:
    """
    Open a session inside a transaction.

    Commits when the block exits normally, rolls back on any exception.
    """
    async with session_factory() as session:
        async with session.begin():
            yield session

"""
Async database engine & per-request session dependency.

The session factory lives on ``app.state`` so the authentication
middleware and request handlers share one source of connections, and
tests can point the whole app at a different database by swapping it.
"""

from typing import AsyncIterator

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from fintrack.core.config import settings

engine = create_async_engine(
    settings.DATABASE_URL,
    echo=settings.DATABASE_ECHO,
    pool_pre_ping=True,
)
SessionLocal = async_sessionmaker(engine, expire_on_commit=False)


async def get_db(request: Request) -> AsyncIterator[AsyncSession]:
    """
    FastAPI dependency — one session per request.

    Commits when the handler returns normally and rolls back when it
    raises.  Services that must persist state even on failure (e.g. the
    failed-login counter) commit explicitly before raising.
    """
    session_factory: async_sessionmaker[AsyncSession] = request.app.state.session_factory
    async with session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise

"""
Purge expired sessions / verification tokens and clear lapsed locks.

Usage:
    python -m fintrack.scripts.cleanup
"""

import asyncio

from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from fintrack.core.config import settings
from fintrack.services.cleanup_service import run_cleanup


async def main() -> None:
    engine = create_async_engine(settings.DATABASE_URL, echo=False)
    session_factory = async_sessionmaker(engine, expire_on_commit=False)
    async with session_factory() as session:
        await run_cleanup(session)
    await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main())

"""
Schema bootstrap — creates every table registered on ``Base.metadata``.

It is IDEMPOTENT — existing tables are left alone.

Usage:
    python -m fintrack.scripts.init_db
"""

import asyncio

from sqlalchemy.ext.asyncio import create_async_engine

from fintrack.core.config import settings
from fintrack.models import Base


async def main() -> None:
    engine = create_async_engine(settings.DATABASE_URL, echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    await engine.dispose()
    print("✔  Database schema is up to date.")


if __name__ == "__main__":
    asyncio.run(main())

"""
Developer bootstrap — creates a user whose email is already verified.

Usage:
    uv run python -m fintrack.scripts.create_user

Handy when SMTP is not configured (EMAIL_ENABLED=false) and the
verification link can't be clicked.
"""

import asyncio
import getpass

from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from fintrack.core.config import settings
from fintrack.core.errors import EmailAlreadyExists
from fintrack.services import account_service


async def create_user() -> None:
    engine = create_async_engine(settings.DATABASE_URL, echo=False)
    session_factory = async_sessionmaker(engine, expire_on_commit=False)

    async with session_factory() as session:
        # ── Collect input ────────────────────────────────────────────
        print(f"\n🔧  {settings.APP_NAME} — Create verified user\n")
        email = input("  Email:    ").strip()
        password = getpass.getpass("  Password: ")
        confirm = getpass.getpass("  Confirm:  ")

        if password != confirm:
            print("\n❌  Passwords do not match.")
            await engine.dispose()
            return

        if not email or not password:
            print("\n❌  All fields are required.")
            await engine.dispose()
            return

        try:
            user = await account_service.register_user(email, password, session)
        except EmailAlreadyExists:
            print(f"\n❌  User with email '{email}' already exists.")
            await engine.dispose()
            return

        await account_service.mark_email_verified(user, session)
        await session.commit()

        print("\n✅  User created successfully!")
        print(f"    ID:    {user.id}")
        print(f"    Email: {user.email}")
        print("\n   You can now log in via POST /api/auth/login\n")

    await engine.dispose()


if __name__ == "__main__":
    asyncio.run(create_user())

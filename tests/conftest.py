import asyncio
import inspect
import os

# Settings are read at import time; configure before importing fintrack.
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("SECRET_KEY", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("SECURE_COOKIES", "false")
os.environ.setdefault("EMAIL_ENABLED", "false")
os.environ.setdefault("REGISTRATION_RATE_LIMIT", "1000")

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy import select, update  # noqa: E402
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import NullPool  # noqa: E402

from fintrack.main import create_app  # noqa: E402
from fintrack.models import Base, User, VerificationToken, VerificationTokenType  # noqa: E402
from fintrack.services import account_service  # noqa: E402

PASSWORD = "CorrectHorse1!"


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


@pytest.fixture
def session_factory(tmp_path):
    """Fresh SQLite database per test; NullPool so no connection outlives its event loop."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", poolclass=NullPool)

    async def _create_schema():
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    asyncio.run(_create_schema())
    yield async_sessionmaker(engine, expire_on_commit=False)
    asyncio.run(engine.dispose())


@pytest.fixture
def app(session_factory):
    return create_app(session_factory=session_factory)


@pytest.fixture
def client(app):
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def make_user():
    """Async helper: create (and by default verify) a user, committed."""

    async def _make(db, email="user@example.com", password=PASSWORD, verified=True):
        user = await account_service.register_user(email, password, db)
        if verified:
            await account_service.mark_email_verified(user, db)
        await db.commit()
        return user

    return _make


@pytest.fixture
def seed_user(session_factory, make_user):
    """Sync helper for HTTP tests: create a verified user, return its id."""

    def _seed(email="user@example.com", password=PASSWORD, verified=True):
        async def _run():
            async with session_factory() as db:
                user = await make_user(db, email, password, verified)
                return user.id

        return asyncio.run(_run())

    return _seed


@pytest.fixture
def db_call(session_factory):
    """Run ``fn(db)`` against the test database from synchronous test code."""

    def _call(fn):
        async def _run():
            async with session_factory() as db:
                result = await fn(db)
                await db.commit()
                return result

        return asyncio.run(_run())

    return _call


@pytest.fixture
def latest_token(db_call):
    """Most recent unused verification token of a type for an email (what the email would contain)."""

    def _latest(email, token_type=VerificationTokenType.EMAIL_VERIFICATION):
        async def _query(db):
            stmt = (
                select(VerificationToken.token)
                .join(User, User.id == VerificationToken.user_id)
                .where(
                    User.email == email,
                    VerificationToken.token_type == token_type,
                    VerificationToken.used_at.is_(None),
                )
                .order_by(VerificationToken.created_at.desc())
            )
            return (await db.execute(stmt)).scalars().first()

        return db_call(_query)

    return _latest


@pytest.fixture
def expire_lock(db_call):
    """Move a user's lock window into the past, simulating the lockout elapsing."""
    from datetime import timedelta

    from fintrack.models.base import utcnow

    def _expire(email):
        async def _update(db):
            await db.execute(
                update(User)
                .where(User.email == email)
                .values(account_locked_until=utcnow() - timedelta(seconds=1))
            )

        db_call(_update)

    return _expire

"""
Account state service — credentials, lockout and token versioning.

Handles:
- Credential verification with consecutive-failure lockout
- Lock status checks with auto-unlock once the window has elapsed
- Token-version bumps (revokes every outstanding access token at once)
- Registration, email verification flag and password updates

Concurrency rules:
- Every read-modify-write of ``failed_login_attempts``,
  ``account_locked_until`` or ``token_version`` happens on a row loaded
  with ``SELECT ... FOR UPDATE`` so concurrent failures cannot
  under-count and concurrent bumps cannot collapse into one.
- A failed login commits its counter update before raising; the
  request's rollback-on-error must not undo it.
"""

import logging
import uuid
from datetime import timedelta

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from fintrack.core.config import settings
from fintrack.core.errors import AccountLocked, AuthenticationFailed, EmailAlreadyExists
from fintrack.core.security import burn_password_check, hash_password, verify_password
from fintrack.models.base import utcnow
from fintrack.models.user import User, normalize_email

logger = logging.getLogger(__name__)


def mask_email(email: str | None) -> str:
    """``jane@example.com`` → ``j***@example.com`` for log lines."""
    if not email or "@" not in email:
        return "***"
    local, domain = email.split("@", 1)
    if len(local) <= 1:
        return f"***@{domain}"
    return f"{local[0]}***@{domain}"


# ── Lookups ──────────────────────────────────────────────────────────


async def get_user_by_id(user_id: uuid.UUID, db: AsyncSession) -> User | None:
    return await db.get(User, user_id)


async def get_user_by_email(email: str, db: AsyncSession) -> User | None:
    stmt = select(User).where(User.email == normalize_email(email))
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


async def _lock_user_row(db: AsyncSession, *criteria) -> User | None:
    """Load a user with a row lock, overwriting any stale identity-map copy."""
    stmt = (
        select(User)
        .where(*criteria)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


# ── Lockout ──────────────────────────────────────────────────────────


async def is_locked(user: User, db: AsyncSession) -> bool:
    """
    True while the lock window is open.

    When the window has elapsed the failure counter and lock are reset
    and persisted as a side effect, so the state machine returns to
    ``unlocked`` without a separate sweep.
    """
    if user.account_locked_until is None:
        return False
    if user.lock_active():
        return True

    locked = await _lock_user_row(db, User.id == user.id)
    if locked is not None and locked.lock_expired():
        locked.reset_failed_logins()
        await db.flush()
        logger.info("Account lock expired, unlocked user %s", user.id)
    return False


async def verify_credentials(email: str, password: str, db: AsyncSession) -> User:
    """
    Return the user for a correct email/password pair.

    Raises ``AccountLocked`` while the account is locked (even for the
    right password) and ``AuthenticationFailed`` for an unknown email or
    a wrong password.  Neither error says which part was wrong or how
    long a lock lasts.
    """
    user = await _lock_user_row(db, User.email == normalize_email(email))

    if user is None:
        burn_password_check(password)
        logger.debug("Login attempt for unknown email %s", mask_email(email))
        raise AuthenticationFailed()

    if await is_locked(user, db):
        logger.info("Login attempt on locked account %s", mask_email(user.email))
        raise AccountLocked()

    if not verify_password(password, user.password_hash):
        await _record_failed_login(user, db)
        raise AuthenticationFailed()

    if user.failed_login_attempts or user.account_locked_until is not None:
        user.reset_failed_logins()
        await db.flush()
    return user


async def _record_failed_login(user: User, db: AsyncSession) -> None:
    """Increment the counter and maybe lock, on the already row-locked user."""
    user.failed_login_attempts += 1
    if user.failed_login_attempts >= settings.MAX_FAILED_LOGIN_ATTEMPTS:
        user.account_locked_until = utcnow() + timedelta(minutes=settings.ACCOUNT_LOCKOUT_MINUTES)
        logger.warning(
            "Account locked after %d failed login attempts: %s",
            user.failed_login_attempts,
            mask_email(user.email),
        )
    await db.commit()


async def unlock_expired_accounts(db: AsyncSession) -> int:
    """Bulk variant of the auto-unlock, used by the cleanup job."""
    stmt = (
        update(User)
        .where(User.account_locked_until.is_not(None), User.account_locked_until <= utcnow())
        .values(failed_login_attempts=0, account_locked_until=None)
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(stmt)
    await db.flush()
    return result.rowcount or 0


# ── Token versioning ─────────────────────────────────────────────────


async def increment_token_version(user_id: uuid.UUID, db: AsyncSession) -> int:
    """
    Bump ``token_version`` and return the new value.

    Every access token stamped with an older version fails validation
    from the moment this is committed; no token list is kept.
    """
    user = await _lock_user_row(db, User.id == user_id)
    if user is None:
        raise AuthenticationFailed("User not found")
    user.token_version += 1
    await db.flush()
    logger.info("Token version bumped to %d for user %s", user.token_version, user_id)
    return user.token_version


def validate_token_version(token_claims_version: int, current_version: int) -> bool:
    return token_claims_version == current_version


# ── Registration & profile state ─────────────────────────────────────


async def register_user(
    email: str,
    password: str,
    db: AsyncSession,
    first_name: str | None = None,
    last_name: str | None = None,
) -> User:
    normalized = normalize_email(email)
    if await get_user_by_email(normalized, db) is not None:
        logger.debug("Registration attempt with existing email")
        raise EmailAlreadyExists()

    user = User(
        id=uuid.uuid4(),
        email=normalized,
        password_hash=hash_password(password),
        first_name=first_name,
        last_name=last_name,
    )
    db.add(user)
    try:
        await db.flush()
    except IntegrityError:
        # Lost a race with a concurrent registration of the same email.
        await db.rollback()
        raise EmailAlreadyExists()

    logger.info("User registered: %s", mask_email(normalized))
    return user


async def mark_email_verified(user: User, db: AsyncSession) -> None:
    user.email_verified = True
    await db.flush()


async def set_password(user_id: uuid.UUID, new_password: str, db: AsyncSession) -> int:
    """Replace the password hash and bump the token version; returns the new version."""
    user = await _lock_user_row(db, User.id == user_id)
    if user is None:
        raise AuthenticationFailed("User not found")
    user.password_hash = hash_password(new_password)
    user.token_version += 1
    user.reset_failed_logins()
    await db.flush()
    return user.token_version

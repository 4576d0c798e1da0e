"""
Verification token service — email verification & password reset links.

Issuing a token of a type invalidates the user's outstanding tokens of
that type, so only the most recent email link works.  Tokens are single
use: validation marks them used in the same transaction.
"""

import logging
import uuid
from datetime import timedelta

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from fintrack.core.config import settings
from fintrack.core.errors import InvalidToken, TokenAlreadyUsed, TokenExpired
from fintrack.core.security import generate_secure_token
from fintrack.models.base import utcnow
from fintrack.models.user import User
from fintrack.models.verification_token import VerificationToken, VerificationTokenType

logger = logging.getLogger(__name__)

_LIFETIMES = {
    VerificationTokenType.EMAIL_VERIFICATION: lambda: timedelta(hours=settings.EMAIL_VERIFICATION_EXPIRE_HOURS),
    VerificationTokenType.PASSWORD_RESET: lambda: timedelta(hours=settings.PASSWORD_RESET_EXPIRE_HOURS),
}

_MESSAGES = {
    VerificationTokenType.EMAIL_VERIFICATION: {
        "used": "Email has already been verified.",
        "expired": "Verification link has expired. Please request a new one.",
        "invalid": "Invalid verification token",
    },
    VerificationTokenType.PASSWORD_RESET: {
        "used": "This password reset link has already been used.",
        "expired": "Password reset link has expired. Please request a new one.",
        "invalid": "Invalid password reset token",
    },
}


async def create_token(user: User, token_type: VerificationTokenType, db: AsyncSession) -> str:
    now = utcnow()
    await db.execute(
        update(VerificationToken)
        .where(
            VerificationToken.user_id == user.id,
            VerificationToken.token_type == token_type,
            VerificationToken.used_at.is_(None),
        )
        .values(used_at=now)
        .execution_options(synchronize_session=False)
    )

    token = generate_secure_token()
    db.add(
        VerificationToken(
            id=uuid.uuid4(),
            user_id=user.id,
            token=token,
            token_type=token_type,
            expires_at=now + _LIFETIMES[token_type](),
            created_at=now,
        )
    )
    await db.flush()
    logger.debug("Created %s token for user %s", token_type.value, user.id)
    return token


async def consume_token(token: str, token_type: VerificationTokenType, db: AsyncSession) -> User:
    """Validate a token of the given type, mark it used and return its owner."""
    messages = _MESSAGES[token_type]
    stmt = (
        select(VerificationToken)
        .where(VerificationToken.token == token)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    record = (await db.execute(stmt)).scalar_one_or_none()

    if record is None or record.token_type is not token_type:
        raise InvalidToken(messages["invalid"])
    if record.is_used:
        raise TokenAlreadyUsed(messages["used"])
    if record.is_expired():
        raise TokenExpired(messages["expired"])

    record.used_at = utcnow()
    await db.flush()
    return await db.get(User, record.user_id)


async def count_recent_tokens(
    user_id: uuid.UUID,
    token_type: VerificationTokenType,
    window: timedelta,
    db: AsyncSession,
) -> int:
    stmt = select(func.count()).select_from(VerificationToken).where(
        VerificationToken.user_id == user_id,
        VerificationToken.token_type == token_type,
        VerificationToken.created_at >= utcnow() - window,
    )
    return (await db.execute(stmt)).scalar_one()


async def purge_tokens(db: AsyncSession, used_retention: timedelta = timedelta(days=30)) -> int:
    now = utcnow()
    stmt = delete(VerificationToken).where(
        or_(
            (VerificationToken.used_at.is_(None)) & (VerificationToken.expires_at <= now),
            VerificationToken.used_at <= now - used_retention,
        )
    ).execution_options(synchronize_session=False)
    result = await db.execute(stmt)
    await db.flush()
    return result.rowcount or 0

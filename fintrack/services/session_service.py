"""
Session service — CRUD & lifecycle helpers for user sessions.

Handles:
- Creating sessions at login (with a per-user cap)
- Looking up a live session for refresh
- Revoking single sessions (logout) and all sessions (logout-all)
- Listing live sessions for the "active devices" view
- Purging expired / long-revoked rows (cleanup job)
"""

import logging
import uuid
from datetime import datetime, timedelta

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from fintrack.core.config import settings
from fintrack.models.base import utcnow
from fintrack.models.session import UserSession

logger = logging.getLogger(__name__)


def _live_criteria(now: datetime):
    return (UserSession.revoked_at.is_(None), UserSession.expires_at > now)


async def create_session(
    user_id: uuid.UUID,
    *,
    session_id: uuid.UUID,
    refresh_token_hash: str,
    expires_at: datetime,
    remember_me: bool,
    db: AsyncSession,
    user_agent: str | None = None,
    ip_address: str | None = None,
) -> UserSession:
    await enforce_session_limit(user_id, db)

    session = UserSession(
        id=session_id,
        user_id=user_id,
        refresh_token_hash=refresh_token_hash,
        remember_me=remember_me,
        user_agent=user_agent[:512] if user_agent else None,
        ip_address=ip_address,
        expires_at=expires_at,
    )
    db.add(session)
    await db.flush()
    logger.debug("Created session %s for user %s", session.id, user_id)
    return session


async def get_session(
    session_id: uuid.UUID,
    db: AsyncSession,
    *,
    for_update: bool = False,
) -> UserSession | None:
    """Return a session row regardless of state (optionally row-locked for rotation)."""
    stmt = select(UserSession).where(UserSession.id == session_id)
    if for_update:
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


async def get_active_sessions(user_id: uuid.UUID, db: AsyncSession) -> list[UserSession]:
    """Return all live sessions for a user, newest first."""
    stmt = (
        select(UserSession)
        .where(UserSession.user_id == user_id, *_live_criteria(utcnow()))
        .order_by(UserSession.created_at.desc())
    )
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def count_active_sessions(user_id: uuid.UUID, db: AsyncSession) -> int:
    stmt = select(func.count()).select_from(UserSession).where(
        UserSession.user_id == user_id, *_live_criteria(utcnow()),
    )
    return (await db.execute(stmt)).scalar_one()


async def enforce_session_limit(user_id: uuid.UUID, db: AsyncSession) -> None:
    """Revoke the oldest live sessions so one more fits under the cap."""
    sessions = await get_active_sessions(user_id, db)
    overflow = len(sessions) - settings.MAX_SESSIONS_PER_USER + 1
    if overflow <= 0:
        return
    now = utcnow()
    for oldest in sessions[-overflow:]:
        oldest.revoke(now)
        logger.debug("Revoked oldest session %s to enforce session limit for user %s", oldest.id, user_id)
    await db.flush()


async def revoke_session(session_id: uuid.UUID, db: AsyncSession) -> bool:
    """Mark a single session as revoked (logout).  Returns False if it was not live."""
    stmt = (
        update(UserSession)
        .where(UserSession.id == session_id, UserSession.revoked_at.is_(None))
        .values(revoked_at=utcnow())
    )
    result = await db.execute(stmt)
    await db.flush()
    return bool(result.rowcount)


async def revoke_all_user_sessions(
    user_id: uuid.UUID,
    db: AsyncSession,
    *,
    except_session_id: uuid.UUID | None = None,
) -> int:
    """
    Revoke every live session for a given user.

    Returns the number of sessions affected.
    Used by logout-all and password reset / change flows.
    """
    criteria = [UserSession.user_id == user_id, UserSession.revoked_at.is_(None)]
    if except_session_id is not None:
        criteria.append(UserSession.id != except_session_id)
    stmt = (
        update(UserSession)
        .where(*criteria)
        .values(revoked_at=utcnow())
    )
    result = await db.execute(stmt)
    await db.flush()
    return result.rowcount or 0


async def purge_sessions(db: AsyncSession, revoked_retention: timedelta = timedelta(days=7)) -> int:
    """Delete expired sessions and sessions revoked before the retention cutoff."""
    now = utcnow()
    stmt = delete(UserSession).where(
        or_(
            UserSession.expires_at <= now,
            UserSession.revoked_at <= now - revoked_retention,
        )
    ).execution_options(synchronize_session=False)
    result = await db.execute(stmt)
    await db.flush()
    return result.rowcount or 0

"""
Authentication service.

Handles:
- Registration, email verification and verification resend
- Login (credentials → session → access + refresh token pair)
- Refresh-token rotation bound to the session registry
- Logout of one session and logout-all (token-version bump)
- Password reset and authenticated password change

Revocation model:
- Access tokens are stateless; they die when the user's
  ``token_version`` moves past the version stamped into them.
- Refresh tokens die with their session row, and a refresh token that
  no longer matches the row's stored hash (i.e. an already-rotated one)
  revokes the session as a reuse signal.

All business logic lives here — controllers call service methods
and shape the result.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy.ext.asyncio import AsyncSession

from fintrack.core.config import settings
from fintrack.core.errors import (
    AuthenticationFailed,
    EmailNotVerified,
    InvalidRequest,
    InvalidToken,
    RateLimitExceeded,
    SessionNotFound,
    TokenReuseDetected,
)
from fintrack.core.security import hash_token, verify_password
from fintrack.core.tokens import TokenKind, decode_token, issue_token
from fintrack.models.base import utcnow
from fintrack.models.session import UserSession
from fintrack.models.user import User
from fintrack.models.verification_token import VerificationTokenType
from fintrack.services import account_service, email_service, session_service, verification_service
from fintrack.services.account_service import mask_email
from fintrack.services.rate_limit import RateLimiter

logger = logging.getLogger(__name__)

RATE_LIMIT_REGISTRATION = "registration"


@dataclass(frozen=True)
class ClientInfo:
    ip_address: str | None = None
    user_agent: str | None = None


@dataclass(frozen=True)
class AuthTokens:
    user: User
    session_id: uuid.UUID
    access_token: str
    access_expires_at: datetime
    refresh_token: str
    refresh_expires_at: datetime

    @property
    def expires_in(self) -> int:
        return settings.ACCESS_TOKEN_EXPIRE_MINUTES * 60


# ── Helpers ──────────────────────────────────────────────────────────


def _issue_pair(user: User, session_id: uuid.UUID, remember_me: bool) -> tuple:
    access = issue_token(
        user.id, session_id, user.token_version, TokenKind.ACCESS, email=user.email,
    )
    refresh = issue_token(
        user.id, session_id, user.token_version, TokenKind.REFRESH, remember_me=remember_me,
    )
    return access, refresh


def _bundle(user: User, session_id: uuid.UUID, access, refresh) -> AuthTokens:
    return AuthTokens(
        user=user,
        session_id=session_id,
        access_token=access.token,
        access_expires_at=access.expires_at,
        refresh_token=refresh.token,
        refresh_expires_at=refresh.expires_at,
    )


# ── Registration & verification ──────────────────────────────────────


async def register(
    email: str,
    password: str,
    db: AsyncSession,
    *,
    limiter: RateLimiter,
    client: ClientInfo | None = None,
    first_name: str | None = None,
    last_name: str | None = None,
) -> User:
    limiter.check(
        RATE_LIMIT_REGISTRATION,
        (client.ip_address if client else None) or "unknown",
        settings.REGISTRATION_RATE_LIMIT,
        settings.REGISTRATION_RATE_WINDOW_MINUTES * 60,
    )
    user = await account_service.register_user(
        email, password, db, first_name=first_name, last_name=last_name,
    )
    token = await verification_service.create_token(user, VerificationTokenType.EMAIL_VERIFICATION, db)
    await email_service.send_verification_email(user, token)
    return user


async def verify_email(token: str, db: AsyncSession) -> User:
    user = await verification_service.consume_token(token, VerificationTokenType.EMAIL_VERIFICATION, db)
    await account_service.mark_email_verified(user, db)
    logger.info("Email verified for %s", mask_email(user.email))
    return user


async def resend_verification(email: str, db: AsyncSession) -> None:
    """Silently succeeds for unknown emails to avoid enumeration."""
    user = await account_service.get_user_by_email(email, db)
    if user is None:
        logger.debug("Verification resend requested for non-existent email")
        return
    if user.email_verified:
        raise InvalidRequest("Email has already been verified.")

    window = timedelta(minutes=settings.EMAIL_RESEND_RATE_WINDOW_MINUTES)
    recent = await verification_service.count_recent_tokens(
        user.id, VerificationTokenType.EMAIL_VERIFICATION, window, db,
    )
    if recent >= settings.EMAIL_RESEND_RATE_LIMIT:
        logger.info("Verification email rate limit exceeded for %s", mask_email(user.email))
        raise RateLimitExceeded(
            "Too many verification emails requested. Please try again later.",
            retry_after_seconds=int(window.total_seconds()),
        )

    token = await verification_service.create_token(user, VerificationTokenType.EMAIL_VERIFICATION, db)
    await email_service.send_verification_email(user, token)
    logger.info("Verification email resent to %s", mask_email(user.email))


# ── Login ────────────────────────────────────────────────────────────


async def login(
    email: str,
    password: str,
    db: AsyncSession,
    *,
    remember_me: bool = False,
    client: ClientInfo | None = None,
) -> AuthTokens:
    """
    Validate credentials, open a session and return access + refresh
    tokens stamped with the user's current token version.
    """
    user = await account_service.verify_credentials(email, password, db)

    if not user.email_verified:
        logger.debug("Login attempt with unverified email: %s", mask_email(user.email))
        raise EmailNotVerified()

    session_id = uuid.uuid4()
    access, refresh = _issue_pair(user, session_id, remember_me)
    await session_service.create_session(
        user.id,
        session_id=session_id,
        refresh_token_hash=hash_token(refresh.token),
        expires_at=refresh.expires_at,
        remember_me=remember_me,
        db=db,
        user_agent=client.user_agent if client else None,
        ip_address=client.ip_address if client else None,
    )

    logger.info("User logged in: %s", mask_email(user.email))
    return _bundle(user, session_id, access, refresh)


# ── Refresh ──────────────────────────────────────────────────────────


async def refresh(refresh_token_raw: str, db: AsyncSession) -> AuthTokens:
    """
    Exchange a refresh token for a new access token and a rotated
    refresh token on the same session.

    Raises ``TokenExpired`` / ``InvalidToken`` for a bad token,
    ``SessionNotFound`` when the session is gone, revoked or expired, and
    ``InvalidToken`` when the user's token version has moved on.
    """
    claims = decode_token(refresh_token_raw, expected_kind=TokenKind.REFRESH)

    session = await session_service.get_session(claims.session_id, db, for_update=True)
    if session is None or not session.is_active() or session.user_id != claims.user_id:
        raise SessionNotFound()

    if session.refresh_token_hash != hash_token(refresh_token_raw):
        logger.warning(
            "Refresh token reuse detected for user %s, revoking session %s",
            session.user_id,
            session.id,
        )
        session.revoke()
        await db.commit()
        raise TokenReuseDetected()

    user = await account_service.get_user_by_id(claims.user_id, db)
    if user is None:
        raise InvalidToken()
    if not account_service.validate_token_version(claims.token_version, user.token_version):
        raise InvalidToken("Token has been revoked")

    tokens = await _rotate(user, session, db)
    logger.debug("Rotated refresh token for session %s", session.id)
    return tokens


async def _rotate(user: User, session: UserSession, db: AsyncSession) -> AuthTokens:
    access, refresh_ = _issue_pair(user, session.id, session.remember_me)
    session.refresh_token_hash = hash_token(refresh_.token)
    session.expires_at = refresh_.expires_at
    session.last_used_at = utcnow()
    await db.flush()
    return _bundle(user, session.id, access, refresh_)


# ── Logout ───────────────────────────────────────────────────────────


async def logout(session_id: uuid.UUID, db: AsyncSession) -> None:
    """Revoke one session.  Idempotent: an unknown or revoked id is a no-op."""
    if await session_service.revoke_session(session_id, db):
        logger.debug("Session %s logged out", session_id)


async def logout_with_refresh_token(refresh_token_raw: str, db: AsyncSession) -> None:
    """Cookie-only logout; an unusable refresh token leaves nothing to revoke."""
    try:
        claims = decode_token(refresh_token_raw, expected_kind=TokenKind.REFRESH)
    except InvalidToken:
        logger.debug("Logout with unusable refresh token")
        return
    session = await session_service.get_session(claims.session_id, db)
    if session is not None and session.refresh_token_hash == hash_token(refresh_token_raw):
        await logout(session.id, db)


async def logout_all(user_id: uuid.UUID, db: AsyncSession) -> int:
    """
    Bump the token version (kills every access token already issued)
    and revoke every session (kills every refresh token).
    """
    await account_service.increment_token_version(user_id, db)
    revoked = await session_service.revoke_all_user_sessions(user_id, db)
    logger.info("Revoked %d sessions for user %s (logout all)", revoked, user_id)

    user = await account_service.get_user_by_id(user_id, db)
    if user is not None:
        await email_service.send_all_sessions_logout_alert(user)
    return revoked


async def revoke_other_session(
    user_id: uuid.UUID,
    session_id: uuid.UUID,
    current_session_id: uuid.UUID,
    db: AsyncSession,
) -> None:
    if session_id == current_session_id:
        raise InvalidRequest("Cannot revoke current session. Use logout instead.")

    session = await session_service.get_session(session_id, db)
    # Someone else's session is reported exactly like a missing one.
    if session is None or session.user_id != user_id or session.is_revoked:
        if session is not None and session.user_id != user_id:
            logger.warning("User %s attempted to revoke session %s of another user", user_id, session_id)
        raise SessionNotFound()

    await session_service.revoke_session(session_id, db)
    logger.info("Session %s revoked by user %s", session_id, user_id)


# ── Passwords ────────────────────────────────────────────────────────


async def request_password_reset(email: str, db: AsyncSession) -> None:
    """Always looks successful to the caller to avoid email enumeration."""
    user = await account_service.get_user_by_email(email, db)
    if user is None:
        logger.debug("Password reset requested for non-existent email")
        return

    window = timedelta(minutes=settings.PASSWORD_RESET_RATE_WINDOW_MINUTES)
    recent = await verification_service.count_recent_tokens(
        user.id, VerificationTokenType.PASSWORD_RESET, window, db,
    )
    if recent >= settings.PASSWORD_RESET_RATE_LIMIT:
        logger.info("Password reset rate limit exceeded for %s", mask_email(user.email))
        raise RateLimitExceeded(
            "Too many password reset requests. Please try again later.",
            retry_after_seconds=int(window.total_seconds()),
        )

    token = await verification_service.create_token(user, VerificationTokenType.PASSWORD_RESET, db)
    await email_service.send_password_reset_email(user, token)
    logger.info("Password reset email sent to %s", mask_email(user.email))


async def reset_password(
    token: str,
    new_password: str,
    db: AsyncSession,
    *,
    client: ClientInfo | None = None,
) -> None:
    user = await verification_service.consume_token(token, VerificationTokenType.PASSWORD_RESET, db)
    await account_service.set_password(user.id, new_password, db)
    await session_service.revoke_all_user_sessions(user.id, db)
    logger.info("Password reset completed for %s", mask_email(user.email))
    await email_service.send_password_changed_email(user, client.ip_address if client else None)


async def change_password(
    user_id: uuid.UUID,
    current_session_id: uuid.UUID,
    current_password: str,
    new_password: str,
    db: AsyncSession,
    *,
    client: ClientInfo | None = None,
) -> AuthTokens:
    """
    Change the password of a signed-in user.

    Other sessions are revoked and every outstanding access token dies
    with the version bump; the current session is kept and handed a
    fresh token pair stamped with the new version.
    """
    user = await account_service.get_user_by_id(user_id, db)
    if user is None:
        raise AuthenticationFailed()
    if not verify_password(current_password, user.password_hash):
        raise AuthenticationFailed("Current password is incorrect")

    await account_service.set_password(user.id, new_password, db)
    await session_service.revoke_all_user_sessions(user.id, db, except_session_id=current_session_id)

    session = await session_service.get_session(current_session_id, db, for_update=True)
    if session is None or not session.is_active():
        raise SessionNotFound()
    tokens = await _rotate(user, session, db)

    logger.info("Password changed for %s", mask_email(user.email))
    await email_service.send_password_changed_email(user, client.ip_address if client else None)
    return tokens

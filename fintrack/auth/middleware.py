"""
Authentication filter — runs once per HTTP request, before any route.

Flow:
1. Extract a token: ``Authorization: Bearer <token>`` first, then the
   access-token cookie.  No token → anonymous.
2. Decode it as an access token (signature, issuer, expiry, kind).
3. Load the user.  Unknown user → anonymous.
4. Compare the stamped token version with the live one.  Mismatch →
   ``InvalidToken`` (revoked).
5. Locked account → anonymous.  Elapsed lock → auto-unlock, persisted.
6. Otherwise attach a ``Principal`` to ``request.state.auth``.

The filter never answers a request itself: every failure, including a
database outage, degrades to anonymous and route-level dependencies
decide whether anonymous access is acceptable.
"""

import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from fintrack.auth.principal import AuthContext, Principal, capabilities_for
from fintrack.core.config import settings
from fintrack.core.errors import InvalidToken
from fintrack.core.tokens import TokenKind, decode_token
from fintrack.services import account_service

logger = logging.getLogger(__name__)

BEARER_PREFIX = "bearer "


def extract_token(request: Request) -> str | None:
    """Bearer header wins over the cookie; blank values count as absent."""
    auth_header = request.headers.get("authorization", "")
    if auth_header[: len(BEARER_PREFIX)].lower() == BEARER_PREFIX:
        token = auth_header[len(BEARER_PREFIX):].strip()
        if token:
            return token

    cookie = request.cookies.get(settings.ACCESS_TOKEN_COOKIE, "").strip()
    return cookie or None


async def authenticate_token(token: str, db: AsyncSession) -> Principal | None:
    """
    Resolve an access token to a principal, or ``None`` for anonymous.

    Raises ``InvalidToken`` (``TokenExpired`` included) when the token
    itself is bad or has been revoked by a version bump.
    """
    claims = decode_token(token, expected_kind=TokenKind.ACCESS)

    user = await account_service.get_user_by_id(claims.user_id, db)
    if user is None:
        logger.debug("User not found for token")
        return None

    if not account_service.validate_token_version(claims.token_version, user.token_version):
        raise InvalidToken("Token has been revoked")

    if await account_service.is_locked(user, db):
        logger.debug("Token presented for locked account %s", user.id)
        return None

    return Principal(
        user_id=user.id,
        email=user.email,
        session_id=claims.session_id,
        capabilities=capabilities_for(user),
    )


class AuthenticationMiddleware(BaseHTTPMiddleware):
    """Populates ``request.state.auth`` with an ``AuthContext``."""

    async def dispatch(self, request: Request, call_next):
        context = AuthContext()
        request.state.auth = context

        token = extract_token(request)
        if token:
            await self._authenticate(request, token, context)

        return await call_next(request)

    async def _authenticate(self, request: Request, token: str, context: AuthContext) -> None:
        session_factory = request.app.state.session_factory
        try:
            async with session_factory() as db:
                principal = await authenticate_token(token, db)
                # Persists an auto-unlock, if one happened.
                await db.commit()
        except InvalidToken as exc:
            logger.debug("Rejected token on %s: %s", request.url.path, exc.message)
            context.clear(exc.code)
            return
        except (SQLAlchemyError, OSError):
            logger.exception("Could not authenticate request to %s; continuing anonymously", request.url.path)
            context.clear()
            return

        context.principal = principal
        if principal is not None:
            logger.debug("Authenticated user %s", principal.user_id)

"""
JWT codec for access and refresh tokens.

Both kinds carry the same identity claims:

    sub   user id
    sid   session id
    ver   the user's token_version at issuance
    type  "access" | "refresh"

Access tokens also carry ``email``.  Validity of an access token is
signature + expiry here, plus a ``ver`` comparison against the live user
row done by the caller; refresh tokens are additionally bound to their
session row.  Nothing in this module touches the database.
"""

import enum
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from jose import ExpiredSignatureError, JWTError, jwt

from fintrack.core.config import settings
from fintrack.core.errors import InvalidToken, TokenExpired


class TokenKind(str, enum.Enum):
    ACCESS = "access"
    REFRESH = "refresh"


@dataclass(frozen=True)
class TokenClaims:
    user_id: uuid.UUID
    session_id: uuid.UUID
    token_version: int
    kind: TokenKind
    expires_at: datetime
    email: str | None = None


@dataclass(frozen=True)
class IssuedToken:
    token: str
    expires_at: datetime


def default_lifetime(kind: TokenKind, remember_me: bool = False) -> timedelta:
    if kind is TokenKind.ACCESS:
        return timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    if remember_me:
        return timedelta(days=settings.REFRESH_TOKEN_REMEMBER_ME_DAYS)
    return timedelta(days=settings.REFRESH_TOKEN_EXPIRE_DAYS)


def issue_token(
    user_id: uuid.UUID,
    session_id: uuid.UUID,
    token_version: int,
    kind: TokenKind,
    *,
    email: str | None = None,
    remember_me: bool = False,
    expires_delta: timedelta | None = None,
) -> IssuedToken:
    now = datetime.now(timezone.utc)
    expire = now + (expires_delta if expires_delta is not None else default_lifetime(kind, remember_me))

    to_encode: dict[str, Any] = {
        "sub": str(user_id),
        "sid": str(session_id),
        "ver": token_version,
        "type": kind.value,
        "iss": settings.JWT_ISSUER,
        "iat": now,
        "exp": expire,
        # Keeps two tokens minted in the same second for the same session distinct.
        "jti": uuid.uuid4().hex,
    }
    if kind is TokenKind.ACCESS and email is not None:
        to_encode["email"] = email

    token = jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.JWT_ALGORITHM)
    return IssuedToken(token=token, expires_at=expire)


def decode_token(token: str, expected_kind: TokenKind | None = None) -> TokenClaims:
    """
    Verify signature, issuer and expiry, then parse the identity claims.

    Raises ``TokenExpired`` for an expired but otherwise well-signed
    token and ``InvalidToken`` for anything else.
    """
    try:
        payload = jwt.decode(
            token,
            settings.SECRET_KEY,
            algorithms=[settings.JWT_ALGORITHM],
            issuer=settings.JWT_ISSUER,
            options={"require_exp": True, "require_sub": True},
        )
    except ExpiredSignatureError:
        raise TokenExpired()
    except JWTError:
        raise InvalidToken()

    try:
        claims = TokenClaims(
            user_id=uuid.UUID(str(payload["sub"])),
            session_id=uuid.UUID(str(payload["sid"])),
            token_version=_as_int(payload["ver"]),
            kind=TokenKind(payload["type"]),
            expires_at=datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc),
            email=payload.get("email"),
        )
    except (KeyError, TypeError, ValueError):
        raise InvalidToken("Malformed token")

    if expected_kind is not None and claims.kind is not expected_kind:
        raise InvalidToken("Invalid token type")
    return claims


def _as_int(value: Any) -> int:
    # bool is an int subclass; a forged ``true`` must not pass as version 1.
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError("token version must be an integer")
    return value

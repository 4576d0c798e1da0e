"""
Auth controller — registration, login, refresh, logout, passwords,
email verification and session management.

Register, login, refresh, verification and password-reset routes are
PUBLIC.  Logout works with or without a valid access token.  Profile,
password change and session routes require an authenticated principal.

Tokens are returned in the body AND set as HttpOnly cookies, so both
API clients (Authorization header) and the browser app (cookies) work.
"""

import uuid

from fastapi import APIRouter, Depends, Request, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from fintrack.auth.dependencies import get_principal, require_capability, require_principal
from fintrack.auth.principal import Capability, Principal
from fintrack.core.config import settings
from fintrack.core.database import get_db
from fintrack.core.errors import AuthenticationFailed, InvalidToken
from fintrack.schemas import (
    ChangePasswordRequest,
    EmailRequest,
    LoginRequest,
    MessageResponse,
    RefreshTokenRequest,
    RegisterRequest,
    RegisterResponse,
    ResetPasswordRequest,
    SessionListResponse,
    SessionOut,
    TokenResponse,
    UserProfile,
    VerifyEmailRequest,
)
from fintrack.services import account_service, auth_service, session_service
from fintrack.services.auth_service import AuthTokens, ClientInfo

router = APIRouter(prefix="/api/auth", tags=["Auth"])


# ── Helpers ──────────────────────────────────────────────────────────


def _client_info(request: Request) -> ClientInfo:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        ip = forwarded.split(",")[0].strip()
    else:
        ip = request.client.host if request.client else None
    return ClientInfo(ip_address=ip, user_agent=request.headers.get("user-agent"))


def _set_auth_cookies(response: Response, tokens: AuthTokens) -> None:
    response.set_cookie(
        settings.ACCESS_TOKEN_COOKIE,
        tokens.access_token,
        expires=tokens.access_expires_at,
        path="/",
        httponly=True,
        secure=settings.SECURE_COOKIES,
        samesite=settings.COOKIE_SAMESITE,
    )
    response.set_cookie(
        settings.REFRESH_TOKEN_COOKIE,
        tokens.refresh_token,
        expires=tokens.refresh_expires_at,
        path=settings.REFRESH_COOKIE_PATH,
        httponly=True,
        secure=settings.SECURE_COOKIES,
        samesite=settings.COOKIE_SAMESITE,
    )


def _clear_auth_cookies(response: Response) -> None:
    response.delete_cookie(settings.ACCESS_TOKEN_COOKIE, path="/")
    response.delete_cookie(settings.REFRESH_TOKEN_COOKIE, path=settings.REFRESH_COOKIE_PATH)


def _token_response(tokens: AuthTokens) -> TokenResponse:
    return TokenResponse(
        access_token=tokens.access_token,
        refresh_token=tokens.refresh_token,
        expires_in=tokens.expires_in,
        session_id=tokens.session_id,
        user=UserProfile.model_validate(tokens.user),
    )


# ── Public ───────────────────────────────────────────────────────────


@router.post("/register", response_model=RegisterResponse, status_code=status.HTTP_201_CREATED)
async def register(body: RegisterRequest, request: Request, db: AsyncSession = Depends(get_db)):
    """Create an account and mail a verification link."""
    user = await auth_service.register(
        body.email,
        body.password,
        db,
        limiter=request.app.state.rate_limiter,
        client=_client_info(request),
        first_name=body.first_name,
        last_name=body.last_name,
    )
    return RegisterResponse(user_id=user.id)


@router.post("/login", response_model=TokenResponse)
async def login(
    body: LoginRequest,
    request: Request,
    response: Response,
    db: AsyncSession = Depends(get_db),
):
    """Authenticate with email + password → receive JWT pair."""
    tokens = await auth_service.login(
        body.email,
        body.password,
        db,
        remember_me=body.remember_me,
        client=_client_info(request),
    )
    _set_auth_cookies(response, tokens)
    return _token_response(tokens)


@router.post("/refresh", response_model=TokenResponse)
async def refresh_token(
    request: Request,
    response: Response,
    body: RefreshTokenRequest | None = None,
    db: AsyncSession = Depends(get_db),
):
    """Exchange a valid refresh token (body or cookie) for a new pair."""
    raw = (body.refresh_token if body else None) or request.cookies.get(settings.REFRESH_TOKEN_COOKIE)
    if not raw:
        raise InvalidToken("Refresh token is required")
    tokens = await auth_service.refresh(raw, db)
    _set_auth_cookies(response, tokens)
    return _token_response(tokens)


@router.post("/logout", response_model=MessageResponse)
async def logout(
    request: Request,
    response: Response,
    principal: Principal | None = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
):
    """Revoke the current session (server-side logout) and clear cookies."""
    if principal is not None:
        await auth_service.logout(principal.session_id, db)
    else:
        raw = request.cookies.get(settings.REFRESH_TOKEN_COOKIE)
        if raw:
            await auth_service.logout_with_refresh_token(raw, db)
    _clear_auth_cookies(response)
    return MessageResponse(detail="Logged out successfully")


@router.post("/verify-email", response_model=MessageResponse)
async def verify_email(body: VerifyEmailRequest, db: AsyncSession = Depends(get_db)):
    await auth_service.verify_email(body.token, db)
    return MessageResponse(detail="Email verified successfully. You can now log in.")


@router.post("/verify-email/resend", response_model=MessageResponse)
async def resend_verification(body: EmailRequest, db: AsyncSession = Depends(get_db)):
    await auth_service.resend_verification(body.email, db)
    return MessageResponse(detail="If the account exists, a verification email has been sent.")


@router.post("/password/forgot", response_model=MessageResponse)
async def forgot_password(body: EmailRequest, db: AsyncSession = Depends(get_db)):
    await auth_service.request_password_reset(body.email, db)
    # Same answer whether or not the email exists.
    return MessageResponse(
        detail="If the email exists in our system, you will receive a password reset link."
    )


@router.post("/password/reset", response_model=MessageResponse)
async def reset_password(
    body: ResetPasswordRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
):
    await auth_service.reset_password(body.token, body.new_password, db, client=_client_info(request))
    return MessageResponse(
        detail="Password has been reset successfully. Please log in with your new password."
    )


# ── Authenticated ────────────────────────────────────────────────────


@router.get("/me", response_model=UserProfile)
async def me(
    principal: Principal = Depends(require_capability(Capability.USER)),
    db: AsyncSession = Depends(get_db),
):
    user = await account_service.get_user_by_id(principal.user_id, db)
    if user is None:
        raise AuthenticationFailed("User not found")
    return UserProfile.model_validate(user)


@router.post("/password/change", response_model=TokenResponse)
async def change_password(
    body: ChangePasswordRequest,
    request: Request,
    response: Response,
    principal: Principal = Depends(require_principal),
    db: AsyncSession = Depends(get_db),
):
    """Change password; other sessions are signed out, this one gets fresh tokens."""
    tokens = await auth_service.change_password(
        principal.user_id,
        principal.session_id,
        body.current_password,
        body.new_password,
        db,
        client=_client_info(request),
    )
    _set_auth_cookies(response, tokens)
    return _token_response(tokens)


@router.get("/sessions", response_model=SessionListResponse)
async def list_sessions(
    principal: Principal = Depends(require_principal),
    db: AsyncSession = Depends(get_db),
):
    sessions = await session_service.get_active_sessions(principal.user_id, db)
    return SessionListResponse(
        sessions=[
            SessionOut.model_validate(s).model_copy(update={"current": s.id == principal.session_id})
            for s in sessions
        ]
    )


@router.delete("/sessions", response_model=MessageResponse)
async def logout_all_sessions(
    response: Response,
    principal: Principal = Depends(require_principal),
    db: AsyncSession = Depends(get_db),
):
    """Sign out everywhere: every access and refresh token stops working."""
    await auth_service.logout_all(principal.user_id, db)
    _clear_auth_cookies(response)
    return MessageResponse(
        detail="All sessions have been terminated. You will need to log in again on all devices."
    )


@router.delete("/sessions/{session_id}", response_model=MessageResponse)
async def revoke_session(
    session_id: uuid.UUID,
    principal: Principal = Depends(require_principal),
    db: AsyncSession = Depends(get_db),
):
    await auth_service.revoke_other_session(principal.user_id, session_id, principal.session_id, db)
    return MessageResponse(detail="Session revoked successfully")

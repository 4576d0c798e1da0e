"""
FastAPI application factory.

Assembles the app, installs the authentication middleware, maps the
auth error taxonomy onto HTTP responses and registers all routers.
Database schema is created by ``python -m fintrack.scripts.init_db``.
"""

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fintrack.auth.middleware import AuthenticationMiddleware
from fintrack.controllers.auth_controller import router as auth_router
from fintrack.core.config import settings
from fintrack.core.database import SessionLocal, engine
from fintrack.core.errors import AuthError, RateLimitExceeded
from fintrack.models import Base  # noqa: F401 — ensures all models are registered
from fintrack.services.rate_limit import RateLimiter

logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
)
logger = logging.getLogger(__name__)


async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    headers: dict[str, str] = {}
    if exc.status_code == 401:
        headers["WWW-Authenticate"] = 'Bearer realm="fintrack"'
    if isinstance(exc, RateLimitExceeded):
        headers["Retry-After"] = str(exc.retry_after_seconds)
    if exc.status_code >= 500:
        logger.error("%s on %s: %s", exc.code, request.url.path, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "code": exc.code},
        headers=headers,
    )


def create_app(session_factory: async_sessionmaker[AsyncSession] | None = None) -> FastAPI:
    app = FastAPI(
        title=settings.APP_NAME,
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
    )
    app.state.session_factory = session_factory or SessionLocal
    app.state.rate_limiter = RateLimiter()

    # ── Middleware & error mapping ───────────────────────────────────
    app.add_middleware(AuthenticationMiddleware)
    app.add_exception_handler(AuthError, auth_error_handler)

    # ── Register routers ─────────────────────────────────────────────
    app.include_router(auth_router)

    # ── Shutdown ─────────────────────────────────────────────────────
    @app.on_event("shutdown")
    async def on_shutdown() -> None:
        await engine.dispose()
        logger.info("Database engine disposed.")

    # ── Health check ─────────────────────────────────────────────────
    @app.get("/health", tags=["Health"])
    async def health():
        return {"status": "ok"}

    return app


app = create_app()

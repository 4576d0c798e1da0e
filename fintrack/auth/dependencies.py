"""
Authorization dependencies — consume the identity the middleware set.

`require_capability` is a *dependency factory*: call it with one or
more capabilities and it returns a FastAPI dependency that will:

1. Read the principal from ``request.state.auth``.
2. Return 401 (with ``WWW-Authenticate``) when the caller is anonymous.
3. Return 403 when a capability is missing — with NO details about
   which one (prevents enumeration).

Usage in a route:
    @router.get("/items", dependencies=[Depends(require_capability(Capability.USER))])
    async def list_items(...): ...

Or inject the principal:
    @router.get("/me")
    async def me(principal: Principal = Depends(require_principal)): ...
"""

import logging

from fastapi import Depends, HTTPException, Request, status

from fintrack.auth.principal import AuthContext, Capability, Principal

logger = logging.getLogger(__name__)


def get_auth_context(request: Request) -> AuthContext:
    context = getattr(request.state, "auth", None)
    if context is None:
        # Middleware not installed (e.g. a bare sub-app) → anonymous.
        context = AuthContext()
        request.state.auth = context
    return context


def get_principal(context: AuthContext = Depends(get_auth_context)) -> Principal | None:
    """Optional authentication — ``None`` for anonymous callers."""
    return context.principal


def require_principal(context: AuthContext = Depends(get_auth_context)) -> Principal:
    if context.principal is None:
        error = "invalid_token" if context.token_error else "unauthorized"
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Access token expired" if context.token_error == "TOKEN_EXPIRED" else "Authentication required",
            headers={"WWW-Authenticate": f'Bearer realm="fintrack", error="{error}"'},
        )
    return context.principal


class require_capability:
    """
    Dependency factory.

    Can be used as:
        Depends(require_capability(Capability.USER))
    """

    def __init__(self, *capabilities: Capability):
        self.required = set(capabilities)

    async def __call__(self, principal: Principal = Depends(require_principal)) -> Principal:
        if not principal.has(*self.required):
            logger.warning(
                "Capability check failed for user %s — required: %s",
                principal.user_id,
                sorted(c.value for c in self.required),
            )
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient permissions",
            )
        return principal

"""
Request-scoped identity.

``AuthContext`` is created fresh for every request by the
authentication middleware and stored on ``request.state.auth``; nothing
about the caller's identity lives in module or thread globals.

Capabilities are an explicit, enumerable set per principal.  Every
authenticated user holds ``Capability.USER`` today; new capabilities
are added to the enum and granted in ``capabilities_for``.
"""

import enum
import uuid
from dataclasses import dataclass, field

from fintrack.models.user import User


class Capability(str, enum.Enum):
    USER = "ROLE_USER"


def capabilities_for(user: User) -> frozenset[Capability]:
    return frozenset({Capability.USER})


@dataclass(frozen=True)
class Principal:
    user_id: uuid.UUID
    email: str
    session_id: uuid.UUID
    capabilities: frozenset[Capability] = field(default_factory=frozenset)

    def has(self, *required: Capability) -> bool:
        return set(required).issubset(self.capabilities)


@dataclass
class AuthContext:
    """
    What the middleware learned about the caller.

    - principal: set only when every validation step passed.
    - token_error: code of the error that degraded a presented token to
      anonymous (e.g. ``TOKEN_EXPIRED``), so the 401 can hint at refresh.
    """

    principal: Principal | None = None
    token_error: str | None = None

    @property
    def is_authenticated(self) -> bool:
        return self.principal is not None

    def clear(self, token_error: str | None = None) -> None:
        self.principal = None
        self.token_error = token_error

"""
Authentication error taxonomy.

Services raise these; the handler registered in ``create_app`` turns
them into ``{"detail": ..., "code": ...}`` JSON responses.  Messages are
deliberately generic where detail would help enumeration (unknown
email, lock duration, remaining attempts).
"""


class AuthError(Exception):
    status_code: int = 400
    code: str = "BAD_REQUEST"
    default_message: str = "Request could not be processed"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class InvalidRequest(AuthError):
    pass


class InvalidToken(AuthError):
    """Bad signature, malformed structure, wrong kind, or revoked."""

    status_code = 401
    code = "INVALID_TOKEN"
    default_message = "Invalid token"


class TokenExpired(InvalidToken):
    """Valid signature, past expiry — the client should refresh."""

    code = "TOKEN_EXPIRED"
    default_message = "Token has expired"


class TokenReuseDetected(InvalidToken):
    code = "TOKEN_REUSE"
    default_message = "Refresh token reuse detected. The session has been revoked."


class AuthenticationFailed(AuthError):
    status_code = 401
    code = "INVALID_CREDENTIALS"
    default_message = "Invalid email or password"


class AccountLocked(AuthenticationFailed):
    status_code = 423
    code = "ACCOUNT_LOCKED"
    default_message = "Account temporarily locked due to too many failed attempts. Please try again later."


class EmailNotVerified(AuthError):
    status_code = 403
    code = "EMAIL_NOT_VERIFIED"
    default_message = "Please verify your email before logging in"


class SessionNotFound(AuthError):
    status_code = 404
    code = "SESSION_NOT_FOUND"
    default_message = "Session not found"


class EmailAlreadyExists(AuthError):
    status_code = 409
    code = "EMAIL_EXISTS"
    default_message = "Email already exists"


class TokenAlreadyUsed(AuthError):
    status_code = 410
    code = "TOKEN_ALREADY_USED"
    default_message = "This link has already been used"


class RateLimitExceeded(AuthError):
    status_code = 429
    code = "RATE_LIMIT_EXCEEDED"
    default_message = "Too many attempts. Please try again later."

    def __init__(self, message: str | None = None, retry_after_seconds: int = 60) -> None:
        super().__init__(message)
        self.retry_after_seconds = retry_after_seconds

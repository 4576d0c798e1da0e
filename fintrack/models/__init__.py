"""
Models package — import every model so SQLAlchemy's Base.metadata
knows about all tables (critical for `create_all`).
"""

from fintrack.models.base import Base, TimestampMixin, UTCDateTime, UUIDPrimaryKeyMixin
from fintrack.models.user import User, normalize_email
from fintrack.models.session import UserSession
from fintrack.models.verification_token import VerificationToken, VerificationTokenType

__all__ = [
    "Base",
    "TimestampMixin",
    "UTCDateTime",
    "UUIDPrimaryKeyMixin",
    "User",
    "normalize_email",
    "UserSession",
    "VerificationToken",
    "VerificationTokenType",
]

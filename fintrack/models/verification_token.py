from __future__ import annotations

"""
Verification token model.

Single-use, time-boxed tokens mailed to the user:
EMAIL_VERIFICATION (24h) and PASSWORD_RESET (1h).  Issuing a new token
of a type invalidates the user's outstanding tokens of that type.
"""

import enum
import uuid
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import Enum, ForeignKey, Index, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from fintrack.models.base import Base, UTCDateTime, UUIDPrimaryKeyMixin, utcnow

if TYPE_CHECKING:
    from fintrack.models.user import User


class VerificationTokenType(str, enum.Enum):
    EMAIL_VERIFICATION = "EMAIL_VERIFICATION"
    PASSWORD_RESET = "PASSWORD_RESET"


class VerificationToken(Base, UUIDPrimaryKeyMixin):
    __tablename__ = "verification_tokens"

    user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )
    token: Mapped[str] = mapped_column(String(255), unique=True, index=True, nullable=False)
    token_type: Mapped[VerificationTokenType] = mapped_column(
        Enum(VerificationTokenType, name="verification_token_type", native_enum=False),
        nullable=False,
    )
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    used_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)

    # ── Relationships ────────────────────────────────────────────────
    user: Mapped["User"] = relationship(  # noqa: F821
        back_populates="verification_tokens",
        lazy="raise",
    )

    __table_args__ = (
        Index("ix_verification_tokens_user_type", "user_id", "token_type"),
    )

    @property
    def is_used(self) -> bool:
        return self.used_at is not None

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or utcnow()) >= self.expires_at

    def __repr__(self) -> str:
        return f"<VerificationToken {self.token_type.value} user={self.user_id}>"

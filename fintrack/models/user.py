from __future__ import annotations

"""
User model — identity plus per-account security state.

Design decisions:
- ``email`` is stored normalised (trimmed, lower-cased); every lookup
  normalises first, which makes the unique index case-insensitive.
- ``token_version`` is the single revocation switch for access tokens:
  any token stamped with a different version is dead.
- The account is locked while ``now < account_locked_until``; there is
  no separate boolean, so an elapsed lock needs no cleanup to stop
  applying (the counter reset is done by the account service).
"""

from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import Boolean, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from fintrack.models.base import Base, TimestampMixin, UTCDateTime, UUIDPrimaryKeyMixin, utcnow

if TYPE_CHECKING:
    from fintrack.models.session import UserSession
    from fintrack.models.verification_token import VerificationToken


def normalize_email(email: str) -> str:
    return email.strip().lower()


class User(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    __tablename__ = "users"

    email: Mapped[str] = mapped_column(String(255), unique=True, index=True, nullable=False)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    first_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    last_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    email_verified: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # ── Security state ───────────────────────────────────────────────
    token_version: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    failed_login_attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    account_locked_until: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    # ── Relationships ────────────────────────────────────────────────
    sessions: Mapped[list["UserSession"]] = relationship(  # noqa: F821
        back_populates="user",
        lazy="raise",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    verification_tokens: Mapped[list["VerificationToken"]] = relationship(  # noqa: F821
        back_populates="user",
        lazy="raise",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    # ── Lock helpers (pure; persistence is the service's job) ────────

    def lock_active(self, now: datetime | None = None) -> bool:
        if self.account_locked_until is None:
            return False
        return (now or utcnow()) < self.account_locked_until

    def lock_expired(self, now: datetime | None = None) -> bool:
        if self.account_locked_until is None:
            return False
        return (now or utcnow()) >= self.account_locked_until

    def reset_failed_logins(self) -> None:
        self.failed_login_attempts = 0
        self.account_locked_until = None

    def __repr__(self) -> str:
        return f"<User {self.id} verified={self.email_verified}>"

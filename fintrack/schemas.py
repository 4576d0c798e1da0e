"""
Pydantic schemas for request / response serialization.

Kept in a single file for now — split per-domain when it grows.
Schemas are deliberately decoupled from SQLAlchemy models so the
API surface can evolve independently of the DB layer.

Password confirmation is checked here, at the request boundary, by
comparing the two named fields directly.
"""

import uuid
from datetime import datetime

from pydantic import BaseModel, EmailStr, Field, model_validator

PASSWORD_MIN = 8
PASSWORD_MAX = 128


def _passwords_match(password: str, confirmation: str) -> None:
    if password != confirmation:
        raise ValueError("Passwords do not match")


# ── Auth ─────────────────────────────────────────────────────────────
class RegisterRequest(BaseModel):
    email: EmailStr
    password: str = Field(min_length=PASSWORD_MIN, max_length=PASSWORD_MAX)
    confirm_password: str
    first_name: str | None = Field(default=None, max_length=100)
    last_name: str | None = Field(default=None, max_length=100)

    @model_validator(mode="after")
    def check_passwords_match(self) -> "RegisterRequest":
        _passwords_match(self.password, self.confirm_password)
        return self


class RegisterResponse(BaseModel):
    user_id: uuid.UUID
    message: str = "Registration successful. Please check your email to verify your account."


class LoginRequest(BaseModel):
    email: str = Field(max_length=255)
    password: str = Field(max_length=PASSWORD_MAX)
    remember_me: bool = False


class RefreshTokenRequest(BaseModel):
    # Optional: browsers send the refresh cookie instead.
    refresh_token: str | None = None


class UserProfile(BaseModel):
    id: uuid.UUID
    email: str
    first_name: str | None = None
    last_name: str | None = None
    email_verified: bool
    created_at: datetime

    model_config = {"from_attributes": True}


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    session_id: uuid.UUID
    user: UserProfile


class VerifyEmailRequest(BaseModel):
    token: str = Field(min_length=1)


class EmailRequest(BaseModel):
    email: EmailStr


class ResetPasswordRequest(BaseModel):
    token: str = Field(min_length=1)
    new_password: str = Field(min_length=PASSWORD_MIN, max_length=PASSWORD_MAX)
    confirm_password: str

    @model_validator(mode="after")
    def check_passwords_match(self) -> "ResetPasswordRequest":
        _passwords_match(self.new_password, self.confirm_password)
        return self


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(max_length=PASSWORD_MAX)
    new_password: str = Field(min_length=PASSWORD_MIN, max_length=PASSWORD_MAX)
    confirm_password: str

    @model_validator(mode="after")
    def check_passwords_match(self) -> "ChangePasswordRequest":
        _passwords_match(self.new_password, self.confirm_password)
        return self


# ── Sessions ─────────────────────────────────────────────────────────
class SessionOut(BaseModel):
    id: uuid.UUID
    user_agent: str | None = None
    ip_address: str | None = None
    created_at: datetime
    last_used_at: datetime
    expires_at: datetime
    current: bool = False

    model_config = {"from_attributes": True}


class SessionListResponse(BaseModel):
    sessions: list[SessionOut]


# ── Generic ──────────────────────────────────────────────────────────
class MessageResponse(BaseModel):
    detail: str

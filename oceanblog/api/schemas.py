from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from oceanblog.service.validation import (
    BIO_MAX_LENGTH,
    NAME_MAX_LENGTH,
    PASSWORD_MAX_LENGTH,
    normalize_unicode,
    validate_email,
)
from oceanblog.storage.models import User

_VALID_ERROR_CODES = frozenset({
    "validation_error",
    "duplicate_account",
    "invalid_token",
    "token_expired",
    "already_verified",
    "unauthorized",
    "invalid_credentials",
    "account_deactivated",
    "invalid_refresh_token",
    "forbidden",
    "not_found",
    "conflict",
    "account_locked",
    "rate_limited",
    "server_error",
})

# long enough for any token we sign, short enough to bound header parsing
MAX_TOKEN_LENGTH = 2048


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable machine-readable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """API envelope wrapping every JSON response."""

    status: str = Field(..., pattern="^(success|error)$")
    data: Optional[Any] = None
    message: Optional[str] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class RegisterRequest(BaseModel):
    # field rules live in the auth service so every violation is reported at once
    name: str = Field(..., max_length=NAME_MAX_LENGTH * 4)
    email: str = Field(..., max_length=320)
    password: str = Field(..., max_length=PASSWORD_MAX_LENGTH)
    confirm_password: str = Field(..., max_length=PASSWORD_MAX_LENGTH)


class LoginRequest(BaseModel):
    email: str = Field(..., min_length=1, max_length=320)
    password: str = Field(..., min_length=1, max_length=PASSWORD_MAX_LENGTH)


class RefreshRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=MAX_TOKEN_LENGTH)


class LogoutRequest(BaseModel):
    """Revoke one session when ``refresh_token`` is given, all of them otherwise."""

    refresh_token: Optional[str] = Field(default=None, max_length=MAX_TOKEN_LENGTH)


class ForgotPasswordRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_forgot_email(cls, value: str) -> str:
        return validate_email(value)


class ResetPasswordRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=MAX_TOKEN_LENGTH)
    password: str = Field(..., max_length=PASSWORD_MAX_LENGTH)


class ChangePasswordRequest(BaseModel):
    """Request to change password (requires current password)."""

    current_password: str = Field(..., min_length=1, max_length=PASSWORD_MAX_LENGTH)
    new_password: str = Field(..., max_length=PASSWORD_MAX_LENGTH)


class VerifyEmailRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=MAX_TOKEN_LENGTH)


class ProfileUpdateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(default=None, max_length=NAME_MAX_LENGTH * 4)
    bio: Optional[str] = Field(default=None, max_length=BIO_MAX_LENGTH)
    avatar: Optional[str] = Field(default=None, max_length=2048)
    location: Optional[str] = Field(default=None, max_length=100)
    website: Optional[str] = Field(default=None, max_length=2048)

    @field_validator("bio", "location")
    @classmethod
    def _normalize_text(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return normalize_unicode(value).strip()

    @field_validator("avatar", "website")
    @classmethod
    def _validate_url(cls, value: Optional[str]) -> Optional[str]:
        if value is None or value == "":
            return value
        if not value.startswith(("http://", "https://", "/")):
            raise ValueError("must be an http(s) URL or an absolute path")
        return value


class UserStatusRequest(BaseModel):
    is_active: bool


class PublicUserResponse(BaseModel):
    """What anyone may see about an account."""

    id: str
    name: str
    role: str
    bio: Optional[str] = None
    avatar: Optional[str] = None
    location: Optional[str] = None
    website: Optional[str] = None
    created_at: datetime

    @classmethod
    def from_user(cls, user: User) -> "PublicUserResponse":
        return cls(
            id=user.id,
            name=user.name,
            role=user.role,
            bio=user.bio,
            avatar=user.avatar,
            location=user.location,
            website=user.website,
            created_at=user.created_at,
        )


class UserResponse(PublicUserResponse):
    """The owner's (or an admin's) view. Secrets and tokens are never included."""

    email: str
    is_active: bool = True
    is_email_verified: bool = False
    last_login: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            name=user.name,
            role=user.role,
            bio=user.bio,
            avatar=user.avatar,
            location=user.location,
            website=user.website,
            created_at=user.created_at,
            email=user.email,
            is_active=user.is_active,
            is_email_verified=user.is_email_verified,
            last_login=user.last_login,
            updated_at=user.updated_at,
        )


class UserListResponse(BaseModel):
    items: List[UserResponse]
    results: int


class AuthResponse(BaseModel):
    user: UserResponse
    token: str
    refresh_token: str
    token_type: str = "bearer"

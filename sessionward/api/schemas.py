from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "unprocessable",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with a stable code value."""

    code: str
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
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


def _normalize_email_field(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email address must be a string")
    normalized = value.strip().lower()
    if len(normalized) > 254:
        raise ValueError("email address too long")
    return normalized


class LoginRequest(BaseModel):
    email_address: str
    password: str = Field(..., max_length=1024)

    @field_validator("email_address")
    @classmethod
    def _normalize_login_email(cls, value: str) -> str:
        return _normalize_email_field(value)


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., max_length=2048)


class PasswordForgotRequest(BaseModel):
    email_address: str

    @field_validator("email_address")
    @classmethod
    def _normalize_forgot_email(cls, value: str) -> str:
        return _normalize_email_field(value)


class PasswordResetConfirm(BaseModel):
    token: str = Field(..., max_length=64)
    password: str = Field(..., max_length=1024)
    password_confirmation: Optional[str] = Field(default=None, max_length=1024)


class RegisterRequest(BaseModel):
    email_address: str
    password: str = Field(..., max_length=1024)
    password_confirmation: Optional[str] = Field(default=None, max_length=1024)

    @field_validator("email_address")
    @classmethod
    def _normalize_register_email(cls, value: str) -> str:
        return _normalize_email_field(value)


class AccountUpdateRequest(BaseModel):
    current_password: str = Field(..., max_length=1024)
    email_address: Optional[str] = None
    password: Optional[str] = Field(default=None, max_length=1024)
    password_confirmation: Optional[str] = Field(default=None, max_length=1024)

    @field_validator("email_address")
    @classmethod
    def _normalize_update_email(cls, value: Optional[str]) -> Optional[str]:
        return _normalize_email_field(value) if value is not None else None


class AccountDeleteRequest(BaseModel):
    current_password: str = Field(..., max_length=1024)


class TokenPairResponse(BaseModel):
    access_token: str
    refresh_token: str
    refresh_token_expires_at: datetime


class SessionResponse(BaseModel):
    id: str
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    refresh_count: int
    last_refreshed_at: Optional[datetime] = None
    refresh_token_expires_at: datetime
    revoked: bool
    created_at: datetime


class SessionListResponse(BaseModel):
    items: List[SessionResponse]


class UserResponse(BaseModel):
    id: str
    email: str
    roles: List[str]
    created_at: datetime
    password_changed_at: Optional[datetime] = None

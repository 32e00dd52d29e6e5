from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from nestauth.logging import get_correlation_id
from nestauth.service.errors import ValidationError
from nestauth.service.passwords import validate_email

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "validation_error",
    "conflict",
    "server_error",
})


def _request_id() -> str:
    return get_correlation_id() or str(uuid4())


class ErrorBody(BaseModel):
    """Error envelope body with a stable code."""

    code: str
    message: str
    details: Optional[Any] = None

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
    request_id: str = Field(default_factory=_request_id)


def _email_field(value: str) -> str:
    try:
        return validate_email(value)
    except ValidationError as exc:
        raise ValueError(exc.message) from exc


class SignupRequest(BaseModel):
    email: str = Field(..., max_length=320)
    password: str = Field(..., max_length=256)
    first_name: Optional[str] = Field(default=None, max_length=100)
    last_name: Optional[str] = Field(default=None, max_length=100)
    timezone: Optional[str] = Field(default=None, max_length=64)
    language: Optional[str] = Field(default=None, max_length=16)

    @field_validator("email")
    @classmethod
    def _validate_signup_email(cls, value: str) -> str:
        return _email_field(value)


class LoginRequest(BaseModel):
    # format is not checked here so malformed and unknown addresses fail alike
    email: str = Field(..., max_length=320)
    password: str = Field(..., max_length=256)


class OAuthLoginRequest(BaseModel):
    provider: str = Field(..., max_length=32)
    token: str = Field(..., min_length=1, max_length=4096)
    email: str = Field(..., max_length=320)
    first_name: Optional[str] = Field(default=None, max_length=100)
    last_name: Optional[str] = Field(default=None, max_length=100)

    @field_validator("provider")
    @classmethod
    def _normalize_provider(cls, value: str) -> str:
        return value.strip().lower()

    @field_validator("email")
    @classmethod
    def _validate_oauth_email(cls, value: str) -> str:
        return _email_field(value)


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=4096)


class PasswordResetRequest(BaseModel):
    email: str = Field(..., max_length=320)


class PasswordResetConfirm(BaseModel):
    token: str = Field(..., min_length=1, max_length=512)
    new_password: str = Field(..., max_length=256)


class EmailVerificationRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=512)


class AuthResponse(BaseModel):
    user_id: str
    session_id: str
    session_expires_at: datetime
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    role: str
    status: str
    email_verified: bool


class UserResponse(BaseModel):
    id: str
    email: str
    role: str
    status: str
    email_verified: bool
    family_id: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    timezone: str
    language: str
    last_login_at: Optional[datetime] = None
    created_at: datetime


class AdminLoginRequest(BaseModel):
    email: str = Field(..., max_length=320)
    password: str = Field(..., max_length=256)
    two_factor_code: Optional[str] = Field(default=None, max_length=10)


class AdminRefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=4096)


class AdminLogoutRequest(BaseModel):
    token: Optional[str] = Field(default=None, max_length=4096)


class AdminLoginResponse(BaseModel):
    requires_two_factor: bool = False
    access_token: str = ""
    refresh_token: str = ""
    token_type: str = "bearer"
    expires_in: int = 0
    admin_id: Optional[str] = None
    email: Optional[str] = None
    role: Optional[str] = None
    role_level: Optional[int] = None
    permissions: List[str] = Field(default_factory=list)
    session_id: Optional[str] = None
    session_expires_at: Optional[datetime] = None


class AdminProfileResponse(BaseModel):
    admin_id: str
    email: str
    role: str
    role_level: int
    permissions: List[str] = Field(default_factory=list)
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    two_factor_enabled: bool = False
    last_login_at: Optional[datetime] = None
    session_id: str


class AdminSessionResponse(BaseModel):
    id: str
    created_at: datetime
    expires_at: datetime
    last_activity: datetime
    ip_addr: Optional[str] = None
    user_agent: Optional[str] = None
    current: bool = False


class AdminSessionListResponse(BaseModel):
    items: List[AdminSessionResponse]


class RevokeSessionsResponse(BaseModel):
    revoked: int

from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator, model_validator

MAX_PASSWORD_LENGTH = 128
MIN_PASSWORD_LENGTH = 8


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize ``value`` after dropping zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    bidi_overrides = {chr(c) for c in range(0x202A, 0x202F)}
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
    "service_unavailable",
})


class ErrorBody(BaseModel):
    """Error envelope body with a stable ``code``."""

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


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
_PHONE = re.compile(r"^\+?[0-9]{6,15}$")
_USERNAME = re.compile(r"^[a-zA-Z0-9_.-]+$")


def _validate_email(value: str) -> str:
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    labels = domain.split(".")
    if len(labels) < 2:
        raise ValueError("invalid email address format")
    for label in labels:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_phone(value: str) -> str:
    compact = "".join(ch for ch in value.strip() if ch not in " -().")
    if not _PHONE.match(compact):
        raise ValueError("invalid phone number")
    return compact


def _validate_password_strength(value: str) -> str:
    if len(value) < MIN_PASSWORD_LENGTH:
        raise ValueError(f"password must be at least {MIN_PASSWORD_LENGTH} characters")
    if len(value) > MAX_PASSWORD_LENGTH:
        raise ValueError(f"password must be at most {MAX_PASSWORD_LENGTH} characters")
    return value


class RegisterRequest(BaseModel):
    username: str = Field(..., min_length=3, max_length=64)
    password: str
    email: Optional[str] = None
    phone: Optional[str] = None
    first_name: Optional[str] = Field(default=None, max_length=100)
    last_name: Optional[str] = Field(default=None, max_length=100)
    platform: Optional[str] = Field(default=None, max_length=16)

    @field_validator("username")
    @classmethod
    def _validate_username(cls, value: str) -> str:
        value = _normalize_unicode(value.strip())
        if not _USERNAME.match(value):
            raise ValueError(
                "username may contain only letters, digits, dots, underscores and hyphens"
            )
        return value

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: Optional[str]) -> Optional[str]:
        return _validate_email(value) if value else None

    @field_validator("phone")
    @classmethod
    def _validate_register_phone(cls, value: Optional[str]) -> Optional[str]:
        return _validate_phone(value) if value else None

    @model_validator(mode="after")
    def _require_contact(self):
        if not self.email and not self.phone:
            raise ValueError("email or phone is required")
        return self


class LoginRequest(BaseModel):
    # username or email
    identifier: str = Field(..., min_length=1, max_length=254)
    password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)
    platform: Optional[str] = Field(default=None, max_length=16)
    device_id: Optional[str] = Field(default=None, max_length=128)


class UserResponse(BaseModel):
    id: str
    username: str
    email: Optional[str] = None
    phone: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    is_email_verified: bool = False
    is_phone_verified: bool = False
    is_active: bool = True
    tenant_id: str = "public"
    platform: Optional[str] = None
    last_login_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


class LoginResponse(BaseModel):
    needs_verification: bool = False
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    token_type: str = "bearer"
    expires_in: int = 0
    session_id: Optional[str] = None
    platform: Optional[str] = None
    user: Optional[UserResponse] = None
    # populated only when needs_verification is true
    user_id: Optional[str] = None
    verification_channel: Optional[str] = None
    verification_sent: bool = False


class RegisterResponse(BaseModel):
    user: UserResponse
    verification: Dict[str, bool] = Field(default_factory=dict)


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=2048)
    platform: Optional[str] = Field(default=None, max_length=16)


class TokenRefreshResponse(BaseModel):
    access_token: str
    refresh_token: str
    expires_in: int
    rotated: bool
    token_type: str = "bearer"


class LogoutRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=2048)
    session_id: Optional[str] = Field(default=None, max_length=128)


class OTPVerifyRequest(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=128)
    code: str = Field(..., min_length=4, max_length=10)
    purpose: str = Field(..., max_length=32)


class OTPResendRequest(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=128)
    purpose: str = Field(..., max_length=32)
    channel: Optional[Literal["email", "sms"]] = None


class OTPResendResponse(BaseModel):
    channel: str
    delivered: bool
    expires_at: datetime


class PasswordForgotRequest(BaseModel):
    # email or phone number
    identifier: str = Field(..., min_length=3, max_length=254)
    preferred_method: Optional[Literal["email", "sms"]] = None


class PasswordResetConfirm(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=128)
    code: str = Field(..., min_length=4, max_length=10)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class SessionResponse(BaseModel):
    id: str
    platform: str
    created_at: datetime
    expires_at: datetime
    last_active_at: Optional[datetime] = None
    device_id: Optional[str] = None
    ip_addr: Optional[str] = None
    user_agent: Optional[str] = None
    current: bool = False


class RoleCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=64)
    description: Optional[str] = Field(default=None, max_length=255)


class RoleResponse(BaseModel):
    id: str
    name: str
    description: Optional[str] = None


class PermissionCreateRequest(BaseModel):
    name: Optional[str] = Field(default=None, max_length=128)
    resource: str = Field(..., min_length=1, max_length=64)
    action: str = Field(..., min_length=1, max_length=64)
    description: Optional[str] = Field(default=None, max_length=255)

    @model_validator(mode="after")
    def _default_name(self):
        if not self.name:
            self.name = f"{self.resource}:{self.action}"
        return self


class PermissionResponse(BaseModel):
    id: str
    name: str
    resource: str
    action: str
    description: Optional[str] = None


class PermissionCheckResponse(BaseModel):
    resource: str
    action: str
    allowed: bool


class MeResponse(BaseModel):
    user: UserResponse
    roles: List[str]
    permissions: List[str]
    session_id: Optional[str] = None

from __future__ import annotations

import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OTPPurpose(str, Enum):
    EMAIL_VERIFICATION = "EMAIL_VERIFICATION"
    PHONE_VERIFICATION = "PHONE_VERIFICATION"
    PASSWORD_RESET = "PASSWORD_RESET"
    TWO_FACTOR_AUTH = "TWO_FACTOR_AUTH"


@dataclass
class User:
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
    created_at: datetime = field(default_factory=utcnow)
    meta: Dict | None = None

    @property
    def has_verified_contact(self) -> bool:
        return (bool(self.email) and self.is_email_verified) or (
            bool(self.phone) and self.is_phone_verified
        )

    def public_dict(self) -> dict:
        """Profile fields safe to return to the account owner."""
        return {
            "id": self.id,
            "username": self.username,
            "email": self.email,
            "phone": self.phone,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "is_email_verified": self.is_email_verified,
            "is_phone_verified": self.is_phone_verified,
            "is_active": self.is_active,
            "tenant_id": self.tenant_id,
            "platform": self.platform,
            "last_login_at": self.last_login_at.isoformat() if self.last_login_at else None,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class Role:
    id: str
    name: str
    description: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Permission:
    id: str
    name: str
    resource: str
    action: str
    description: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    def grants(self, resource: str, action: str) -> bool:
        """``manage`` on a resource grants every action on it."""
        if self.resource != resource:
            return False
        return self.action == action or self.action == "manage"


@dataclass
class RolePermission:
    role_id: str
    permission_id: str
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class UserRole:
    user_id: str
    role_id: str
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Session:
    id: str
    user_id: str
    token: str
    platform: str
    created_at: datetime
    expires_at: datetime
    last_active_at: datetime
    is_valid: bool = True
    device_id: Optional[str] = None
    ip_addr: Optional[str] = None
    user_agent: Optional[str] = None
    tenant_id: str = "public"

    @classmethod
    def new(
        cls,
        user_id: str,
        platform: str,
        ttl: timedelta,
        *,
        device_id: str | None = None,
        ip_addr: str | None = None,
        user_agent: str | None = None,
        tenant_id: str = "public",
    ) -> "Session":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            token=str(uuid.uuid4()),
            platform=platform,
            created_at=now,
            expires_at=now + ttl,
            last_active_at=now,
            device_id=device_id,
            ip_addr=ip_addr,
            user_agent=user_agent,
            tenant_id=tenant_id,
        )

    def is_active_at(self, now: datetime) -> bool:
        return self.is_valid and now < self.expires_at


@dataclass
class RefreshToken:
    id: str
    user_id: str
    token: str
    platform: str
    created_at: datetime
    expires_at: datetime
    is_revoked: bool = False
    revoked_at: Optional[datetime] = None
    device_id: Optional[str] = None
    session_id: Optional[str] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        platform: str,
        ttl: timedelta,
        *,
        device_id: str | None = None,
        session_id: str | None = None,
    ) -> "RefreshToken":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            token=secrets.token_urlsafe(48),
            platform=platform,
            created_at=now,
            expires_at=now + ttl,
            device_id=device_id,
            session_id=session_id,
        )


@dataclass
class OTPCode:
    id: str
    user_id: str
    code: str
    purpose: OTPPurpose
    created_at: datetime
    expires_at: datetime
    is_used: bool = False
    attempts: int = 0
    max_attempts: int = 5


class OTPAttemptStatus(str, Enum):
    """Outcome of one atomic verification attempt."""

    VERIFIED = "verified"
    MISMATCH = "mismatch"
    BURNED = "burned"
    EXHAUSTED = "exhausted"
    MISSING = "missing"


@dataclass
class OTPAttempt:
    status: OTPAttemptStatus
    attempts: int = 0
    max_attempts: int = 0


@dataclass
class AuditEvent:
    id: str
    user_id: str
    action: str
    resource: str = "auth"
    platform: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    meta: Dict | None = None

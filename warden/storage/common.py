"""Common storage utilities shared between memory and postgres implementations.

Both backends implement :class:`AuthStore`; the helpers here keep contact
normalization and OTP attempt accounting identical across them.
"""

from __future__ import annotations

import hmac
import json
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol

from warden.storage.models import (
    AuditEvent,
    OTPAttempt,
    OTPAttemptStatus,
    OTPCode,
    OTPPurpose,
    Permission,
    RefreshToken,
    Role,
    Session,
    User,
)


class AuthStore(Protocol):
    """Persistence surface required by the auth services."""

    # Users and credentials
    def create_user(
        self,
        username: str,
        *,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        tenant_id: str = "public",
        platform: Optional[str] = None,
        is_active: bool = True,
        is_email_verified: bool = False,
        meta: Optional[Dict] = None,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user_by_username(self, username: str) -> Optional[User]: ...

    def get_user_by_phone(self, phone: str) -> Optional[User]: ...

    def record_login(self, user_id: str, platform: str, when: datetime) -> None: ...

    def mark_email_verified(self, user_id: str) -> Optional[User]: ...

    def mark_phone_verified(self, user_id: str) -> Optional[User]: ...

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...

    def delete_user(self, user_id: str) -> bool: ...

    # Roles and permissions
    def create_role(self, name: str, description: Optional[str] = None) -> Role: ...

    def get_role(self, role_id: str) -> Optional[Role]: ...

    def get_role_by_name(self, name: str) -> Optional[Role]: ...

    def list_roles(self) -> List[Role]: ...

    def create_permission(
        self, name: str, resource: str, action: str, description: Optional[str] = None
    ) -> Permission: ...

    def get_permission(self, permission_id: str) -> Optional[Permission]: ...

    def get_permission_by_name(self, name: str) -> Optional[Permission]: ...

    def list_permissions(self) -> List[Permission]: ...

    def add_role_permission(self, role_id: str, permission_id: str) -> bool: ...

    def remove_role_permission(self, role_id: str, permission_id: str) -> bool: ...

    def add_user_role(self, user_id: str, role_id: str) -> bool: ...

    def remove_user_role(self, user_id: str, role_id: str) -> bool: ...

    def list_user_roles(self, user_id: str) -> List[Role]: ...

    def list_user_permissions(self, user_id: str) -> List[Permission]: ...

    # Sessions
    def create_session(self, session: Session) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def touch_session(self, session_id: str, when: datetime) -> bool: ...

    def invalidate_session(self, session_id: str) -> bool: ...

    def invalidate_user_sessions(self, user_id: str) -> List[str]: ...

    def list_active_sessions(self, user_id: str, now: datetime) -> List[Session]: ...

    def expire_sessions(self, now: datetime) -> int: ...

    # Refresh tokens
    def create_refresh_token(self, record: RefreshToken) -> RefreshToken: ...

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]: ...

    def revoke_refresh_token(self, token: str, when: datetime) -> bool: ...

    def revoke_user_refresh_tokens(self, user_id: str, when: datetime) -> int: ...

    def rotate_refresh_token(
        self, old_id: str, new_record: RefreshToken, when: datetime
    ) -> bool: ...

    def purge_refresh_tokens(self, now: datetime, revoked_before: datetime) -> int: ...

    # OTP codes
    def issue_otp(self, record: OTPCode) -> OTPCode: ...

    def consume_otp_attempt(
        self, user_id: str, purpose: OTPPurpose, code: str, now: datetime
    ) -> OTPAttempt: ...

    def list_otp_codes(
        self, user_id: str, purpose: Optional[OTPPurpose] = None
    ) -> List[OTPCode]: ...

    def purge_otp_codes(self, before: datetime) -> int: ...

    # Audit
    def record_audit_event(
        self,
        user_id: str,
        action: str,
        *,
        resource: str = "auth",
        platform: Optional[str] = None,
        meta: Optional[Dict] = None,
    ) -> AuditEvent: ...

    def list_audit_events(self, user_id: str, limit: int = 50) -> List[AuditEvent]: ...


def normalize_email(email: Optional[str]) -> Optional[str]:
    if email is None:
        return None
    stripped = email.strip().lower()
    return stripped or None


def normalize_phone(phone: Optional[str]) -> Optional[str]:
    if phone is None:
        return None
    stripped = "".join(ch for ch in phone.strip() if ch not in " -().")
    return stripped or None


def apply_otp_attempt(record: OTPCode, code: str) -> OTPAttemptStatus:
    """Count one verification attempt against ``record`` and mutate it in place.

    The caller must hold the row lock. Attempts are counted before comparing so
    concurrent guesses can never exceed ``max_attempts`` comparisons; the last
    failed attempt burns the code.
    """
    if record.attempts >= record.max_attempts:
        record.is_used = True
        return OTPAttemptStatus.EXHAUSTED
    record.attempts += 1
    if hmac.compare_digest(record.code.encode(), (code or "").encode()):
        record.is_used = True
        return OTPAttemptStatus.VERIFIED
    if record.attempts >= record.max_attempts:
        record.is_used = True
        return OTPAttemptStatus.BURNED
    return OTPAttemptStatus.MISMATCH


def parse_json_meta(raw_meta: Any) -> Optional[Dict]:
    """Parse metadata field from JSON string or dict."""
    if isinstance(raw_meta, str):
        try:
            return json.loads(raw_meta)
        except json.JSONDecodeError:
            return None
    if isinstance(raw_meta, dict):
        return raw_meta
    return None


def generate_uuid() -> str:
    return str(uuid.uuid4())

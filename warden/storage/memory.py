from __future__ import annotations

import json
import threading
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from warden.logging import get_logger
from warden.storage.common import (
    apply_otp_attempt,
    generate_uuid,
    normalize_email,
    normalize_phone,
)
from warden.storage.errors import ConstraintViolation
from warden.storage.models import (
    AuditEvent,
    OTPAttempt,
    OTPAttemptStatus,
    OTPCode,
    OTPPurpose,
    Permission,
    RefreshToken,
    Role,
    RolePermission,
    Session,
    User,
    UserRole,
    utcnow,
)


class MemoryStore:
    """In-process auth store used for tests and single-node development.

    Every operation runs under one re-entrant lock, which makes the compound
    operations (OTP attempt accounting, refresh-token rotation) atomic.
    """

    def __init__(self, fs_root: str = "/tmp/warden", *, persist: bool = True) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.roles: Dict[str, Role] = {}
        self.permissions: Dict[str, Permission] = {}
        self.role_permissions: List[RolePermission] = []
        self.user_roles: List[UserRole] = []
        self.sessions: Dict[str, Session] = {}
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        self.otp_codes: Dict[str, OTPCode] = {}
        self.audit_events: List[AuditEvent] = []
        # RLock so compound operations can call the simple lookups
        self._data_lock = threading.RLock()
        self.persist = persist
        self.fs_root = Path(fs_root)
        if self.persist:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "auth_store.json"

    # -- users --------------------------------------------------------------

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
    ) -> User:
        email = normalize_email(email)
        phone = normalize_phone(phone)
        with self._data_lock:
            for existing in self.users.values():
                if existing.username == username:
                    raise ConstraintViolation(
                        "username already exists", {"field": "username"}
                    )
                if email and existing.email == email:
                    raise ConstraintViolation("email already exists", {"field": "email"})
                if phone and existing.phone == phone:
                    raise ConstraintViolation("phone already exists", {"field": "phone"})
            user = User(
                id=generate_uuid(),
                username=username,
                email=email,
                phone=phone,
                first_name=first_name,
                last_name=last_name,
                tenant_id=tenant_id,
                platform=platform,
                is_active=is_active,
                is_email_verified=is_email_verified,
                meta=meta.copy() if meta else {},
            )
            self.users[user.id] = user
            self._persist_state()
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        needle = normalize_email(email)
        with self._data_lock:
            return next((u for u in self.users.values() if needle and u.email == needle), None)

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self._data_lock:
            return next((u for u in self.users.values() if u.username == username), None)

    def get_user_by_phone(self, phone: str) -> Optional[User]:
        needle = normalize_phone(phone)
        with self._data_lock:
            return next((u for u in self.users.values() if needle and u.phone == needle), None)

    def record_login(self, user_id: str, platform: str, when: datetime) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return
            user.last_login_at = when
            user.platform = platform
            self._persist_state()

    def mark_email_verified(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.is_email_verified = True
            self._persist_state()
            return user

    def mark_phone_verified(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.is_phone_verified = True
            self._persist_state()
            return user

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.credentials[user_id] = (password_hash, password_algo)
            self._persist_state()

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            if self.users.pop(user_id, None) is None:
                return False
            self.credentials.pop(user_id, None)
            self.user_roles = [l for l in self.user_roles if l.user_id != user_id]
            for sess_id, sess in list(self.sessions.items()):
                if sess.user_id == user_id:
                    self.sessions.pop(sess_id, None)
            for token_id, token in list(self.refresh_tokens.items()):
                if token.user_id == user_id:
                    self.refresh_tokens.pop(token_id, None)
            for code_id, code in list(self.otp_codes.items()):
                if code.user_id == user_id:
                    self.otp_codes.pop(code_id, None)
            self._persist_state()
            return True

    # -- roles and permissions ---------------------------------------------

    def create_role(self, name: str, description: Optional[str] = None) -> Role:
        with self._data_lock:
            if any(role.name == name for role in self.roles.values()):
                raise ConstraintViolation("role already exists", {"field": "name"})
            role = Role(id=generate_uuid(), name=name, description=description)
            self.roles[role.id] = role
            self._persist_state()
            return role

    def get_role(self, role_id: str) -> Optional[Role]:
        with self._data_lock:
            return self.roles.get(role_id)

    def get_role_by_name(self, name: str) -> Optional[Role]:
        with self._data_lock:
            return next((r for r in self.roles.values() if r.name == name), None)

    def list_roles(self) -> List[Role]:
        with self._data_lock:
            return sorted(self.roles.values(), key=lambda r: r.name)

    def create_permission(
        self, name: str, resource: str, action: str, description: Optional[str] = None
    ) -> Permission:
        with self._data_lock:
            for perm in self.permissions.values():
                if perm.name == name:
                    raise ConstraintViolation("permission already exists", {"field": "name"})
                if perm.resource == resource and perm.action == action:
                    raise ConstraintViolation(
                        "permission already exists", {"field": "resource_action"}
                    )
            perm = Permission(
                id=generate_uuid(),
                name=name,
                resource=resource,
                action=action,
                description=description,
            )
            self.permissions[perm.id] = perm
            self._persist_state()
            return perm

    def get_permission(self, permission_id: str) -> Optional[Permission]:
        with self._data_lock:
            return self.permissions.get(permission_id)

    def get_permission_by_name(self, name: str) -> Optional[Permission]:
        with self._data_lock:
            return next((p for p in self.permissions.values() if p.name == name), None)

    def list_permissions(self) -> List[Permission]:
        with self._data_lock:
            return sorted(self.permissions.values(), key=lambda p: (p.resource, p.action))

    def add_role_permission(self, role_id: str, permission_id: str) -> bool:
        with self._data_lock:
            if role_id not in self.roles or permission_id not in self.permissions:
                raise ConstraintViolation(
                    "role or permission does not exist",
                    {"role_id": role_id, "permission_id": permission_id},
                )
            for link in self.role_permissions:
                if link.role_id == role_id and link.permission_id == permission_id:
                    return False
            self.role_permissions.append(
                RolePermission(role_id=role_id, permission_id=permission_id)
            )
            self._persist_state()
            return True

    def remove_role_permission(self, role_id: str, permission_id: str) -> bool:
        with self._data_lock:
            before = len(self.role_permissions)
            self.role_permissions = [
                link
                for link in self.role_permissions
                if not (link.role_id == role_id and link.permission_id == permission_id)
            ]
            removed = len(self.role_permissions) != before
            if removed:
                self._persist_state()
            return removed

    def add_user_role(self, user_id: str, role_id: str) -> bool:
        with self._data_lock:
            if user_id not in self.users or role_id not in self.roles:
                raise ConstraintViolation(
                    "user or role does not exist", {"user_id": user_id, "role_id": role_id}
                )
            for link in self.user_roles:
                if link.user_id == user_id and link.role_id == role_id:
                    return False
            self.user_roles.append(UserRole(user_id=user_id, role_id=role_id))
            self._persist_state()
            return True

    def remove_user_role(self, user_id: str, role_id: str) -> bool:
        with self._data_lock:
            before = len(self.user_roles)
            self.user_roles = [
                link
                for link in self.user_roles
                if not (link.user_id == user_id and link.role_id == role_id)
            ]
            removed = len(self.user_roles) != before
            if removed:
                self._persist_state()
            return removed

    def list_user_roles(self, user_id: str) -> List[Role]:
        with self._data_lock:
            roles = [
                self.roles[link.role_id]
                for link in self.user_roles
                if link.user_id == user_id and link.role_id in self.roles
            ]
            return sorted(roles, key=lambda r: r.name)

    def list_user_permissions(self, user_id: str) -> List[Permission]:
        with self._data_lock:
            role_ids = {link.role_id for link in self.user_roles if link.user_id == user_id}
            perm_ids = {
                link.permission_id
                for link in self.role_permissions
                if link.role_id in role_ids
            }
            perms = [self.permissions[pid] for pid in perm_ids if pid in self.permissions]
            return sorted(perms, key=lambda p: (p.resource, p.action))

    # -- sessions -----------------------------------------------------------

    def create_session(self, session: Session) -> Session:
        with self._data_lock:
            if session.user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": session.user_id})
            self.sessions[session.id] = session
            self._persist_state()
            return session

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            return self.sessions.get(session_id)

    def touch_session(self, session_id: str, when: datetime) -> bool:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or not sess.is_valid:
                return False
            sess.last_active_at = when
            self._persist_state()
            return True

    def invalidate_session(self, session_id: str) -> bool:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or not sess.is_valid:
                return False
            sess.is_valid = False
            self._persist_state()
            return True

    def invalidate_user_sessions(self, user_id: str) -> List[str]:
        with self._data_lock:
            invalidated = []
            for sess in self.sessions.values():
                if sess.user_id == user_id and sess.is_valid:
                    sess.is_valid = False
                    invalidated.append(sess.id)
            if invalidated:
                self._persist_state()
            return invalidated

    def list_active_sessions(self, user_id: str, now: datetime) -> List[Session]:
        with self._data_lock:
            active = [
                s for s in self.sessions.values() if s.user_id == user_id and s.is_active_at(now)
            ]
            return sorted(active, key=lambda s: s.last_active_at, reverse=True)

    def expire_sessions(self, now: datetime) -> int:
        with self._data_lock:
            count = 0
            for sess in self.sessions.values():
                if sess.is_valid and sess.expires_at <= now:
                    sess.is_valid = False
                    count += 1
            if count:
                self._persist_state()
            return count

    # -- refresh tokens -----------------------------------------------------

    def create_refresh_token(self, record: RefreshToken) -> RefreshToken:
        with self._data_lock:
            if record.user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": record.user_id})
            if any(t.token == record.token for t in self.refresh_tokens.values()):
                raise ConstraintViolation("refresh token collision", {"field": "token"})
            self.refresh_tokens[record.id] = record
            self._persist_state()
            return record

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]:
        with self._data_lock:
            return next((t for t in self.refresh_tokens.values() if t.token == token), None)

    def revoke_refresh_token(self, token: str, when: datetime) -> bool:
        with self._data_lock:
            record = self.get_refresh_token(token)
            if not record or record.is_revoked:
                return False
            record.is_revoked = True
            record.revoked_at = when
            self._persist_state()
            return True

    def revoke_user_refresh_tokens(self, user_id: str, when: datetime) -> int:
        with self._data_lock:
            count = 0
            for record in self.refresh_tokens.values():
                if record.user_id == user_id and not record.is_revoked:
                    record.is_revoked = True
                    record.revoked_at = when
                    count += 1
            if count:
                self._persist_state()
            return count

    def rotate_refresh_token(
        self, old_id: str, new_record: RefreshToken, when: datetime
    ) -> bool:
        with self._data_lock:
            old = self.refresh_tokens.get(old_id)
            if not old or old.is_revoked:
                return False
            old.is_revoked = True
            old.revoked_at = when
            self.refresh_tokens[new_record.id] = new_record
            self._persist_state()
            return True

    def purge_refresh_tokens(self, now: datetime, revoked_before: datetime) -> int:
        with self._data_lock:
            stale = [
                rid
                for rid, record in self.refresh_tokens.items()
                if record.expires_at <= now
                or (
                    record.is_revoked
                    and record.revoked_at is not None
                    and record.revoked_at < revoked_before
                )
            ]
            for rid in stale:
                self.refresh_tokens.pop(rid, None)
            if stale:
                self._persist_state()
            return len(stale)

    # -- otp codes ----------------------------------------------------------

    def issue_otp(self, record: OTPCode) -> OTPCode:
        with self._data_lock:
            if record.user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": record.user_id})
            for existing in self.otp_codes.values():
                if (
                    existing.user_id == record.user_id
                    and existing.purpose == record.purpose
                    and not existing.is_used
                ):
                    existing.is_used = True
            self.otp_codes[record.id] = record
            self._persist_state()
            return record

    def consume_otp_attempt(
        self, user_id: str, purpose: OTPPurpose, code: str, now: datetime
    ) -> OTPAttempt:
        with self._data_lock:
            live = [
                c
                for c in self.otp_codes.values()
                if c.user_id == user_id
                and c.purpose == purpose
                and not c.is_used
                and c.expires_at > now
            ]
            if not live:
                return OTPAttempt(status=OTPAttemptStatus.MISSING)
            record = max(live, key=lambda c: c.created_at)
            status = apply_otp_attempt(record, code)
            self._persist_state()
            return OTPAttempt(
                status=status, attempts=record.attempts, max_attempts=record.max_attempts
            )

    def list_otp_codes(
        self, user_id: str, purpose: Optional[OTPPurpose] = None
    ) -> List[OTPCode]:
        with self._data_lock:
            codes = [
                c
                for c in self.otp_codes.values()
                if c.user_id == user_id and (purpose is None or c.purpose == purpose)
            ]
            return sorted(codes, key=lambda c: c.created_at)

    def purge_otp_codes(self, before: datetime) -> int:
        with self._data_lock:
            stale = [
                oid
                for oid, c in self.otp_codes.items()
                if c.expires_at < before or (c.is_used and c.created_at < before)
            ]
            for oid in stale:
                self.otp_codes.pop(oid, None)
            if stale:
                self._persist_state()
            return len(stale)

    # -- audit --------------------------------------------------------------

    def record_audit_event(
        self,
        user_id: str,
        action: str,
        *,
        resource: str = "auth",
        platform: Optional[str] = None,
        meta: Optional[Dict] = None,
    ) -> AuditEvent:
        with self._data_lock:
            event = AuditEvent(
                id=generate_uuid(),
                user_id=user_id,
                action=action,
                resource=resource,
                platform=platform,
                meta=meta or {},
            )
            self.audit_events.append(event)
            self._persist_state()
            return event

    def list_audit_events(self, user_id: str, limit: int = 50) -> List[AuditEvent]:
        with self._data_lock:
            events = [e for e in self.audit_events if e.user_id == user_id]
            return sorted(events, key=lambda e: e.created_at, reverse=True)[:limit]

    # -- persistence --------------------------------------------------------

    @staticmethod
    def _dt(value: Optional[datetime]) -> Optional[str]:
        return value.isoformat() if value else None

    @staticmethod
    def _parse_dt(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def _persist_state(self) -> None:
        if not self.persist:
            return
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "credentials": [
                {"user_id": uid, "password_hash": creds[0], "password_algo": creds[1]}
                for uid, creds in self.credentials.items()
            ],
            "roles": [
                {
                    "id": r.id,
                    "name": r.name,
                    "description": r.description,
                    "created_at": self._dt(r.created_at),
                }
                for r in self.roles.values()
            ],
            "permissions": [
                {
                    "id": p.id,
                    "name": p.name,
                    "resource": p.resource,
                    "action": p.action,
                    "description": p.description,
                    "created_at": self._dt(p.created_at),
                }
                for p in self.permissions.values()
            ],
            "role_permissions": [
                {"role_id": l.role_id, "permission_id": l.permission_id}
                for l in self.role_permissions
            ],
            "user_roles": [
                {"user_id": l.user_id, "role_id": l.role_id} for l in self.user_roles
            ],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
            "refresh_tokens": [
                self._serialize_refresh_token(t) for t in self.refresh_tokens.values()
            ],
            "otp_codes": [self._serialize_otp(c) for c in self.otp_codes.values()],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        except json.JSONDecodeError as exc:
            self.logger.warning("memory_store_state_corrupt", path=str(path), error=str(exc))
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.credentials = {
            entry["user_id"]: (entry["password_hash"], entry.get("password_algo", ""))
            for entry in data.get("credentials", [])
        }
        self.roles = {
            r["id"]: Role(
                id=r["id"],
                name=r["name"],
                description=r.get("description"),
                created_at=self._parse_dt(r.get("created_at")) or utcnow(),
            )
            for r in data.get("roles", [])
        }
        self.permissions = {
            p["id"]: Permission(
                id=p["id"],
                name=p["name"],
                resource=p["resource"],
                action=p["action"],
                description=p.get("description"),
                created_at=self._parse_dt(p.get("created_at")) or utcnow(),
            )
            for p in data.get("permissions", [])
        }
        self.role_permissions = [
            RolePermission(role_id=l["role_id"], permission_id=l["permission_id"])
            for l in data.get("role_permissions", [])
        ]
        self.user_roles = [
            UserRole(user_id=l["user_id"], role_id=l["role_id"])
            for l in data.get("user_roles", [])
        ]
        self.sessions = {
            s["id"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        self.refresh_tokens = {
            t["id"]: self._deserialize_refresh_token(t)
            for t in data.get("refresh_tokens", [])
        }
        self.otp_codes = {
            c["id"]: self._deserialize_otp(c) for c in data.get("otp_codes", [])
        }
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "username": user.username,
            "email": user.email,
            "phone": user.phone,
            "first_name": user.first_name,
            "last_name": user.last_name,
            "is_email_verified": user.is_email_verified,
            "is_phone_verified": user.is_phone_verified,
            "is_active": user.is_active,
            "tenant_id": user.tenant_id,
            "platform": user.platform,
            "last_login_at": self._dt(user.last_login_at),
            "created_at": self._dt(user.created_at),
            "meta": user.meta,
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            username=data["username"],
            email=data.get("email"),
            phone=data.get("phone"),
            first_name=data.get("first_name"),
            last_name=data.get("last_name"),
            is_email_verified=data.get("is_email_verified", False),
            is_phone_verified=data.get("is_phone_verified", False),
            is_active=data.get("is_active", True),
            tenant_id=data.get("tenant_id", "public"),
            platform=data.get("platform"),
            last_login_at=self._parse_dt(data.get("last_login_at")),
            created_at=self._parse_dt(data.get("created_at")) or utcnow(),
            meta=data.get("meta"),
        )

    def _serialize_session(self, session: Session) -> dict:
        return {
            "id": session.id,
            "user_id": session.user_id,
            "token": session.token,
            "platform": session.platform,
            "created_at": self._dt(session.created_at),
            "expires_at": self._dt(session.expires_at),
            "last_active_at": self._dt(session.last_active_at),
            "is_valid": session.is_valid,
            "device_id": session.device_id,
            "ip_addr": session.ip_addr,
            "user_agent": session.user_agent,
            "tenant_id": session.tenant_id,
        }

    def _deserialize_session(self, data: dict) -> Session:
        return Session(
            id=data["id"],
            user_id=data["user_id"],
            token=data["token"],
            platform=data["platform"],
            created_at=self._parse_dt(data["created_at"]),
            expires_at=self._parse_dt(data["expires_at"]),
            last_active_at=self._parse_dt(data["last_active_at"]),
            is_valid=data.get("is_valid", True),
            device_id=data.get("device_id"),
            ip_addr=data.get("ip_addr"),
            user_agent=data.get("user_agent"),
            tenant_id=data.get("tenant_id", "public"),
        )

    def _serialize_refresh_token(self, record: RefreshToken) -> dict:
        return {
            "id": record.id,
            "user_id": record.user_id,
            "token": record.token,
            "platform": record.platform,
            "created_at": self._dt(record.created_at),
            "expires_at": self._dt(record.expires_at),
            "is_revoked": record.is_revoked,
            "revoked_at": self._dt(record.revoked_at),
            "device_id": record.device_id,
            "session_id": record.session_id,
        }

    def _deserialize_refresh_token(self, data: dict) -> RefreshToken:
        return RefreshToken(
            id=data["id"],
            user_id=data["user_id"],
            token=data["token"],
            platform=data["platform"],
            created_at=self._parse_dt(data["created_at"]),
            expires_at=self._parse_dt(data["expires_at"]),
            is_revoked=data.get("is_revoked", False),
            revoked_at=self._parse_dt(data.get("revoked_at")),
            device_id=data.get("device_id"),
            session_id=data.get("session_id"),
        )

    def _serialize_otp(self, record: OTPCode) -> dict:
        return {
            "id": record.id,
            "user_id": record.user_id,
            "code": record.code,
            "purpose": record.purpose.value,
            "created_at": self._dt(record.created_at),
            "expires_at": self._dt(record.expires_at),
            "is_used": record.is_used,
            "attempts": record.attempts,
            "max_attempts": record.max_attempts,
        }

    def _deserialize_otp(self, data: dict) -> OTPCode:
        return OTPCode(
            id=data["id"],
            user_id=data["user_id"],
            code=data["code"],
            purpose=OTPPurpose(data["purpose"]),
            created_at=self._parse_dt(data["created_at"]),
            expires_at=self._parse_dt(data["expires_at"]),
            is_used=data.get("is_used", False),
            attempts=data.get("attempts", 0),
            max_attempts=data.get("max_attempts", 5),
        )

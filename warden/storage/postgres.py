from __future__ import annotations

import json
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

from psycopg import OperationalError, errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from warden.logging import get_logger
from warden.storage.common import (
    apply_otp_attempt,
    generate_uuid,
    normalize_email,
    normalize_phone,
    parse_json_meta,
)
from warden.storage.errors import ConstraintViolation, StoreUnavailable
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
    utcnow,
)

_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id TEXT PRIMARY KEY,
        username TEXT NOT NULL UNIQUE,
        email TEXT UNIQUE,
        phone TEXT UNIQUE,
        first_name TEXT,
        last_name TEXT,
        is_email_verified BOOLEAN NOT NULL DEFAULT FALSE,
        is_phone_verified BOOLEAN NOT NULL DEFAULT FALSE,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        tenant_id TEXT NOT NULL DEFAULT 'public',
        platform TEXT,
        last_login_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        meta JSONB
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_auth_credential (
        user_id TEXT PRIMARY KEY REFERENCES app_user(id) ON DELETE CASCADE,
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL,
        last_updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS app_role (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL UNIQUE,
        description TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS app_permission (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL UNIQUE,
        resource TEXT NOT NULL,
        action TEXT NOT NULL,
        description TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        UNIQUE (resource, action)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS role_permission (
        role_id TEXT NOT NULL REFERENCES app_role(id) ON DELETE CASCADE,
        permission_id TEXT NOT NULL REFERENCES app_permission(id) ON DELETE CASCADE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        PRIMARY KEY (role_id, permission_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_role (
        user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        role_id TEXT NOT NULL REFERENCES app_role(id) ON DELETE CASCADE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        PRIMARY KEY (user_id, role_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_session (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        token TEXT NOT NULL UNIQUE,
        platform TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        last_active_at TIMESTAMPTZ NOT NULL,
        is_valid BOOLEAN NOT NULL DEFAULT TRUE,
        device_id TEXT,
        ip_addr TEXT,
        user_agent TEXT,
        tenant_id TEXT NOT NULL DEFAULT 'public'
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_session_user_idx ON auth_session (user_id) WHERE is_valid",
    """
    CREATE TABLE IF NOT EXISTS refresh_token (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        token TEXT NOT NULL UNIQUE,
        platform TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        is_revoked BOOLEAN NOT NULL DEFAULT FALSE,
        revoked_at TIMESTAMPTZ,
        device_id TEXT,
        session_id TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS otp_code (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        code TEXT NOT NULL,
        purpose TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        is_used BOOLEAN NOT NULL DEFAULT FALSE,
        attempts INTEGER NOT NULL DEFAULT 0,
        max_attempts INTEGER NOT NULL DEFAULT 5
    )
    """,
    "CREATE INDEX IF NOT EXISTS otp_code_live_idx ON otp_code (user_id, purpose) WHERE NOT is_used",
    """
    CREATE TABLE IF NOT EXISTS audit_event (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        action TEXT NOT NULL,
        resource TEXT NOT NULL,
        platform TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        meta JSONB
    )
    """,
]

# Unique constraint name -> user-facing field
_CONSTRAINT_FIELDS = {
    "app_user_username_key": "username",
    "app_user_email_key": "email",
    "app_user_phone_key": "phone",
    "app_role_name_key": "name",
    "app_permission_name_key": "name",
    "app_permission_resource_action_key": "resource_action",
    "refresh_token_token_key": "token",
}


def _unique_field(exc: errors.UniqueViolation) -> Optional[str]:
    constraint = getattr(exc.diag, "constraint_name", None)
    return _CONSTRAINT_FIELDS.get(constraint or "")


class PostgresStore:
    """Postgres-backed auth store.

    Compound operations (OTP attempts, refresh-token rotation) run in a single
    transaction with the target row locked ``FOR UPDATE``.
    """

    def __init__(self, dsn: str, *, timeout_seconds: float = 5.0) -> None:
        self.dsn = dsn
        self.timeout_seconds = timeout_seconds
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            timeout=timeout_seconds,
            kwargs={
                "row_factory": dict_row,
                "autocommit": False,
                "connect_timeout": max(1, int(timeout_seconds)),
                "options": f"-c statement_timeout={int(timeout_seconds * 1000)}",
            },
        )
        self._ensure_schema()

    @contextmanager
    def _connect(self, operation: str = "query") -> Iterator[Any]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except (OperationalError, PoolTimeout) as exc:
            # QueryCanceled (statement timeout) is an OperationalError
            self.logger.warning(
                "datastore_unavailable", operation=operation, error=str(exc)
            )
            raise StoreUnavailable(operation, exc) from exc

    def _ensure_schema(self) -> None:
        with self._connect("ensure_schema") as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    def verify_connection(self) -> None:
        with self._connect("verify_connection") as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    # -- row mapping --------------------------------------------------------

    @staticmethod
    def _user_from_row(row: Dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            username=row["username"],
            email=row.get("email"),
            phone=row.get("phone"),
            first_name=row.get("first_name"),
            last_name=row.get("last_name"),
            is_email_verified=row.get("is_email_verified", False),
            is_phone_verified=row.get("is_phone_verified", False),
            is_active=row.get("is_active", True),
            tenant_id=row.get("tenant_id", "public"),
            platform=row.get("platform"),
            last_login_at=row.get("last_login_at"),
            created_at=row.get("created_at") or utcnow(),
            meta=parse_json_meta(row.get("meta")),
        )

    @staticmethod
    def _role_from_row(row: Dict[str, Any]) -> Role:
        return Role(
            id=row["id"],
            name=row["name"],
            description=row.get("description"),
            created_at=row.get("created_at") or utcnow(),
        )

    @staticmethod
    def _permission_from_row(row: Dict[str, Any]) -> Permission:
        return Permission(
            id=row["id"],
            name=row["name"],
            resource=row["resource"],
            action=row["action"],
            description=row.get("description"),
            created_at=row.get("created_at") or utcnow(),
        )

    @staticmethod
    def _session_from_row(row: Dict[str, Any]) -> Session:
        return Session(
            id=row["id"],
            user_id=row["user_id"],
            token=row["token"],
            platform=row["platform"],
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            last_active_at=row["last_active_at"],
            is_valid=row["is_valid"],
            device_id=row.get("device_id"),
            ip_addr=row.get("ip_addr"),
            user_agent=row.get("user_agent"),
            tenant_id=row.get("tenant_id", "public"),
        )

    @staticmethod
    def _refresh_from_row(row: Dict[str, Any]) -> RefreshToken:
        return RefreshToken(
            id=row["id"],
            user_id=row["user_id"],
            token=row["token"],
            platform=row["platform"],
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            is_revoked=row["is_revoked"],
            revoked_at=row.get("revoked_at"),
            device_id=row.get("device_id"),
            session_id=row.get("session_id"),
        )

    @staticmethod
    def _otp_from_row(row: Dict[str, Any]) -> OTPCode:
        return OTPCode(
            id=row["id"],
            user_id=row["user_id"],
            code=row["code"],
            purpose=OTPPurpose(row["purpose"]),
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            is_used=row["is_used"],
            attempts=row["attempts"],
            max_attempts=row["max_attempts"],
        )

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
        user = User(
            id=generate_uuid(),
            username=username,
            email=normalize_email(email),
            phone=normalize_phone(phone),
            first_name=first_name,
            last_name=last_name,
            tenant_id=tenant_id,
            platform=platform,
            is_active=is_active,
            is_email_verified=is_email_verified,
            meta=meta.copy() if meta else {},
        )
        try:
            with self._connect("create_user") as conn:
                conn.execute(
                    """
                    INSERT INTO app_user (id, username, email, phone, first_name, last_name,
                        is_email_verified, is_active, tenant_id, platform, created_at, meta)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        user.id,
                        user.username,
                        user.email,
                        user.phone,
                        user.first_name,
                        user.last_name,
                        user.is_email_verified,
                        user.is_active,
                        user.tenant_id,
                        user.platform,
                        user.created_at,
                        json.dumps(user.meta) if user.meta else None,
                    ),
                )
        except errors.UniqueViolation as exc:
            field = _unique_field(exc) or "username"
            raise ConstraintViolation(f"{field} already exists", {"field": field})
        return user

    def _get_user_where(self, clause: str, value: Any) -> Optional[User]:
        with self._connect("get_user") as conn:
            row = conn.execute(
                f"SELECT * FROM app_user WHERE {clause} = %s", (value,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user(self, user_id: str) -> Optional[User]:
        return self._get_user_where("id", user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        needle = normalize_email(email)
        return self._get_user_where("email", needle) if needle else None

    def get_user_by_username(self, username: str) -> Optional[User]:
        return self._get_user_where("username", username)

    def get_user_by_phone(self, phone: str) -> Optional[User]:
        needle = normalize_phone(phone)
        return self._get_user_where("phone", needle) if needle else None

    def record_login(self, user_id: str, platform: str, when: datetime) -> None:
        with self._connect("record_login") as conn:
            conn.execute(
                "UPDATE app_user SET last_login_at = %s, platform = %s WHERE id = %s",
                (when, platform, user_id),
            )

    def _mark_verified(self, user_id: str, column: str) -> Optional[User]:
        with self._connect("mark_verified") as conn:
            row = conn.execute(
                f"UPDATE app_user SET {column} = TRUE WHERE id = %s RETURNING *",
                (user_id,),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def mark_email_verified(self, user_id: str) -> Optional[User]:
        return self._mark_verified(user_id, "is_email_verified")

    def mark_phone_verified(self, user_id: str) -> Optional[User]:
        return self._mark_verified(user_id, "is_phone_verified")

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
        try:
            with self._connect("save_password") as conn:
                conn.execute(
                    """
                    INSERT INTO user_auth_credential (user_id, password_hash, password_algo, last_updated_at)
                    VALUES (%s, %s, %s, now())
                    ON CONFLICT (user_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        last_updated_at = now()
                    """,
                    (user_id, password_hash, password_algo),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user not found for credentials", {"user_id": user_id})

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._connect("get_password_record") as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_auth_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return row["password_hash"], row["password_algo"]

    def delete_user(self, user_id: str) -> bool:
        # Credentials, roles, sessions, tokens and codes go with it (ON DELETE CASCADE)
        with self._connect("delete_user") as conn:
            cur = conn.execute("DELETE FROM app_user WHERE id = %s", (user_id,))
            return cur.rowcount > 0

    # -- roles and permissions ---------------------------------------------

    def create_role(self, name: str, description: Optional[str] = None) -> Role:
        role = Role(id=generate_uuid(), name=name, description=description)
        try:
            with self._connect("create_role") as conn:
                conn.execute(
                    "INSERT INTO app_role (id, name, description, created_at) VALUES (%s, %s, %s, %s)",
                    (role.id, role.name, role.description, role.created_at),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("role already exists", {"field": "name"})
        return role

    def get_role(self, role_id: str) -> Optional[Role]:
        with self._connect("get_role") as conn:
            row = conn.execute("SELECT * FROM app_role WHERE id = %s", (role_id,)).fetchone()
        return self._role_from_row(row) if row else None

    def get_role_by_name(self, name: str) -> Optional[Role]:
        with self._connect("get_role") as conn:
            row = conn.execute("SELECT * FROM app_role WHERE name = %s", (name,)).fetchone()
        return self._role_from_row(row) if row else None

    def list_roles(self) -> List[Role]:
        with self._connect("list_roles") as conn:
            rows = conn.execute("SELECT * FROM app_role ORDER BY name").fetchall()
        return [self._role_from_row(row) for row in rows]

    def create_permission(
        self, name: str, resource: str, action: str, description: Optional[str] = None
    ) -> Permission:
        perm = Permission(
            id=generate_uuid(),
            name=name,
            resource=resource,
            action=action,
            description=description,
        )
        try:
            with self._connect("create_permission") as conn:
                conn.execute(
                    """
                    INSERT INTO app_permission (id, name, resource, action, description, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (perm.id, name, resource, action, description, perm.created_at),
                )
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(
                "permission already exists", {"field": _unique_field(exc) or "name"}
            )
        return perm

    def get_permission(self, permission_id: str) -> Optional[Permission]:
        with self._connect("get_permission") as conn:
            row = conn.execute(
                "SELECT * FROM app_permission WHERE id = %s", (permission_id,)
            ).fetchone()
        return self._permission_from_row(row) if row else None

    def get_permission_by_name(self, name: str) -> Optional[Permission]:
        with self._connect("get_permission") as conn:
            row = conn.execute(
                "SELECT * FROM app_permission WHERE name = %s", (name,)
            ).fetchone()
        return self._permission_from_row(row) if row else None

    def list_permissions(self) -> List[Permission]:
        with self._connect("list_permissions") as conn:
            rows = conn.execute(
                "SELECT * FROM app_permission ORDER BY resource, action"
            ).fetchall()
        return [self._permission_from_row(row) for row in rows]

    def add_role_permission(self, role_id: str, permission_id: str) -> bool:
        try:
            with self._connect("add_role_permission") as conn:
                cur = conn.execute(
                    """
                    INSERT INTO role_permission (role_id, permission_id) VALUES (%s, %s)
                    ON CONFLICT DO NOTHING
                    """,
                    (role_id, permission_id),
                )
                return cur.rowcount == 1
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "role or permission does not exist",
                {"role_id": role_id, "permission_id": permission_id},
            )

    def remove_role_permission(self, role_id: str, permission_id: str) -> bool:
        with self._connect("remove_role_permission") as conn:
            cur = conn.execute(
                "DELETE FROM role_permission WHERE role_id = %s AND permission_id = %s",
                (role_id, permission_id),
            )
            return cur.rowcount > 0

    def add_user_role(self, user_id: str, role_id: str) -> bool:
        try:
            with self._connect("add_user_role") as conn:
                cur = conn.execute(
                    "INSERT INTO user_role (user_id, role_id) VALUES (%s, %s) ON CONFLICT DO NOTHING",
                    (user_id, role_id),
                )
                return cur.rowcount == 1
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user or role does not exist", {"user_id": user_id, "role_id": role_id}
            )

    def remove_user_role(self, user_id: str, role_id: str) -> bool:
        with self._connect("remove_user_role") as conn:
            cur = conn.execute(
                "DELETE FROM user_role WHERE user_id = %s AND role_id = %s",
                (user_id, role_id),
            )
            return cur.rowcount > 0

    def list_user_roles(self, user_id: str) -> List[Role]:
        with self._connect("list_user_roles") as conn:
            rows = conn.execute(
                """
                SELECT r.* FROM user_role ur JOIN app_role r ON r.id = ur.role_id
                WHERE ur.user_id = %s ORDER BY r.name
                """,
                (user_id,),
            ).fetchall()
        return [self._role_from_row(row) for row in rows]

    def list_user_permissions(self, user_id: str) -> List[Permission]:
        with self._connect("list_user_permissions") as conn:
            rows = conn.execute(
                """
                SELECT DISTINCT p.* FROM user_role ur
                JOIN role_permission rp ON rp.role_id = ur.role_id
                JOIN app_permission p ON p.id = rp.permission_id
                WHERE ur.user_id = %s
                ORDER BY p.resource, p.action
                """,
                (user_id,),
            ).fetchall()
        return [self._permission_from_row(row) for row in rows]

    # -- sessions -----------------------------------------------------------

    def create_session(self, session: Session) -> Session:
        try:
            with self._connect("create_session") as conn:
                conn.execute(
                    """
                    INSERT INTO auth_session (id, user_id, token, platform, created_at, expires_at,
                        last_active_at, is_valid, device_id, ip_addr, user_agent, tenant_id)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        session.id,
                        session.user_id,
                        session.token,
                        session.platform,
                        session.created_at,
                        session.expires_at,
                        session.last_active_at,
                        session.is_valid,
                        session.device_id,
                        session.ip_addr,
                        session.user_agent,
                        session.tenant_id,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("session user missing", {"user_id": session.user_id})
        return session

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._connect("get_session") as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE id = %s", (session_id,)
            ).fetchone()
        return self._session_from_row(row) if row else None

    def touch_session(self, session_id: str, when: datetime) -> bool:
        with self._connect("touch_session") as conn:
            cur = conn.execute(
                "UPDATE auth_session SET last_active_at = %s WHERE id = %s AND is_valid",
                (when, session_id),
            )
            return cur.rowcount > 0

    def invalidate_session(self, session_id: str) -> bool:
        with self._connect("invalidate_session") as conn:
            cur = conn.execute(
                "UPDATE auth_session SET is_valid = FALSE WHERE id = %s AND is_valid",
                (session_id,),
            )
            return cur.rowcount > 0

    def invalidate_user_sessions(self, user_id: str) -> List[str]:
        with self._connect("invalidate_user_sessions") as conn:
            rows = conn.execute(
                "UPDATE auth_session SET is_valid = FALSE WHERE user_id = %s AND is_valid RETURNING id",
                (user_id,),
            ).fetchall()
        return [row["id"] for row in rows]

    def list_active_sessions(self, user_id: str, now: datetime) -> List[Session]:
        with self._connect("list_active_sessions") as conn:
            rows = conn.execute(
                """
                SELECT * FROM auth_session
                WHERE user_id = %s AND is_valid AND expires_at > %s
                ORDER BY last_active_at DESC
                """,
                (user_id, now),
            ).fetchall()
        return [self._session_from_row(row) for row in rows]

    def expire_sessions(self, now: datetime) -> int:
        with self._connect("expire_sessions") as conn:
            cur = conn.execute(
                "UPDATE auth_session SET is_valid = FALSE WHERE is_valid AND expires_at <= %s",
                (now,),
            )
            return cur.rowcount

    # -- refresh tokens -----------------------------------------------------

    def _insert_refresh_token(self, conn: Any, record: RefreshToken) -> None:
        conn.execute(
            """
            INSERT INTO refresh_token (id, user_id, token, platform, created_at, expires_at,
                is_revoked, revoked_at, device_id, session_id)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                record.id,
                record.user_id,
                record.token,
                record.platform,
                record.created_at,
                record.expires_at,
                record.is_revoked,
                record.revoked_at,
                record.device_id,
                record.session_id,
            ),
        )

    def create_refresh_token(self, record: RefreshToken) -> RefreshToken:
        try:
            with self._connect("create_refresh_token") as conn:
                self._insert_refresh_token(conn, record)
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": record.user_id})
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token collision", {"field": "token"})
        return record

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]:
        with self._connect("get_refresh_token") as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE token = %s", (token,)
            ).fetchone()
        return self._refresh_from_row(row) if row else None

    def revoke_refresh_token(self, token: str, when: datetime) -> bool:
        with self._connect("revoke_refresh_token") as conn:
            cur = conn.execute(
                "UPDATE refresh_token SET is_revoked = TRUE, revoked_at = %s WHERE token = %s AND NOT is_revoked",
                (when, token),
            )
            return cur.rowcount > 0

    def revoke_user_refresh_tokens(self, user_id: str, when: datetime) -> int:
        with self._connect("revoke_user_refresh_tokens") as conn:
            cur = conn.execute(
                "UPDATE refresh_token SET is_revoked = TRUE, revoked_at = %s WHERE user_id = %s AND NOT is_revoked",
                (when, user_id),
            )
            return cur.rowcount

    def rotate_refresh_token(
        self, old_id: str, new_record: RefreshToken, when: datetime
    ) -> bool:
        try:
            with self._connect("rotate_refresh_token") as conn, conn.transaction():
                cur = conn.execute(
                    """
                    UPDATE refresh_token SET is_revoked = TRUE, revoked_at = %s
                    WHERE id = %s AND NOT is_revoked
                    """,
                    (when, old_id),
                )
                if cur.rowcount != 1:
                    return False
                self._insert_refresh_token(conn, new_record)
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token collision", {"field": "token"})
        return True

    def purge_refresh_tokens(self, now: datetime, revoked_before: datetime) -> int:
        with self._connect("purge_refresh_tokens") as conn:
            cur = conn.execute(
                """
                DELETE FROM refresh_token
                WHERE expires_at <= %s OR (is_revoked AND revoked_at < %s)
                """,
                (now, revoked_before),
            )
            return cur.rowcount

    # -- otp codes ----------------------------------------------------------

    def issue_otp(self, record: OTPCode) -> OTPCode:
        try:
            with self._connect("issue_otp") as conn, conn.transaction():
                # Serialises concurrent issues for one user so only one code stays live
                owner = conn.execute(
                    "SELECT id FROM app_user WHERE id = %s FOR UPDATE", (record.user_id,)
                ).fetchone()
                if owner is None:
                    raise ConstraintViolation("user does not exist", {"user_id": record.user_id})
                conn.execute(
                    "UPDATE otp_code SET is_used = TRUE WHERE user_id = %s AND purpose = %s AND NOT is_used",
                    (record.user_id, record.purpose.value),
                )
                conn.execute(
                    """
                    INSERT INTO otp_code (id, user_id, code, purpose, created_at, expires_at,
                        is_used, attempts, max_attempts)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        record.id,
                        record.user_id,
                        record.code,
                        record.purpose.value,
                        record.created_at,
                        record.expires_at,
                        record.is_used,
                        record.attempts,
                        record.max_attempts,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": record.user_id})
        return record

    def consume_otp_attempt(
        self, user_id: str, purpose: OTPPurpose, code: str, now: datetime
    ) -> OTPAttempt:
        with self._connect("consume_otp_attempt") as conn, conn.transaction():
            row = conn.execute(
                """
                SELECT * FROM otp_code
                WHERE user_id = %s AND purpose = %s AND NOT is_used AND expires_at > %s
                ORDER BY created_at DESC
                LIMIT 1
                FOR UPDATE
                """,
                (user_id, purpose.value, now),
            ).fetchone()
            if not row:
                return OTPAttempt(status=OTPAttemptStatus.MISSING)
            record = self._otp_from_row(row)
            status = apply_otp_attempt(record, code)
            conn.execute(
                "UPDATE otp_code SET attempts = %s, is_used = %s WHERE id = %s",
                (record.attempts, record.is_used, record.id),
            )
        return OTPAttempt(
            status=status, attempts=record.attempts, max_attempts=record.max_attempts
        )

    def list_otp_codes(
        self, user_id: str, purpose: Optional[OTPPurpose] = None
    ) -> List[OTPCode]:
        query = "SELECT * FROM otp_code WHERE user_id = %s"
        params: list[Any] = [user_id]
        if purpose is not None:
            query += " AND purpose = %s"
            params.append(purpose.value)
        query += " ORDER BY created_at"
        with self._connect("list_otp_codes") as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._otp_from_row(row) for row in rows]

    def purge_otp_codes(self, before: datetime) -> int:
        with self._connect("purge_otp_codes") as conn:
            cur = conn.execute(
                "DELETE FROM otp_code WHERE expires_at < %s OR (is_used AND created_at < %s)",
                (before, before),
            )
            return cur.rowcount

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
        event = AuditEvent(
            id=generate_uuid(),
            user_id=user_id,
            action=action,
            resource=resource,
            platform=platform,
            meta=meta or {},
        )
        with self._connect("record_audit_event") as conn:
            conn.execute(
                """
                INSERT INTO audit_event (id, user_id, action, resource, platform, created_at, meta)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    event.id,
                    user_id,
                    action,
                    resource,
                    platform,
                    event.created_at,
                    json.dumps(event.meta) if event.meta else None,
                ),
            )
        return event

    def list_audit_events(self, user_id: str, limit: int = 50) -> List[AuditEvent]:
        with self._connect("list_audit_events") as conn:
            rows = conn.execute(
                "SELECT * FROM audit_event WHERE user_id = %s ORDER BY created_at DESC LIMIT %s",
                (user_id, limit),
            ).fetchall()
        return [
            AuditEvent(
                id=row["id"],
                user_id=row["user_id"],
                action=row["action"],
                resource=row["resource"],
                platform=row.get("platform"),
                created_at=row["created_at"],
                meta=parse_json_meta(row.get("meta")),
            )
            for row in rows
        ]

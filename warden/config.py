from __future__ import annotations

import os
import secrets
import tempfile
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from warden.logging import get_logger

logger = get_logger(__name__)


class Platform(str, Enum):
    """Client platform families with distinct token and session policy."""

    WEB = "web"
    MOBILE = "mobile"
    DESKTOP = "desktop"

    @classmethod
    def parse(cls, value: "str | Platform") -> "Platform":
        """Resolve a client-supplied platform name to its family.

        Device-specific names (``mobile_ios``, ``desktop_mac``, ...) map to their
        family. Anything else raises ``ValueError``.
        """
        if isinstance(value, Platform):
            return value
        normalized = (value or "").strip().lower().replace("-", "_")
        resolved = _PLATFORM_ALIASES.get(normalized)
        if resolved is None:
            raise ValueError(f"unsupported platform: {value!r}")
        return resolved


_PLATFORM_ALIASES: dict[str, Platform] = {
    "web": Platform.WEB,
    "mobile": Platform.MOBILE,
    "mobile_android": Platform.MOBILE,
    "mobile_ios": Platform.MOBILE,
    "android": Platform.MOBILE,
    "ios": Platform.MOBILE,
    "desktop": Platform.DESKTOP,
    "desktop_windows": Platform.DESKTOP,
    "desktop_mac": Platform.DESKTOP,
    "desktop_linux": Platform.DESKTOP,
    "windows": Platform.DESKTOP,
    "mac": Platform.DESKTOP,
    "linux": Platform.DESKTOP,
}


@dataclass(frozen=True)
class PlatformPolicy:
    """Token and session lifetimes for one platform family."""

    access_token_ttl: timedelta
    refresh_token_ttl: timedelta
    uses_session: bool
    session_ttl: timedelta

    @property
    def expires_in_seconds(self) -> int:
        return int(self.access_token_ttl.total_seconds())


# Fallbacks used when a platform block is missing from configuration
DEFAULT_PLATFORM_POLICIES: dict[Platform, PlatformPolicy] = {
    Platform.WEB: PlatformPolicy(
        access_token_ttl=timedelta(minutes=15),
        refresh_token_ttl=timedelta(days=7),
        uses_session=True,
        session_ttl=timedelta(hours=24),
    ),
    Platform.MOBILE: PlatformPolicy(
        access_token_ttl=timedelta(days=30),
        refresh_token_ttl=timedelta(days=90),
        uses_session=False,
        session_ttl=timedelta(days=30),
    ),
    Platform.DESKTOP: PlatformPolicy(
        access_token_ttl=timedelta(days=7),
        refresh_token_ttl=timedelta(days=30),
        uses_session=True,
        session_ttl=timedelta(days=7),
    ),
}


def build_platform_policies(settings: "Settings") -> dict[Platform, PlatformPolicy]:
    """Build the platform policy table from settings."""
    policies: dict[Platform, PlatformPolicy] = {}
    for platform in Platform:
        prefix = platform.value
        default = DEFAULT_PLATFORM_POLICIES[platform]
        access_minutes = getattr(settings, f"{prefix}_access_token_ttl_minutes", None)
        refresh_days = getattr(settings, f"{prefix}_refresh_token_ttl_days", None)
        session_hours = getattr(settings, f"{prefix}_session_ttl_hours", None)
        uses_session = getattr(settings, f"{prefix}_uses_session", None)
        policies[platform] = PlatformPolicy(
            access_token_ttl=(
                timedelta(minutes=access_minutes)
                if access_minutes is not None
                else default.access_token_ttl
            ),
            refresh_token_ttl=(
                timedelta(days=refresh_days)
                if refresh_days is not None
                else default.refresh_token_ttl
            ),
            uses_session=default.uses_session if uses_session is None else uses_session,
            session_ttl=(
                timedelta(hours=session_hours)
                if session_hours is not None
                else default.session_ttl
            ),
        )
    return policies


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the auth service."""

    database_url: str = env_field("postgresql://localhost:5432/warden", "DATABASE_URL")
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/warden", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors and allow runtime resets.",
    )
    datastore_timeout_seconds: float = env_field(
        5.0,
        "DATASTORE_TIMEOUT_SECONDS",
        description="Statement timeout for Postgres and socket timeout for Redis",
    )

    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("warden", "JWT_ISSUER")
    jwt_audience: str = env_field("warden-clients", "JWT_AUDIENCE")
    default_tenant_id: str = env_field("public", "DEFAULT_TENANT_ID")

    # Platform policy
    web_access_token_ttl_minutes: int = env_field(15, "JWT_WEB_EXPIRATION_MINUTES")
    web_refresh_token_ttl_days: int = env_field(7, "JWT_WEB_REFRESH_EXPIRATION_DAYS")
    web_session_ttl_hours: int = env_field(24, "SESSION_WEB_EXPIRATION_HOURS")
    web_uses_session: bool = env_field(True, "WEB_USES_SESSION")
    mobile_access_token_ttl_minutes: int = env_field(
        30 * 24 * 60, "JWT_MOBILE_EXPIRATION_MINUTES"
    )
    mobile_refresh_token_ttl_days: int = env_field(90, "JWT_MOBILE_REFRESH_EXPIRATION_DAYS")
    mobile_session_ttl_hours: int = env_field(720, "SESSION_MOBILE_EXPIRATION_HOURS")
    mobile_uses_session: bool = env_field(False, "MOBILE_USES_SESSION")
    desktop_access_token_ttl_minutes: int = env_field(
        7 * 24 * 60, "JWT_DESKTOP_EXPIRATION_MINUTES"
    )
    desktop_refresh_token_ttl_days: int = env_field(30, "JWT_DESKTOP_REFRESH_EXPIRATION_DAYS")
    desktop_session_ttl_hours: int = env_field(168, "SESSION_DESKTOP_EXPIRATION_HOURS")
    desktop_uses_session: bool = env_field(True, "DESKTOP_USES_SESSION")

    permission_cache_ttl_seconds: int = env_field(
        300,
        "PERMISSION_CACHE_TTL_SECONDS",
        description="Lifetime of cached authorization decisions",
    )
    allow_signup: bool = env_field(True, "ALLOW_SIGNUP")
    default_role_name: str = env_field("user", "DEFAULT_ROLE_NAME")

    login_rate_limit_per_minute: int = env_field(10, "LOGIN_RATE_LIMIT_PER_MINUTE")
    otp_rate_limit_per_minute: int = env_field(5, "OTP_RATE_LIMIT_PER_MINUTE")
    reset_rate_limit_per_minute: int = env_field(5, "RESET_RATE_LIMIT_PER_MINUTE")
    auth_cleanup_interval_seconds: int = env_field(
        3600,
        "AUTH_CLEANUP_INTERVAL_SECONDS",
        description="Interval for expiring sessions and purging refresh tokens; 0 disables",
    )

    # Email delivery
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Warden", "EMAIL_FROM_NAME")

    # SMS delivery
    sms_enabled: bool = env_field(True, "ENABLE_SMS_NOTIFICATIONS")
    twilio_account_sid: str | None = env_field(None, "TWILIO_ACCOUNT_SID")
    twilio_auth_token: str | None = env_field(None, "TWILIO_AUTH_TOKEN")
    twilio_from_number: str | None = env_field(None, "TWILIO_PHONE_NUMBER")
    twilio_api_base: str = env_field("https://api.twilio.com", "TWILIO_API_BASE")

    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, Any] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @model_validator(mode="after")
    def _validate_ttls(self) -> "Settings":
        for platform in Platform:
            for suffix in (
                "access_token_ttl_minutes",
                "refresh_token_ttl_days",
                "session_ttl_hours",
            ):
                name = f"{platform.value}_{suffix}"
                if getattr(self, name) <= 0:
                    raise ValueError(f"{name} must be positive")
        if self.permission_cache_ttl_seconds <= 0:
            raise ValueError("permission_cache_ttl_seconds must be positive")
        return self

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated secret so tokens remain valid across restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/warden"))
        secret_path = fs_root / ".jwt_secret"

        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            pass
        except OSError as exc:
            logger.warning(
                "jwt_secret_dir_setup",
                error=str(exc),
                path=str(fs_root),
            )

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if persisted and len(persisted) >= 32:
                    return persisted
            except OSError as exc:
                logger.error("jwt_secret_read_failed", error=str(exc), path=str(secret_path))

        generated = secrets.token_urlsafe(64)
        tmp_path: str | None = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=str(fs_root), prefix=".jwt_secret_", suffix=".tmp"
            )
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.rename(tmp_path, str(secret_path))
        except OSError as exc:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            logger.error("jwt_secret_persist_failed", error=str(exc), path=str(secret_path))
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET env var or make SHARED_FS_ROOT writable"
            ) from exc
        return generated


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None

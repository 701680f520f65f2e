from __future__ import annotations

import asyncio
import math
import threading
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional, Tuple, Union
from urllib.parse import urlparse, urlunparse

from warden.config import build_platform_policies, get_settings, reset_settings_cache
from warden.logging import get_logger
from warden.service.auth import AuthService
from warden.service.credentials import CredentialValidator
from warden.service.email import EmailService
from warden.service.notifications import MessageDispatcher
from warden.service.otp import OTPManager
from warden.service.permissions import (
    InMemoryPermissionCache,
    PermissionResolver,
    RedisPermissionCache,
)
from warden.service.policy import PlatformPolicyResolver
from warden.service.refresh_tokens import RefreshTokenManager
from warden.service.roles import RoleService
from warden.service.sessions import SessionManager
from warden.service.sms import SmsService
from warden.service.tokens import AccessTokenCodec
from warden.storage.common import AuthStore
from warden.storage.memory import MemoryStore
from warden.storage.postgres import PostgresStore
from warden.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)

# Per-process buckets are swept of refilled entries once the map reaches this size
LOCAL_RATE_LIMIT_SWEEP_SIZE = 1024


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password in ``url`` with ``***`` for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***unparseable-url***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store: AuthStore = (
                MemoryStore(fs_root=self.settings.shared_fs_root)
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url,
                    timeout_seconds=self.settings.datastore_timeout_seconds,
                )
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)

        self.cache = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Sync client in test mode avoids binding to a pytest event loop
                cache_cls = SyncRedisCache if self.settings.test_mode else RedisCache
                cache = cache_cls(
                    self.settings.redis_url,
                    socket_timeout=self.settings.datastore_timeout_seconds,
                )
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for session presence, rate limits and the permission "
                    "cache; start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true."
                ) from redis_error
            fallback_mode = (
                "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            )
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; rate limits and "
                    "permission decisions are cached per process only."
                ),
                mode=fallback_mode,
            )

        self.policies = PlatformPolicyResolver(build_platform_policies(self.settings))
        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
        )
        self.sms = SmsService(
            account_sid=self.settings.twilio_account_sid,
            auth_token=self.settings.twilio_auth_token,
            from_number=self.settings.twilio_from_number,
            api_base=self.settings.twilio_api_base,
            enabled=self.settings.sms_enabled,
        )
        self.dispatcher = MessageDispatcher(self.email, self.sms)

        ttl = self.settings.permission_cache_ttl_seconds
        permission_cache = (
            RedisPermissionCache(self.cache, ttl)
            if self.cache
            else InMemoryPermissionCache(ttl)
        )
        self.permissions = PermissionResolver(self.store, permission_cache)
        self.roles = RoleService(self.store, self.permissions)
        self.credentials = CredentialValidator(self.store)
        self.otp = OTPManager(self.store, self.dispatcher)
        self.sessions = SessionManager(self.store, self.policies)
        self.refresh_tokens = RefreshTokenManager(self.store, self.policies)
        self.tokens = AccessTokenCodec(self.settings)
        self.auth = AuthService(
            self.store,
            credentials=self.credentials,
            otp=self.otp,
            sessions=self.sessions,
            refresh_tokens=self.refresh_tokens,
            permissions=self.permissions,
            roles=self.roles,
            policies=self.policies,
            tokens=self.tokens,
            settings=self.settings,
            cache=self.cache,
        )

        self._local_rate_limits: Dict[str, Tuple[float, datetime, datetime]] = {}
        self._local_rate_limit_lock = asyncio.Lock()

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=self.cache is not None,
            email_configured=self.email.is_configured,
            sms_configured=self.sms.is_configured,
        )

    def close(self) -> None:
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton.

    Double-checked locking: the unlocked read is the fast path once the
    runtime exists, the locked read guards creation.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def _close_cache(cache) -> None:
    try:
        if isinstance(cache, SyncRedisCache):
            asyncio.run(cache.close())
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            asyncio.run(cache.close())
        else:
            loop.create_task(cache.close())
    except Exception as exc:
        logger.warning("runtime_cache_close_failed", error=str(exc))


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the runtime singleton; refused outside TEST_MODE."""
    global runtime

    with _runtime_lock:
        if runtime is not None and runtime.cache is not None:
            _close_cache(runtime.cache)
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int = 60,
    *,
    return_remaining: bool = False,
    cost: int = 1,
) -> Union[bool, Tuple[bool, int, int]]:
    """Token-bucket limit in Redis, or per process when Redis is absent."""
    if limit <= 0:
        return (True, limit, 0) if return_remaining else True
    if window_seconds <= 0:
        logger.warning("rate_limit_invalid_window", key=key, window_seconds=window_seconds)
        window_seconds = 60
    if runtime.cache:
        return await runtime.cache.check_rate_limit(
            key, limit, window_seconds, return_remaining=return_remaining, cost=cost
        )
    now = datetime.now(timezone.utc)
    refill_rate = float(limit) / float(window_seconds)
    async with runtime._local_rate_limit_lock:
        buckets = runtime._local_rate_limits
        if len(buckets) >= LOCAL_RATE_LIMIT_SWEEP_SIZE:
            _prune_full_buckets(buckets, now)
        tokens, last_ts, _ = buckets.get(key, (float(limit), now, now))
        elapsed = max(0.0, (now - last_ts).total_seconds())
        tokens = min(float(limit), tokens + elapsed * refill_rate)
        allowed = tokens >= cost
        if allowed:
            tokens -= cost
        full_at = now + timedelta(seconds=(float(limit) - tokens) / refill_rate)
        buckets[key] = (tokens, now, full_at)
        reset_seconds = max(1, math.ceil((cost - tokens) / refill_rate)) if not allowed else 0
        remaining = int(tokens)
    if return_remaining:
        return (allowed, remaining, reset_seconds)
    return allowed


def _prune_full_buckets(
    buckets: Dict[str, Tuple[float, datetime, datetime]], now: datetime
) -> None:
    # A refilled bucket behaves exactly like a missing one
    for key in [k for k, (_, _, full_at) in buckets.items() if full_at <= now]:
        del buckets[key]


def run_auth_cleanup(runtime: Runtime) -> Dict[str, int]:
    """Expire sessions and purge stale refresh tokens and OTP codes."""
    counts = {
        "sessions": runtime.sessions.cleanup(),
        "refresh_tokens": runtime.refresh_tokens.cleanup(),
        "otp_codes": runtime.otp.cleanup(),
    }
    logger.info("auth_cleanup_completed", **counts)
    return counts


async def auth_cleanup_loop(runtime: Runtime, interval_seconds: int) -> None:
    """Run :func:`run_auth_cleanup` every ``interval_seconds`` until cancelled."""
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await asyncio.to_thread(run_auth_cleanup, runtime)
        except Exception as exc:
            logger.error(
                "auth_cleanup_failed", error_type=type(exc).__name__, error=str(exc)
            )


from __future__ import annotations

import hashlib
import time
from datetime import datetime, timezone
from typing import Optional, Tuple, Union

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper for rate limits, the access-token denylist and permission decisions."""

    # Atomic refill + consume
    _TOKEN_BUCKET_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local refill_rate = tonumber(ARGV[2])
local capacity = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])

local data = redis.call('HMGET', key, 'tokens', 'ts')
local tokens = tonumber(data[1])
local last = tonumber(data[2])

if tokens == nil or last == nil then
  tokens = capacity
  last = now
end

local delta = math.max(0, now - last)
tokens = math.min(capacity, tokens + delta * refill_rate)

if tokens < cost then
  redis.call('HSET', key, 'tokens', tokens, 'ts', now)
  local reset_after = math.ceil((cost - tokens) / refill_rate)
  redis.call('EXPIRE', key, math.max(reset_after, 1))
  return {0, tokens, reset_after}
end

tokens = tokens - cost
redis.call('HSET', key, 'tokens', tokens, 'ts', now)
local ttl = math.ceil(capacity / refill_rate)
redis.call('EXPIRE', key, math.max(ttl, 1))
return {1, tokens, 0}
"""

    # Decision keys embed the global and per-user generation counters, so
    # bumping either counter orphans every older decision at once.
    _PERMISSION_GET_SCRIPT = """
local global_gen = redis.call('GET', KEYS[1]) or '0'
local user_gen = redis.call('GET', KEYS[2]) or '0'
local key = 'perm:decision:' .. ARGV[1] .. ':' .. global_gen .. ':' .. user_gen .. ':' .. ARGV[2]
return redis.call('GET', key)
"""

    _PERMISSION_SET_SCRIPT = """
local global_gen = redis.call('GET', KEYS[1]) or '0'
local user_gen = redis.call('GET', KEYS[2]) or '0'
local key = 'perm:decision:' .. ARGV[1] .. ':' .. global_gen .. ':' .. user_gen .. ':' .. ARGV[2]
redis.call('SET', key, ARGV[3], 'EX', tonumber(ARGV[4]))
return 1
"""

    PERMISSION_GLOBAL_GEN_KEY = "perm:gen"

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(self._TOKEN_BUCKET_SCRIPT)
        self._permission_get = self.client.register_script(self._PERMISSION_GET_SCRIPT)
        self._permission_set = self.client.register_script(self._PERMISSION_SET_SCRIPT)

    @staticmethod
    def _ttl_seconds(expires_at: datetime) -> int:
        """Seconds until ``expires_at``, clamped to at least one."""

        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        else:
            expires_at = expires_at.astimezone(timezone.utc)
        return max(1, int((expires_at - datetime.now(timezone.utc)).total_seconds()))

    @staticmethod
    def _normalize_rate_key(key: str, tenant_id: Optional[str]) -> str:
        # Hashed so identifiers cannot inject delimiters
        digest = hashlib.sha256(key.encode()).hexdigest()
        tenant_prefix = f"{tenant_id}:" if tenant_id else ""
        return f"rate:{tenant_prefix}{digest}"

    @staticmethod
    def _permission_subject(resource: str, action: str) -> str:
        return hashlib.sha256(f"{resource}\x00{action}".encode()).hexdigest()[:32]

    @classmethod
    def _user_gen_key(cls, user_id: str) -> str:
        return f"{cls.PERMISSION_GLOBAL_GEN_KEY}:{user_id}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async client is not bound to a
        # temporary event loop during startup checks
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        tenant_id: Optional[str] = None,
        cost: int = 1,
    ) -> Union[bool, Tuple[bool, int, int]]:
        """Token-bucket rate limit evaluated atomically in Lua."""

        safe_key = self._normalize_rate_key(key, tenant_id)
        refill_rate = float(limit) / float(window_seconds)
        allowed, tokens, reset_after = await self._token_bucket(
            keys=[safe_key],
            args=[time.time(), refill_rate, limit, max(1, cost)],
        )
        allowed_bool = bool(int(allowed))
        if return_remaining:
            return (allowed_bool, max(0, int(float(tokens))), int(reset_after or 0))
        return allowed_bool

    async def denylist_access_token(self, jti: str, expires_at: datetime) -> None:
        await self.client.set(
            f"auth:access:denylist:{jti}", "1", ex=self._ttl_seconds(expires_at)
        )

    async def is_access_token_denylisted(self, jti: str) -> bool:
        return bool(await self.client.exists(f"auth:access:denylist:{jti}"))

    async def get_permission_decision(
        self, user_id: str, resource: str, action: str
    ) -> Optional[bool]:
        value = await self._permission_get(
            keys=[self.PERMISSION_GLOBAL_GEN_KEY, self._user_gen_key(user_id)],
            args=[user_id, self._permission_subject(resource, action)],
        )
        if value is None:
            return None
        return value == "1"

    async def set_permission_decision(
        self, user_id: str, resource: str, action: str, allowed: bool, ttl_seconds: int
    ) -> None:
        await self._permission_set(
            keys=[self.PERMISSION_GLOBAL_GEN_KEY, self._user_gen_key(user_id)],
            args=[
                user_id,
                self._permission_subject(resource, action),
                "1" if allowed else "0",
                max(1, int(ttl_seconds)),
            ],
        )

    async def bump_permission_generation(self, user_id: Optional[str] = None) -> int:
        key = self._user_gen_key(user_id) if user_id else self.PERMISSION_GLOBAL_GEN_KEY
        return int(await self.client.incr(key))

    async def close(self) -> None:
        """Close the connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous client internally to avoid event loop binding issues in
    pytest, but exposes the same coroutine methods as :class:`RedisCache`.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self._sync_client.register_script(
            RedisCache._TOKEN_BUCKET_SCRIPT
        )
        self._permission_get = self._sync_client.register_script(
            RedisCache._PERMISSION_GET_SCRIPT
        )
        self._permission_set = self._sync_client.register_script(
            RedisCache._PERMISSION_SET_SCRIPT
        )

    def verify_connection(self) -> None:
        self._sync_client.ping()

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        tenant_id: Optional[str] = None,
        cost: int = 1,
    ) -> Union[bool, Tuple[bool, int, int]]:
        safe_key = RedisCache._normalize_rate_key(key, tenant_id)
        refill_rate = float(limit) / float(window_seconds)
        allowed, tokens, reset_after = self._token_bucket(
            keys=[safe_key], args=[time.time(), refill_rate, limit, max(1, cost)]
        )
        allowed_bool = bool(int(allowed))
        if return_remaining:
            return (allowed_bool, max(0, int(float(tokens))), int(reset_after or 0))
        return allowed_bool

    async def denylist_access_token(self, jti: str, expires_at: datetime) -> None:
        self._sync_client.set(
            f"auth:access:denylist:{jti}", "1", ex=RedisCache._ttl_seconds(expires_at)
        )

    async def is_access_token_denylisted(self, jti: str) -> bool:
        return bool(self._sync_client.exists(f"auth:access:denylist:{jti}"))

    async def get_permission_decision(
        self, user_id: str, resource: str, action: str
    ) -> Optional[bool]:
        value = self._permission_get(
            keys=[RedisCache.PERMISSION_GLOBAL_GEN_KEY, RedisCache._user_gen_key(user_id)],
            args=[user_id, RedisCache._permission_subject(resource, action)],
        )
        if value is None:
            return None
        return value == "1"

    async def set_permission_decision(
        self, user_id: str, resource: str, action: str, allowed: bool, ttl_seconds: int
    ) -> None:
        self._permission_set(
            keys=[RedisCache.PERMISSION_GLOBAL_GEN_KEY, RedisCache._user_gen_key(user_id)],
            args=[
                user_id,
                RedisCache._permission_subject(resource, action),
                "1" if allowed else "0",
                max(1, int(ttl_seconds)),
            ],
        )

    async def bump_permission_generation(self, user_id: Optional[str] = None) -> int:
        key = (
            RedisCache._user_gen_key(user_id)
            if user_id
            else RedisCache.PERMISSION_GLOBAL_GEN_KEY
        )
        return int(self._sync_client.incr(key))

    async def close(self) -> None:
        self._sync_client.close()

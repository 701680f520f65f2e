"""Key derivation in the Redis cache, the access denylist and the permission cache adapter."""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

from warden.service.permissions import RedisPermissionCache
from warden.storage.redis_cache import RedisCache


class TestKeyHelpers:
    def test_rate_keys_are_hashed(self):
        key = RedisCache._normalize_rate_key("login:evil:key\nwith:delims", None)
        assert key.startswith("rate:")
        assert "\n" not in key and "evil" not in key

    def test_rate_keys_scoped_by_tenant(self):
        assert RedisCache._normalize_rate_key("login:a", "acme").startswith("rate:acme:")
        assert RedisCache._normalize_rate_key("login:a", None) != RedisCache._normalize_rate_key(
            "login:b", None
        )

    def test_permission_subject_separates_fields(self):
        assert RedisCache._permission_subject("ab", "c") != RedisCache._permission_subject(
            "a", "bc"
        )

    def test_user_generation_key(self):
        assert RedisCache._user_gen_key("u1") == "perm:gen:u1"

    def test_ttl_is_at_least_one_second(self):
        past = datetime.now(timezone.utc) - timedelta(minutes=5)
        assert RedisCache._ttl_seconds(past) == 1
        naive_future = datetime.now(timezone.utc).replace(tzinfo=None) + timedelta(hours=1)
        assert 3500 <= RedisCache._ttl_seconds(naive_future) <= 3600


class TestRedisPermissionCache:
    async def test_delegates_with_ttl(self):
        backend = AsyncMock()
        backend.get_permission_decision.return_value = True
        cache = RedisPermissionCache(backend, ttl_seconds=120)

        assert await cache.get("u1", "roles", "list") is True
        await cache.set("u1", "roles", "list", False)
        backend.set_permission_decision.assert_awaited_once_with("u1", "roles", "list", False, 120)

    async def test_invalidate_bumps_generation(self):
        backend = AsyncMock()
        cache = RedisPermissionCache(backend, ttl_seconds=120)
        await cache.invalidate("u1")
        await cache.invalidate()
        assert [c.args for c in backend.bump_permission_generation.await_args_list] == [
            ("u1",),
            (None,),
        ]


class TestAccessDenylist:
    async def test_entry_lives_until_token_expiry(self):
        cache = RedisCache.__new__(RedisCache)
        cache.client = AsyncMock()
        expires_at = datetime.now(timezone.utc) + timedelta(minutes=10)
        await cache.denylist_access_token("jti-1", expires_at)
        args, kwargs = cache.client.set.await_args
        assert args == ("auth:access:denylist:jti-1", "1")
        assert 590 <= kwargs["ex"] <= 600

from __future__ import annotations

import threading
import time
from typing import Callable, Dict, Iterable, List, Optional, Protocol, Tuple

from warden.logging import get_logger
from warden.service.errors import BadRequestError, NotFoundError
from warden.storage.errors import ConstraintViolation
from warden.storage.models import Permission, Role, User

logger = get_logger(__name__)

WILDCARD_ACTION = "manage"


class PermissionCache(Protocol):
    """Shared cache of (user, resource, action) authorization decisions."""

    async def get(self, user_id: str, resource: str, action: str) -> Optional[bool]: ...

    async def set(self, user_id: str, resource: str, action: str, allowed: bool) -> None: ...

    async def invalidate(self, user_id: Optional[str] = None) -> None: ...


class RedisPermissionCache:
    """Decision cache in Redis with real key expiry.

    Invalidation bumps a generation counter, so every instance sharing the
    Redis sees the change on its next read.
    """

    def __init__(self, cache, ttl_seconds: int) -> None:
        self.cache = cache
        self.ttl_seconds = ttl_seconds

    async def get(self, user_id: str, resource: str, action: str) -> Optional[bool]:
        return await self.cache.get_permission_decision(user_id, resource, action)

    async def set(self, user_id: str, resource: str, action: str, allowed: bool) -> None:
        await self.cache.set_permission_decision(
            user_id, resource, action, allowed, self.ttl_seconds
        )

    async def invalidate(self, user_id: Optional[str] = None) -> None:
        await self.cache.bump_permission_generation(user_id)


class InMemoryPermissionCache:
    """Process-local fallback when Redis is not available.

    Entries carry an absolute expiry checked on read, so nothing depends on
    timers firing.
    """

    def __init__(
        self, ttl_seconds: int, *, clock: Callable[[], float] = time.monotonic
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[Tuple[str, str, str], Tuple[bool, float]] = {}
        self._lock = threading.Lock()

    async def get(self, user_id: str, resource: str, action: str) -> Optional[bool]:
        key = (user_id, resource, action)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            allowed, expires_at = entry
            if self._clock() >= expires_at:
                self._entries.pop(key, None)
                return None
            return allowed

    async def set(self, user_id: str, resource: str, action: str, allowed: bool) -> None:
        with self._lock:
            self._entries[(user_id, resource, action)] = (
                allowed,
                self._clock() + self.ttl_seconds,
            )

    async def invalidate(self, user_id: Optional[str] = None) -> None:
        with self._lock:
            if user_id is None:
                self._entries.clear()
                return
            for key in [k for k in self._entries if k[0] == user_id]:
                self._entries.pop(key, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class PermissionStore(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_role(self, role_id: str) -> Optional[Role]: ...

    def get_permission(self, permission_id: str) -> Optional[Permission]: ...

    def create_permission(
        self, name: str, resource: str, action: str, description: Optional[str] = None
    ) -> Permission: ...

    def list_permissions(self) -> List[Permission]: ...

    def add_role_permission(self, role_id: str, permission_id: str) -> bool: ...

    def remove_role_permission(self, role_id: str, permission_id: str) -> bool: ...

    def list_user_permissions(self, user_id: str) -> List[Permission]: ...


class PermissionResolver:
    """Answers "may this user do ``action`` on ``resource``?".

    A grant matches when its resource equals the requested one and its action
    is either the requested action or ``manage``, which covers every action on
    that resource.
    """

    def __init__(self, store: PermissionStore, cache: PermissionCache) -> None:
        self.store = store
        self.cache = cache

    async def _cache_get(self, user_id: str, resource: str, action: str) -> Optional[bool]:
        try:
            return await self.cache.get(user_id, resource, action)
        except Exception as exc:
            logger.warning("permission_cache_read_failed", user_id=user_id, error=str(exc))
            return None

    async def _cache_set(self, user_id: str, resource: str, action: str, allowed: bool) -> None:
        try:
            await self.cache.set(user_id, resource, action, allowed)
        except Exception as exc:
            logger.warning("permission_cache_write_failed", user_id=user_id, error=str(exc))

    async def invalidate(self, user_id: Optional[str] = None) -> None:
        # Not swallowed: a stale grant must not survive a failed invalidation
        await self.cache.invalidate(user_id)

    async def user_has_permission(self, user_id: str, resource: str, action: str) -> bool:
        cached = await self._cache_get(user_id, resource, action)
        if cached is not None:
            return cached
        if not self.store.get_user(user_id):
            raise NotFoundError("user not found", detail={"user_id": user_id})
        allowed = any(
            perm.grants(resource, action)
            for perm in self.store.list_user_permissions(user_id)
        )
        await self._cache_set(user_id, resource, action, allowed)
        return allowed

    async def user_has_all(
        self, user_id: str, pairs: Iterable[Tuple[str, str]]
    ) -> bool:
        for resource, action in pairs:
            if not await self.user_has_permission(user_id, resource, action):
                return False
        return True

    async def user_has_any(
        self, user_id: str, pairs: Iterable[Tuple[str, str]]
    ) -> bool:
        for resource, action in pairs:
            if await self.user_has_permission(user_id, resource, action):
                return True
        return False

    def get_user_permissions(self, user_id: str) -> List[Permission]:
        if not self.store.get_user(user_id):
            raise NotFoundError("user not found", detail={"user_id": user_id})
        return self.store.list_user_permissions(user_id)

    def create_permission(
        self,
        name: str,
        resource: str,
        action: str,
        description: Optional[str] = None,
    ) -> Permission:
        if not name or not resource or not action:
            raise BadRequestError("name, resource and action are required")
        try:
            perm = self.store.create_permission(name, resource, action, description)
        except ConstraintViolation as exc:
            raise BadRequestError("permission already exists", detail=exc.detail) from exc
        logger.info(
            "permission_created", permission_id=perm.id, resource=resource, action=action
        )
        return perm

    def list_permissions(self) -> List[Permission]:
        return self.store.list_permissions()

    async def assign_permission_to_role(self, role_id: str, permission_id: str) -> bool:
        if not self.store.get_role(role_id):
            raise NotFoundError("role not found", detail={"role_id": role_id})
        if not self.store.get_permission(permission_id):
            raise NotFoundError("permission not found", detail={"permission_id": permission_id})
        added = self.store.add_role_permission(role_id, permission_id)
        if added:
            # Any user may hold the role, so drop every cached decision
            await self.invalidate()
            logger.info("role_permission_assigned", role_id=role_id, permission_id=permission_id)
        return added

    async def remove_permission_from_role(self, role_id: str, permission_id: str) -> bool:
        removed = self.store.remove_role_permission(role_id, permission_id)
        if removed:
            await self.invalidate()
            logger.info("role_permission_removed", role_id=role_id, permission_id=permission_id)
        return removed

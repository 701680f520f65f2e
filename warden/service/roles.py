from __future__ import annotations

from typing import List, Optional, Protocol

from warden.logging import get_logger
from warden.service.errors import BadRequestError, NotFoundError
from warden.service.permissions import WILDCARD_ACTION, PermissionResolver
from warden.storage.errors import ConstraintViolation
from warden.storage.models import Permission, Role, User

logger = get_logger(__name__)

ADMIN_ROLE = "admin"
DEFAULT_ROLE = "user"
ADMIN_RESOURCES = ("roles", "permissions", "users")


class RoleStore(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def create_role(self, name: str, description: Optional[str] = None) -> Role: ...

    def get_role(self, role_id: str) -> Optional[Role]: ...

    def get_role_by_name(self, name: str) -> Optional[Role]: ...

    def list_roles(self) -> List[Role]: ...

    def get_permission_by_name(self, name: str) -> Optional[Permission]: ...

    def add_user_role(self, user_id: str, role_id: str) -> bool: ...

    def remove_user_role(self, user_id: str, role_id: str) -> bool: ...

    def list_user_roles(self, user_id: str) -> List[Role]: ...


class RoleService:
    def __init__(self, store: RoleStore, permissions: PermissionResolver) -> None:
        self.store = store
        self.permissions = permissions

    def create_role(self, name: str, description: Optional[str] = None) -> Role:
        name = (name or "").strip()
        if not name:
            raise BadRequestError("role name is required")
        try:
            role = self.store.create_role(name, description)
        except ConstraintViolation as exc:
            raise BadRequestError("role already exists", detail=exc.detail) from exc
        logger.info("role_created", role_id=role.id, name=name)
        return role

    def list_roles(self) -> List[Role]:
        return self.store.list_roles()

    def get_role(self, role_id: str) -> Role:
        role = self.store.get_role(role_id)
        if not role:
            raise NotFoundError("role not found", detail={"role_id": role_id})
        return role

    async def assign_role_to_user(self, user_id: str, role_id: str) -> bool:
        if not self.store.get_user(user_id):
            raise NotFoundError("user not found", detail={"user_id": user_id})
        self.get_role(role_id)
        added = self.store.add_user_role(user_id, role_id)
        if added:
            await self.permissions.invalidate(user_id)
            logger.info("user_role_assigned", user_id=user_id, role_id=role_id)
        return added

    async def remove_role_from_user(self, user_id: str, role_id: str) -> bool:
        removed = self.store.remove_user_role(user_id, role_id)
        if removed:
            await self.permissions.invalidate(user_id)
            logger.info("user_role_removed", user_id=user_id, role_id=role_id)
        return removed

    def get_user_roles(self, user_id: str) -> List[Role]:
        return self.store.list_user_roles(user_id)

    def role_names(self, user_id: str) -> List[str]:
        return [role.name for role in self.store.list_user_roles(user_id)]

    def _ensure_role(self, name: str, description: str) -> Role:
        role = self.store.get_role_by_name(name)
        if role:
            return role
        try:
            return self.store.create_role(name, description)
        except ConstraintViolation:
            # Another worker seeded it first
            role = self.store.get_role_by_name(name)
            if role is None:
                raise
            return role

    async def assign_default_role(self, user_id: str, name: str = DEFAULT_ROLE) -> Role:
        """Give a newly registered user the default role.

        A new account has no cached decisions yet, so a failed cache
        invalidation is logged rather than raised.
        """
        role = self._ensure_role(name, "Default role for registered users")
        if self.store.add_user_role(user_id, role.id):
            try:
                await self.permissions.invalidate(user_id)
            except Exception as exc:
                logger.warning(
                    "default_role_invalidation_failed", user_id=user_id, error=str(exc)
                )
            logger.info("user_role_assigned", user_id=user_id, role_id=role.id)
        return role

    def _ensure_permission(self, resource: str, action: str) -> Permission:
        name = f"{resource}:{action}"
        perm = self.store.get_permission_by_name(name)
        if perm:
            return perm
        try:
            return self.permissions.store.create_permission(
                name, resource, action, f"{action} {resource}"
            )
        except ConstraintViolation:
            perm = self.store.get_permission_by_name(name)
            if perm is None:
                raise
            return perm

    async def ensure_default_roles(self) -> None:
        """Seed the ``user`` and ``admin`` roles; idempotent."""
        self._ensure_role(DEFAULT_ROLE, "Default role for registered users")
        admin = self._ensure_role(ADMIN_ROLE, "Full administrative access")
        for resource in ADMIN_RESOURCES:
            perm = self._ensure_permission(resource, WILDCARD_ACTION)
            await self.permissions.assign_permission_to_role(admin.id, perm.id)

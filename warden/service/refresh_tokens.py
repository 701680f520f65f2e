from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol

from warden.config import Platform
from warden.logging import get_logger
from warden.service.errors import AuthenticationError
from warden.service.policy import PlatformPolicyResolver
from warden.storage.models import RefreshToken

logger = get_logger(__name__)

# Rotate once less than this fraction of the lifetime remains
ROTATION_THRESHOLD = 0.25
# Revoked tokens are kept this long for audit before cleanup deletes them
REVOKED_RETENTION = timedelta(days=30)


class RefreshTokenStore(Protocol):
    def create_refresh_token(self, record: RefreshToken) -> RefreshToken: ...

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]: ...

    def revoke_refresh_token(self, token: str, when: datetime) -> bool: ...

    def revoke_user_refresh_tokens(self, user_id: str, when: datetime) -> int: ...

    def rotate_refresh_token(
        self, old_id: str, new_record: RefreshToken, when: datetime
    ) -> bool: ...

    def purge_refresh_tokens(self, now: datetime, revoked_before: datetime) -> int: ...


class RefreshTokenManager:
    """Opaque refresh tokens with rotation near expiry."""

    def __init__(
        self, store: RefreshTokenStore, policy_resolver: PlatformPolicyResolver
    ) -> None:
        self.store = store
        self.policies = policy_resolver

    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc)

    def create(
        self,
        user_id: str,
        platform: Platform,
        *,
        device_id: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> RefreshToken:
        policy = self.policies.resolve(platform)
        record = RefreshToken.new(
            user_id,
            platform.value,
            policy.refresh_token_ttl,
            device_id=device_id,
            session_id=session_id,
        )
        self.store.create_refresh_token(record)
        logger.info(
            "refresh_issued", user_id=user_id, platform=platform.value, record_id=record.id
        )
        return record

    def get(self, token: str) -> Optional[RefreshToken]:
        return self.store.get_refresh_token(token) if token else None

    def validate(self, token: str) -> RefreshToken:
        record = self.store.get_refresh_token(token) if token else None
        if not record:
            raise AuthenticationError("invalid refresh token")
        if record.is_revoked:
            logger.info("refresh_rejected", record_id=record.id, reason="revoked")
            raise AuthenticationError("invalid refresh token")
        if self._now() >= record.expires_at:
            logger.info("refresh_rejected", record_id=record.id, reason="expired")
            raise AuthenticationError("invalid refresh token")
        return record

    def revoke(self, token: str) -> bool:
        """Revoke ``token``. Returns False when it was unknown or already revoked."""
        return self.store.revoke_refresh_token(token, self._now())

    def revoke_all(self, user_id: str) -> int:
        count = self.store.revoke_user_refresh_tokens(user_id, self._now())
        logger.info("refresh_revoked_all", user_id=user_id, count=count)
        return count

    @staticmethod
    def needs_rotation(record: RefreshToken, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now(timezone.utc)
        lifetime = record.expires_at - record.created_at
        return record.expires_at - now < lifetime * ROTATION_THRESHOLD

    def rotate(self, record: RefreshToken) -> RefreshToken:
        """Replace ``record`` with a fresh token in one store operation.

        If a concurrent rotation already revoked ``record`` nothing is written
        and :class:`AuthenticationError` is raised.
        """
        platform = Platform.parse(record.platform)
        policy = self.policies.resolve(platform)
        replacement = RefreshToken.new(
            record.user_id,
            platform.value,
            policy.refresh_token_ttl,
            device_id=record.device_id,
            session_id=record.session_id,
        )
        if not self.store.rotate_refresh_token(record.id, replacement, self._now()):
            logger.warning("refresh_rotation_lost", record_id=record.id, user_id=record.user_id)
            raise AuthenticationError("invalid refresh token")
        logger.info(
            "refresh_rotated",
            user_id=record.user_id,
            record_id=record.id,
            replacement_id=replacement.id,
        )
        return replacement

    def cleanup(self) -> int:
        now = self._now()
        purged = self.store.purge_refresh_tokens(now, now - REVOKED_RETENTION)
        if purged:
            logger.info("refresh_purged", count=purged)
        return purged

from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Optional, Protocol

from warden.config import Platform
from warden.logging import get_logger
from warden.service.policy import PlatformPolicyResolver
from warden.storage.models import Session

logger = get_logger(__name__)


class SessionStore(Protocol):
    def create_session(self, session: Session) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def touch_session(self, session_id: str, when: datetime) -> bool: ...

    def invalidate_session(self, session_id: str) -> bool: ...

    def invalidate_user_sessions(self, user_id: str) -> List[str]: ...

    def list_active_sessions(self, user_id: str, now: datetime) -> List[Session]: ...

    def expire_sessions(self, now: datetime) -> int: ...


class SessionManager:
    """Server-side session records; the datastore is the only source of truth."""

    def __init__(self, store: SessionStore, policy_resolver: PlatformPolicyResolver) -> None:
        self.store = store
        self.policies = policy_resolver

    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc)

    async def create(
        self,
        user_id: str,
        platform: Platform,
        *,
        device_id: Optional[str] = None,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
        tenant_id: str = "public",
    ) -> Session:
        policy = self.policies.resolve(platform)
        session = Session.new(
            user_id,
            platform.value,
            policy.session_ttl,
            device_id=device_id,
            ip_addr=ip_addr,
            user_agent=user_agent,
            tenant_id=tenant_id,
        )
        self.store.create_session(session)
        logger.info(
            "session_created", session_id=session.id, user_id=user_id, platform=platform.value
        )
        return session

    def get(self, session_id: str) -> Optional[Session]:
        return self.store.get_session(session_id)

    def validate(self, session_id: str) -> bool:
        session = self.store.get_session(session_id)
        if not session:
            return False
        return session.is_active_at(self._now())

    async def touch(self, session_id: str) -> None:
        self.store.touch_session(session_id, self._now())

    async def invalidate(self, session_id: str) -> None:
        if self.store.invalidate_session(session_id):
            logger.info("session_invalidated", session_id=session_id)

    async def invalidate_all(self, user_id: str) -> int:
        invalidated = self.store.invalidate_user_sessions(user_id)
        logger.info("sessions_invalidated", user_id=user_id, count=len(invalidated))
        return len(invalidated)

    def list_active(self, user_id: str) -> List[Session]:
        return self.store.list_active_sessions(user_id, self._now())

    def cleanup(self) -> int:
        """Mark expired sessions invalid. Safe to run from several workers at once."""
        expired = self.store.expire_sessions(self._now())
        if expired:
            logger.info("sessions_expired", count=expired)
        return expired

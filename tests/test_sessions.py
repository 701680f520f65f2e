"""Server-side session lifecycle."""

from datetime import timedelta

import pytest

from warden.config import Platform
from warden.service.sessions import SessionManager


@pytest.fixture
def sessions(store, policies):
    return SessionManager(store, policies)


@pytest.fixture
def user(store):
    return store.create_user("erin", email="erin@example.com")


class TestSessionLifecycle:
    async def test_create_uses_platform_lifetime(self, sessions, user):
        web = await sessions.create(user.id, Platform.WEB, device_id="browser-1")
        desktop = await sessions.create(user.id, Platform.DESKTOP)
        assert web.expires_at - web.created_at == timedelta(hours=24)
        assert desktop.expires_at - desktop.created_at == timedelta(days=7)
        assert web.platform == "web"
        assert web.device_id == "browser-1"
        assert sessions.validate(web.id) is True

    async def test_invalidate(self, sessions, user):
        session = await sessions.create(user.id, Platform.WEB)
        await sessions.invalidate(session.id)
        assert sessions.validate(session.id) is False
        # A second invalidation is a no-op
        await sessions.invalidate(session.id)

    async def test_invalidate_all(self, sessions, user, store):
        first = await sessions.create(user.id, Platform.WEB)
        second = await sessions.create(user.id, Platform.DESKTOP)
        other = store.create_user("frank", email="frank@example.com")
        theirs = await sessions.create(other.id, Platform.WEB)
        assert await sessions.invalidate_all(user.id) == 2
        assert not sessions.validate(first.id)
        assert not sessions.validate(second.id)
        assert sessions.validate(theirs.id)

    def test_unknown_session_invalid(self, sessions):
        assert sessions.validate("no-such-session") is False

    async def test_expired_session_invalid(self, sessions, user, store):
        session = await sessions.create(user.id, Platform.WEB)
        store.get_session(session.id).expires_at = session.created_at - timedelta(seconds=1)
        assert sessions.validate(session.id) is False

    async def test_touch_updates_activity(self, sessions, user, store):
        session = await sessions.create(user.id, Platform.WEB)
        before = store.get_session(session.id).last_active_at
        store.get_session(session.id).last_active_at = before - timedelta(hours=1)
        await sessions.touch(session.id)
        assert store.get_session(session.id).last_active_at >= before

    async def test_list_active_excludes_invalidated(self, sessions, user):
        keep = await sessions.create(user.id, Platform.WEB)
        drop = await sessions.create(user.id, Platform.WEB)
        await sessions.invalidate(drop.id)
        assert [s.id for s in sessions.list_active(user.id)] == [keep.id]

    async def test_cleanup_marks_expired(self, sessions, user, store):
        session = await sessions.create(user.id, Platform.WEB)
        store.get_session(session.id).expires_at = session.created_at - timedelta(seconds=1)
        assert sessions.cleanup() == 1
        assert store.get_session(session.id).is_valid is False
        assert sessions.cleanup() == 0


class TestStoreIsAuthoritative:
    async def test_revocation_visible_to_second_manager(self, store, policies, user):
        # Two workers sharing one store see the same revocation
        first = SessionManager(store, policies)
        second = SessionManager(store, policies)
        session = await first.create(user.id, Platform.WEB)
        assert second.validate(session.id)
        await first.invalidate(session.id)
        assert not second.validate(session.id)

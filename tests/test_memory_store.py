"""MemoryStore persistence and atomic compound operations."""

import threading
from datetime import datetime, timedelta, timezone

import pytest

from warden.storage.common import normalize_email, normalize_phone
from warden.storage.errors import ConstraintViolation
from warden.storage.memory import MemoryStore
from warden.storage.models import OTPAttemptStatus, OTPCode, OTPPurpose, RefreshToken, Session


def _otp(user_id: str, code: str = "123456", max_attempts: int = 5) -> OTPCode:
    now = datetime.now(timezone.utc)
    return OTPCode(
        id=f"otp-{code}-{now.timestamp()}",
        user_id=user_id,
        code=code,
        purpose=OTPPurpose.EMAIL_VERIFICATION,
        created_at=now,
        expires_at=now + timedelta(minutes=10),
        max_attempts=max_attempts,
    )


class TestNormalization:
    def test_email(self):
        assert normalize_email("  Bob@Example.COM ") == "bob@example.com"
        assert normalize_email("   ") is None
        assert normalize_email(None) is None

    def test_phone(self):
        assert normalize_phone("+1 (555) 123-4567") == "+15551234567"
        assert normalize_phone("") is None


class TestUsers:
    def test_uniqueness(self, store):
        store.create_user("quinn", email="quinn@example.com", phone="+15550006666")
        with pytest.raises(ConstraintViolation) as exc_info:
            store.create_user("quinn")
        assert exc_info.value.detail == {"field": "username"}
        with pytest.raises(ConstraintViolation):
            store.create_user("other", email="QUINN@example.com")
        with pytest.raises(ConstraintViolation):
            store.create_user("third", phone="+1 555 000 6666")

    def test_password_requires_user(self, store):
        with pytest.raises(ConstraintViolation):
            store.save_password("ghost", "hash", "argon2id")

    def test_delete_user_removes_dependents(self, store):
        user = store.create_user("ivy", email="ivy@example.com")
        store.save_password(user.id, "hash", "argon2id")
        store.add_user_role(user.id, store.create_role("editor").id)
        session = store.create_session(Session.new(user.id, "web", timedelta(hours=1)))
        token = store.create_refresh_token(RefreshToken.new(user.id, "web", timedelta(days=7)))
        store.issue_otp(_otp(user.id))

        assert store.delete_user(user.id) is True
        assert store.get_user_by_email("ivy@example.com") is None
        assert store.get_password_record(user.id) is None
        assert store.list_user_roles(user.id) == []
        assert store.get_session(session.id) is None
        assert store.get_refresh_token(token.token) is None
        assert store.list_otp_codes(user.id) == []
        assert store.delete_user(user.id) is False
        store.create_user("ivy", email="ivy@example.com")


class TestPersistence:
    def test_state_survives_reload(self, tmp_path):
        first = MemoryStore(fs_root=str(tmp_path))
        user = first.create_user("rose", email="rose@example.com")
        first.save_password(user.id, "hash", "argon2id")
        role = first.create_role("editor")
        first.add_user_role(user.id, role.id)
        session = first.create_session(Session.new(user.id, "web", timedelta(hours=1)))
        token = first.create_refresh_token(
            RefreshToken.new(user.id, "web", timedelta(days=7), session_id=session.id)
        )
        first.issue_otp(_otp(user.id))

        second = MemoryStore(fs_root=str(tmp_path))
        assert second.get_user_by_email("rose@example.com").id == user.id
        assert second.get_password_record(user.id) == ("hash", "argon2id")
        assert [r.name for r in second.list_user_roles(user.id)] == ["editor"]
        assert second.get_session(session.id).expires_at == session.expires_at
        restored = second.get_refresh_token(token.token)
        assert restored.session_id == session.id
        assert restored.created_at == token.created_at
        assert len(second.list_otp_codes(user.id)) == 1

    def test_persistence_can_be_disabled(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path / "volatile"), persist=False)
        store.create_user("sam", email="sam@example.com")
        assert not (tmp_path / "volatile").exists()


class TestOTPAccounting:
    def test_attempts_counted_before_compare(self, store):
        user = store.create_user("tess", email="tess@example.com")
        store.issue_otp(_otp(user.id, "123456", max_attempts=2))
        now = datetime.now(timezone.utc)
        first = store.consume_otp_attempt(user.id, OTPPurpose.EMAIL_VERIFICATION, "000000", now)
        assert first.status is OTPAttemptStatus.MISMATCH
        assert first.attempts == 1
        second = store.consume_otp_attempt(user.id, OTPPurpose.EMAIL_VERIFICATION, "000000", now)
        assert second.status is OTPAttemptStatus.BURNED
        third = store.consume_otp_attempt(user.id, OTPPurpose.EMAIL_VERIFICATION, "123456", now)
        assert third.status is OTPAttemptStatus.MISSING

    def test_concurrent_guesses_respect_budget(self, store):
        user = store.create_user("uma", email="uma@example.com")
        store.issue_otp(_otp(user.id, "123456", max_attempts=5))
        now = datetime.now(timezone.utc)
        statuses = []
        lock = threading.Lock()
        barrier = threading.Barrier(20)

        def guess():
            barrier.wait()
            outcome = store.consume_otp_attempt(
                user.id, OTPPurpose.EMAIL_VERIFICATION, "999999", now
            )
            with lock:
                statuses.append(outcome.status)

        threads = [threading.Thread(target=guess) for _ in range(20)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        compared = [
            s for s in statuses if s in (OTPAttemptStatus.MISMATCH, OTPAttemptStatus.BURNED)
        ]
        assert len(compared) == 5
        assert statuses.count(OTPAttemptStatus.BURNED) == 1
        record = store.list_otp_codes(user.id)[0]
        assert record.attempts == 5
        assert record.is_used is True

    def test_issue_burns_previous_codes(self, store):
        user = store.create_user("vera", email="vera@example.com")
        store.issue_otp(_otp(user.id, "111111"))
        store.issue_otp(_otp(user.id, "222222"))
        live = [c for c in store.list_otp_codes(user.id) if not c.is_used]
        assert [c.code for c in live] == ["222222"]


class TestRefreshRotation:
    def test_rotation_is_conditional(self, store):
        user = store.create_user("walt", email="walt@example.com")
        old = store.create_refresh_token(RefreshToken.new(user.id, "web", timedelta(days=7)))
        now = datetime.now(timezone.utc)
        first = RefreshToken.new(user.id, "web", timedelta(days=7))
        second = RefreshToken.new(user.id, "web", timedelta(days=7))
        assert store.rotate_refresh_token(old.id, first, now) is True
        assert store.rotate_refresh_token(old.id, second, now) is False
        assert store.get_refresh_token(second.token) is None
        assert store.get_refresh_token(old.token).is_revoked is True

"""The admin bootstrap script against the in-memory runtime."""

import importlib.util
from pathlib import Path

import pytest

from warden.service.roles import ADMIN_ROLE
from warden.service.runtime import get_runtime

_SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "bootstrap_admin.py"


@pytest.fixture(scope="module")
def bootstrap():
    spec = importlib.util.spec_from_file_location("bootstrap_admin", _SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


class TestPasswordRule:
    def test_strong_password(self, bootstrap):
        assert bootstrap.validate_password("SecurePassword123!")

    def test_weak_passwords(self, bootstrap):
        assert not bootstrap.validate_password("Short1!")
        assert not bootstrap.validate_password("alllowercaseletters")


class TestBootstrap:
    async def test_creates_admin(self, bootstrap):
        result = await bootstrap.bootstrap_admin("root", "root@example.com", "SecurePassword123!")
        assert result["status"] == "created"
        runtime = get_runtime()
        user = runtime.store.get_user(result["user_id"])
        assert user.is_email_verified is True
        assert ADMIN_ROLE in runtime.roles.role_names(user.id)
        assert runtime.credentials.validate("root", "SecurePassword123!").id == user.id

    async def test_second_run_is_noop(self, bootstrap):
        await bootstrap.bootstrap_admin("root", "root@example.com", "SecurePassword123!")
        again = await bootstrap.bootstrap_admin("root", "root@example.com", "SecurePassword123!")
        assert again["status"] == "already_admin"

    async def test_promotes_existing_user(self, bootstrap):
        runtime = get_runtime()
        user = runtime.store.create_user("ops", email="ops@example.com")
        result = await bootstrap.bootstrap_admin("ops", "ops@example.com", "SecurePassword123!")
        assert result == {"user_id": user.id, "email": "ops@example.com", "status": "promoted"}
        assert runtime.store.get_user(user.id).is_email_verified is True

    async def test_dry_run_changes_nothing(self, bootstrap):
        result = await bootstrap.bootstrap_admin(
            "root", "root@example.com", "SecurePassword123!", dry_run=True
        )
        assert result["status"] == "dry_run"
        assert get_runtime().store.get_user_by_email("root@example.com") is None

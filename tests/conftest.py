import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Environment must be in place before anything imports the runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="warden_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# Empty URL selects the in-process fallbacks for rate limits and permission caching
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("AUTH_CLEANUP_INTERVAL_SECONDS", "0")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from warden.config import Settings, build_platform_policies  # noqa: E402
from warden.service.policy import PlatformPolicyResolver  # noqa: E402
from warden.service.runtime import reset_runtime_for_tests  # noqa: E402
from warden.storage.memory import MemoryStore  # noqa: E402


class RecordingDispatcher:
    """Stands in for the email/SMS dispatcher and keeps every message."""

    def __init__(self, delivered: bool = True):
        self.delivered = delivered
        self.sent = []

    async def send_message(self, channel, to, template_id, variables):
        self.sent.append(
            {"channel": channel, "to": to, "template_id": template_id, **variables}
        )
        return self.delivered

    def last_code(self, template_id=None):
        for message in reversed(self.sent):
            if template_id is None or message["template_id"] == template_id:
                return message["code"]
        return None


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path_factory, monkeypatch):
    # Fresh state directory per test; the memory store reloads whatever it finds
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path_factory.mktemp("runtime")))
    yield reset_runtime_for_tests()


@pytest.fixture
def settings():
    return Settings(jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!")


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def policies(settings):
    return PlatformPolicyResolver(build_platform_policies(settings))


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")

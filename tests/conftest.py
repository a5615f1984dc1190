import asyncio
import inspect
import os
import sys
from pathlib import Path

os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from sessionward.config import reset_settings_cache  # noqa: E402
from sessionward.storage.memory import MemoryStore  # noqa: E402
from tests.support import (  # noqa: E402
    MutableClock,
    RecordingAuditSink,
    ScriptedExchangeClient,
    make_settings,
)


@pytest.fixture(autouse=True)
def reset_settings_state():
    reset_settings_cache()
    yield
    reset_settings_cache()


@pytest.fixture
def settings():
    """Create test settings."""
    return make_settings()


@pytest.fixture
def memory_store():
    """Create memory store for testing."""
    return MemoryStore()


@pytest.fixture
def clock():
    return MutableClock()


@pytest.fixture
def audit_sink():
    return RecordingAuditSink()


@pytest.fixture
def exchange_client():
    return ScriptedExchangeClient()


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

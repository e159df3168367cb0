import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="warden_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("RESET_DELAY_MIN_MS", "0")
os.environ.setdefault("RESET_DELAY_MAX_MS", "0")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from warden.config import Settings  # noqa: E402
from warden.service.clock import FixedClock  # noqa: E402
from warden.service.runtime import Runtime, reset_runtime_for_tests  # noqa: E402
from warden.storage.memory import MemoryStore  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path, monkeypatch):
    # one snapshot directory per test so state never leaks between tests
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path / "shared"))
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        use_memory_store=True,
        shared_fs_root=str(tmp_path / "runtime"),
        test_mode=True,
        reset_delay_min_ms=0,
        reset_delay_max_ms=0,
    )


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path / "store"))


@pytest.fixture
def runtime(settings, clock):
    """A runtime wired to the fixed clock, seeded with the system rights and roles."""
    rt = Runtime(settings=settings, clock=clock)
    yield rt
    rt.close()


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

import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Environment must be in place before anything builds Settings or the runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="sessionledger_test_")
os.environ.setdefault("STATE_DIR", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_CACHE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402
from argon2 import PasswordHasher, Type  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from sessionledger.service.codec import HmacCredentialCodec  # noqa: E402
from sessionledger.service.engine import CredentialEngine  # noqa: E402
from sessionledger.service.passwords import Argon2PasswordComparator  # noqa: E402
from sessionledger.service.runtime import reset_runtime_for_tests  # noqa: E402
from sessionledger.storage.memory import MemoryCache, MemoryMemberDirectory  # noqa: E402
from sessionledger.storage.sessions import RefreshSessionStore, RevocationLedger  # noqa: E402

TEST_SECRET = "unit-test-signing-secret-0123456789abcdef"
ACCESS_TTL = 30 * 60
REFRESH_TTL = 7 * 24 * 60 * 60
REISSUE_THRESHOLD = 3 * 24 * 60 * 60


class FakeClock:
    """Manually advanced wall clock shared by the codec, store and engine."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(clock):
    return MemoryCache(clock=clock)


@pytest.fixture
def codec(clock):
    return HmacCredentialCodec(
        TEST_SECRET, issuer="sessionledger", audience="membership-clients", clock=clock
    )


@pytest.fixture
def comparator():
    # Minimal argon2 cost keeps the suite fast
    return Argon2PasswordComparator(
        PasswordHasher(time_cost=1, memory_cost=8, parallelism=1, type=Type.ID)
    )


@pytest.fixture
def members(comparator):
    directory = MemoryMemberDirectory(comparator)
    directory.register("a@x.com", "correct-horse-battery")
    return directory


@pytest.fixture
def engine(cache, codec, comparator, members, clock):
    return CredentialEngine(
        RefreshSessionStore(cache),
        RevocationLedger(cache),
        codec,
        comparator,
        members,
        access_ttl_seconds=ACCESS_TTL,
        refresh_ttl_seconds=REFRESH_TTL,
        reissue_threshold_seconds=REISSUE_THRESHOLD,
        clock=clock,
    )


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

import asyncio
import base64
import inspect
import json
import os
import sys
import tempfile
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="storefront_auth_test_")
os.environ.setdefault("STOREFRONT_AUTH_STATE_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_REDIS", "false")
os.environ.setdefault("TOKEN_ENCRYPTION_KEY", "test-token-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from storefront_auth.service.capabilities import Sha256Hasher, StaticSignalSource  # noqa: E402
from storefront_auth.service.events import InMemoryEventBus  # noqa: E402
from storefront_auth.service.fingerprint import DeviceFingerprinter  # noqa: E402
from storefront_auth.service.refresh_client import RefreshResult  # noqa: E402
from storefront_auth.service.runtime import reset_runtime_for_tests  # noqa: E402
from storefront_auth.service.token_manager import JWTTokenManager  # noqa: E402
from storefront_auth.service.token_store import SecureTokenStore  # noqa: E402
from storefront_auth.storage.memory import MemoryKeyValueStore  # noqa: E402
from storefront_auth.storage.models import DeviceInfo  # noqa: E402

TEST_KEY = "test-token-key-for-testing-only-do-not-use-in-production"
START_TIME = 1_700_000_000.0


class FakeClock:
    """Deterministic clock. Short sleeps advance time; long sleeps park forever."""

    def __init__(self, start: float = START_TIME, park_after: float = 30.0):
        self.current = start
        self.park_after = park_after
        self.sleeps = []

    def now(self) -> float:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        if seconds >= self.park_after:
            await asyncio.Event().wait()
        self.current += seconds
        await asyncio.sleep(0)


class FakeRefreshClient:
    """Scripted refresh endpoint.

    ``responses`` are consumed in order; an Exception entry is raised, a
    RefreshResult is returned. When ``gate`` is set, calls wait on it first.
    """

    refresh_url = "http://test/api/v1/auth/refresh"

    def __init__(self, responses=None):
        self.responses = list(responses or [])
        self.calls = []
        self.gate = None

    async def refresh(self, refresh_token):
        self.calls.append(refresh_token)
        if self.gate is not None:
            await self.gate.wait()
        if not self.responses:
            raise AssertionError("unexpected refresh call")
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    async def close(self):
        return None


def make_jwt(exp, **claims):
    def _segment(data):
        raw = json.dumps(data, separators=(",", ":")).encode()
        return base64.urlsafe_b64encode(raw).decode().rstrip("=")

    payload = {"sub": "cust-1", "exp": int(exp), **claims}
    return f"{_segment({'alg': 'HS256', 'typ': 'JWT'})}.{_segment(payload)}.signature"


def refresh_result(clock, *, lifetime=3600, refresh_token="refresh-2", **claims):
    exp = int(clock.now()) + lifetime
    return RefreshResult(
        access_token=make_jwt(exp, **claims),
        refresh_token=refresh_token,
        token_expiry=exp,
    )


def trusted_device():
    return DeviceInfo(
        user_agent="Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0",
        language="en-US",
        platform="Linux x86_64",
        screen_resolution="1920x1080",
        timezone="Europe/Berlin",
        color_depth=24,
        hardware_concurrency=8,
        device_memory=8,
        cookie_enabled=True,
        do_not_track=None,
        webdriver=False,
    )


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def kv():
    return MemoryKeyValueStore()


@pytest.fixture
def bus():
    return InMemoryEventBus()


@pytest.fixture
def signals():
    return StaticSignalSource(trusted_device())


@pytest.fixture
def fingerprinter(kv, signals, clock):
    return DeviceFingerprinter(kv, hasher=Sha256Hasher(), signals=signals, clock=clock)


@pytest.fixture
def token_store(kv, clock, fingerprinter, bus):
    return SecureTokenStore(
        kv,
        encryption_key=TEST_KEY,
        clock=clock,
        fingerprinter=fingerprinter,
        event_bus=bus,
        origin="tab-a",
    )


@pytest.fixture
def refresh_client():
    return FakeRefreshClient()


@pytest.fixture
def manager(token_store, refresh_client, fingerprinter, clock, bus):
    return JWTTokenManager(
        token_store,
        refresh_client,
        fingerprinter,
        clock=clock,
        event_bus=bus,
        origin="tab-a",
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

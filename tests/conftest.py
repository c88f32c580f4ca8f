import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Environment must be in place before anything imports the settings
_test_tmp_dir = tempfile.mkdtemp(prefix="pantrypal_test_")
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("IDENTITY_BACKEND", "memory")
os.environ.setdefault("TOKEN_SIGNING_SECRET", "test-signing-secret-for-testing-only-0123456789")
os.environ.setdefault("DURABLE_STORE_PATH", os.path.join(_test_tmp_dir, "session.json"))

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from pantrypal.config import get_settings  # noqa: E402
from pantrypal.service.runtime import reset_runtime_for_tests  # noqa: E402
from pantrypal.service.tokens import TokenSigner, _encode_segment  # noqa: E402

START_TIME = 1_700_000_000.0


class FakeClock:
    """Manually advanced epoch clock."""

    def __init__(self, start: float = START_TIME):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeTimerHandle:
    def __init__(self, due: float, callback):
        self.due = due
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class FakeTimers:
    """call_later replacement driven by a FakeClock."""

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.handles: list[FakeTimerHandle] = []

    def call_later(self, delay, callback):
        handle = FakeTimerHandle(self.clock() + delay, callback)
        self.handles.append(handle)
        return handle

    @property
    def pending(self) -> list[FakeTimerHandle]:
        return [h for h in self.handles if not h.cancelled]

    def advance(self, seconds: float) -> None:
        target = self.clock() + seconds
        while True:
            due = [h for h in self.pending if h.due <= target]
            if not due:
                break
            handle = min(due, key=lambda h: h.due)
            handle.cancelled = True
            self.clock.now = max(self.clock.now, handle.due)
            handle.callback()
        self.clock.now = target


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def timers(clock):
    return FakeTimers(clock)


@pytest.fixture
def signer():
    settings = get_settings()
    return TokenSigner(settings.token_signing_secret, settings.token_issuer)


@pytest.fixture
def make_token(signer, clock):
    """Issue a signed token relative to the fake clock."""

    def _make(subject="alice", ttl=3600, now=None, **claims):
        return signer.issue(subject, ttl, now=clock() if now is None else now, extra=claims or None)

    return _make


@pytest.fixture
def raw_token():
    """Build an unsigned token from arbitrary header and claims."""
    import json

    def _build(claims, header=None, signature="c2lnbmF0dXJl"):
        header = header if header is not None else {"alg": "HS256", "typ": "JWT"}
        return ".".join(
            [
                _encode_segment(json.dumps(header).encode()),
                _encode_segment(json.dumps(claims).encode()),
                signature,
            ]
        )

    return _build


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

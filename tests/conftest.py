import asyncio
import inspect
import os

os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from tenantauth.app import create_app  # noqa: E402
from tenantauth.config import Settings  # noqa: E402
from tenantauth.service.email import EmailService  # noqa: E402
from tenantauth.service.runtime import build_runtime  # noqa: E402
from tenantauth.storage.memory import ADMIN_FEATURE, MemoryStore  # noqa: E402
from tenantauth.storage.redis_cache import MemoryCache  # noqa: E402

PASSWORD = "Correct-Horse-Battery-9"


class RecordingEmailService(EmailService):
    """Keeps every outgoing message so tests can read codes and links."""

    def __init__(self):
        super().__init__()
        self.sent = []

    def send_sign_in_link(self, to_email, link, otp, *, sign_up=False):
        self.sent.append(
            {"kind": "sign_in", "to": to_email, "link": link, "otp": otp, "sign_up": sign_up}
        )
        return True

    def send_admin_mfa_code(self, to_email, otp, link):
        self.sent.append({"kind": "admin_mfa", "to": to_email, "link": link, "otp": otp})
        return True

    def last(self, kind):
        return next(m for m in reversed(self.sent) if m["kind"] == kind)


class FakeClock:
    def __init__(self, start=1_700_000_000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def settings():
    return Settings(
        test_mode=True,
        use_memory_store=True,
        server_https=False,
        app_base_url="http://testserver",
    )


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(clock):
    return MemoryCache(clock=clock)


@pytest.fixture
def email():
    return RecordingEmailService()


@pytest.fixture
def runtime(settings, store, cache, email):
    return build_runtime(settings, store=store, cache=cache, email=email)


@pytest.fixture
def client(runtime):
    return TestClient(create_app(runtime))


@pytest.fixture
def make_user(store):
    def _make(email_address, *, password=PASSWORD, admin=False):
        user = store.create_user(email_address, password=password, email_verified=True)
        if admin:
            store.add_feature(user.id, ADMIN_FEATURE)
        return user

    return _make


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

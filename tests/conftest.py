import asyncio
import inspect
import os
import sys
from pathlib import Path

# Must be set before any ssoauth import reads the environment
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("TOKEN_ACCESS_SECRET", "access-secret-for-tests-only")
os.environ.setdefault("TOKEN_REFRESH_SECRET", "refresh-secret-for-tests-only")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from ssoauth.config import Settings  # noqa: E402
from ssoauth.service.auth import AuthService  # noqa: E402
from ssoauth.service.errors import (  # noqa: E402
    InvalidCredentialsError,
    UserExistsError,
    UserNotFoundError,
)
from ssoauth.service.runtime import reset_runtime_for_tests  # noqa: E402
from ssoauth.service.tokens import HMACTokenCodec  # noqa: E402
from ssoauth.storage.errors import StoreUnavailable  # noqa: E402
from ssoauth.storage.memory import MemoryKV  # noqa: E402
from ssoauth.storage.models import UserProfile  # noqa: E402
from ssoauth.storage.redis_cache import SessionRegistry  # noqa: E402


class FakeClock:
    """Settable wall clock shared by the codec and the in-memory store."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeUserDirectory:
    """In-memory user directory keyed by email."""

    def __init__(self) -> None:
        self.users: dict[str, dict] = {}
        self.calls: list[str] = []
        self._next_id = 1

    def add_user(self, email, password, *, name="", role="user", user_id=None) -> UserProfile:
        user_id = user_id or f"u{self._next_id}"
        self._next_id += 1
        self.users[email] = {
            "id": user_id,
            "email": email,
            "name": name,
            "role": role,
            "password": password,
        }
        return self._profile(self.users[email])

    @staticmethod
    def _profile(record: dict) -> UserProfile:
        return UserProfile(
            id=record["id"], email=record["email"], name=record["name"], role=record["role"]
        )

    async def authenticate_by_password(self, email, password):
        self.calls.append("authenticate_by_password")
        # Yield so concurrent callers interleave
        await asyncio.sleep(0)
        record = self.users.get(email)
        if record is None:
            raise UserNotFoundError()
        if record["password"] != password:
            raise InvalidCredentialsError()
        return self._profile(record)

    async def create_user(self, email, name, password):
        self.calls.append("create_user")
        if email in self.users:
            raise UserExistsError()
        return self.add_user(email, password, name=name).id

    async def find_user_by_id(self, user_id):
        self.calls.append("find_user_by_id")
        for record in self.users.values():
            if record["id"] == user_id:
                return self._profile(record)
        raise UserNotFoundError()

    async def check_email_registered(self, email):
        self.calls.append("check_email_registered")
        if email in self.users:
            raise UserExistsError()


class FakeMailer:
    """Records verification mails; can fail, crash or block until released."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str, str]] = []
        self.result = True
        self.crash = False
        self.release: asyncio.Event | None = None

    async def send_verification_code(self, to_email, name, code):
        if self.release is not None:
            await self.release.wait()
        if self.crash:
            raise RuntimeError("smtp exploded")
        self.sent.append((to_email, name, code))
        return self.result


class FlakyRegistry:
    """Wraps a registry and injects failures or delays per method name."""

    def __init__(self, inner: SessionRegistry) -> None:
        self.inner = inner
        self.failures: dict[str, Exception] = {}
        self.delays: dict[str, float] = {}

    def fail(self, method: str, exc: Exception | None = None) -> None:
        self.failures[method] = exc or StoreUnavailable(f"{method} failed")

    def delay(self, method: str, seconds: float) -> None:
        self.delays[method] = seconds

    def __getattr__(self, name):
        target = getattr(self.inner, name)
        if name not in self.failures and name not in self.delays:
            return target

        async def wrapper(*args, **kwargs):
            if name in self.delays:
                await asyncio.sleep(self.delays[name])
            if name in self.failures:
                raise self.failures[name]
            return await target(*args, **kwargs)

        wrapper.__name__ = name
        return wrapper


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return Settings(
        token_access_secret="access-secret-for-tests-only",
        token_refresh_secret="refresh-secret-for-tests-only",
        access_token_ttl_minutes=15,
        refresh_token_ttl_minutes=60 * 24,
        use_memory_store=True,
        operation_timeout_seconds=2.0,
    )


@pytest.fixture
def kv(clock):
    return MemoryKV(clock=clock)


@pytest.fixture
def registry(kv, settings):
    return FlakyRegistry(
        SessionRegistry(kv, refresh_ttl_seconds=settings.refresh_token_ttl_seconds)
    )


@pytest.fixture
def flaky():
    """Wrap an arbitrary registry (e.g. the runtime's) for failure injection."""
    return FlakyRegistry


@pytest.fixture
def codec(settings, clock):
    return HMACTokenCodec(settings, clock=clock)


@pytest.fixture
def users():
    directory = FakeUserDirectory()
    directory.add_user("alice@gmail.com", "Password1", name="Alice", user_id="u1")
    return directory


@pytest.fixture
def mailer():
    return FakeMailer()


@pytest.fixture
def auth(registry, codec, users, mailer, settings):
    return AuthService(registry, codec, users, mailer, settings)


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

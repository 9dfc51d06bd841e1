import asyncio
import inspect
import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from types import SimpleNamespace

# Temp directory and env must exist before anything initializes the runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="ssoidp_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("SERVER_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("ISSUER", "http://testserver")
# Port 1 is never listening, so the runtime falls back to in-process buckets
os.environ.setdefault("REDIS_URL", "redis://127.0.0.1:1/0")
os.environ.setdefault("RATE_LIMIT_STRICT_LIMIT", "50")
os.environ.setdefault("PIN_STEP_UP_ENABLED", "false")

import pytest  # noqa: E402
from argon2 import PasswordHasher, Type  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from ssoidp.app import create_app  # noqa: E402
from ssoidp.service.audit import AuditLogger  # noqa: E402
from ssoidp.service.auth import AuthService  # noqa: E402
from ssoidp.service.email import EmailService  # noqa: E402
from ssoidp.service.errors import ValidationError  # noqa: E402
from ssoidp.service.linking import AccountLinker  # noqa: E402
from ssoidp.service.oauth import ClientRegistry, OAuthEngine  # noqa: E402
from ssoidp.service.passwordless import (  # noqa: E402
    MagicLinkIssuer,
    PinChallengeIssuer,
    StepUpPolicy,
)
from ssoidp.service.permissions import AppPermissionService  # noqa: E402
from ssoidp.service.result import Result  # noqa: E402
from ssoidp.service.runtime import get_runtime, reset_runtime_for_tests  # noqa: E402
from ssoidp.service.sessions import CredentialStore  # noqa: E402
from ssoidp.service.signing import TokenSigner  # noqa: E402
from ssoidp.storage.memory import MemoryStore  # noqa: E402

TEST_SECRET = "unit-test-secret"


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime | None = None):
        # Starts at wall time so JWT exp checks (which use the real clock) still pass
        self.now = start or datetime.now(timezone.utc).replace(microsecond=0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingEmail(EmailService):
    """Email service that keeps every message instead of sending it."""

    def __init__(self):
        super().__init__(
            lambda: Result.failure(ValidationError("email delivery is not configured"), "not_configured"),
            base_url="http://testserver",
        )
        self.outbox = []

    async def send_magic_link(self, to, token, *, ttl_minutes):
        self.outbox.append({"to": to, "kind": "magic_link", "token": token})
        return None

    async def send_password_reset(self, to, token, *, ttl_minutes):
        self.outbox.append({"to": to, "kind": "password_reset", "token": token})
        return None

    async def send_password_link(self, to, token, *, ttl_minutes):
        self.outbox.append({"to": to, "kind": "password_link", "token": token})
        return None

    async def send_email_verification(self, to, token, *, ttl_minutes):
        self.outbox.append({"to": to, "kind": "verify_email", "token": token})
        return None

    async def send_pin(self, to, pin, *, ttl_seconds):
        self.outbox.append({"to": to, "kind": "pin", "pin": pin})
        return None

    def last(self, kind):
        return next(m for m in reversed(self.outbox) if m.get("kind") == kind)


def fast_hasher() -> PasswordHasher:
    return PasswordHasher(time_cost=1, memory_cost=1024, parallelism=1, type=Type.ID)


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path, monkeypatch):
    # Fresh state directory per test; the memory store reloads whatever it finds there
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path / "shared"))
    reset_runtime_for_tests()
    yield


@pytest.fixture
def api():
    """Test client primed with a CSRF cookie and the matching header."""
    client = TestClient(create_app())
    token = client.get("/v1/auth/csrf").json()["data"]["csrf_token"]
    client.headers["X-CSRF-Token"] = token
    return client


@pytest.fixture
def outbox(monkeypatch):
    """Capture every link and PIN the live runtime mails out."""
    sent = []
    email = get_runtime().email

    async def send_magic_link(to, token, *, ttl_minutes):
        sent.append({"to": to, "kind": "magic_link", "token": token})

    async def send_password_reset(to, token, *, ttl_minutes):
        sent.append({"to": to, "kind": "password_reset", "token": token})

    async def send_password_link(to, token, *, ttl_minutes):
        sent.append({"to": to, "kind": "password_link", "token": token})

    async def send_email_verification(to, token, *, ttl_minutes):
        sent.append({"to": to, "kind": "verify_email", "token": token})

    async def send_pin(to, pin, *, ttl_seconds):
        sent.append({"to": to, "kind": "pin", "pin": pin})

    monkeypatch.setattr(email, "send_magic_link", send_magic_link)
    monkeypatch.setattr(email, "send_password_reset", send_password_reset)
    monkeypatch.setattr(email, "send_password_link", send_password_link)
    monkeypatch.setattr(email, "send_email_verification", send_email_verification)
    monkeypatch.setattr(email, "send_pin", send_pin)
    return sent


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def audit(memory_store):
    return AuditLogger(memory_store)


@pytest.fixture
def signer(tmp_path):
    return TokenSigner.load_or_create(None, str(tmp_path), issuer="https://idp.example.com")


@pytest.fixture
def services(memory_store, audit, signer, clock):
    """Services wired the way the runtime wires them, on a frozen clock."""
    hasher = fast_hasher()
    step_up_flag = {"enabled": False, "decide": None}
    email = RecordingEmail()
    credentials = CredentialStore(memory_store, ttl_minutes=60, clock=clock)
    linker = AccountLinker(memory_store, audit)
    clients = ClientRegistry(memory_store, audit, hasher)
    oauth = OAuthEngine(memory_store, clients, signer, audit, clock=clock)
    magic_links = MagicLinkIssuer(memory_store, TEST_SECRET, ttl_minutes=15, clock=clock)
    pins = PinChallengeIssuer(memory_store, TEST_SECRET, ttl_seconds=300, max_attempts=3, clock=clock)
    step_up = StepUpPolicy(
        enabled=lambda: step_up_flag["enabled"],
        decide=lambda user: step_up_flag["decide"](user) if step_up_flag["decide"] else True,
    )
    auth = AuthService(
        memory_store,
        credentials,
        linker,
        magic_links,
        pins,
        step_up,
        email,
        audit,
        hasher=hasher,
        clock=clock,
    )
    return SimpleNamespace(
        store=memory_store,
        audit=audit,
        hasher=hasher,
        email=email,
        credentials=credentials,
        linker=linker,
        clients=clients,
        oauth=oauth,
        magic_links=magic_links,
        pins=pins,
        step_up=step_up,
        step_up_flag=step_up_flag,
        auth=auth,
        permissions=AppPermissionService(memory_store, audit, clock=clock),
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

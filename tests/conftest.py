import asyncio
import inspect
import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="oceanblog_test_")
os.environ.setdefault("DATA_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-access-secret-for-testing-only-do-not-use-in-production")
os.environ.setdefault("JWT_REFRESH_SECRET", "test-refresh-secret-for-testing-only-do-not-use-in-production")
os.environ.setdefault("EMAIL_ENABLED", "true")
os.environ.pop("SMTP_HOST", None)
os.environ.pop("REDIS_URL", None)
# generous budgets so functional tests never trip the limiter
for _limit_env in (
    "LOGIN_RATE_LIMIT_PER_MINUTE",
    "SIGNUP_RATE_LIMIT_PER_MINUTE",
    "REFRESH_RATE_LIMIT_PER_MINUTE",
    "RESET_RATE_LIMIT_PER_MINUTE",
):
    os.environ.setdefault(_limit_env, "1000")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from oceanblog.config import Settings  # noqa: E402
from oceanblog.service.runtime import reset_runtime_for_tests  # noqa: E402

STRONG_PASSWORD = "Ocean!Blue42"


class FakeClock:
    """Settable UTC clock for lockout and expiry tests."""

    def __init__(self, start: datetime | None = None):
        self.current = start or datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current += timedelta(**kwargs)
        return self.current


class RecordingEmail:
    """Stands in for EmailService; keeps what would have been sent."""

    def __init__(self, *, deliver: bool = True):
        self.deliver = deliver
        self.enabled = True
        self.mode = "log"
        self.sent: list[tuple[str, str, dict]] = []

    def _record(self, kind: str, to_email: str, **payload) -> bool:
        self.sent.append((kind, to_email, payload))
        return self.deliver

    def send_welcome(self, to_email: str, name: str) -> bool:
        return self._record("welcome", to_email, name=name)

    def send_email_verification(self, to_email: str, token: str, *, expires_hours: int = 24) -> bool:
        return self._record("verification", to_email, token=token, expires_hours=expires_hours)

    def send_password_reset(self, to_email: str, token: str, *, expires_minutes: int = 60) -> bool:
        return self._record("password_reset", to_email, token=token, expires_minutes=expires_minutes)

    def last(self, kind: str) -> dict:
        for sent_kind, _, payload in reversed(self.sent):
            if sent_kind == kind:
                return payload
        raise AssertionError(f"no {kind} email recorded")


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings():
    return Settings(
        jwt_secret="unit-access-secret-0123456789abcdef0123456789",
        jwt_refresh_secret="unit-refresh-secret-0123456789abcdef012345678",
        access_token_ttl_minutes=15,
        refresh_token_ttl_minutes=60 * 24,
        data_root=_test_tmp_dir,
    )


@pytest.fixture
def clock():
    return FakeClock()


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

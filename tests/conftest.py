import asyncio
import inspect
import os
import sys
from pathlib import Path
from typing import List, Tuple

# Environment defaults before any import that might read settings
TEST_JWT_SECRET = "test-secret-key-for-blubbai-tests-only-never-use-in-production-0123456789"
os.environ.setdefault("JWT_SECRET", TEST_JWT_SECRET)
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402
from argon2 import PasswordHasher, Type  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from blubbai.app import create_app  # noqa: E402
from blubbai.config import Settings, reset_settings_cache  # noqa: E402
from blubbai.service.email import EmailService  # noqa: E402
from blubbai.service.passwords import PasswordService  # noqa: E402
from blubbai.service.runtime import Runtime  # noqa: E402
from blubbai.service.sms import SmsService  # noqa: E402
from blubbai.storage.memory import MemoryStore  # noqa: E402
from blubbai.storage.models import PhoneNumber  # noqa: E402

# 2023-11-14T22:13:20Z
CLOCK_START = 1_700_000_000.0


class FakeClock:
    """Settable epoch-seconds clock shared by the codec and the TOTP engine."""

    def __init__(self, start: float = CLOCK_START) -> None:
        self.current = start

    def __call__(self) -> float:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += seconds


class FakeValidator:
    def __init__(self) -> None:
        self.email_ok = True
        self.phone_ok = True
        self.emails: List[str] = []
        self.phones: List[PhoneNumber] = []

    async def validate_email(self, email: str) -> bool:
        self.emails.append(email)
        return self.email_ok

    async def validate_phone(self, phone: PhoneNumber) -> bool:
        self.phones.append(phone)
        return self.phone_ok


class RecordingEmail(EmailService):
    """Email sink that keeps messages in memory instead of talking SMTP."""

    def __init__(self) -> None:
        super().__init__(platform_name="BlubbAI")
        self.ok = True
        self.verifications: List[Tuple[str, str, str]] = []
        self.codes: List[Tuple[str, str]] = []

    def send_email_verification(self, to_email: str, name: str, link: str) -> bool:
        self.verifications.append((to_email, name, link))
        return self.ok

    def send_two_factor_code(self, to_email: str, code: str) -> bool:
        self.codes.append((to_email, code))
        return self.ok


class RecordingSms(SmsService):
    def __init__(self) -> None:
        super().__init__(platform_name="BlubbAI")
        self.ok = True
        self.codes: List[Tuple[str, str]] = []

    async def send_two_factor_code(self, to_number: str, code: str) -> bool:
        self.codes.append((to_number, code))
        return self.ok


@pytest.fixture(autouse=True)
def reset_settings_state():
    reset_settings_cache()
    yield
    reset_settings_cache()


@pytest.fixture
def settings():
    """Create test settings."""
    return Settings(
        jwt_secret=TEST_JWT_SECRET,
        platform_name="BlubbAI",
        app_base_url="http://testserver",
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def validator():
    return FakeValidator()


@pytest.fixture
def mail():
    return RecordingEmail()


@pytest.fixture
def sms():
    return RecordingSms()


@pytest.fixture(scope="session")
def passwords():
    """argon2id with a small work factor so the suite stays fast."""
    return PasswordService(
        PasswordHasher(type=Type.ID, time_cost=1, memory_cost=1024, parallelism=1)
    )


@pytest.fixture
def runtime(settings, store, validator, mail, sms, passwords, clock):
    return Runtime(
        settings,
        store=store,
        validator=validator,
        email=mail,
        sms=sms,
        passwords=passwords,
        now=clock,
    )


@pytest.fixture
def client(runtime):
    """Create a test client for the API."""
    return TestClient(create_app(runtime))


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

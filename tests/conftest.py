"""
Shared fixtures.

The database URL is pointed at a throwaway SQLite file before the app is
imported, and every test gets its own code store and a fake clock.
"""

import os
import tempfile
from typing import Generator

import pytest
from fastapi.testclient import TestClient

_db_fd, _db_path = tempfile.mkstemp(suffix=".db")
os.close(_db_fd)
os.environ["DATABASE_URL"] = f"sqlite:///{_db_path}"
os.environ.pop("REDIS_URL", None)

from database import Base, engine  # noqa: E402
from routers.auth import get_deliver, get_otp_manager  # noqa: E402
from utils.otp_service import CodeLifecycleManager  # noqa: E402
from utils.otp_store import InMemoryCodeStore  # noqa: E402


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingDelivery:
    """Stands in for the email dispatcher and remembers the last code per address."""

    def __init__(self):
        self.sent = []
        self.fail_with = None

    def __call__(self, to_email, code, purpose):
        if self.fail_with is not None:
            raise self.fail_with
        self.sent.append((to_email, code, purpose))

    def last_code(self, to_email=None):
        for email, code, _ in reversed(self.sent):
            if to_email is None or email == to_email:
                return code
        return None


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> InMemoryCodeStore:
    return InMemoryCodeStore()


@pytest.fixture
def manager(store, clock) -> CodeLifecycleManager:
    return CodeLifecycleManager(store, ttl_seconds=600, clock=clock)


@pytest.fixture
def delivery() -> RecordingDelivery:
    return RecordingDelivery()


@pytest.fixture(scope="session")
def test_app():
    from main import app

    return app


@pytest.fixture
def client(test_app, manager, delivery) -> Generator[TestClient, None, None]:
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)

    test_app.dependency_overrides[get_otp_manager] = lambda: manager
    test_app.dependency_overrides[get_deliver] = lambda: delivery
    with TestClient(test_app) as test_client:
        yield test_client
    test_app.dependency_overrides.clear()

"""
Pytest configuration and shared fixtures.

Test settings are applied before any wachat import so the cached
settings (and the engine built from them) point at the test database.
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_wachat.db")
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("WEBHOOK_SECRET", "testsecret")
os.environ.setdefault("WEBHOOK_VERIFY_TOKEN", "verify-me")
os.environ.setdefault("BUSINESS_PHONE_NUMBER", "918329446654")

import pytest

# Clear settings cache before any app imports to ensure test env vars are used
from wachat.config import get_settings
get_settings.cache_clear()

from fastapi.testclient import TestClient

from wachat import models  # noqa: F401
from wachat import user_store
from wachat.main import app
from wachat.storage import Base, SessionLocal, engine

ALICE = "919876543210"
BOB = "14155550100"
CAROL = "447700900123"


class FakeWebSocket:
    """Records what the hub sends; enough of the WebSocket surface for PresenceHub."""

    def __init__(self, fail: bool = False):
        self.sent = []
        self.accepted = False
        self.closed = False
        self.fail = fail

    async def accept(self):
        self.accepted = True

    async def send_json(self, message):
        if self.fail:
            raise RuntimeError("socket is closed")
        self.sent.append(message)

    async def close(self, code: int = 1000):
        self.closed = True

    def events(self, name=None):
        return [m for m in self.sent if name is None or m["event"] == name]


@pytest.fixture(scope="function")
def schema():
    """Fresh tables for each test."""
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def client(schema):
    """Test client; entering it runs the lifespan so app.state is populated."""
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture(scope="function")
def db(schema):
    session = SessionLocal()
    yield session
    session.close()


@pytest.fixture
def make_user(schema):
    def _make(wa_id: str, name: str = None):
        with SessionLocal() as session:
            user = user_store.upsert_user(session, wa_id, name=name or f"User {wa_id[-4:]}")
            return user.wa_id
    return _make


@pytest.fixture
def users(make_user):
    """Alice, Bob and Carol, registered."""
    make_user(ALICE, "Alice")
    make_user(BOB, "Bob")
    make_user(CAROL, "Carol")
    return ALICE, BOB, CAROL

"""
Pytest fixtures for LinkPulse tests.
Provides test database, mock Redis, a recording webhook dispatcher and a
FastAPI test client.
"""

import os
import pytest
from unittest.mock import patch
import sys
from pathlib import Path

# Keep tests off the developer database, any real Redis and the geo API
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("USE_REDIS", "false")
os.environ.setdefault("IP_HASH_SALT", "test-salt")
os.environ.setdefault("GEO_PROVIDER", "none")

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from fastapi.testclient import TestClient


CHROME_DESKTOP_UA = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
IPHONE_UA = (
    "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.0 Mobile/15E148 Safari/604.1"
)
IPAD_UA = (
    "Mozilla/5.0 (iPad; CPU OS 16_0 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/16.0 Mobile/15E148 Safari/604.1"
)
GOOGLEBOT_UA = "Mozilla/5.0 (compatible; Googlebot/2.1; +http://www.google.com/bot.html)"


def browser_headers(user_agent: str = CHROME_DESKTOP_UA, **extra) -> dict:
    """Headers a real browser would send."""
    headers = {
        "user-agent": user_agent,
        "accept": "text/html,application/xhtml+xml",
        "accept-language": "en-US,en;q=0.9",
        "accept-encoding": "gzip, deflate, br",
    }
    headers.update(extra)
    return headers


class MockRedisService:
    """Mock Redis service for testing."""

    _visitors = {}

    @classmethod
    def reset(cls):
        cls._visitors = {}

    @staticmethod
    def is_known_visitor(link_id: int, ip_hash: str) -> bool:
        return ip_hash in MockRedisService._visitors.get(link_id, set())

    @staticmethod
    def remember_visitor(link_id: int, ip_hash: str) -> bool:
        MockRedisService._visitors.setdefault(link_id, set()).add(ip_hash)
        return True

    @staticmethod
    def health_check() -> bool:
        return True


class RecordingDispatcher:
    """Webhook dispatcher that only records what it was asked to send."""

    def __init__(self):
        self.events = []

    def trigger(self, owner_id, event, data):
        self.events.append((owner_id, event, data))

    def names(self):
        return [event for _, event, _ in self.events]


class FakeClock:
    """Manually advanced monotonic clock (seconds)."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(autouse=True)
def mock_redis():
    """Automatically mock Redis for all tests."""
    MockRedisService.reset()
    with patch("linkpulse.redis_client.RedisService", MockRedisService):
        with patch("linkpulse.services.RedisService", MockRedisService):
            with patch("linkpulse.main.RedisService", MockRedisService):
                yield MockRedisService


@pytest.fixture(autouse=True)
def reset_fraud_state():
    """The shared detector must not leak velocity state between tests."""
    from linkpulse.fraud import fraud_detector

    fraud_detector.reset()
    yield
    fraud_detector.reset()


@pytest.fixture(scope="function")
def db_engine():
    """SQLite in-memory engine shared across threads."""
    from linkpulse.database import Base

    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool
    )
    Base.metadata.create_all(bind=engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def session_factory(db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture(scope="function")
def test_db(session_factory):
    """Create a test database session."""
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def webhooks():
    return RecordingDispatcher()


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def make_link(test_db):
    """Factory that stores a link and optionally overrides its state and counters."""
    from linkpulse.models import Link
    from linkpulse.services import LinkService

    def _make(code="promo", target="https://example.com/landing", owner_id="owner-1",
              rules=None, scripts=None, limits=None, **columns):
        link, error = LinkService.create_link(
            test_db,
            short_code=code,
            target_url=target,
            owner_id=owner_id,
            rules=rules,
            scripts=scripts,
            limits=limits,
        )
        assert error is None, error
        if columns:
            test_db.query(Link).filter(Link.id == link.id).update(columns)
            test_db.commit()
            test_db.refresh(link)
        return link

    return _make


@pytest.fixture(scope="function")
def client(test_db, webhooks, mock_redis):
    """Create a FastAPI test client with mocked dependencies."""
    from linkpulse.main import app
    from linkpulse.database import get_db
    from linkpulse.handler import redirect_handler

    def override_get_db():
        try:
            yield test_db
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db

    with patch.object(redirect_handler, "webhooks", webhooks):
        with TestClient(app) as c:
            yield c

    app.dependency_overrides.clear()

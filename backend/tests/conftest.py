"""Shared pytest fixtures for test suite"""
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Generator
from unittest.mock import Mock, patch

import fakeredis
import fakeredis.aioredis
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Add backend directory to Python path
backend_dir = Path(__file__).parent.parent
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

# Settings are read at import time
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("MERGE_CALLBACK_SECRET", "test-callback-secret")
os.environ.setdefault("S3_BUCKET_NAME", "test-bucket")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_dummy")
os.environ.setdefault("STRIPE_PRICE_STARTER", "price_starter_test")
os.environ.setdefault("STRIPE_PRICE_PROFESSIONAL", "price_professional_test")
os.environ.setdefault("RUN_BACKGROUND_TASKS", "false")

from promoreel.core.config import settings
from promoreel.db import redis as redis_module
from promoreel.db.session import get_db
from promoreel.main import app
from promoreel.models import Base
from promoreel.models.user import User
from promoreel.api.videos import get_storage

CALLBACK_SECRET = "test-callback-secret"

# SQLite in-memory database for testing
TEST_DATABASE_URL = "sqlite:///:memory:"

# Create test engine with StaticPool for in-memory database
test_engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

# Create test session factory
TestSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)


@pytest.fixture(scope="function")
def db_session() -> Generator[Session, None, None]:
    """Create a fresh SQLite in-memory database session for each test"""
    Base.metadata.create_all(bind=test_engine)
    session = TestSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=test_engine)


@pytest.fixture(scope="function")
def redis_server():
    return fakeredis.FakeServer()


@pytest.fixture(scope="function")
def mock_redis(redis_server):
    """Mock Redis client using fakeredis"""
    fake_redis = fakeredis.FakeStrictRedis(server=redis_server, decode_responses=True)
    with patch.object(redis_module, "_client", fake_redis):
        yield fake_redis


@pytest.fixture(scope="function")
def mock_async_redis(redis_server, mock_redis):
    """Async fakeredis sharing data with ``mock_redis``"""
    fake_async = fakeredis.aioredis.FakeRedis(server=redis_server, decode_responses=True)
    with patch("promoreel.db.task_queue.get_async_redis_client", return_value=fake_async):
        yield fake_async


@pytest.fixture(scope="function", autouse=True)
def callback_secret():
    """Known merge callback secret for every test"""
    with patch.object(settings, "MERGE_CALLBACK_SECRET", CALLBACK_SECRET):
        yield CALLBACK_SECRET


class FakeStorage:
    """In-memory object storage"""

    def __init__(self):
        self.objects = {}
        self.uploaded = []
        self.download_failures = {}

    def upload(self, key, data, content_type):
        self.objects[key] = data
        return f"https://storage.test/{key}"

    def upload_file(self, local_path, key, content_type):
        self.objects[key] = Path(local_path).read_bytes()
        self.uploaded.append(key)
        return f"https://storage.test/{key}"

    def download_file(self, key, local_path):
        remaining = self.download_failures.get(key, 0)
        if remaining:
            self.download_failures[key] = remaining - 1
            raise ConnectionError(f"download of {key} interrupted")
        if key not in self.objects:
            raise FileNotFoundError(key)
        Path(local_path).parent.mkdir(parents=True, exist_ok=True)
        Path(local_path).write_bytes(self.objects[key])

    def list_prefix(self, prefix):
        return sorted(k for k in self.objects if k.startswith(prefix))

    def sign_for_playback(self, key, ttl_seconds=3600):
        return f"https://storage.test/{key}?signature=test&expires={ttl_seconds}"


@pytest.fixture(scope="function")
def fake_storage() -> FakeStorage:
    return FakeStorage()


@pytest.fixture(scope="function")
def client(db_session: Session, mock_redis, fake_storage) -> Generator[TestClient, None, None]:
    """FastAPI test client with test database and mocked Redis"""

    def override_get_db():
        try:
            yield db_session
        finally:
            pass  # Don't close session here, handled by fixture

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_storage] = lambda: fake_storage

    try:
        # Disable OpenTelemetry and real database setup in tests
        with patch("promoreel.main.initialize_otel", return_value=False):
            with patch("promoreel.main.setup_otel_logging", return_value=False):
                with patch("promoreel.main.instrument_sqlalchemy"):
                    with patch("promoreel.main.init_db"):
                        with patch.object(settings, "RUN_BACKGROUND_TASKS", False):
                            with TestClient(app) as test_client:
                                yield test_client
    finally:
        app.dependency_overrides.clear()


def make_user(db_session: Session, email: str, plan_tier: str = "starter", **credit_fields) -> User:
    now = datetime.now(timezone.utc)
    values = {
        "credits_allowed": 40,
        "credits_used": 0,
        "credits_allowed_veo": 20,
        "credits_used_veo": 0,
    }
    values.update(credit_fields)
    user = User(
        email=email,
        plan_tier=plan_tier,
        credit_reset_day=now.day,
        next_credit_reset=now + timedelta(days=30),
        **values
    )
    db_session.add(user)
    db_session.commit()
    db_session.refresh(user)
    return user


@pytest.fixture(scope="function")
def test_user(db_session: Session) -> User:
    """Starter plan user with full credit in both pools"""
    return make_user(db_session, "creator@example.com")


@pytest.fixture(scope="function")
def test_user_2(db_session: Session) -> User:
    """Second user for ownership tests"""
    return make_user(db_session, "other@example.com")


@pytest.fixture(scope="function")
def authenticated_client(client: TestClient, test_user: User, mock_redis) -> TestClient:
    """Client with an authenticated user session"""
    session_id = "test-session-id"
    mock_redis.setex(f"session:{session_id}", 2592000, str(test_user.id))
    client.cookies.set("session_id", session_id)
    return client


@pytest.fixture(scope="function", autouse=True)
def auto_mock_stripe():
    """Automatically mock Stripe for all tests so nothing reaches the real API"""
    with patch("promoreel.services.billing_service.stripe") as mock_stripe_module:
        mock_stripe_module.checkout.Session.create = Mock(return_value=Mock(
            id="cs_test123",
            url="https://checkout.stripe.com/test"
        ))
        mock_stripe_module.checkout.Session.retrieve = Mock(return_value=Mock(
            id="cs_test123",
            customer="cus_test123",
            payment_status="paid",
            metadata={"plan_tier": "professional", "email": "creator@example.com"}
        ))
        yield mock_stripe_module

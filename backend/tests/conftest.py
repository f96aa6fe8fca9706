"""Shared pytest fixtures for test suite"""
import os
import sys
from pathlib import Path
from typing import Generator
from unittest.mock import Mock, patch

import fakeredis
import pytest
import stripe as real_stripe
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Settings are read at import time
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_dummy")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_dummy")
os.environ.setdefault("ENVIRONMENT", "development")

# Add backend directory to Python path
backend_dir = Path(__file__).parent.parent
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

from ideaverse.main import app
from ideaverse.db.session import get_db
from ideaverse.db import redis as redis_module
from ideaverse.models import Base
from ideaverse.models.user import User
from ideaverse.schemas.generations import GameIdea
from ideaverse.services.auth_service import hash_password
from ideaverse.services.entitlement_service import get_or_create_entitlement


# SQLite in-memory database for testing
TEST_DATABASE_URL = "sqlite:///:memory:"

test_engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

TestSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)

TEST_PASSWORD = "TestPassword123!"


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
def mock_redis():
    """Replace the lazy Redis client with fakeredis"""
    fake_redis = fakeredis.FakeStrictRedis(decode_responses=True)
    with patch.object(redis_module, '_client', fake_redis):
        yield fake_redis


@pytest.fixture(scope="function")
def client(db_session: Session, mock_redis) -> Generator[TestClient, None, None]:
    """FastAPI test client with test database and mocked Redis"""

    def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db

    try:
        with patch('ideaverse.main.initialize_otel', return_value=False):
            with patch('ideaverse.main.instrument_sqlalchemy'):
                with patch('ideaverse.main.init_db'):
                    with TestClient(app) as test_client:
                        yield test_client
    finally:
        app.dependency_overrides.clear()


def make_user(db: Session, email: str) -> User:
    user = User(email=email, password_hash=hash_password(TEST_PASSWORD))
    db.add(user)
    db.commit()
    db.refresh(user)
    get_or_create_entitlement(user.id, db)
    return user


@pytest.fixture(scope="function")
def test_user(db_session: Session) -> User:
    return make_user(db_session, "player@example.com")


@pytest.fixture(scope="function")
def test_user_2(db_session: Session) -> User:
    """Second user for ownership tests"""
    return make_user(db_session, "player2@example.com")


@pytest.fixture(scope="function")
def authenticated_client(client: TestClient, test_user: User) -> TestClient:
    """Client logged in as test_user"""
    response = client.post(
        "/api/auth/login",
        json={"email": test_user.email, "password": TEST_PASSWORD}
    )
    assert response.status_code == 200
    return client


def make_idea(**overrides) -> GameIdea:
    data = {
        "title": "Clockwork Tides",
        "description": "Rewind the ocean to solve tidal puzzles.",
        "category": "Video Game",
        "genre": "Puzzle",
        "viability": 8,
        "originality": 9,
        "market_appeal": 7,
    }
    data.update(overrides)
    return GameIdea(**data)


@pytest.fixture(scope="function")
def fake_generator():
    """Generator stand-in that always returns the same idea"""
    return Mock(return_value=make_idea())


@pytest.fixture(scope="function", autouse=True)
def auto_mock_stripe():
    """Automatically mock Stripe for all tests to prevent real API calls"""
    with patch('ideaverse.services.stripe_service.stripe') as mock_stripe_module:
        # Real exception classes so except clauses keep working
        mock_stripe_module.error = real_stripe.error

        mock_stripe_module.checkout.Session.create = Mock(return_value=Mock(
            id="cs_test123",
            url="https://checkout.stripe.com/test"
        ))
        mock_stripe_module.checkout.Session.retrieve = Mock(return_value={
            "id": "cs_test123",
            "payment_status": "unpaid",
            "metadata": {},
        })
        mock_stripe_module.Subscription.cancel = Mock(return_value=Mock(id="sub_test123", status="canceled"))
        mock_stripe_module.Webhook.construct_event = Mock(return_value={
            "id": "evt_test123",
            "type": "customer.created",
            "data": {"object": {}}
        })

        yield mock_stripe_module

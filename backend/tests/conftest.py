"""Shared pytest fixtures for test suite"""
import os
import sys
from decimal import Decimal
from pathlib import Path
from typing import Generator
from unittest.mock import Mock, patch

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool
import fakeredis

# Settings are read at import time
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("FANBASES_API_KEY", "test_api_key")
os.environ.setdefault("FANBASES_WEBHOOK_SECRET", "whsec_test_secret")

# Add backend directory to Python path
backend_dir = Path(__file__).parent.parent
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

from paygate.main import app
from paygate.db.session import get_db
from paygate.db import redis as redis_module
from paygate.models import Base, CatalogProduct, Module
from paygate.models.user import User
from paygate.services.catalog import CatalogEntry, InMemoryProductCatalog, SqlProductCatalog
from paygate.services.fanbases_client import (
    ChargeResponse, CheckoutSessionResponse, FanbasesClient, get_fanbases_client
)


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

TEST_SESSION_ID = "test-session-id"

CATALOG_ENTRIES = [
    CatalogEntry("prod_module_x", "module", "module-x", 4900, "Module X"),
    CatalogEntry("prod_tier1", "subscription", "tier1", 2900, "Tier 1"),
    CatalogEntry("prod_tier2", "subscription", "tier2", 9900, "Tier 2"),
    CatalogEntry("prod_2500", "topup", "2500_credits", 2500, "2,500 credits"),
    CatalogEntry("prod_card", "card_setup", "card_setup_fee", 100, "Card setup"),
]


@pytest.fixture(scope="function")
def db_session() -> Generator[Session, None, None]:
    """Create a fresh SQLite in-memory database session for each test"""
    # Create all tables
    Base.metadata.create_all(bind=test_engine)

    # Create session
    session = TestSessionLocal()

    try:
        yield session
    finally:
        session.close()
        # Drop all tables after test
        Base.metadata.drop_all(bind=test_engine)


@pytest.fixture(scope="function")
def mock_redis():
    """Mock Redis client using fakeredis"""
    fake_redis = fakeredis.FakeStrictRedis(decode_responses=True)
    with patch.object(redis_module, "_client", fake_redis):
        yield fake_redis


@pytest.fixture(scope="function")
def mock_fanbases():
    """Fanbases client double; no network calls leave the test"""
    fanbases = Mock(spec=FanbasesClient)
    fanbases.create_checkout_session.return_value = CheckoutSessionResponse(
        checkout_session_id="cs_test123",
        payment_link="https://pay.fanbasis.com/cs_test123"
    )
    fanbases.charge_customer.return_value = ChargeResponse(
        charge_id="ch_test123",
        raw={"status": "success", "data": {"charge_id": "ch_test123"}}
    )
    fanbases.list_payment_methods.return_value = []
    fanbases.find_customer_by_email.return_value = None
    return fanbases


@pytest.fixture(scope="function")
def client(db_session: Session, mock_redis, mock_fanbases) -> Generator[TestClient, None, None]:
    """FastAPI test client with test database, mocked Redis and mocked Fanbases"""

    # Override get_db dependency to use test database
    def override_get_db():
        try:
            yield db_session
        finally:
            pass  # Don't close session here, handled by fixture

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_fanbases_client] = lambda: mock_fanbases

    try:
        # Disable OpenTelemetry instrumentation and schema creation in tests
        with patch('paygate.core.otel.initialize_otel', return_value=False):
            with patch('paygate.main.init_db'):
                with TestClient(app) as test_client:
                    yield test_client
    finally:
        # Cleanup - always clear overrides
        app.dependency_overrides.clear()


@pytest.fixture(scope="function")
def test_user(db_session: Session) -> User:
    """A user with no purchases, no subscription and no trial"""
    user = User(id="user-1", email="buyer@example.com", name="Test Buyer", credits=Decimal("0"))
    db_session.add(user)
    db_session.commit()
    db_session.refresh(user)
    return user


@pytest.fixture(scope="function")
def test_user_2(db_session: Session) -> User:
    """Second user for ownership tests"""
    user = User(id="user-2", email="other@example.com", name="Other Buyer", credits=Decimal("0"))
    db_session.add(user)
    db_session.commit()
    db_session.refresh(user)
    return user


@pytest.fixture(scope="function")
def catalog() -> InMemoryProductCatalog:
    """In-memory catalog for service-level tests"""
    return InMemoryProductCatalog(CATALOG_ENTRIES)


@pytest.fixture(scope="function")
def seeded_catalog(db_session: Session) -> SqlProductCatalog:
    """The same catalog stored in catalog_products, for API tests"""
    for entry in CATALOG_ENTRIES:
        db_session.add(CatalogProduct(
            processor_product_id=entry.processor_product_id,
            product_class=entry.product_class,
            internal_reference=entry.internal_reference,
            price_cents=entry.price_cents,
            title=entry.title
        ))
    db_session.commit()
    return SqlProductCatalog(db_session)


@pytest.fixture(scope="function")
def modules(db_session: Session):
    """One module per access type"""
    rows = [
        Module(id="intro", name="Intro", access_type="free", order_index=0),
        Module(id="advanced", name="Advanced", access_type="tier_required", required_tier="tier1", order_index=1),
        Module(id="module-x", name="Module X", access_type="purchase_required", internal_reference="module-x", order_index=2),
        Module(id="coaching", name="Coaching", access_type="book_a_call", booking_url="https://cal.example.com/book", order_index=3),
    ]
    db_session.add_all(rows)
    db_session.commit()
    return rows


@pytest.fixture(scope="function")
def authenticated_client(client: TestClient, test_user: User, mock_redis) -> TestClient:
    """Client carrying a session cookie that resolves to test_user"""
    mock_redis.setex(f"session:{TEST_SESSION_ID}", 2592000, test_user.id)
    client.cookies.set("session_id", TEST_SESSION_ID)
    return client

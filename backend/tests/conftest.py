"""Shared pytest fixtures for test suite"""
import os
import secrets
import sys
from pathlib import Path
from typing import Generator
from unittest.mock import patch

import fakeredis
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Settings are read at import time
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["ENABLE_SCHEDULER"] = "false"
os.environ["PROVIDER_NAME"] = "kiwify"
os.environ["PROVIDER_WEBHOOK_SECRET"] = "test_webhook_secret"
os.environ["OTEL_EXPORTER_OTLP_ENDPOINT"] = ""

# Add backend directory to Python path
backend_dir = Path(__file__).parent.parent
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

from payhook.main import app
from payhook.db import redis as redis_module
from payhook.db.session import get_db
from payhook.models import Base
from payhook.models.product_mapping import ProductKind, ProductMapping
from payhook.models.user import User
from payhook.tasks.dispatcher import ProcessingQueue

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
def session_factory(db_session):
    """Factory handing out extra sessions on the test database (what workers and jobs use)"""
    return TestSessionLocal


@pytest.fixture(scope="function")
def mock_redis():
    """Mock Redis client using fakeredis"""
    fake_redis = fakeredis.FakeStrictRedis(decode_responses=True)
    redis_module.set_redis_client(fake_redis)
    try:
        yield fake_redis
    finally:
        redis_module.set_redis_client(None)


@pytest.fixture(scope="function")
def client(db_session: Session, mock_redis) -> Generator[TestClient, None, None]:
    """FastAPI test client with test database, mocked Redis and a dispatcher that is drained by hand"""

    def override_get_db():
        try:
            yield db_session
        finally:
            pass  # Don't close session here, handled by fixture

    app.dependency_overrides[get_db] = override_get_db

    try:
        # Disable OpenTelemetry instrumentation in tests
        with patch('payhook.main.initialize_otel', return_value=False):
            with patch('payhook.main.setup_otel_logging', return_value=False):
                with patch('payhook.main.init_db'):
                    with TestClient(app) as test_client:
                        app.state.dispatcher = ProcessingQueue(session_factory=TestSessionLocal)
                        yield test_client
    finally:
        app.dependency_overrides.clear()


@pytest.fixture(scope="function")
def dispatcher(client) -> ProcessingQueue:
    """The queue the webhook route submits to; call drain_nowait() to process"""
    return app.state.dispatcher


def _create_user(db: Session, email: str, is_admin: bool = False, permissions=None) -> User:
    user = User(email=email, is_admin=is_admin, admin_permissions=permissions or [])
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture(scope="function")
def test_user(db_session: Session) -> User:
    """Customer whose email matches the default order payload"""
    return _create_user(db_session, "buyer@example.com")


@pytest.fixture(scope="function")
def finance_admin(db_session: Session) -> User:
    return _create_user(db_session, "finance@example.com", is_admin=True, permissions=["finance"])


@pytest.fixture(scope="function")
def plain_admin(db_session: Session) -> User:
    """Admin without the finance permission"""
    return _create_user(db_session, "ops@example.com", is_admin=True, permissions=["support"])


def _login(client: TestClient, redis_client, user: User) -> TestClient:
    session_id = secrets.token_urlsafe(16)
    redis_client.setex(f"session:{session_id}", 2592000, str(user.id))
    client.cookies.set("session_id", session_id)
    return client


@pytest.fixture(scope="function")
def finance_client(client: TestClient, mock_redis, finance_admin: User) -> TestClient:
    """Client with a finance admin session"""
    return _login(client, mock_redis, finance_admin)


@pytest.fixture(scope="function")
def login(client: TestClient, mock_redis):
    return lambda user: _login(client, mock_redis, user)


@pytest.fixture(scope="function")
def subscription_mapping(db_session: Session) -> ProductMapping:
    mapping = ProductMapping(
        provider_product_id="P1",
        product_name="Plano Basic",
        kind=ProductKind.SUBSCRIPTION,
        plan_id="plan-basic",
        quantity=1
    )
    db_session.add(mapping)
    db_session.commit()
    return mapping


@pytest.fixture(scope="function")
def addon_mapping(db_session: Session) -> ProductMapping:
    mapping = ProductMapping(
        provider_product_id="ADDON1",
        product_name="Marketplace Slot x2",
        kind=ProductKind.ADDON_MARKETPLACE,
        quantity=2
    )
    db_session.add(mapping)
    db_session.commit()
    return mapping


@pytest.fixture(scope="function")
def promo_mapping(db_session: Session) -> ProductMapping:
    mapping = ProductMapping(
        provider_product_id="PROMO50",
        product_name="Promo Tokens 50",
        kind=ProductKind.PROMO_TOKEN_PACK,
        bot_type="ARTS",
        quantity=50
    )
    db_session.add(mapping)
    db_session.commit()
    return mapping


def build_order(
    order_id: str = "ord_1",
    event_type: str = "order_approved",
    product_id: str = "P1",
    product_name: str = "Plano Basic",
    email: str = "buyer@example.com",
    cpf: str = "12345678900",
    charge_amount: float = 97.0,
    access_until: str = None,
    frequency: str = None
) -> dict:
    """Order object in the provider's nested envelope shape"""
    order = {
        "order_id": order_id,
        "order_ref": f"ref_{order_id}",
        "order_status": "paid",
        "webhook_event_type": event_type,
        "approved_date": "2026-10-01 12:00",
        "Product": {"product_id": product_id, "product_name": product_name},
        "Customer": {"full_name": "Test Buyer", "email": email, "CPF": cpf},
        "Commissions": {"charge_amount": charge_amount, "currency": "BRL"},
    }
    if access_until or frequency:
        order["Subscription"] = {
            "status": "active",
            "customer_access": {"has_access": True, "access_until": access_until},
            "plan": {"id": "plan_x", "name": "Basic", "frequency": frequency},
        }
    return order


@pytest.fixture
def make_order():
    return build_order

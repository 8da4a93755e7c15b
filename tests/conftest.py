import os

# Must be set before the application modules are imported
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_dummy")

from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from medspa_pos.auth import Principal, verify_token
from medspa_pos.database import Base, enable_sqlite_foreign_keys
from medspa_pos.main import app as fastapi_app
from medspa_pos.models import Client, Product, Service

SQLALCHEMY_DATABASE_URL = "sqlite:///./test_medspa_pos.db"
engine = create_engine(SQLALCHEMY_DATABASE_URL, connect_args={
                       "check_same_thread": False})
enable_sqlite_foreign_keys(engine)
TestingSessionLocal = sessionmaker(
    autocommit=False, autoflush=False, bind=engine)


@pytest.fixture(autouse=True)
def setup_db():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db():
    session = TestingSessionLocal()
    yield session
    session.close()


@pytest.fixture
def catalog(db):
    """One client, two services, two products (one retired)."""
    db.add_all([
        Client(id=1, name="Jane Doe", email="jane@example.com", user_id="client-user-1"),
        Client(id=2, name="John Roe", email="john@example.com", user_id="client-user-2"),
        Service(id=1, name="Facial", price=Decimal("150.00")),
        Service(id=2, name="Botox", price=Decimal("300.00")),
        Product(id=1, name="Vitamin C Serum", price=Decimal("45.50")),
        Product(id=2, name="Old Cleanser", price=Decimal("20.00"), active=False),
    ])
    db.commit()


@pytest.fixture
def principal():
    return Principal(subject="reception-1", role="reception")


@pytest.fixture
def client(monkeypatch, principal):
    # Point every session factory at the test database
    monkeypatch.setattr("medspa_pos.database.SessionLocal", TestingSessionLocal)
    monkeypatch.setattr("medspa_pos.main.SessionLocal", TestingSessionLocal)

    # Bypass token decoding unless a test wants the real thing
    if principal is not None:
        fastapi_app.dependency_overrides[verify_token] = lambda: principal

    with TestClient(fastapi_app) as c:
        yield c

    fastapi_app.dependency_overrides.clear()


@pytest.fixture
def login():
    """Switch the authenticated principal mid-test."""
    def _login(subject, role, client_id=None):
        fastapi_app.dependency_overrides[verify_token] = lambda: Principal(subject, role, client_id)
    return _login


def facial_checkout(**overrides):
    payload = {
        "client_id": 1,
        "amount": 150,
        "payment_method": "cash",
        "tips": 0,
        "notes": "POS transaction - 1 items",
        "cart_items": [
            {"id": 1, "type": "service", "name": "Facial", "price": 150, "quantity": 1},
        ],
    }
    payload.update(overrides)
    return payload


def mock_intent(mocker, intent_id="pi_test_123", client_secret="pi_test_123_secret",
                status="requires_payment_method", amount=15000, transaction_id=None):
    intent = mocker.Mock()
    intent.id = intent_id
    intent.client_secret = client_secret
    intent.status = status
    intent.amount = amount
    intent.metadata = {"transaction_id": transaction_id} if transaction_id else {}
    return intent


def succeeded_intent(mocker, created, intent_id="pi_integration_test_123", **kwargs):
    """A succeeded intent issued for the payment in a checkout response."""
    return mock_intent(mocker, intent_id, status="succeeded",
                       transaction_id=created["payment"]["transaction_id"], **kwargs)

"""Pytest configuration and fixtures."""

import json
import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("RESERVATION_SWEEP_ENABLED", "false")

from typing import Generator

import fakeredis
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from core.cache import ResponseCache
from core.database import Base, get_db
from core.security import BranchScope, create_access_token
from main import app
# Import all models to ensure they're registered with Base.metadata
from models.notification import Notification, NotificationRead  # noqa: F401
from models.order import Order, OrderItem  # noqa: F401
from models.payment import Payment, PaymentAudit  # noqa: F401
from models.table import RestaurantTable
from services.sequence import SequenceGenerator
from utils.broadcast import BroadcastBus

# Use in-memory SQLite for tests
TEST_DATABASE_URL = "sqlite:///:memory:"

TENANT = "tenant-1"
BRANCH = "branch-1"
SCOPE = BranchScope(TENANT, BRANCH)


class RecordingSubscriber:
    """Stands in for a websocket; keeps every message it is sent."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.messages = []

    async def send_text(self, data: str) -> None:
        if self.fail:
            raise ConnectionError("socket closed")
        self.messages.append(json.loads(data))

    @property
    def events(self):
        return [message["event"] for message in self.messages]

    def payloads(self, event):
        return [message["data"] for message in self.messages if message["event"] == event]


def token_for(role: str, user_id: str = None, tenant_id: str = TENANT, branch_id: str = BRANCH) -> str:
    return create_access_token({
        "sub": user_id or f"{role}-1",
        "tenant_id": tenant_id,
        "branch_id": branch_id,
        "role": role,
    })


def auth(role: str, **kwargs) -> dict:
    return {"Authorization": f"Bearer {token_for(role, **kwargs)}"}


def order_payload(table_id=None, order_type="dine-in", tax="25", discount="0", items=None):
    return {
        "order_type": order_type,
        "table_id": table_id,
        "customer_info": {"name": "Asha Rao", "phone": "9000000001"},
        "items": items if items is not None else [
            {"name": "Paneer Tikka", "price": "150", "quantity": 2},
            {"name": "Veg Biryani", "price": "200", "quantity": 1},
        ],
        "tax": tax,
        "discount": discount,
    }


@pytest.fixture(scope="function")
def db_engine():
    """Create a test database engine."""
    engine = create_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def session_factory(db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture(scope="function")
def db_session(session_factory) -> Generator[Session, None, None]:
    """Create a test database session."""
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def fake_redis():
    return fakeredis.FakeRedis(decode_responses=True)


@pytest.fixture
def subscriber():
    return RecordingSubscriber()


@pytest.fixture(scope="function")
def client(db_session: Session, session_factory, fake_redis, subscriber) -> Generator[TestClient, None, None]:
    """Create a test client with database, Redis and realtime overrides."""
    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.state.sequence = SequenceGenerator(fake_redis)
    app.state.bus = BroadcastBus()
    app.state.cache = ResponseCache()
    app.state.session_factory = session_factory
    app.state.bus.subscribe(SCOPE, subscriber)

    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def make_table(db_session: Session):
    def _make(number: int = 1, capacity: int = 4, tenant_id: str = TENANT, branch_id: str = BRANCH):
        table = RestaurantTable(tenant_id=tenant_id, branch_id=branch_id, number=number, capacity=capacity)
        db_session.add(table)
        db_session.commit()
        db_session.refresh(table)
        return table
    return _make


@pytest.fixture
def place_order(client: TestClient):
    def _place(table_id=None, role="waiter", **kwargs):
        order_type = "dine-in" if table_id is not None else "takeaway"
        response = client.post("/api/v1/orders", json=order_payload(table_id, order_type=order_type, **kwargs),
                               headers=auth(role))
        assert response.status_code == 201, response.text
        return response.json()["order"]
    return _place


@pytest.fixture
def advance(client: TestClient):
    """Walk an order through the kitchen up to ``target``."""
    def _advance(order_id: int, target: str = "ready"):
        for status in ("accepted", "preparing", "ready"):
            response = client.put(f"/api/v1/orders/{order_id}/status", json={"status": status},
                                  headers=auth("kitchen"))
            assert response.status_code == 200, response.text
            if status == target:
                return response.json()["order"]
    return _advance

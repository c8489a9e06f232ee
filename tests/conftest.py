import hashlib
import hmac
import json
import os
import time
from decimal import Decimal

# Must be set before app.db.session builds its engine
os.environ.setdefault("DATABASE_URL", "sqlite://")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.config import Environment, Settings, get_settings
from app.core.plans import DEFAULT_PLAN_PRICES
from app.db.base import Base
from app.db.session import get_db
from app.main import app

WHOP_SECRET = "whop_test_secret"
STRIPE_SECRET = "whsec_test_stripe"
ADMIN_EMAIL = "admin@algoedge.com"


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # pysqlite needs this to honour SAVEPOINT inside our transactions
    @event.listens_for(engine, "connect")
    def _connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin(conn):
        conn.exec_driver_sql("BEGIN")

    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def settings():
    return Settings(
        environment=Environment.PRODUCTION,
        stripe_webhook_secret=STRIPE_SECRET,
        whop_webhook_secret=WHOP_SECRET,
        admin_email=ADMIN_EMAIL,
        plan_prices=dict(DEFAULT_PLAN_PRICES),
        default_commission_rate=Decimal("10"),
    )


@pytest.fixture
def client(session_factory, settings):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_settings] = lambda: settings
    yield TestClient(app)
    app.dependency_overrides.clear()


def whop_headers(body: bytes, secret: str = WHOP_SECRET) -> dict:
    signature = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return {"whop-signature": f"sha256={signature}", "content-type": "application/json"}


def stripe_headers(body: bytes, secret: str = STRIPE_SECRET, timestamp: int = None) -> dict:
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{body.decode()}".encode()
    signature = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return {"stripe-signature": f"t={timestamp},v1={signature}", "content-type": "application/json"}


def whop_membership_event(
    event: str = "membership.went_valid",
    membership_id: str = "mem_123",
    email: str = "buyer@example.com",
    plan_name: str = "AlgoEdge Weekly",
    valid_until=None,
    username: str = "buyer",
) -> dict:
    data = {
        "id": membership_id,
        "user": {"id": "user_whop_1", "email": email, "username": username},
        "product": {"id": "prod_1", "name": "AlgoEdge"},
        "plan": {"id": "plan_1", "plan_name": plan_name},
    }
    if valid_until is not None:
        data["valid_until"] = valid_until
    return {"id": f"evt_{event}_{membership_id}", "event": event, "data": data}


def encode(payload: dict) -> bytes:
    return json.dumps(payload).encode()

import json
import time

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from shopline_payments.auth import verify_token
from shopline_payments.config import Settings, get_settings
from shopline_payments.database import Base, get_db
from shopline_payments.main import app as fastapi_app
from shopline_payments.models import Order
from shopline_payments.signature import compute_signature

# Setup test database
SQLALCHEMY_DATABASE_URL = "sqlite:///./test_temp.db"
engine = create_engine(SQLALCHEMY_DATABASE_URL, connect_args={
                       "check_same_thread": False})
TestingSessionLocal = sessionmaker(
    autocommit=False, autoflush=False, bind=engine)

SIGN_KEY = "test-sign-key"
API_KEY = "test-api-key"


@pytest.fixture(autouse=True)
def setup_db():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory():
    return TestingSessionLocal


@pytest.fixture
def db():
    session = TestingSessionLocal()
    yield session
    session.close()


@pytest.fixture
def settings():
    return Settings(
        environment="test",
        test_mode=True,
        sandbox_merchant_id="merchant-1",
        sandbox_api_key=API_KEY,
        sandbox_sign_key=SIGN_KEY,
        jwt_secret="test-jwt-secret",
    )


def override_get_db():
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def client(settings):
    fastapi_app.dependency_overrides[get_db] = override_get_db
    fastapi_app.dependency_overrides[get_settings] = lambda: settings
    # Mock auth verification
    fastapi_app.dependency_overrides[verify_token] = lambda: True
    with TestClient(fastapi_app) as c:
        yield c
    fastapi_app.dependency_overrides.clear()


@pytest.fixture
def make_order(db):
    def _make_order(order_id, status="pending", payment_method="shopline_credit", meta=None, **fields):
        order = Order(id=order_id, status=status, payment_method=payment_method, **fields)
        for key, value in (meta or {}).items():
            order.update_meta(key, value)
        db.add(order)
        db.commit()
        return order

    return _make_order


@pytest.fixture
def signed_headers():
    def _signed_headers(body, sign_key=SIGN_KEY, timestamp=None):
        if not isinstance(body, (bytes, str)):
            body = json.dumps(body)
        timestamp = str(timestamp if timestamp is not None else int(time.time() * 1000))
        return {
            "Content-Type": "application/json",
            "timestamp": timestamp,
            "apiVersion": "V1",
            "sign": compute_signature(body, timestamp, sign_key),
        }

    return _signed_headers

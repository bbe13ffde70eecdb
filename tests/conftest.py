"""
Pytest configuration and fixtures
"""
import pytest
import hashlib
import hmac
import json
import os
import sys
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Tuple
from unittest.mock import Mock

from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

# Add src to path
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Set test environment variables before importing
os.environ["ENV"] = "test"
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["LOG_LEVEL"] = "WARNING"  # Reduce log noise in tests
os.environ["ENABLE_SCHEDULER"] = "false"
os.environ["STRIPE_SECRET_KEY"] = "sk_test_stripe_key_for_tests"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_stripe_webhook_secret"
os.environ["PAYSTACK_SECRET_KEY"] = "sk_test_paystack_key_for_tests"
os.environ.pop("BILLING_JOBS_SECRET", None)

# Import after setting env vars
from creator_billing.db import models  # noqa: F401
from creator_billing.db.base import Base
from creator_billing.db.engine import build_engine, get_db
from creator_billing.db.models import Profile, ProfilePurpose, User
from creator_billing.billing_routes import get_paystack_gateway, get_stripe_gateway
from creator_billing.main import app
from creator_billing.services.billing_gateway import ChargeResult, PaystackGateway, StripeGateway
from creator_billing.services.metrics import get_metrics_collector

STRIPE_WEBHOOK_SECRET = os.environ["STRIPE_WEBHOOK_SECRET"]
PAYSTACK_SECRET_KEY = os.environ["PAYSTACK_SECRET_KEY"]

# Fixed clock used by services under test
NOW = datetime(2026, 3, 15, 12, 0, 0)


def sign_stripe_payload(payload: Dict[str, Any], secret: str = STRIPE_WEBHOOK_SECRET) -> Tuple[bytes, str]:
    """Serialize an event and build a Stripe-Signature header for it"""
    body = json.dumps(payload).encode()
    timestamp = int(time.time())
    signed = f"{timestamp}.{body.decode()}".encode()
    signature = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return body, f"t={timestamp},v1={signature}"


@pytest.fixture(scope="function")
def test_engine():
    """Fresh in-memory database per test"""
    engine = build_engine("sqlite:///:memory:")
    Base.metadata.create_all(bind=engine)

    yield engine

    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture(scope="function")
def db_session(test_engine):
    """Create a database session for each test"""
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)
    session = TestingSessionLocal()

    yield session

    session.close()


@pytest.fixture(scope="function")
def creator(db_session):
    """Creator with a personal USD profile and a Paystack payout subaccount"""
    user = User(email="creator@example.com", display_name="Test Creator")
    db_session.add(user)
    db_session.flush()
    db_session.add(Profile(
        user_id=user.id,
        purpose=ProfilePurpose.PERSONAL.value,
        currency="USD",
        country_code="US",
        paystack_subaccount_code="ACCT_creator01",
    ))
    db_session.commit()
    db_session.refresh(user)
    return user


@pytest.fixture(scope="function")
def subscriber(db_session):
    user = User(email="fan@example.com", display_name="Test Fan")
    db_session.add(user)
    db_session.commit()
    db_session.refresh(user)
    return user


@pytest.fixture
def stripe_gateway():
    return StripeGateway(os.environ["STRIPE_SECRET_KEY"], STRIPE_WEBHOOK_SECRET, is_test=True)


@pytest.fixture
def paystack_gateway():
    return PaystackGateway(PAYSTACK_SECRET_KEY, is_test=True)


@pytest.fixture
def mock_gateway():
    """Paystack-shaped gateway whose charge() succeeds unless reconfigured"""
    gateway = Mock()
    gateway.provider = "paystack"
    gateway.charge.return_value = ChargeResult(
        id="4099260516",
        status="success",
        reference="REC_test_reference",
        rotated_authorization=None,
    )
    return gateway


@pytest.fixture(scope="function")
def client(db_session, stripe_gateway, paystack_gateway):
    """Create test client bound to the per-test database"""
    def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_stripe_gateway] = lambda: stripe_gateway
    app.dependency_overrides[get_paystack_gateway] = lambda: paystack_gateway

    yield TestClient(app)

    app.dependency_overrides.clear()


@pytest.fixture(scope="function", autouse=True)
def reset_metrics():
    """Reset metrics before each test"""
    get_metrics_collector().reset()
    yield

# tierflow/conftest.py
import os

# Tests always run against an isolated in-memory database unless a dedicated
# TEST_DATABASE_URL is provided.
if not os.getenv("TEST_DATABASE_URL"):
    os.environ["DATABASE_URL"] = "sqlite+pysqlite:///:memory:"
os.environ["SKIP_ENV_VALIDATION"] = "1"
os.environ.setdefault("ADMIN_API_KEY", "test-admin-key")

import pytest
from unittest.mock import patch

from tierflow.core.admin_auth import AdminActor
from tierflow.core.database import init_engine, reset_database
from tierflow.core.idempotency import clear_all_keys
from tierflow.core.metrics import METRICS
from tierflow.features.plans.service import seed_plans
from tierflow.tests.mocks import FakeProcessor

ADMIN_KEY = os.environ["ADMIN_API_KEY"]

PRICE_ENV = {
    "STRIPE_PRICE_BASIC": "price_basic",
    "STRIPE_PRICE_PREMIUM": "price_premium",
    "STRIPE_PRICE_VIP_YEARLY": "price_vip_yearly",
}


@pytest.fixture(scope="session", autouse=True)
def engine():
    """One engine per session; StaticPool keeps the in-memory database alive."""
    return init_engine()


@pytest.fixture(autouse=True)
def fresh_db(engine):
    """Recreate all tables and seed the default catalog before each test."""
    reset_database()
    seed_plans()
    clear_all_keys()
    METRICS.reset()
    yield


@pytest.fixture
def processor(monkeypatch):
    """Fake payment processor wired in place of Stripe."""
    for name, value in PRICE_ENV.items():
        monkeypatch.setenv(name, value)
    fake = FakeProcessor()
    with patch("tierflow.features.billing.checkout.get_provider", return_value=fake):
        yield fake


@pytest.fixture
def admin_actor():
    return AdminActor(actor_id="admin:test", actor_display="Test Operator")


@pytest.fixture
def admin_headers():
    return {"X-Admin-Key": ADMIN_KEY, "X-Admin-Operator": "ops@example.com"}


@pytest.fixture
def client():
    from fastapi.testclient import TestClient
    from tierflow.main import app

    return TestClient(app)

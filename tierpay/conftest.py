# tierpay/conftest.py
import os

# Must be set before tierpay modules read settings
os.environ.setdefault("ENV", "test")
os.environ.setdefault("SKIP_ENV_VALIDATION", "1")
os.environ["TEST_DATABASE_URL"] = "sqlite://"
os.environ.setdefault("ADMIN_KEY", "test-admin-key")

import pytest

from tierpay.core.metrics import METRICS


@pytest.fixture(scope="session")
def admin_key():
    return os.environ["ADMIN_KEY"]


@pytest.fixture(scope="function", autouse=True)
def reset_db():
    """
    Fresh schema for every test.

    The test database is in-memory SQLite shared over one connection
    (StaticPool), so dropping and recreating is cheap.
    """
    from tierpay.core.database import reset_database

    reset_database()
    METRICS.reset()
    yield


@pytest.fixture
def seeded_tiers(reset_db):
    """Default catalogue: basic/pro, monthly 30d / yearly 365d."""
    from tierpay.features.tiers.service import seed_tiers

    seed_tiers()
    yield


@pytest.fixture
def make_user(reset_db):
    from tierpay.features.users.service import create_user

    def _make(user_id="user_alice", username="alice", email="alice@example.com", first_name="Alice"):
        return create_user(user_id, username, email, first_name)

    return _make


@pytest.fixture
def paystack():
    from tierpay.tests.mocks import FakeProvider

    return FakeProvider("paystack")


@pytest.fixture
def notifier():
    from tierpay.features.notifications.service import RecordingNotifier

    return RecordingNotifier()


@pytest.fixture
def orchestrator(paystack, notifier, seeded_tiers, make_user):
    """Orchestrator over the fake hosted gateway, with alice registered."""
    from tierpay.features.billing.service import SubscriptionOrchestrator

    make_user()
    return SubscriptionOrchestrator({"paystack": paystack}, notifier, default_provider="paystack")

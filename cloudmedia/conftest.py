# cloudmedia/conftest.py
import os
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import update

# HS256 verification for test tokens; must be set before settings are read
os.environ.setdefault("CLERK_SECRET_KEY", "test-secret-key")
os.environ.setdefault("ENV", "test")

from cloudmedia.core.config import settings
from cloudmedia.core.database import get_db_session, init_engine, organizations, reset_database, subscriptions
from cloudmedia.features.organizations.service import create_organization
from cloudmedia.features.plans.catalog import DEFAULT_CATALOG
from cloudmedia.tests.mocks import FakeBillingProvider, FakeEncoder


@pytest.fixture(scope="session", autouse=True)
def database(tmp_path_factory):
    """
    SQLite database file shared by the whole session.

    A file (not :memory:) so that every connection, including those opened by
    worker threads in the concurrency tests, sees the same data.
    """
    path = tmp_path_factory.mktemp("db") / "cloudmedia_test.db"
    engine = init_engine(os.getenv("TEST_DATABASE_URL") or f"sqlite:///{path}")
    yield engine
    engine.dispose()


@pytest.fixture(autouse=True)
def reset_db(database):
    """Fresh tables before each test."""
    reset_database()
    yield


@pytest.fixture(autouse=True)
def test_settings(monkeypatch):
    monkeypatch.setattr(settings, "CLERK_SECRET_KEY", "test-secret-key")
    monkeypatch.setattr(settings, "STRIPE_SECRET_KEY", None)
    monkeypatch.setattr(settings, "STRIPE_WEBHOOK_SECRET", None)
    yield settings


@pytest.fixture
def encoder():
    return FakeEncoder()


@pytest.fixture
def billing_provider():
    return FakeBillingProvider()


@pytest.fixture
def make_org():
    """
    Create an organization owned by `user_id`, optionally moved onto a paid plan.

    Returns the organization id.
    """

    def _make(
        user_id="user_owner",
        name="Acme Media",
        plan="free",
        video_credits=None,
        image_credits=None,
        stripe_subscription_id=None,
    ):
        created = create_organization(user_id, name, email=f"{user_id}@example.com")
        organization_id = created["organization"]["id"]
        if plan != "free" or video_credits is not None or image_credits is not None or stripe_subscription_id:
            definition = DEFAULT_CATALOG.get_plan(plan)
            now = datetime.now(timezone.utc)
            with get_db_session() as session:
                session.execute(
                    update(subscriptions)
                    .where(subscriptions.c.organization_id == organization_id)
                    .values(
                        plan=plan,
                        status="active",
                        stripe_customer_id="cus_test" if plan != "free" else None,
                        stripe_subscription_id=stripe_subscription_id or (f"sub_{organization_id[:8]}" if plan != "free" else None),
                        current_period_start=now - timedelta(days=1),
                        current_period_end=now + timedelta(days=29),
                        video_credits=definition.video_credits if video_credits is None else video_credits,
                        image_credits=definition.image_credits if image_credits is None else image_credits,
                        storage_limit=definition.storage_limit,
                    )
                )
                session.execute(
                    update(organizations).where(organizations.c.id == organization_id).values(plan=plan)
                )
        return organization_id

    return _make


@pytest.fixture
def client(encoder, billing_provider):
    """TestClient with the encode and payment collaborators replaced by fakes."""
    from fastapi.testclient import TestClient

    from cloudmedia.features.billing.service import get_billing_provider
    from cloudmedia.features.encoding.cloudinary_provider import get_encoder
    from cloudmedia.main import app

    app.dependency_overrides[get_encoder] = lambda: encoder
    app.dependency_overrides[get_billing_provider] = lambda: billing_provider
    test_client = TestClient(app, raise_server_exceptions=False)
    yield test_client
    app.dependency_overrides.clear()

"""Shared test fixtures for all test modules."""

import contextlib
import uuid
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest
from sqlalchemy import create_engine, text
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

import delegated_billing.models  # noqa: F401
from delegated_billing.core import database as db_module
from delegated_billing.core.database import Base
from delegated_billing.models.customer import Customer
from delegated_billing.models.delegation import Delegation
from delegated_billing.models.dunning_campaign import DunningCampaign
from delegated_billing.models.product import Product
from delegated_billing.models.subscription import Subscription, SubscriptionStatus
from delegated_billing.models.workspace import Workspace

# Create an in-memory SQLite engine with StaticPool so all connections
# share the same database state and there are no file-locking issues.
_test_engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
_TestSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=_test_engine)

# Well-known default workspace ID used across all tests
DEFAULT_WORKSPACE_ID = uuid.UUID("00000000-0000-0000-0000-000000000001")

NOW = datetime(2024, 1, 1, 0, 5, tzinfo=UTC)


def _seed_default_workspace(session: Session) -> None:
    """Insert a default workspace used by all tests."""
    workspace = session.query(Workspace).filter(Workspace.id == DEFAULT_WORKSPACE_ID).first()
    if workspace is None:
        workspace = Workspace(
            id=DEFAULT_WORKSPACE_ID,
            name="Acme",
            support_email="support@acme.test",
        )
        session.add(workspace)
        session.commit()


@pytest.fixture(autouse=True)
def setup_database():
    """Create tables before each test and truncate all data after.

    Patches the module-level engine and SessionLocal so all application code
    uses the in-memory test database. Clears data after each test.
    """
    original_engine = db_module.engine
    original_session = db_module.SessionLocal
    db_module.engine = _test_engine
    db_module.SessionLocal = _TestSessionLocal

    Base.metadata.create_all(bind=_test_engine)

    session = _TestSessionLocal()
    try:
        _seed_default_workspace(session)
    finally:
        session.close()

    yield
    with _test_engine.connect() as conn:
        conn.execute(text("PRAGMA foreign_keys = OFF"))
        for table in reversed(Base.metadata.sorted_tables):
            with contextlib.suppress(OperationalError):
                conn.execute(table.delete())
        conn.execute(text("PRAGMA foreign_keys = ON"))
        conn.commit()

    db_module.engine = original_engine
    db_module.SessionLocal = original_session


@pytest.fixture
def db_session():
    """Create a database session for testing."""
    db = _TestSessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def session_factory():
    """Session factory bound to the in-memory test database."""
    return _TestSessionLocal


@pytest.fixture
def default_workspace_id():
    """Return the default workspace ID for tests."""
    return DEFAULT_WORKSPACE_ID


def create_subscription(db: Session, **overrides: Any) -> Subscription:
    """Insert a subscription with its customer and product."""
    customer = Customer(
        workspace_id=DEFAULT_WORKSPACE_ID,
        name=overrides.pop("customer_name", "Jane Doe"),
        email=overrides.pop("customer_email", "jane@example.com"),
    )
    product = Product(
        workspace_id=DEFAULT_WORKSPACE_ID,
        name=overrides.pop("product_name", "Pro Plan"),
    )
    db.add_all([customer, product])
    db.flush()

    values: dict[str, Any] = {
        "workspace_id": DEFAULT_WORKSPACE_ID,
        "customer_id": customer.id,
        "product_id": product.id,
        "status": SubscriptionStatus.ACTIVE.value,
        "billing_interval": "monthly",
        "total_amount_in_cents": 2500,
        "current_period_start": NOW - timedelta(days=10),
        "current_period_end": NOW + timedelta(days=20),
    }
    values.update(overrides)
    subscription = Subscription(**values)
    db.add(subscription)
    db.commit()
    db.refresh(subscription)
    return subscription


def create_campaign(db: Session, subscription: Subscription, **overrides: Any) -> DunningCampaign:
    """Insert a dunning campaign for ``subscription``."""
    values: dict[str, Any] = {
        "workspace_id": DEFAULT_WORKSPACE_ID,
        "subscription_id": subscription.id,
        "retry_count": 3,
        "max_retries": 3,
        "original_amount_cents": 2500,
        "final_action": "cancel",
    }
    values.update(overrides)
    campaign = DunningCampaign(**values)
    db.add(campaign)
    db.commit()
    db.refresh(campaign)
    return campaign


def create_delegation(
    db: Session, subscription: Subscription, **overrides: Any
) -> Delegation:
    """Insert a delegation and link it to ``subscription``."""
    values: dict[str, Any] = {
        "workspace_id": DEFAULT_WORKSPACE_ID,
        "payload": {"delegate": "0xplatform", "signature": "0xsig"},
    }
    values.update(overrides)
    delegation = Delegation(**values)
    db.add(delegation)
    db.flush()
    subscription.delegation_id = delegation.id  # type: ignore[assignment]
    db.commit()
    db.refresh(delegation)
    return delegation

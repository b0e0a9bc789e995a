"""
Pytest configuration for studio billing tests.
Sets environment variables before any studio_billing import so Settings
picks them up, and builds a throwaway SQLite database per test.
"""

import os
import tempfile

# Must be set before any imports of studio_billing.config
_test_data_dir = tempfile.mkdtemp(prefix="studio_billing_test_")
os.environ["STUDIO_BILLING_SCHEDULER_ENABLED"] = "false"
os.environ["STUDIO_BILLING_LOG_DIR"] = os.path.join(_test_data_dir, "logs")
os.environ["STUDIO_BILLING_DATABASE_URL"] = f"sqlite:///{_test_data_dir}/unused.db"
os.environ.pop("DATABASE_URL", None)
os.environ.pop("STUDIO_BILLING_NOTIFICATION_WEBHOOK_URL", None)

from datetime import date
from decimal import Decimal

import pytest
from sqlmodel import Session

from studio_billing.core.database import build_engine, create_all
from studio_billing.models.billing import Client, Frequency, Package, Tenant
from studio_billing.models.schemas import SubscriptionCreate
from studio_billing.services.subscription_service import create_subscription

# Load error registry so BillingError returns correct HTTP status codes
from studio_billing.core.errors.registry import error_registry
error_registry.load()


def _persist(engine, obj):
    with Session(engine) as session:
        session.add(obj)
        session.commit()
        session.refresh(obj)
    return obj


@pytest.fixture
def engine(tmp_path):
    eng = build_engine(f"sqlite:///{tmp_path}/billing.db")
    create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session(engine):
    with Session(engine) as s:
        yield s


@pytest.fixture
def tenant(engine):
    return _persist(engine, Tenant(name="Studio Flow", currency="CZK", vat_rate=Decimal("21")))


@pytest.fixture
def other_tenant(engine):
    return _persist(engine, Tenant(name="Lens & Light", currency="EUR", vat_rate=Decimal("20"), invoice_prefix="LL"))


@pytest.fixture
def client(engine, tenant):
    return _persist(engine, Client(tenant_id=tenant.id, name="Jana Novakova", email="jana@example.com"))


@pytest.fixture
def package(engine, tenant):
    return _persist(engine, Package(tenant_id=tenant.id, name="8 Class Pass", credits=8, price=Decimal("1000")))


@pytest.fixture
def make_subscription(engine, tenant, client):
    """Factory: create a subscription through the service with sane defaults."""

    def _make(**overrides):
        fields = {
            "client_id": client.id,
            "amount": Decimal("1000"),
            "frequency": Frequency.MONTHLY,
            "start_date": date(2024, 1, 1),
        }
        fields.update(overrides)
        tenant_id = fields.pop("tenant_id", tenant.id)
        with Session(engine) as s:
            return create_subscription(s, tenant_id, SubscriptionCreate(**fields))

    return _make

"""
Pytest configuration and fixtures for the billing engine tests
"""

import os
import sys
from collections.abc import AsyncGenerator
from decimal import Decimal

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))  # noqa: PTH100, PTH118, PTH119, PTH120

from campus.database import Base  # noqa: E402
from campus.models import (  # noqa: E402, F401
    BillingRecord,
    CapChangeEntry,
    Member,
    MemberLifecycleRecord,
    ProcessedGatewayEvent,
    SuspensionEvent,
    Tenant,
)
from campus.services.access_service import AccessService  # noqa: E402
from campus.services.billing_service import BillingLedger  # noqa: E402
from campus.services.cap_service import CapService  # noqa: E402
from campus.services.rate_service import PriceCatalog, PricingConfig  # noqa: E402
from campus.utils.locks import reset_tenant_locks  # noqa: E402
from utils.mocks import MockGateway, MockSessionStore  # noqa: E402

# Tests run against an in-memory SQLite database shared by every session of a test
TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL", "sqlite+aiosqlite:///:memory:")

STANDARD_RATE = Decimal("1.25")


@pytest.fixture(scope="function")
async def test_engine():
    """Fresh schema per test function"""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest.fixture
async def test_db(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Provide a database session for tests that need it"""
    async with session_factory() as session:
        yield session


@pytest.fixture(autouse=True)
def fresh_tenant_locks():
    """asyncio locks are bound to the loop that created them"""
    reset_tenant_locks()
    yield
    reset_tenant_locks()


@pytest.fixture
def pricing() -> PricingConfig:
    return PricingConfig(default_rate=STANDARD_RATE, currency="USD", billing_cycle="yearly", cache_ttl_seconds=300)


@pytest.fixture
def gateway() -> MockGateway:
    return MockGateway(standard_rate=STANDARD_RATE)


@pytest.fixture
def catalog(gateway, pricing) -> PriceCatalog:
    return PriceCatalog(gateway, pricing)


@pytest.fixture
def session_store() -> MockSessionStore:
    return MockSessionStore()


@pytest.fixture
def ledger(test_db, pricing) -> BillingLedger:
    return BillingLedger(test_db, pricing)


@pytest.fixture
def cap_service(test_db, gateway, catalog, ledger) -> CapService:
    return CapService(test_db, gateway, catalog, ledger)


@pytest.fixture
def access_service(test_db, gateway, session_store, ledger) -> AccessService:
    return AccessService(test_db, gateway, session_store, ledger)

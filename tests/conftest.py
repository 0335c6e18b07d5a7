from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path

import pytest
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from farmstand.config import Settings
from farmstand.identity import Principal, Role
from farmstand.marketplace import Marketplace
from farmstand.payment.fake_gateway import FakePaymentProvider


class FrozenClock:
    """Clock that only moves when a test tells it to."""

    def __init__(self, start: datetime = datetime(2026, 5, 1, 9, 0, tzinfo=timezone.utc)) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


def pytest_collection_modifyitems(config, items):
    """Automatically mark tests based on their directory location."""
    for item in items:
        test_path = str(Path(item.fspath))
        if "/domain/" in test_path:
            item.add_marker(pytest.mark.domain)
        elif "/application/" in test_path:
            item.add_marker(pytest.mark.application)


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def settings():
    return Settings(
        reservation_ttl_seconds=15 * 60,
        pending_order_ttl_seconds=60 * 60,
        lock_timeout_seconds=1,
        payment_max_attempts=3,
        payment_backoff_base_seconds=0,
        payment_backoff_max_seconds=0,
        provider_timeout_seconds=0.05,
    )


@pytest.fixture
def provider():
    return FakePaymentProvider()


@pytest.fixture
async def db_engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    yield engine
    await engine.dispose()


@pytest.fixture
async def market(settings, db_engine, provider, clock):
    marketplace = Marketplace(settings, db_engine, provider, clock=clock)
    await marketplace.start(sweep=False)
    yield marketplace
    await marketplace.sweeper.stop()


@pytest.fixture
def farmer():
    return Principal(user_id="farmer-1", role=Role.FARMER)


@pytest.fixture
def buyer():
    return Principal(user_id="buyer-a", role=Role.BUYER)


@pytest.fixture
def other_buyer():
    return Principal(user_id="buyer-b", role=Role.BUYER)


@pytest.fixture
def driver():
    return Principal(user_id="driver-1", role=Role.DRIVER)


@pytest.fixture
def operator():
    return Principal(user_id="ops-1", role=Role.OPERATOR)


@pytest.fixture
def stock(market, farmer):
    """Register a product owned by the farmer fixture."""

    async def _stock(product_id: str, quantity: int, price: str = "2.50"):
        result = await market.engine.register_product(farmer, product_id, Decimal(price), quantity)
        assert result.success, result.reason
        return result.value

    return _stock

"""
Shared fixtures.

Every test gets its own SQLite file, so concurrent sessions really race
on the same rows. Providers are the mock implementations with failures
and latency switched off; escalation checks are recorded instead of
scheduled and tests run them explicitly.
"""

import os

os.environ.setdefault("ENV_MODE", "development")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./fulfillment-test.db")

from datetime import timedelta  # noqa: E402

import pytest  # noqa: E402

from fulfillment.core.clock import utcnow  # noqa: E402
from fulfillment.core.config import Settings  # noqa: E402
from fulfillment.database import init_db, make_engine, make_session_factory  # noqa: E402
from fulfillment.services import build_fulfillment  # noqa: E402
from fulfillment.services.escalation import EscalationScheduler  # noqa: E402
from fulfillment.services.notifications.mock import MockNotificationService  # noqa: E402
from fulfillment.services.orders import CartLine, CustomerInfo  # noqa: E402
from fulfillment.services.payment.mock import MockPaymentService  # noqa: E402

TENANT = "taco-truck"
OTHER_TENANT = "crepe-truck"
LOCATION = "bahnhofplatz"
PHONE = "+41791234567"


class RecordingScheduler(EscalationScheduler):
    def __init__(self):
        self.scheduled = []
        self.cancelled = []

    def schedule(self, tenant_id, order_id, step, delay_seconds):
        self.scheduled.append((tenant_id, order_id, step, delay_seconds))

    def cancel(self, order_id):
        self.cancelled.append(order_id)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        env_mode="development",
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'fulfillment.db'}",
        escalation_delays_minutes="5,10,15",
        contention_max_retries=60,
        contention_base_delay_ms=1,
        contention_max_delay_ms=25,
        contention_jitter_ms=5,
    )


@pytest.fixture
async def engine(settings):
    engine = make_engine(settings.database_url)
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def provider():
    return MockPaymentService(failure_rate=0.0, min_latency=0.0, max_latency=0.0)


@pytest.fixture
def notifier():
    return MockNotificationService(failure_rate=0.0, min_latency=0.0, max_latency=0.0)


@pytest.fixture
def scheduler():
    return RecordingScheduler()


@pytest.fixture
async def services(engine, settings, provider, notifier, scheduler):
    services = build_fulfillment(
        make_session_factory(engine),
        settings=settings,
        provider=provider,
        notifier=notifier,
        scheduler=scheduler,
    )

    await services.tenants.register_tenant(
        TENANT, "Taco Truck",
        announced_location_id=LOCATION,
        trial_ends_at=utcnow() - timedelta(days=1),
        stripe_account_id="acct_taco",
    )
    await services.tenants.add_location(TENANT, LOCATION, "Bahnhofplatz")
    await services.tenants.add_location(TENANT, "marktplatz", "Marktplatz")

    await services.catalog.upsert_product(TENANT, "burger", "Burger", 1450)
    await services.catalog.upsert_product(TENANT, "fries", "Fries", 650)
    await services.catalog.upsert_product(TENANT, "lemonade", "Lemonade", 450)
    await services.catalog.upsert_product(TENANT, "soup", "Soup", 900, available=False)

    await services.inventory.initialize_item(TENANT, "burger", 10, name="Burger", min_quantity=1, reorder_point=3)
    await services.inventory.initialize_item(TENANT, "fries", 20, name="Fries")

    await services.tenants.register_tenant(OTHER_TENANT, "Crepe Truck")
    await services.catalog.upsert_product(OTHER_TENANT, "crepe", "Crepe", 800)

    notifier.clear()
    return services


@pytest.fixture
def customer():
    return CustomerInfo(name="Anna Muster", phone=PHONE, email="anna@example.ch")


@pytest.fixture
def place_order(services, customer):
    async def place(*lines, **kwargs):
        items = [CartLine(product_id, quantity) for product_id, quantity in (lines or [("burger", 2)])]
        return await services.orders.create(kwargs.pop("tenant_id", TENANT), items, customer, **kwargs)
    return place

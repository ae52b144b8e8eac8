import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/15")
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("NOTIFICATION_WEBHOOK_URL", "http://notifications.test/hook")
os.environ.setdefault("CELERY_BROKER_URL", "memory://")
os.environ.setdefault("CELERY_BACKEND", "cache+memory://")

import pytest
from datetime import timedelta
from decimal import Decimal
from types import SimpleNamespace
from typing import List, Optional

from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

from order_placement.main import app
from order_placement.db.session import get_db
from order_placement.models.base import Base
from order_placement.models.user import User
from order_placement.models.supplier import Supplier, SupplierRequirement
from order_placement.models.supplier_credential import SupplierCredential
from order_placement.models.supplier_product import SupplierProduct
from order_placement.models.order import Order
from order_placement.adapters.base import SupplierAdapter
from order_placement.core.enums import CredentialStatus, RequirementType, UserRole
from order_placement.core.security import get_current_user
from order_placement.services.message_bus import InMemoryMessageBus, get_message_bus
from order_placement.services.notifications import Notifier
from order_placement.services.placement import PlacementContext
from order_placement.services.tasks import get_dispatcher
from order_placement.services.two_factor import TwoFactorChallengeManager
from order_placement.utils.timeutils import utcnow


class Steps(list):
    """Responses consumed one per call; the last one repeats."""


class FakeAdapter(SupplierAdapter):
    """Scriptable adapter.

    Each keyword maps an operation to a value, an exception to raise, a
    callable, or ``Steps``. Operations without a response raise
    ``NotImplementedError`` like a real adapter that lacks the capability.
    """

    def __init__(self, credential=None, **responses):
        super().__init__(credential)
        self.responses = responses
        self.calls = []

    async def _respond(self, operation, *args):
        self.calls.append((operation, args))
        if operation not in self.responses:
            raise NotImplementedError(operation)
        response = self.responses[operation]
        if isinstance(response, Steps):
            response = response.pop(0) if len(response) > 1 else response[0]
        if isinstance(response, BaseException):
            raise response
        if callable(response):
            return response(*args)
        return response

    def called(self, operation) -> list:
        return [args for op, args in self.calls if op == operation]

    async def login(self):
        return await self._respond("login")

    async def soft_refresh(self):
        return await self._respond("soft_refresh")

    async def add_to_cart(self, items, delivery_date=None):
        return await self._respond("add_to_cart", items, delivery_date)

    async def checkout(self):
        return await self._respond("checkout")

    async def check_stock(self, sku):
        return await self._respond("check_stock", sku)

    async def get_product_info(self, sku):
        return await self._respond("get_product_info", sku)

    async def get_order_minimum(self):
        return await self._respond("get_order_minimum")

    async def get_delivery_availability(self, delivery_date):
        return await self._respond("get_delivery_availability", delivery_date)

    async def scrape_prices(self, skus):
        return await self._respond("scrape_prices", skus)

    async def verify_two_factor_code(self, session_token, code):
        return await self._respond("verify_two_factor_code", session_token, code)

    async def close(self):
        self.calls.append(("close", ()))


class RecordingDispatcher:
    def __init__(self):
        self.calls = []

    def _record(self, name, **kwargs):
        self.calls.append((name, kwargs))

    def place_order(self, order_id, **kwargs):
        self._record("place_order", order_id=order_id, **kwargs)

    def verify_prices(self, order_id, **kwargs):
        self._record("verify_prices", order_id=order_id, **kwargs)

    def verify_batch(self, order_ids):
        self._record("verify_batch", order_ids=list(order_ids))

    def refresh_session(self, credential_id, order_id=None):
        self._record("refresh_session", credential_id=credential_id, order_id=order_id)

    def refresh_prices(self, user_id, supplier_id=None):
        self._record("refresh_prices", user_id=user_id, supplier_id=supplier_id)

    def notify_two_factor(self, challenge_id):
        self._record("notify_two_factor", challenge_id=challenge_id)

    def named(self, name) -> List[dict]:
        return [kwargs for call, kwargs in self.calls if call == name]


class RecordingNotifier(Notifier):
    def __init__(self):
        self.sent = []

    async def deliver(self, payload: dict) -> bool:
        self.sent.append(payload)
        return True

    def events(self, event: Optional[str] = None) -> List[dict]:
        return [p for p in self.sent if event is None or p["event"] == str(event)]


class FakeRedis:
    """Enough of redis.asyncio.Redis for the rate limiter, idempotency and locks."""

    def __init__(self):
        self.store = {}
        self.expiry = {}
        self.published = []

    async def ping(self):
        return True

    async def get(self, key):
        return self.store.get(key)

    async def set(self, key, value, ex=None, nx=False):
        if nx and key in self.store:
            return None
        self.store[key] = value if isinstance(value, bytes) else str(value).encode()
        if ex is not None:
            self.expiry[key] = ex
        return True

    async def incr(self, key):
        value = int(self.store.get(key, b"0")) + 1
        self.store[key] = str(value).encode()
        return value

    async def delete(self, *keys):
        return sum(1 for key in keys if self.store.pop(key, None) is not None)

    async def eval(self, script, numkeys, key, owner):
        # Only the compare-and-delete lock release script is used
        if self.store.get(key) == owner.encode():
            del self.store[key]
            return 1
        return 0

    async def publish(self, channel, message):
        self.published.append((channel, message))
        return 0

    async def close(self):
        return None


@pytest.fixture
def fake_redis(monkeypatch):
    client = FakeRedis()
    monkeypatch.setattr("order_placement.core.redis.redis", client)
    return client


@pytest.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", echo=False, future=True)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def bus():
    return InMemoryMessageBus()


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
async def world(db):
    """One member with an active login at a supplier that has a $100 minimum."""
    now = utcnow()
    user = User(username="chef", email="chef@example.com", role=UserRole.MEMBER)
    supplier = Supplier(
        name="Sysco",
        code="sysco",
        base_url="https://shop.sysco.test",
        adapter_class="fake",
        delivery_schedules=[],
        requirements=[
            SupplierRequirement(
                requirement_type=RequirementType.ORDER_MINIMUM,
                numeric_value=Decimal("100.00"),
                error_message="Order minimum is {{minimum}}. Add {{difference}} more.",
            )
        ],
    )
    db.add_all([user, supplier])
    await db.flush()

    credential = SupplierCredential(
        user_id=user.id,
        supplier_id=supplier.id,
        user=user,
        supplier=supplier,
        status=CredentialStatus.ACTIVE,
        last_login_at=now,
    )
    products = [
        SupplierProduct(
            supplier_id=supplier.id,
            supplier=supplier,
            supplier_sku=f"SKU-{n}",
            supplier_name=name,
            current_price=Decimal(price),
            price_updated_at=now - timedelta(hours=3),
        )
        for n, (name, price) in enumerate([("Olive Oil", "30.00"), ("Flour", "20.00"), ("Butter", "10.00")], 1)
    ]
    db.add(credential)
    db.add_all(products)
    await db.commit()
    return SimpleNamespace(user=user, supplier=supplier, credential=credential, products=products)


@pytest.fixture
def create_order_factory(db, world):
    async def _create_order(lines=None, **kwargs):
        """``lines`` is a list of (product, quantity[, unit_price])."""
        order = Order(user=world.user, supplier=world.supplier, **kwargs)
        for line in lines or [(world.products[0], 4)]:
            order.add_item(*line)
        db.add(order)
        await db.commit()
        return order

    return _create_order


@pytest.fixture
def challenge_manager(db, bus, dispatcher):
    def _manager(adapter=None, now=None):
        return TwoFactorChallengeManager(
            db, bus, dispatcher, adapter_factory=lambda credential: adapter or FakeAdapter(credential), now=now
        )

    return _manager


@pytest.fixture
def placement_context(db, bus, notifier, challenge_manager):
    def _context(adapter: FakeAdapter, now=None):
        return PlacementContext(
            db=db,
            bus=bus,
            notifier=notifier,
            challenges=challenge_manager(adapter, now=now),
            adapter_factory=lambda credential: adapter,
            now=now,
        )

    return _context


@pytest.fixture
async def api_client(session_factory, world, bus, dispatcher, monkeypatch):
    async def override_get_db():
        async with session_factory() as session:
            yield session

    async def no_rate_limit(user_id):
        return None

    idempotency_store = {}

    async def fake_get_idempotent(user_id, key):
        return idempotency_store.get((user_id, key)) if key else None

    async def fake_set_idempotent(user_id, key, value):
        if key:
            idempotency_store[(user_id, key)] = value

    monkeypatch.setattr("order_placement.api.orders.check_rate_limit", no_rate_limit)
    monkeypatch.setattr("order_placement.api.two_factor.check_rate_limit", no_rate_limit)
    monkeypatch.setattr("order_placement.api.orders.get_idempotent", fake_get_idempotent)
    monkeypatch.setattr("order_placement.api.orders.set_idempotent", fake_set_idempotent)

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = lambda: world.user
    app.dependency_overrides[get_message_bus] = lambda: bus
    app.dependency_overrides[get_dispatcher] = lambda: dispatcher

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


def pytest_configure(config):
    config.addinivalue_line(
        "markers", "integration: marks tests that drive several services together"
    )
    config.addinivalue_line(
        "markers", "unit: marks tests as unit tests"
    )

import os
import tempfile

# Must be set before print_service.config is imported
os.environ.setdefault("ORDER_EVENTS_ENABLED", "false")
os.environ.setdefault("LOG_FILE", os.path.join(tempfile.gettempdir(), "print_orders_test.log"))
os.environ.setdefault("DATABASE_URL", "sqlite:///" + os.path.join(tempfile.gettempdir(), "print_orders_test.db"))

from decimal import Decimal

import pytest
from sqlalchemy import func, select, update

from print_service.auth import Principal, Role
from print_service.db import Order, RateCardEntry, init_db, make_engine, make_session_factory
from print_service.errors import UpstreamUnavailable
from print_service.file_transfer import FileTransferBroker
from print_service.orders import create_order
from print_service.payments import PaymentReconciler, expected_signature

SHOP_ID = "shop-1"
OTHER_SHOP_ID = "shop-2"
GATEWAY_SECRET = "test-gateway-secret"
STORAGE_SECRET = "test-storage-secret"


class FakeGateway:
    public_key = "rzp_test_public"

    def __init__(self):
        self.calls = []
        self.fail = False

    def create_intent(self, order_id, amount_minor_units, currency):
        if self.fail:
            raise UpstreamUnavailable("Payment gateway unreachable", order_id=order_id)
        self.calls.append((order_id, amount_minor_units, currency))
        return f"order_test_{len(self.calls)}"


class RecordingPublisher:
    def __init__(self):
        self.events = []

    def publish_status_change(self, order_id, previous_status, status, actor_role):
        self.events.append((order_id, previous_status, status, actor_role))

    def close(self):
        pass


def sign(gateway_intent_id, payment_id, secret=GATEWAY_SECRET):
    return expected_signature(secret, gateway_intent_id, payment_id)


def make_file(customer_id, name="doc.pdf", **overrides):
    file = {
        "storage_key": f"uploads/{customer_id}/{name}",
        "file_name": name,
        "pages": 1,
        "print_type": "BW",
        "paper_size": "A4",
        "copies": 1,
        "sides": "single",
    }
    file.update(overrides)
    return file


def force_status(session_factory, order_id, status):
    with session_factory() as s:
        s.execute(update(Order).where(Order.id == order_id).values(status=status))
        s.commit()


def count_orders(session_factory):
    with session_factory() as s:
        return s.scalar(select(func.count()).select_from(Order))


@pytest.fixture
def engine(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'orders.db'}")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def session(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def seed_rates(session_factory):
    def _seed(shop_id, rates):
        with session_factory() as s:
            for (print_type, paper_size), price in rates.items():
                s.add(RateCardEntry(
                    shop_id=shop_id, print_type=print_type, paper_size=paper_size,
                    price_per_page=Decimal(price),
                ))
            s.commit()
    return _seed


@pytest.fixture
def rate_card(seed_rates):
    seed_rates(SHOP_ID, {("BW", "A4"): "2.00", ("COLOR", "A4"): "10.00", ("BW", "A3"): "4.00"})


@pytest.fixture
def customer():
    return Principal(user_id="cust-1", role=Role.CUSTOMER)


@pytest.fixture
def other_customer():
    return Principal(user_id="cust-2", role=Role.CUSTOMER)


@pytest.fixture
def shop():
    return Principal(user_id="owner-1", role=Role.SHOP, shop_id=SHOP_ID)


@pytest.fixture
def other_shop():
    return Principal(user_id="owner-2", role=Role.SHOP, shop_id=OTHER_SHOP_ID)


@pytest.fixture
def pending_order(session, customer, rate_card):
    """Pending order: 10 pages x 2 copies BW/A4 at 2.00 = 40.00."""
    return create_order(session, customer, SHOP_ID, [make_file(customer.user_id, pages=10, copies=2)])


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def reconciler(gateway, publisher):
    return PaymentReconciler(gateway, secret=GATEWAY_SECRET, currency="INR", events=publisher)


@pytest.fixture
def broker():
    return FileTransferBroker(secret=STORAGE_SECRET, worker_url="http://storage.test", ttl_seconds=60)


def headers_for(principal):
    headers = {"X-Principal-Id": principal.user_id, "X-Principal-Role": principal.role.value}
    if principal.shop_id:
        headers["X-Shop-Id"] = principal.shop_id
    return headers


@pytest.fixture
def client(session_factory, publisher, reconciler, broker):
    """TestClient for the API, wired to the per-test database and fakes."""
    from fastapi.testclient import TestClient

    from print_service.main import app, get_broker, get_events, get_reconciler, get_session

    def override_session():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_session] = override_session
    app.dependency_overrides[get_events] = lambda: publisher
    app.dependency_overrides[get_reconciler] = lambda: reconciler
    app.dependency_overrides[get_broker] = lambda: broker
    yield TestClient(app)
    app.dependency_overrides.clear()

from datetime import datetime, timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from main import app
from core import clock as core_clock
from core import config as core_config
from core.db import Base, atomic, get_db
from core.tenancy import Actor
from models.coupon import Coupon
from models.enums import (
    CouponType,
    LedgerAccount,
    ProductStatus,
    StorePlan,
    TransactionDirection,
    TransactionType,
    UserRole,
)
from models.product import Product, ProductVariant
from models.store import Store
from models.user import User
from schemas.order import OrderItemIn
from security import jwt as jwt_utils
from services import disbursements, ledger, notifications
from services import orders as order_service
from services import payments as payment_service

SHIPPING_ADDRESS = {
    "full_name": "Awa Diop",
    "phone": "+221770000000",
    "line1": "12 Rue Carnot",
    "city": "Dakar",
    "country": "SN",
}


class FakeTask:
    """Stands in for a Celery task; records what would have been queued."""

    def __init__(self):
        self.calls = []

    def delay(self, *args, **kwargs):
        self.calls.append(args)


class FrozenClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture(scope="session", autouse=True)
def test_settings():
    core_config.settings.JWT_SECRET = "test-secret"
    core_config.settings.TESTING = True
    core_config.settings.MONEROO_WEBHOOK_SECRET = "whsec-test"
    yield


@pytest.fixture(autouse=True)
def clock(monkeypatch):
    frozen = FrozenClock(datetime(2026, 3, 2, 9, 0, 0))
    monkeypatch.setattr(core_clock, "utcnow", frozen)
    return frozen


@pytest.fixture(autouse=True)
def sent_notifications(monkeypatch):
    task = FakeTask()
    monkeypatch.setattr(notifications, "send_notification_task", task)
    return task.calls


@pytest.fixture(autouse=True)
def queued_payouts(monkeypatch):
    task = FakeTask()
    monkeypatch.setattr(disbursements, "disburse_payout_task", task)
    return task.calls


@pytest.fixture(autouse=True)
def queued_refunds(monkeypatch):
    task = FakeTask()
    monkeypatch.setattr(disbursements, "refund_customer_task", task)
    return task.calls


@pytest.fixture()
def db():
    """Fresh in-memory database per test, shared with the app through get_db."""
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    TestingSessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)
    Base.metadata.create_all(bind=engine)
    session = TestingSessionLocal()

    def _get_db():
        yield session

    app.dependency_overrides[get_db] = _get_db
    try:
        yield session
    finally:
        session.close()
        app.dependency_overrides.clear()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def client(db):
    with TestClient(app) as c:
        yield c


def _make_user(db, email: str, role: UserRole, name: str) -> User:
    user = User(email=email, name=name, role=role)
    db.add(user)
    db.commit()
    return user


@pytest.fixture
def customer(db):
    return _make_user(db, "customer@example.com", UserRole.CUSTOMER, "Awa Diop")


@pytest.fixture
def other_customer(db):
    return _make_user(db, "other@example.com", UserRole.CUSTOMER, "Moussa Fall")


@pytest.fixture
def vendor(db):
    return _make_user(db, "vendor@example.com", UserRole.VENDOR, "Fatou Ndiaye")


@pytest.fixture
def admin(db):
    return _make_user(db, "admin@example.com", UserRole.ADMIN, "Ops")


def actor_for(user: User) -> Actor:
    return Actor(user_id=user.id, role=user.role)


@pytest.fixture
def customer_actor(customer):
    return actor_for(customer)


@pytest.fixture
def vendor_actor(vendor):
    return actor_for(vendor)


@pytest.fixture
def admin_actor(admin):
    return actor_for(admin)


@pytest.fixture
def store(db, vendor):
    store = Store(name="Boutique Teranga", slug="boutique-teranga", owner_id=vendor.id, plan=StorePlan.FREE)
    db.add(store)
    db.commit()
    return store


@pytest.fixture
def make_product(db, store):
    def _make(price=10_000, quantity=10, track_inventory=True, status=ProductStatus.ACTIVE, title="Wax dress", owner=None):
        product = Product(
            store_id=(owner or store).id,
            title=title,
            slug=title.lower().replace(" ", "-"),
            price=price,
            sku=f"SKU-{title[:3].upper()}",
            track_inventory=track_inventory,
            quantity=quantity,
            status=status,
        )
        db.add(product)
        db.commit()
        return product

    return _make


@pytest.fixture
def make_variant(db):
    def _make(product, quantity=3, price=None, title="Size M", is_available=True):
        variant = ProductVariant(
            product_id=product.id,
            title=title,
            price=price,
            sku=f"{product.sku}-{title[-1]}",
            quantity=quantity,
            is_available=is_available,
        )
        db.add(variant)
        db.commit()
        return variant

    return _make


@pytest.fixture
def make_coupon(db, store):
    def _make(code="PROMO10", type=CouponType.PERCENTAGE, value=10, **kwargs):
        coupon = Coupon(store_id=store.id, code=code, type=type, value=value, **kwargs)
        db.add(coupon)
        db.commit()
        return coupon

    return _make


@pytest.fixture
def place_order(db, store, customer_actor):
    """Create an order through the service and return the persisted row."""
    def _place(lines, actor=None, **kwargs):
        items = [
            OrderItemIn(product_id=product.id, variant_id=variant.id if variant else None, quantity=qty)
            for product, variant, qty in lines
        ]
        result = order_service.create_order(
            db, actor or customer_actor, store.id, items, SHIPPING_ADDRESS, **kwargs
        )
        return order_service.get_order(db, actor or customer_actor, result["order_id"])

    return _place


@pytest.fixture
def deliver_order(db, vendor_actor):
    """Pay an order and walk it to delivered."""
    def _deliver(order, reference="pay_ref_1"):
        payment_service.confirm_payment(db, order.id, reference)
        for status in ("processing", "shipped", "delivered"):
            order_service.update_status(db, vendor_actor, order.id, status, tracking_number="TRK1")
        return order

    return _deliver


@pytest.fixture
def fund_store(db):
    """Credit a store's spendable balance through the ledger."""
    def _fund(store, amount):
        with atomic(db):
            ledger.record_entry(
                db, store,
                type=TransactionType.CREDIT,
                direction=TransactionDirection.CREDIT,
                account=LedgerAccount.AVAILABLE,
                amount=amount,
                description="Opening balance",
            )
        return store

    return _fund


@pytest.fixture
def auth_headers():
    def _headers(user: User):
        token = jwt_utils.create_access_token(str(user.id), role=user.role.value)
        return {"Authorization": f"Bearer {token}"}

    return _headers


@pytest.fixture
def shipping_address():
    return dict(SHIPPING_ADDRESS)


@pytest.fixture
def as_actor():
    return actor_for
